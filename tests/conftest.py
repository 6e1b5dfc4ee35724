"""Shared test fixtures for the asset identification service."""

from __future__ import annotations

import json
import struct
import zlib
from pathlib import Path
from typing import Any, Callable

import pytest

from app.config import Settings, get_settings
from app.services.png_metadata import PNG_SIGNATURE

# ---------------------------------------------------------------------------
# Byte builders
# ---------------------------------------------------------------------------


def safetensors_bytes(header: dict[str, Any], trailing: bytes = b"") -> bytes:
    raw = json.dumps(header).encode("utf-8")
    return struct.pack("<Q", len(raw)) + raw + trailing


def png_chunk(chunk_type: str, payload: bytes) -> bytes:
    kind = chunk_type.encode("latin-1")
    crc = zlib.crc32(kind + payload) & 0xFFFFFFFF
    return struct.pack(">I", len(payload)) + kind + payload + struct.pack(">I", crc)


def text_chunk(keyword: str, text: str) -> bytes:
    return png_chunk("tEXt", keyword.encode("latin-1") + b"\x00" + text.encode("latin-1"))


def png_bytes(*chunks: bytes) -> bytes:
    """A signature, an IHDR, the given chunks, then IEND."""
    ihdr = png_chunk("IHDR", struct.pack(">IIBBBBB", 1, 1, 8, 6, 0, 0, 0))
    return PNG_SIGNATURE + ihdr + b"".join(chunks) + png_chunk("IEND", b"")


@pytest.fixture()
def make_safetensors() -> Callable[..., bytes]:
    return safetensors_bytes


@pytest.fixture()
def make_png() -> Callable[..., bytes]:
    return png_bytes


@pytest.fixture()
def make_text_chunk() -> Callable[[str, str], bytes]:
    return text_chunk


@pytest.fixture()
def make_chunk() -> Callable[[str, bytes], bytes]:
    return png_chunk


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_app_data(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point the global settings (and the fingerprint cache) at a temp dir."""
    monkeypatch.setenv("APP_DATA_DIR", str(tmp_path / "appdata"))
    monkeypatch.delenv("CIVITAI_API_KEY", raising=False)
    monkeypatch.delenv("HUGGINGFACE_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings with the fingerprint cache off and small hashing windows."""
    return Settings(
        _env_file=None,
        app_data_dir=tmp_path / "appdata",
        fingerprint_cache_enabled=False,
        full_hash_limit_bytes=1024,
        quick_hash_window_bytes=64,
    )


# ---------------------------------------------------------------------------
# Fake HTTP
# ---------------------------------------------------------------------------


_NO_JSON = object()


class FakeResponse:
    """The subset of ``requests.Response`` the registry clients touch."""

    def __init__(
        self,
        status_code: int = 200,
        payload: Any = _NO_JSON,
        content: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self._payload = payload
        self.content = content
        self.headers = headers or {}

    def json(self) -> Any:
        if self._payload is _NO_JSON:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """
    Routes ``request(method, url, ...)`` to canned responses.

    A route may be a FakeResponse, an exception to raise, or a callable
    receiving the request kwargs. Unknown routes answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Any] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def add(self, method: str, url: str, route: Any) -> None:
        self.routes[(method, url)] = route

    def add_json(self, method: str, url: str, payload: Any, status_code: int = 200) -> None:
        self.add(method, url, FakeResponse(status_code, payload))

    def add_image(self, url: str, content: bytes = b"\xff\xd8image", content_type: str = "image/jpeg") -> None:
        self.add("GET", url, FakeResponse(200, content=content, headers={"Content-Type": content_type}))

    def called(self, method: str, url: str) -> bool:
        return any(m == method and u == url for m, u, _ in self.calls)

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        route = self.routes.get((method, url))
        if route is None:
            return FakeResponse(404)
        if isinstance(route, BaseException):
            raise route
        if callable(route):
            return route(**kwargs)
        return route


@pytest.fixture()
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def response_factory() -> type[FakeResponse]:
    return FakeResponse
