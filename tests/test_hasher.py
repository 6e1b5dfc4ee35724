"""Tests for fingerprinting and the fingerprint cache."""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from app.config import Settings
from app.services import hasher
from app.services.hasher import (
    HasherService,
    compute_quick_hash_sync,
    fingerprint,
    fingerprint_sync,
)
from app.services.models import QUICK_HASH_PREFIX, FileFingerprint, FingerprintAlgorithm


def _write(path: Path, data: bytes) -> Path:
    path.write_bytes(data)
    return path


class TestAlgorithmChoice:
    def test_small_file_gets_full_sha256(self, tmp_path: Path, settings: Settings) -> None:
        data = bytes(range(256)) * 2
        result = fingerprint_sync(_write(tmp_path / "a.bin", data), settings)
        assert result.algorithm == FingerprintAlgorithm.FULL_SHA256
        assert result.digest_hex == hashlib.sha256(data).hexdigest()
        assert result.size == len(data)
        assert result.usable_for_lookup

    def test_file_at_limit_is_full(self, tmp_path: Path, settings: Settings) -> None:
        path = _write(tmp_path / "edge.bin", b"x" * settings.full_hash_limit_bytes)
        assert fingerprint_sync(path, settings).algorithm == FingerprintAlgorithm.FULL_SHA256

    def test_file_over_limit_is_quick(self, tmp_path: Path, settings: Settings) -> None:
        path = _write(tmp_path / "big.bin", b"x" * (settings.full_hash_limit_bytes + 1))
        result = fingerprint_sync(path, settings)
        assert result.algorithm == FingerprintAlgorithm.QUICK_SHA256
        assert result.value.startswith(QUICK_HASH_PREFIX)
        assert not result.usable_for_lookup

    def test_identical_content_same_digest(self, tmp_path: Path, settings: Settings) -> None:
        data = b"same bytes" * 50
        a = fingerprint_sync(_write(tmp_path / "a.bin", data), settings)
        b = fingerprint_sync(_write(tmp_path / "b.bin", data), settings)
        assert a == b

    def test_missing_file_is_unavailable(self, tmp_path: Path, settings: Settings) -> None:
        result = fingerprint_sync(tmp_path / "nope.bin", settings)
        assert result.algorithm == FingerprintAlgorithm.UNAVAILABLE
        assert result.value is None
        assert not result.usable_for_lookup


class TestQuickHash:
    def test_covers_head_and_tail_only(self, tmp_path: Path) -> None:
        window = 64
        data = bytearray(b"a" * window + b"m" * 500 + b"z" * window)
        path = _write(tmp_path / "q.bin", bytes(data))
        before = compute_quick_hash_sync(path, window)

        data[window + 250] = ord("X")
        _write(path, bytes(data))
        assert compute_quick_hash_sync(path, window) == before

    def test_head_change_changes_hash(self, tmp_path: Path) -> None:
        window = 64
        data = bytearray(b"a" * window + b"m" * 500 + b"z" * window)
        path = _write(tmp_path / "q.bin", bytes(data))
        before = compute_quick_hash_sync(path, window)

        data[3] = ord("X")
        _write(path, bytes(data))
        assert compute_quick_hash_sync(path, window) != before

    def test_is_sha256_of_head_plus_tail(self, tmp_path: Path) -> None:
        window = 16
        data = bytes(range(100))
        path = _write(tmp_path / "q.bin", data)
        expected = hashlib.sha256(data[:window] + data[-window:]).hexdigest()
        assert compute_quick_hash_sync(path, window) == expected

    def test_quick_never_equals_full_value(self) -> None:
        quick = FileFingerprint(FingerprintAlgorithm.QUICK_SHA256, "ab" * 32, 10)
        full = FileFingerprint(FingerprintAlgorithm.FULL_SHA256, "ab" * 32, 10)
        assert quick.value != full.value


class TestFallback:
    def test_full_failure_degrades_to_quick(
        self, tmp_path: Path, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken(*args, **kwargs):
            raise OSError("read error")

        monkeypatch.setattr(hasher, "compute_hash_sync", broken)
        result = fingerprint_sync(_write(tmp_path / "a.bin", b"abc"), settings)
        assert result.algorithm == FingerprintAlgorithm.QUICK_SHA256

    def test_quick_failure_is_unavailable(
        self, tmp_path: Path, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken(*args, **kwargs):
            raise OSError("read error")

        monkeypatch.setattr(hasher, "compute_hash_sync", broken)
        monkeypatch.setattr(hasher, "compute_quick_hash_sync", broken)
        result = fingerprint_sync(_write(tmp_path / "a.bin", b"abc"), settings)
        assert result.algorithm == FingerprintAlgorithm.UNAVAILABLE
        assert result.size == 3


class TestAsync:
    async def test_fingerprint_runs_on_executor(self, tmp_path: Path, settings: Settings) -> None:
        data = b"hello world"
        result = await fingerprint(_write(tmp_path / "a.bin", data), settings)
        assert result.digest_hex == hashlib.sha256(data).hexdigest()


class TestHasherServiceCache:
    @pytest.fixture()
    def cached_settings(self, tmp_path: Path) -> Settings:
        return Settings(_env_file=None, app_data_dir=tmp_path / "appdata")

    async def test_second_lookup_hits_cache(
        self, tmp_path: Path, cached_settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        path = _write(tmp_path / "model.bin", b"weights" * 10)
        service = HasherService(cached_settings)
        first = await service.get_fingerprint(path)

        async def must_not_run(*args, **kwargs):
            raise AssertionError("fingerprint recomputed")

        monkeypatch.setattr(hasher, "fingerprint", must_not_run)
        second = await service.get_fingerprint(path)
        assert second == first

    async def test_changed_file_is_rehashed(self, tmp_path: Path, cached_settings: Settings) -> None:
        path = _write(tmp_path / "model.bin", b"one")
        service = HasherService(cached_settings)
        first = await service.get_fingerprint(path)

        _write(path, b"two and more")
        second = await service.get_fingerprint(path)
        assert second.digest_hex == hashlib.sha256(b"two and more").hexdigest()
        assert second != first

    async def test_missing_file_is_unavailable(self, tmp_path: Path, cached_settings: Settings) -> None:
        result = await HasherService(cached_settings).get_fingerprint(tmp_path / "gone.bin")
        assert result.algorithm == FingerprintAlgorithm.UNAVAILABLE

    async def test_unusable_cache_falls_back_to_hashing(self, tmp_path: Path) -> None:
        blocker = _write(tmp_path / "afile", b"not a directory")
        settings = Settings(_env_file=None, app_data_dir=blocker / "sub")
        data = b"weights" * 10
        result = await HasherService(settings).get_fingerprint(_write(tmp_path / "model.bin", data))
        assert result.algorithm == FingerprintAlgorithm.FULL_SHA256
        assert result.digest_hex == hashlib.sha256(data).hexdigest()

    async def test_cache_lives_in_service_settings(self, tmp_path: Path) -> None:
        settings = Settings(_env_file=None, app_data_dir=tmp_path / "other")
        await HasherService(settings).get_fingerprint(_write(tmp_path / "model.bin", b"abc"))
        assert (tmp_path / "other" / "fingerprints.db").exists()
        assert not (tmp_path / "appdata" / "fingerprints.db").exists()
