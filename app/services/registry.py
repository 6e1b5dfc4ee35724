"""Shared plumbing for remote model registries."""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath
from typing import Any, Iterable
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import requests

from app.services.errors import (
    FingerprintUnusable,
    NoPreviewAvailable,
    NotFound,
    PreviewFetchError,
    ProviderError,
    RegistryError,
    TransportError,
)
from app.services.models import FileFingerprint, PreviewImage, PreviewRef, RegistryMatch, Resolution
from app.services.safetensors import extract_identification_anchors

logger = logging.getLogger(__name__)

USER_AGENT = "ModelAssetIdentify/0.1"
MODEL_EXTENSIONS = (".safetensors", ".ckpt", ".pt", ".pth", ".bin", ".gguf")

# Precision / packaging tokens that rarely appear in published model names
SUFFIX_TOKENS = {
    "fp8", "fp16", "fp32", "bf16",
    "f8", "f16", "f32",
    "pruned", "full", "ema", "emaonly",
    "safetensors", "ckpt", "model",
}


def clean_search_query(filename: str) -> str:
    """Lowercase, drop the model extension, and turn ``-``/``_`` into spaces."""
    name = PurePosixPath(filename.replace("\\", "/")).name.lower()
    for ext in MODEL_EXTENSIONS:
        if name.endswith(ext):
            name = name[: -len(ext)]
            break
    return " ".join(re.sub(r"[-_]+", " ", name).split())


def _trim_suffixes(query: str) -> str:
    tokens = query.split()
    while tokens and tokens[-1] in SUFFIX_TOKENS:
        tokens.pop()
    trimmed = " ".join(tokens)
    return re.sub(r"\s+v?\d+(\.\d+)*$", "", trimmed).strip()


def build_query_candidates(filename: str, local_fields: dict[str, Any] | None = None) -> list[str]:
    """
    Rank search strings for name-only registries.

    Order: the full cleaned name, progressively shorter tails of it, the name
    with precision/version suffixes removed, then identification anchors
    recovered from local metadata.
    """
    base = clean_search_query(filename)
    variants = [base]

    words = base.split()
    if len(words) > 2:
        for i in range(1, len(words) - 1):
            variants.append(" ".join(words[i:]))

    variants.append(_trim_suffixes(base))
    variants.extend(extract_identification_anchors(local_fields or {}))

    seen: set[str] = set()
    result = []
    for v in variants:
        v = v.strip()
        if not v or v.lower() in seen:
            continue
        seen.add(v.lower())
        result.append(v)
    return result


def filename_matches(remote_path: str | None, filename: str) -> bool:
    """Exact name equality, or ``remote_path`` ending in ``/filename``."""
    if not remote_path or not filename:
        return False
    return remote_path == filename or remote_path.endswith(f"/{filename}")


def digest_matches(remote_digest: Any, fingerprint: FileFingerprint | None) -> bool:
    if fingerprint is None or not fingerprint.usable_for_lookup or not remote_digest:
        return False
    return str(remote_digest).strip().lower() == fingerprint.digest_hex


def select_preview(platform: str, images: Iterable[Any] | None) -> PreviewRef:
    """
    Pick the preview for a match: the first image flagged safe, else the first image.

    Raises NoPreviewAvailable when there is no image with a url.
    """
    usable = [img for img in (images or []) if isinstance(img, dict) and img.get("url")]
    if not usable:
        raise NoPreviewAvailable(platform, "No suitable preview image found.")

    for img in usable:
        nsfw = img.get("nsfw")
        if nsfw == "None" or nsfw is False or img.get("nsfwLevel") == 1:
            return PreviewRef(url=img["url"], nsfw=nsfw)
    first = usable[0]
    return PreviewRef(url=first["url"], nsfw=first.get("nsfw"))


def with_width(url: str, width: int | None) -> str:
    """Add a ``width`` query parameter for CDNs that resize on request."""
    if not width:
        return url
    parsed = urlparse(url)
    params = parse_qsl(parsed.query, keep_blank_values=True)
    if any(key == "width" for key, _ in params):
        return url
    params.append(("width", str(width)))
    return urlunparse(parsed._replace(query=urlencode(params)))


def compact(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None and v != ""}


class RegistryClient:
    """
    Base client for a remote registry.

    Subclasses declare their capabilities and implement ``find_by_fingerprint``
    and/or the ``search`` + ``confirm`` pair used by ``find_by_name``.
    """

    platform = "registry"
    display_name = "Registry"
    supports_fingerprint = False
    supports_name = False
    resize_previews = False

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None = None,
        timeout: int = 20,
        preview_width: int | None = None,
        search_limit: int = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.preview_width = preview_width
        self.search_limit = search_limit
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            resp = self._session.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise TransportError(self.platform, f"{self.display_name} request failed: {exc}") from exc

        if resp.status_code == 404:
            raise NotFound(self.platform, f"Model not found on {self.display_name}.")
        if resp.status_code >= 400:
            raise ProviderError(
                self.platform,
                f"{self.display_name} API error: {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp

    def _json(self, resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(
                self.platform,
                f"{self.display_name} returned a non-JSON response.",
                status_code=resp.status_code,
            ) from exc

    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        return self._json(self._request("GET", url, params=params))

    def _post_json(self, url: str, payload: dict[str, Any]) -> Any:
        return self._json(self._request("POST", url, json=payload))

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def find_by_fingerprint(self, fingerprint: FileFingerprint) -> RegistryMatch:
        raise FingerprintUnusable(self.platform, f"{self.display_name} has no fingerprint lookup.")

    def search(self, query: str) -> list[Any]:
        return []

    def candidate_key(self, candidate: Any) -> Any:
        return id(candidate)

    def confirm(
        self,
        candidate: Any,
        filename: str,
        fingerprint: FileFingerprint | None,
    ) -> RegistryMatch | None:
        return None

    def find_by_name(
        self,
        filename: str,
        fingerprint: FileFingerprint | None = None,
        local_fields: dict[str, Any] | None = None,
    ) -> RegistryMatch:
        """
        Try each ranked query in turn; the first confirmed candidate wins.

        A candidate is confirmed by digest equality when the registry exposes
        per-file digests, otherwise by file name.
        """
        queries = build_query_candidates(filename, local_fields)
        if not queries:
            raise NotFound(self.platform, "Invalid filename for searching.")

        processed: set[Any] = set()
        for query in queries:
            try:
                candidates = self.search(query)
            except NotFound:
                continue
            logger.debug("%s query %r returned %d candidates", self.platform, query, len(candidates))

            for candidate in candidates:
                key = self.candidate_key(candidate)
                if key in processed:
                    continue
                processed.add(key)
                match = self.confirm(candidate, filename, fingerprint)
                if match is not None:
                    logger.info("%s matched %s via query %r", self.platform, filename, query)
                    return match

        raise NotFound(self.platform, f"Model not found on {self.display_name}.")

    # ------------------------------------------------------------------
    # Preview + resolution
    # ------------------------------------------------------------------

    def preview_url(self, url: str) -> str:
        if url.startswith("//"):
            url = f"https:{url}"
        if self.resize_previews:
            url = with_width(url, self.preview_width)
        return url

    def fetch_preview(self, ref: PreviewRef) -> PreviewImage:
        url = self.preview_url(ref.url)
        try:
            resp = self._request("GET", url)
        except RegistryError as exc:
            raise PreviewFetchError(self.platform, f"Failed to download preview: {exc}") from exc
        content_type = resp.headers.get("Content-Type") or "image/jpeg"
        return PreviewImage(url=url, content=resp.content, content_type=content_type)

    def resolve(
        self,
        filename: str,
        fingerprint: FileFingerprint,
        local_fields: dict[str, Any] | None = None,
    ) -> Resolution:
        """
        Look the asset up and fetch its preview.

        Fingerprint-capable registries are queried by digest only; name
        search is used only by registries without a usable digest lookup.
        """
        if self.supports_fingerprint and fingerprint.usable_for_lookup:
            match = self.find_by_fingerprint(fingerprint)
        elif self.supports_name:
            match = self.find_by_name(filename, fingerprint, local_fields)
        else:
            raise FingerprintUnusable(
                self.platform,
                f"{self.display_name} needs a full SHA-256; got {fingerprint.algorithm.value}.",
            )

        if match.preview is None:
            raise NoPreviewAvailable(self.platform, "No suitable preview image found.")

        try:
            preview = self.fetch_preview(match.preview)
        except PreviewFetchError as exc:
            logger.warning("%s preview fetch failed for %s: %s", self.platform, filename, exc)
            return Resolution(match=match, preview=None, preview_error=str(exc))
        return Resolution(match=match, preview=preview)
