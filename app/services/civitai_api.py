"""Civitai-compatible registry clients (Civitai, Tensor.Art, custom integrations)."""

from __future__ import annotations

import logging
import re
from typing import Any

import requests

from app.services.errors import NotFound, ProviderError
from app.services.models import FileFingerprint, RegistryMatch
from app.services.registry import (
    RegistryClient,
    compact,
    digest_matches,
    filename_matches,
    select_preview,
)

logger = logging.getLogger(__name__)


def platform_slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", name.lower())


class CivitaiClient(RegistryClient):
    """
    Civitai: exact lookup by SHA-256, name search when no full digest exists.

    Search candidates are confirmed by the file's published SHA-256, then by
    file name.
    """

    platform = "civitai"
    display_name = "Civitai"
    supports_fingerprint = True
    supports_name = True
    resize_previews = True
    api_path = "/api/v1"

    @property
    def api_base(self) -> str:
        return f"{self.base_url}{self.api_path}"

    @property
    def site_url(self) -> str:
        return self.base_url

    @property
    def key_prefix(self) -> str:
        return self.platform

    def get_model_version(self, model_version_id: int) -> dict[str, Any]:
        return self._get_json(f"{self.api_base}/model-versions/{model_version_id}")

    def get_model_version_by_hash(self, file_hash: str) -> dict[str, Any]:
        return self._get_json(f"{self.api_base}/model-versions/by-hash/{file_hash}")

    def normalize_version(
        self,
        version: dict[str, Any],
        model: dict[str, Any] | None = None,
        file_name: str | None = None,
    ) -> RegistryMatch:
        """Map a model-version payload to a RegistryMatch."""
        model = model or version.get("model") or {}
        model_id = model.get("id") or version.get("modelId")
        preview = select_preview(self.platform, version.get("images"))
        trained = version.get("trainedWords") or []
        canonical_url = f"{self.site_url}/models/{model_id}"

        prefix = self.key_prefix
        fields = compact({
            f"{prefix}_model_id": model_id,
            f"{prefix}_model_name": model.get("name"),
            f"{prefix}_model_version_id": version.get("id"),
            f"{prefix}_url": canonical_url,
            f"{prefix}_file_name": file_name,
            "ss_base_model": version.get("baseModel"),
            "ss_trigger_words": ", ".join(str(w) for w in trained if w),
        })
        return RegistryMatch(
            platform=self.platform,
            canonical_url=canonical_url,
            preview=preview,
            fields=fields,
        )

    def find_by_fingerprint(self, fingerprint: FileFingerprint) -> RegistryMatch:
        payload = self.get_model_version_by_hash(fingerprint.digest_hex)
        if not isinstance(payload, dict) or not payload:
            raise NotFound(self.platform, f"Model not found on {self.display_name}.")
        return self.normalize_version(payload)

    def search(self, query: str) -> list[Any]:
        payload = self._get_json(
            f"{self.api_base}/models",
            params={"query": query, "limit": self.search_limit, "sort": "Most Downloaded"},
        )
        items = payload.get("items") if isinstance(payload, dict) else None
        return items if isinstance(items, list) else []

    def candidate_key(self, candidate: Any) -> Any:
        return candidate.get("id") if isinstance(candidate, dict) else id(candidate)

    def _version_files(self, version: dict[str, Any]) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        files = version.get("files")
        if not files and isinstance(version.get("id"), int):
            try:
                detailed = self.get_model_version(version["id"])
            except (NotFound, ProviderError) as exc:
                logger.debug("Skipping %s version %s: %s", self.platform, version.get("id"), exc)
                return version, []
            if isinstance(detailed, dict):
                version = detailed.get("modelVersion") or detailed
                files = version.get("files")
        return version, [f for f in (files or []) if isinstance(f, dict)]

    def confirm(
        self,
        candidate: Any,
        filename: str,
        fingerprint: FileFingerprint | None,
    ) -> RegistryMatch | None:
        if not isinstance(candidate, dict):
            return None

        by_name: tuple[dict[str, Any], str] | None = None
        for version in candidate.get("modelVersions") or []:
            if not isinstance(version, dict):
                continue
            version, files = self._version_files(version)
            for file_entry in files:
                name = file_entry.get("name")
                sha = (file_entry.get("hashes") or {}).get("SHA256")
                if digest_matches(sha, fingerprint):
                    return self.normalize_version(version, candidate, name)
                if by_name is None and filename_matches(name, filename):
                    by_name = (version, name)

        if by_name is not None:
            version, name = by_name
            return self.normalize_version(version, candidate, name)
        return None


class TensorArtClient(CivitaiClient):
    """Tensor.Art mirrors the Civitai by-hash API but offers no public search."""

    platform = "tensorart"
    display_name = "Tensor.Art"
    supports_name = False


class GenericIntegrationClient(CivitaiClient):
    """
    A user-configured registry speaking the Civitai by-hash contract.

    ``base_url`` is the API root (e.g. ``https://example.com/api/v1``); the
    public site is derived by dropping the trailing ``/api/vN``.
    """

    supports_name = False
    api_path = ""

    def __init__(self, *, name: str, base_url: str, session: requests.Session | None = None, **kwargs: Any) -> None:
        super().__init__(base_url=base_url, session=session, **kwargs)
        self.display_name = name
        self.platform = platform_slug(name) or "custom"

    @property
    def site_url(self) -> str:
        return re.sub(r"/api/v\d+$", "", self.base_url)
