"""SeaArt registry client (keyword search confirmed against model detail)."""

from __future__ import annotations

import logging
import re
from typing import Any

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

_LORA_TAG_RE = re.compile(r"<lora:.*?:1>(.*)")


def parse_trigger_words(prompt_suggestion: str | None) -> list[str]:
    """Trigger words follow the ``<lora:name:1>`` tag in SeaArt's suggested prompt."""
    if not prompt_suggestion:
        return []
    match = _LORA_TAG_RE.search(prompt_suggestion)
    if not match:
        return []
    return [w.strip() for w in match.group(1).split(",") if w.strip()]


def _detail_files(data: dict[str, Any]) -> list[dict[str, Any]]:
    files: list[dict[str, Any]] = []
    for key in ("model_versions", "versions"):
        for version in data.get(key) or []:
            if not isinstance(version, dict):
                continue
            nested = version.get("files")
            if isinstance(nested, list):
                files.extend(f for f in nested if isinstance(f, dict))
            else:
                files.append(version)
    return files


class SeaArtClient(RegistryClient):
    """
    SeaArt only supports keyword search. A hit counts as a match when the
    model detail lists a file with our digest or our file name.
    """

    platform = "seaart"
    display_name = "SeaArt"
    supports_name = True

    @property
    def api_base(self) -> str:
        return f"{self.base_url}/api/v1"

    def search(self, query: str) -> list[Any]:
        payload = self._post_json(
            f"{self.api_base}/model/search",
            {
                "keyword": query,
                "page": 1,
                "page_size": self.search_limit,
                "sort": "1",
                "type_list": ["lora"],
            },
        )
        data = payload.get("data") if isinstance(payload, dict) else None
        items = data.get("items") if isinstance(data, dict) else None
        return [m for m in (items or []) if isinstance(m, dict) and m.get("id")]

    def candidate_key(self, candidate: Any) -> Any:
        return candidate.get("id")

    def get_model_detail(self, model_id: str) -> dict[str, Any]:
        payload = self._get_json(f"{self.api_base}/model/detail", params={"id": model_id})
        data = payload.get("data") if isinstance(payload, dict) else None
        return data if isinstance(data, dict) else {}

    def confirm(
        self,
        candidate: Any,
        filename: str,
        fingerprint: FileFingerprint | None,
    ) -> RegistryMatch | None:
        model_id = candidate["id"]
        try:
            data = self.get_model_detail(model_id)
        except (NotFound, ProviderError) as exc:
            logger.debug("Skipping SeaArt model %s: %s", model_id, exc)
            return None

        files = _detail_files(data)
        matched = next(
            (f for f in files if digest_matches(f.get("sha256") or f.get("hash"), fingerprint)),
            None,
        )
        if matched is None:
            matched = next(
                (f for f in files if filename_matches(f.get("file_name") or f.get("name"), filename)),
                None,
            )
        if matched is None:
            return None

        images = [g for g in data.get("model_gallery") or [] if isinstance(g, dict)]
        if candidate.get("cover_url"):
            images.append({"url": candidate["cover_url"]})

        canonical_url = f"{self.base_url}/models/detail/{model_id}"
        fields = compact({
            "seaart_model_id": model_id,
            "seaart_model_name": candidate.get("name") or data.get("name"),
            "seaart_url": canonical_url,
            "ss_base_model": data.get("base_model"),
            "ss_trigger_words": ", ".join(parse_trigger_words(data.get("prompt_suggestion"))),
        })
        return RegistryMatch(
            platform=self.platform,
            canonical_url=canonical_url,
            preview=select_preview(self.platform, images),
            fields=fields,
        )
