"""Hugging Face Hub registry client (name search + LFS digest confirmation)."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

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

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")
PREVIEW_KEYWORDS = ("preview", "sample", "cover", "thumb", "example")


def _is_image(path: str) -> bool:
    return path.lower().endswith(IMAGE_EXTENSIONS)


class HuggingFaceClient(RegistryClient):
    """
    Hugging Face has no hash lookup; repos are found by name and confirmed
    against the repo tree, by LFS oid first and file name second.
    """

    platform = "huggingface"
    display_name = "Hugging Face"
    supports_name = True

    def search(self, query: str) -> list[Any]:
        payload = self._get_json(
            f"{self.base_url}/api/models",
            params={
                "search": query,
                "sort": "likes",
                "direction": -1,
                "limit": self.search_limit,
                "filter": "lora",
                "cardData": "true",
            },
        )
        return [m for m in payload if isinstance(m, dict) and m.get("id")] if isinstance(payload, list) else []

    def candidate_key(self, candidate: Any) -> Any:
        return candidate.get("id")

    def list_repo_files(self, repo_id: str) -> list[dict[str, Any]]:
        payload = self._get_json(f"{self.base_url}/api/models/{repo_id}/tree/main")
        if not isinstance(payload, list):
            return []
        return [f for f in payload if isinstance(f, dict) and f.get("type") == "file" and f.get("path")]

    def _preview_images(self, repo_id: str, files: list[dict[str, Any]]) -> list[dict[str, Any]]:
        images = [f["path"] for f in files if _is_image(f["path"])]
        keyworded = [p for p in images if any(k in p.lower() for k in PREVIEW_KEYWORDS)]
        ordered = keyworded + [p for p in images if p not in keyworded]
        return [
            {"url": f"{self.base_url}/{repo_id}/resolve/main/{quote(path)}", "nsfw": None}
            for path in ordered
        ]

    def confirm(
        self,
        candidate: Any,
        filename: str,
        fingerprint: FileFingerprint | None,
    ) -> RegistryMatch | None:
        repo_id = candidate["id"]
        try:
            files = self.list_repo_files(repo_id)
        except (NotFound, ProviderError) as exc:
            logger.debug("Skipping Hugging Face repo %s: %s", repo_id, exc)
            return None

        matched = next(
            (f for f in files if digest_matches((f.get("lfs") or {}).get("oid"), fingerprint)),
            None,
        )
        if matched is None:
            matched = next((f for f in files if filename_matches(f["path"], filename)), None)
        if matched is None:
            return None

        card = candidate.get("cardData") if isinstance(candidate.get("cardData"), dict) else {}
        base_model = card.get("base_model")
        if isinstance(base_model, list):
            base_model = ", ".join(str(b) for b in base_model)

        canonical_url = f"{self.base_url}/{repo_id}"
        fields = compact({
            "huggingface_model_id": repo_id,
            "huggingface_lora_file": matched["path"],
            "huggingface_url": canonical_url,
            "ss_base_model": base_model,
            "ss_trigger_words": card.get("instance_prompt"),
        })
        return RegistryMatch(
            platform=self.platform,
            canonical_url=canonical_url,
            preview=select_preview(self.platform, self._preview_images(repo_id, files)),
            fields=fields,
        )
