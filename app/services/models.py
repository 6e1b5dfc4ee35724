"""Domain records shared by the identification pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal


QUICK_HASH_PREFIX = "quick-"


class FingerprintAlgorithm(str, Enum):
    FULL_SHA256 = "full_sha256"
    QUICK_SHA256 = "quick_sha256"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class FileFingerprint:
    algorithm: FingerprintAlgorithm
    digest_hex: str | None
    size: int

    @classmethod
    def unavailable(cls, size: int = 0) -> "FileFingerprint":
        return cls(FingerprintAlgorithm.UNAVAILABLE, None, size)

    @property
    def value(self) -> str | None:
        """Tagged digest; quick digests carry a prefix so they never compare equal to full ones."""
        if self.digest_hex is None:
            return None
        if self.algorithm == FingerprintAlgorithm.QUICK_SHA256:
            return f"{QUICK_HASH_PREFIX}{self.digest_hex}"
        return self.digest_hex

    @property
    def usable_for_lookup(self) -> bool:
        return self.algorithm == FingerprintAlgorithm.FULL_SHA256 and bool(self.digest_hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "algorithm": self.algorithm.value,
            "digest": self.value,
            "size": self.size,
            "usable_for_lookup": self.usable_for_lookup,
        }


@dataclass(frozen=True)
class ContainerHeader:
    byte_length: int
    tensors: dict[str, Any]
    metadata: dict[str, Any]

    @property
    def raw(self) -> dict[str, Any]:
        """The header as it appeared on disk."""
        raw: dict[str, Any] = dict(self.tensors)
        if self.metadata:
            raw["__metadata__"] = dict(self.metadata)
        return raw


class ImageMetadataSource(str, Enum):
    A1111_STYLE = "a1111"
    NODE_GRAPH_STYLE = "node_graph"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ImageMetadataRecord:
    source: ImageMetadataSource
    raw_text: str | None = None
    text_chunks: dict[str, str] = field(default_factory=dict)
    structured: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unknown(cls, text_chunks: dict[str, str] | None = None) -> "ImageMetadataRecord":
        return cls(ImageMetadataSource.UNKNOWN, None, dict(text_chunks or {}), {})


@dataclass(frozen=True)
class PreviewRef:
    url: str
    nsfw: Any = None


@dataclass(frozen=True)
class RegistryMatch:
    platform: str
    canonical_url: str
    preview: PreviewRef | None
    fields: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "canonical_url": self.canonical_url,
            "preview_url": self.preview.url if self.preview else None,
            "fields": dict(self.fields),
        }


@dataclass(frozen=True)
class PreviewImage:
    url: str
    content: bytes
    content_type: str


@dataclass(frozen=True)
class Resolution:
    match: RegistryMatch
    preview: PreviewImage | None = None
    preview_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = self.match.to_dict()
        payload["preview"] = (
            {
                "url": self.preview.url,
                "content_type": self.preview.content_type,
                "size": len(self.preview.content),
            }
            if self.preview
            else None
        )
        payload["preview_error"] = self.preview_error
        return payload


@dataclass
class FusedMetadataRecord:
    merged: dict[str, Any] = field(default_factory=dict)
    sources: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "merged": dict(self.merged),
            "sources": list(self.sources),
            "conflicts": list(self.conflicts),
        }


OutcomeStatus = Literal["not_checked", "matched", "not_found", "skipped", "cancelled", "error"]


@dataclass
class ProviderOutcome:
    platform: str
    status: OutcomeStatus = "not_checked"
    error_kind: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "status": self.status,
            "error_kind": self.error_kind,
            "message": self.message,
        }


@dataclass
class AssetReport:
    path: Path
    size: int
    fingerprint: FileFingerprint
    header: ContainerHeader | None = None
    image: ImageMetadataRecord | None = None
    local_fields: dict[str, Any] = field(default_factory=dict)
    outcomes: list[ProviderOutcome] = field(default_factory=list)
    resolutions: list[Resolution] = field(default_factory=list)
    fused: FusedMetadataRecord = field(default_factory=FusedMetadataRecord)

    def to_dict(self) -> dict[str, Any]:
        image = None
        if self.image is not None:
            image = {
                "source": self.image.source.value,
                "raw_text": self.image.raw_text,
                "text_chunks": dict(self.image.text_chunks),
                "structured": dict(self.image.structured),
            }
        return {
            "path": str(self.path),
            "filename": self.path.name,
            "size": self.size,
            "fingerprint": self.fingerprint.to_dict(),
            "has_header": self.header is not None,
            "image": image,
            "local_fields": dict(self.local_fields),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "resolutions": [r.to_dict() for r in self.resolutions],
            "fused": self.fused.to_dict(),
        }
