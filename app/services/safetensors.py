"""Safetensors header parsing utilities."""

from __future__ import annotations

import json
import logging
import re
import struct
from pathlib import Path
from typing import Any

from app.services.errors import MalformedContainer
from app.services.models import ContainerHeader

logger = logging.getLogger(__name__)

HEADER_SIZE_LENGTH = 8
DEFAULT_MAX_HEADER_BYTES = 100 * 1024 * 1024

# Training-tool keys that are bulky and useless for identification
EXCLUDED_KEY_FRAGMENTS = (
    "ss_tag_frequency",
    "ss_bucket_info",
    "ss_dataset_dirs",
    "ss_caption_dropout_rate",
)
IDENTIFICATION_KEYS = ("model_id", "modelspec.title")
INTERESTING_KEY_FRAGMENTS = ("civitai", "epoch", "step")

_CIVITAI_MODEL_RE = re.compile(r"civitai\.com/models/(\d+)", re.IGNORECASE)
_HF_REPO_RE = re.compile(r"huggingface\.co/([\w.-]+/[\w.-]+)", re.IGNORECASE)


def _decode_header_length(prefix: bytes, max_header_bytes: int) -> int:
    if len(prefix) != HEADER_SIZE_LENGTH:
        raise MalformedContainer("File too short to contain a header length.")
    (header_len,) = struct.unpack("<Q", prefix)
    if header_len <= 0:
        raise MalformedContainer("Header length is invalid.")
    if header_len > max_header_bytes:
        raise MalformedContainer("Header is larger than the allowed limit.")
    return header_len


def _build_header(header_len: int, header_bytes: bytes) -> ContainerHeader:
    if len(header_bytes) != header_len:
        raise MalformedContainer("Header appears truncated.")
    try:
        parsed = json.loads(header_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedContainer("Header JSON is invalid.") from exc
    except RecursionError as exc:
        raise MalformedContainer("Header JSON is nested too deeply.") from exc
    if not isinstance(parsed, dict):
        raise MalformedContainer("Header JSON is not an object.")

    metadata = parsed.pop("__metadata__", None)
    if not isinstance(metadata, dict):
        metadata = {}
    return ContainerHeader(byte_length=header_len, tensors=parsed, metadata=metadata)


def read_safetensors_header(
    path: Path,
    max_header_bytes: int = DEFAULT_MAX_HEADER_BYTES,
) -> ContainerHeader | None:
    """
    Read the JSON header from a safetensors file without loading tensor data.

    File format:
    - 8 bytes: little-endian unsigned 64-bit header length
    - N bytes: JSON header
    - Remaining bytes: tensor data

    Returns None for short, oversized, truncated or undecodable headers.
    """
    try:
        with Path(path).open("rb") as f:
            header_len = _decode_header_length(f.read(HEADER_SIZE_LENGTH), max_header_bytes)
            header_bytes = f.read(header_len)
        return _build_header(header_len, header_bytes)
    except MalformedContainer as exc:
        logger.debug("Rejected safetensors header in %s: %s", path, exc)
        return None
    except OSError as exc:
        logger.warning("Could not read safetensors header from %s: %s", path, exc)
        return None


def parse_safetensors_bytes(
    data: bytes,
    max_header_bytes: int = DEFAULT_MAX_HEADER_BYTES,
) -> ContainerHeader | None:
    """Parse a safetensors header from an in-memory buffer."""
    try:
        header_len = _decode_header_length(data[:HEADER_SIZE_LENGTH], max_header_bytes)
        end = HEADER_SIZE_LENGTH + header_len
        return _build_header(header_len, data[HEADER_SIZE_LENGTH:end])
    except MalformedContainer as exc:
        logger.debug("Rejected safetensors header buffer: %s", exc)
        return None


def _is_relevant_key(key: str) -> bool:
    if any(fragment in key for fragment in EXCLUDED_KEY_FRAGMENTS):
        return False
    return (
        key.startswith("ss_")
        or key in IDENTIFICATION_KEYS
        or any(fragment in key for fragment in INTERESTING_KEY_FRAGMENTS)
    )


def extract_relevant_fields(
    header: ContainerHeader | None,
    max_value_chars: int = 2000,
) -> dict[str, Any]:
    """
    Select the header keys useful for cross-platform identification.

    Keys come from ``__metadata__`` when it has any, otherwise from the top
    level. Long string values are cut and marked with an ellipsis.
    """
    if header is None:
        return {}

    source = header.metadata if header.metadata else header.tensors
    fields: dict[str, Any] = {}
    for key, value in source.items():
        if not _is_relevant_key(key):
            continue
        if isinstance(value, str) and len(value) > max_value_chars:
            value = value[:max_value_chars] + "..."
        fields[key] = value
    return fields


def extract_identification_anchors(fields: dict[str, Any]) -> list[str]:
    """
    Recover registry anchors (repo ids, model ids, titles) from local metadata.

    Returned in discovery order without duplicates.
    """
    anchors: list[str] = []

    def add(value: Any) -> None:
        text = str(value).strip() if value is not None else ""
        if text and text not in anchors:
            anchors.append(text)

    for key in ("civitai_model_id", "model_id"):
        value = fields.get(key)
        if isinstance(value, (int, str)) and str(value).strip().isdigit():
            add(value)

    blob = " ".join(str(v) for v in fields.values() if v is not None)
    for model_id in _CIVITAI_MODEL_RE.findall(blob):
        add(model_id)
    for repo_id in _HF_REPO_RE.findall(blob):
        add(repo_id.rstrip("."))

    add(fields.get("modelspec.title"))
    add(fields.get("ss_output_name"))
    return anchors
