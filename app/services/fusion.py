"""Deterministic merge of local and registry metadata into one record."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any, Union

from app.services.models import (
    ContainerHeader,
    FusedMetadataRecord,
    ImageMetadataRecord,
    RegistryMatch,
)
from app.services.safetensors import extract_relevant_fields

SEPARATOR = " | "
LOCAL_SOURCE = "local"

LocalMetadata = Union[ContainerHeader, ImageMetadataRecord, Mapping[str, Any], None]


def local_fields(local: LocalMetadata, max_value_chars: int = 2000) -> dict[str, Any]:
    """Project locally parsed metadata to the mapping that seeds a fusion."""
    if local is None:
        return {}
    if isinstance(local, ContainerHeader):
        return extract_relevant_fields(local, max_value_chars)
    if isinstance(local, ImageMetadataRecord):
        return dict(local.structured)
    return dict(local)


def _as_mapping(value: Any) -> dict[str, Any] | None:
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str) and value.lstrip().startswith("{"):
        try:
            parsed = json.loads(value)
        except (json.JSONDecodeError, RecursionError):
            return None
        if isinstance(parsed, dict):
            return parsed
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, Mapping):
        return json.dumps(value, sort_keys=True)
    return str(value)


def merge_value(existing: Any, incoming: Any) -> tuple[Any, bool]:
    """
    Merge one incoming value into an existing one.

    Returns (value, conflicted). Mappings are shallow-merged with incoming
    keys winning; lists are unioned; unequal scalars are joined with
    ``SEPARATOR`` so neither side is lost.
    """
    if incoming is None or incoming == existing:
        return existing, False
    if existing is None:
        return incoming, False

    existing_map = _as_mapping(existing)
    incoming_map = _as_mapping(incoming)
    if existing_map is not None and incoming_map is not None:
        return {**existing_map, **incoming_map}, False

    if isinstance(existing, list) and isinstance(incoming, list):
        return existing + [v for v in incoming if v not in existing], False

    existing_text = _as_text(existing)
    incoming_text = _as_text(incoming)
    if incoming_text in existing_text.split(SEPARATOR):
        return existing, False
    return f"{existing_text}{SEPARATOR}{incoming_text}", True


def merge_into(record: FusedMetadataRecord, fields: Mapping[str, Any]) -> None:
    for key, incoming in fields.items():
        if key not in record.merged:
            if incoming is not None:
                record.merged[key] = incoming
            continue
        value, conflicted = merge_value(record.merged[key], incoming)
        record.merged[key] = value
        if conflicted and key not in record.conflicts:
            record.conflicts.append(key)


def fuse(
    local: LocalMetadata,
    matches: Sequence[RegistryMatch | Mapping[str, Any]],
    max_value_chars: int = 2000,
) -> FusedMetadataRecord:
    """
    Fuse local metadata with registry matches, in the order given.

    The local values seed the record. Later sources add keys but never
    silently replace an existing value. Performs no I/O.
    """
    record = FusedMetadataRecord()

    seed = local_fields(local, max_value_chars)
    if seed:
        merge_into(record, seed)
        record.sources.append(LOCAL_SOURCE)

    for index, match in enumerate(matches):
        if isinstance(match, RegistryMatch):
            fields, label = match.fields, match.platform
        else:
            fields, label = match, f"source_{index}"
        merge_into(record, fields)
        record.sources.append(label)

    return record
