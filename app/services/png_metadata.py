"""PNG text-chunk extraction and generation-parameter parsing."""

from __future__ import annotations

import json
import logging
import struct
import zlib
from pathlib import Path
from typing import Any, Iterator

import aiofiles

from app.services.errors import MalformedContainer
from app.services.models import ImageMetadataRecord, ImageMetadataSource

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
TERMINAL_CHUNK = "IEND"
NEGATIVE_PROMPT_MARKER = "Negative prompt: "
NODE_GRAPH_KEYWORDS = ("workflow", "prompt")
PARAMETERS_KEYWORD = "parameters"
DEFAULT_MAX_TEXT_BYTES = 16 * 1024 * 1024


def walk_png_chunks(data: bytes) -> Iterator[tuple[str, bytes]]:
    """
    Yield (type, payload) for each chunk after the signature.

    Stops at IEND, at the end of the buffer, or at the first chunk whose
    declared length runs past the buffer. CRCs are not checked.
    """
    offset = len(PNG_SIGNATURE)
    total = len(data)
    while offset + 8 <= total:
        (length,) = struct.unpack(">I", data[offset:offset + 4])
        chunk_type = data[offset + 4:offset + 8].decode("latin-1")
        start = offset + 8
        end = start + length
        if end > total:
            logger.debug("PNG chunk %r overruns buffer (%d > %d)", chunk_type, end, total)
            return
        yield chunk_type, data[start:end]
        if chunk_type == TERMINAL_CHUNK:
            return
        offset = end + 4


def _decode_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def _split_keyword(payload: bytes) -> tuple[str, bytes]:
    keyword, sep, rest = payload.partition(b"\x00")
    if not sep or not keyword:
        raise MalformedContainer("Text chunk has no keyword terminator.")
    return keyword.decode("latin-1"), rest


def _inflate(data: bytes, max_bytes: int) -> bytes:
    inflater = zlib.decompressobj()
    text = inflater.decompress(data, max_bytes + 1)
    if len(text) > max_bytes:
        raise MalformedContainer(f"Compressed text inflates past {max_bytes} bytes.")
    return text


def parse_text_chunk(
    chunk_type: str,
    payload: bytes,
    max_text_bytes: int = DEFAULT_MAX_TEXT_BYTES,
) -> tuple[str, str]:
    """
    Decode a tEXt, zTXt or iTXt payload into (keyword, text).

    iTXt layout after the keyword: compression flag, compression method,
    language tag\\0, translated keyword\\0, text.
    """
    keyword, rest = _split_keyword(payload)

    if chunk_type == "tEXt":
        return keyword, _decode_text(rest)

    if chunk_type == "zTXt":
        if not rest:
            raise MalformedContainer("zTXt chunk has no compression method.")
        return keyword, _decode_text(_inflate(rest[1:], max_text_bytes))

    if chunk_type == "iTXt":
        if len(rest) < 2:
            raise MalformedContainer("iTXt chunk is missing compression fields.")
        compressed = rest[0] == 1
        _, sep, rest = rest[2:].partition(b"\x00")  # language tag
        if not sep:
            raise MalformedContainer("iTXt chunk has no language terminator.")
        _, sep, text = rest.partition(b"\x00")  # translated keyword
        if not sep:
            raise MalformedContainer("iTXt chunk has no translated keyword terminator.")
        if compressed:
            text = _inflate(text, max_text_bytes)
        return keyword, text.decode("utf-8", errors="replace")

    raise MalformedContainer(f"Not a text chunk: {chunk_type}")


def read_text_chunks(data: bytes, max_text_bytes: int = DEFAULT_MAX_TEXT_BYTES) -> dict[str, str]:
    """Collect every text chunk keyword -> text; later duplicates win."""
    chunks: dict[str, str] = {}
    for chunk_type, payload in walk_png_chunks(data):
        if chunk_type not in ("tEXt", "zTXt", "iTXt"):
            continue
        try:
            keyword, text = parse_text_chunk(chunk_type, payload, max_text_bytes)
        except (MalformedContainer, zlib.error) as exc:
            logger.debug("Skipping %s chunk: %s", chunk_type, exc)
            continue
        chunks[keyword] = text
    return chunks


def _to_camel(key: str) -> str:
    words = key.strip().lower().split()
    if not words:
        return ""
    return words[0] + "".join(w[:1].upper() + w[1:] for w in words[1:])


def parse_a1111_parameters(raw: str) -> dict[str, str]:
    """
    Parse A1111-style generation text.

    The last line is always treated as the ``Key: value, ...`` settings line,
    so prompts whose settings are not on the final line will misparse.
    """
    result: dict[str, str] = {}
    parts = raw.split("\n")
    settings_line = parts[-1]

    neg_index = -1
    for i, line in enumerate(parts):
        if line.startswith(NEGATIVE_PROMPT_MARKER):
            neg_index = i

    if neg_index != -1:
        result["prompt"] = "\n".join(parts[:neg_index]).strip()
        result["negativePrompt"] = parts[neg_index][len(NEGATIVE_PROMPT_MARKER):].strip()
    else:
        result["prompt"] = "\n".join(parts[:-1]).strip()

    for setting in settings_line.split(", "):
        key, _, value = setting.partition(": ")
        camel_key = _to_camel(key)
        if camel_key and value.strip():
            result[camel_key] = value.strip()

    return result


def _parse_json_object(text: str | None) -> dict[str, Any] | None:
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, RecursionError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _scalar(value: Any) -> str | None:
    # Linked inputs are [node_id, output_index] pairs, not values
    if value is None or isinstance(value, (list, dict)):
        return None
    return str(value)


def summarize_prompt_graph(prompt_graph: dict[str, Any] | None) -> dict[str, Any]:
    """Pull sampler settings, checkpoint and LoRA names out of a node-graph prompt."""
    if not isinstance(prompt_graph, dict):
        return {}

    summary: dict[str, Any] = {}
    loras: list[str] = []
    sampler_inputs = {
        "sampler_name": "sampler",
        "scheduler": "scheduler",
        "steps": "steps",
        "cfg": "cfgScale",
        "seed": "seed",
        "noise_seed": "seed",
        "denoise": "denoisingStrength",
    }

    for node in prompt_graph.values():
        if not isinstance(node, dict):
            continue
        class_type = str(node.get("class_type") or "").lower()
        inputs = node.get("inputs")
        if not isinstance(inputs, dict):
            continue

        if ("ksampler" in class_type and "select" not in class_type) or "samplercustom" in class_type:
            for input_name, field_name in sampler_inputs.items():
                value = _scalar(inputs.get(input_name))
                if value is not None and field_name not in summary:
                    summary[field_name] = value
        elif "checkpointloader" in class_type:
            name = _scalar(inputs.get("ckpt_name"))
            if name and "model" not in summary:
                summary["model"] = name
        elif class_type.startswith("loraloader"):
            name = _scalar(inputs.get("lora_name"))
            if name and name not in loras:
                loras.append(name)

    if loras:
        summary["loras"] = loras
    return summary


def classify_text_chunks(chunks: dict[str, str]) -> ImageMetadataRecord:
    """
    Classify the collected text chunks.

    A node-graph record (``workflow`` or ``prompt`` holding a JSON object)
    takes priority over A1111 ``parameters`` text.
    """
    graph: dict[str, Any] = {}
    raw_text = None
    for keyword in NODE_GRAPH_KEYWORDS:
        parsed = _parse_json_object(chunks.get(keyword))
        if parsed is not None:
            graph[keyword] = parsed
            raw_text = raw_text or chunks[keyword]

    if graph:
        structured = dict(graph)
        structured.update(summarize_prompt_graph(graph.get("prompt")))
        return ImageMetadataRecord(
            source=ImageMetadataSource.NODE_GRAPH_STYLE,
            raw_text=raw_text,
            text_chunks=dict(chunks),
            structured=structured,
        )

    parameters = chunks.get(PARAMETERS_KEYWORD)
    if parameters:
        return ImageMetadataRecord(
            source=ImageMetadataSource.A1111_STYLE,
            raw_text=parameters,
            text_chunks=dict(chunks),
            structured=parse_a1111_parameters(parameters),
        )

    return ImageMetadataRecord.unknown(chunks)


def extract_image_metadata_bytes(
    data: bytes,
    max_text_bytes: int = DEFAULT_MAX_TEXT_BYTES,
) -> ImageMetadataRecord:
    """Extract generation metadata from PNG bytes. Never raises."""
    if not data.startswith(PNG_SIGNATURE):
        return ImageMetadataRecord.unknown()
    return classify_text_chunks(read_text_chunks(data, max_text_bytes))


async def extract_image_metadata(
    path: Path,
    max_text_bytes: int = DEFAULT_MAX_TEXT_BYTES,
) -> ImageMetadataRecord:
    """Read a PNG from disk and extract its generation metadata. Never raises."""
    try:
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
    except OSError as exc:
        logger.warning("Could not read image %s: %s", path, exc)
        return ImageMetadataRecord.unknown()
    return extract_image_metadata_bytes(data, max_text_bytes)
