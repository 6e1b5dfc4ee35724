"""Tests for PNG text-chunk extraction and classification."""

from __future__ import annotations

import json
import zlib
from pathlib import Path

from app.services.models import ImageMetadataSource
from app.services.png_metadata import (
    PNG_SIGNATURE,
    extract_image_metadata,
    extract_image_metadata_bytes,
    parse_a1111_parameters,
    read_text_chunks,
    summarize_prompt_graph,
)

A1111_TEXT = "a cat\nNegative prompt: blurry\nSteps: 20, Sampler: Euler a"

PROMPT_GRAPH = {
    "3": {
        "class_type": "KSampler",
        "inputs": {
            "seed": 42,
            "steps": 30,
            "cfg": 7.5,
            "sampler_name": "euler",
            "scheduler": "normal",
            "denoise": 1,
            "model": ["4", 0],
        },
    },
    "4": {"class_type": "CheckpointLoaderSimple", "inputs": {"ckpt_name": "sd_xl_base_1.0.safetensors"}},
    "5": {"class_type": "LoraLoader", "inputs": {"lora_name": "detail.safetensors", "model": ["4", 0]}},
}


class TestA1111:
    def test_parameters_chunk_is_a1111(self, make_png, make_text_chunk) -> None:
        record = extract_image_metadata_bytes(make_png(make_text_chunk("parameters", A1111_TEXT)))
        assert record.source == ImageMetadataSource.A1111_STYLE
        assert record.raw_text == A1111_TEXT
        assert record.structured == {
            "prompt": "a cat",
            "negativePrompt": "blurry",
            "steps": "20",
            "sampler": "Euler a",
        }

    def test_without_negative_prompt(self) -> None:
        assert parse_a1111_parameters("a dog\nsecond line\nSteps: 10, CFG scale: 7") == {
            "prompt": "a dog\nsecond line",
            "steps": "10",
            "cfgScale": "7",
        }

    def test_multi_word_keys_are_camel_cased(self) -> None:
        parsed = parse_a1111_parameters("x\nModel hash: abc123, Denoising strength: 0.4")
        assert parsed["modelHash"] == "abc123"
        assert parsed["denoisingStrength"] == "0.4"

    def test_settings_line_is_always_last(self) -> None:
        parsed = parse_a1111_parameters("a cat\nSteps: 20\ntrailing note")
        assert parsed["prompt"] == "a cat\nSteps: 20"
        assert "steps" not in parsed


class TestNodeGraph:
    def test_node_graph_wins_over_parameters(self, make_png, make_text_chunk) -> None:
        data = make_png(
            make_text_chunk("parameters", A1111_TEXT),
            make_text_chunk("prompt", json.dumps(PROMPT_GRAPH)),
        )
        record = extract_image_metadata_bytes(data)
        assert record.source == ImageMetadataSource.NODE_GRAPH_STYLE
        assert record.structured["prompt"] == PROMPT_GRAPH
        assert "parameters" in record.text_chunks

    def test_workflow_only(self, make_png, make_text_chunk) -> None:
        workflow = {"nodes": [], "links": []}
        record = extract_image_metadata_bytes(make_png(make_text_chunk("workflow", json.dumps(workflow))))
        assert record.source == ImageMetadataSource.NODE_GRAPH_STYLE
        assert record.structured == {"workflow": workflow}

    def test_non_json_prompt_falls_through(self, make_png, make_text_chunk) -> None:
        data = make_png(
            make_text_chunk("prompt", "not json"),
            make_text_chunk("parameters", A1111_TEXT),
        )
        assert extract_image_metadata_bytes(data).source == ImageMetadataSource.A1111_STYLE

    def test_prompt_graph_summary(self) -> None:
        summary = summarize_prompt_graph(PROMPT_GRAPH)
        assert summary == {
            "seed": "42",
            "steps": "30",
            "cfgScale": "7.5",
            "sampler": "euler",
            "scheduler": "normal",
            "denoisingStrength": "1",
            "model": "sd_xl_base_1.0.safetensors",
            "loras": ["detail.safetensors"],
        }

    def test_summary_skips_linked_inputs(self) -> None:
        graph = {"1": {"class_type": "KSampler", "inputs": {"seed": ["9", 0], "steps": 12}}}
        assert summarize_prompt_graph(graph) == {"steps": "12"}


class TestChunks:
    def test_itxt_uncompressed(self, make_png, make_chunk) -> None:
        payload = b"parameters\x00" + b"\x00\x00" + b"en\x00" + b"\x00" + A1111_TEXT.encode("utf-8")
        chunks = read_text_chunks(make_png(make_chunk("iTXt", payload)))
        assert chunks == {"parameters": A1111_TEXT}

    def test_itxt_compressed(self, make_png, make_chunk) -> None:
        text = "café prompt\nSteps: 5"
        payload = b"parameters\x00" + b"\x01\x00" + b"\x00" + b"\x00" + zlib.compress(text.encode("utf-8"))
        chunks = read_text_chunks(make_png(make_chunk("iTXt", payload)))
        assert chunks == {"parameters": text}

    def test_ztxt(self, make_png, make_chunk) -> None:
        payload = b"Comment\x00" + b"\x00" + zlib.compress(b"hello")
        assert read_text_chunks(make_png(make_chunk("zTXt", payload))) == {"Comment": "hello"}

    def test_oversized_compressed_text_is_skipped(self, make_png, make_chunk, make_text_chunk) -> None:
        bomb = make_chunk("zTXt", b"Comment\x00\x00" + zlib.compress(b"a" * 1_000_000))
        data = make_png(bomb, make_text_chunk("parameters", A1111_TEXT))
        assert read_text_chunks(data, max_text_bytes=1024) == {"parameters": A1111_TEXT}

    def test_oversized_itxt_is_skipped(self, make_png, make_chunk) -> None:
        payload = b"parameters\x00\x01\x00\x00\x00" + zlib.compress(b"a" * 1_000_000)
        record = extract_image_metadata_bytes(make_png(make_chunk("iTXt", payload)), max_text_bytes=1024)
        assert record.source == ImageMetadataSource.UNKNOWN

    def test_compressed_text_within_limit(self, make_png, make_chunk) -> None:
        payload = b"Comment\x00\x00" + zlib.compress(b"a" * 1024)
        assert read_text_chunks(make_png(make_chunk("zTXt", payload)), max_text_bytes=1024) == {"Comment": "a" * 1024}

    def test_corrupt_chunk_is_skipped(self, make_png, make_chunk, make_text_chunk) -> None:
        bad = make_chunk("zTXt", b"Comment\x00\x00not zlib")
        data = make_png(bad, make_text_chunk("parameters", A1111_TEXT))
        assert read_text_chunks(data) == {"parameters": A1111_TEXT}

    def test_overrunning_chunk_stops_walk(self, make_png, make_text_chunk) -> None:
        data = make_png(make_text_chunk("parameters", A1111_TEXT))
        # drop IEND and the tail of the tEXt chunk
        record = extract_image_metadata_bytes(data[:-20])
        assert record.source == ImageMetadataSource.UNKNOWN

    def test_chunks_after_iend_ignored(self, make_png, make_text_chunk) -> None:
        data = make_png() + make_text_chunk("parameters", A1111_TEXT)
        assert read_text_chunks(data) == {}


class TestUnknown:
    def test_missing_signature(self) -> None:
        record = extract_image_metadata_bytes(b"GIF89a not a png at all")
        assert record.source == ImageMetadataSource.UNKNOWN
        assert record.structured == {}

    def test_empty_buffer(self) -> None:
        assert extract_image_metadata_bytes(b"").source == ImageMetadataSource.UNKNOWN

    def test_signature_only(self) -> None:
        assert extract_image_metadata_bytes(PNG_SIGNATURE).source == ImageMetadataSource.UNKNOWN

    def test_deeply_nested_prompt_is_ignored(self, make_png, make_text_chunk) -> None:
        nested = "[" * 200_000 + "]" * 200_000
        record = extract_image_metadata_bytes(make_png(make_text_chunk("prompt", nested)))
        assert record.source == ImageMetadataSource.UNKNOWN
        assert record.text_chunks == {"prompt": nested}

    def test_deeply_nested_prompt_falls_back_to_parameters(self, make_png, make_text_chunk) -> None:
        nested = '{"a": ' * 100_000 + "1" + "}" * 100_000
        data = make_png(
            make_text_chunk("prompt", nested),
            make_text_chunk("parameters", A1111_TEXT),
        )
        assert extract_image_metadata_bytes(data).source == ImageMetadataSource.A1111_STYLE

    def test_unrelated_text_kept(self, make_png, make_text_chunk) -> None:
        record = extract_image_metadata_bytes(make_png(make_text_chunk("Software", "GIMP")))
        assert record.source == ImageMetadataSource.UNKNOWN
        assert record.text_chunks == {"Software": "GIMP"}


class TestFromDisk:
    async def test_reads_file(self, tmp_path: Path, make_png, make_text_chunk) -> None:
        path = tmp_path / "image.png"
        path.write_bytes(make_png(make_text_chunk("parameters", A1111_TEXT)))
        record = await extract_image_metadata(path)
        assert record.structured["sampler"] == "Euler a"

    async def test_missing_file_is_unknown(self, tmp_path: Path) -> None:
        record = await extract_image_metadata(tmp_path / "missing.png")
        assert record.source == ImageMetadataSource.UNKNOWN
