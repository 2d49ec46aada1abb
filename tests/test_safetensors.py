"""
Tests for the header parser: layout decoding, schema validation and the DoS guard.
"""

import struct

import pytest

from conftest import f32, write_container, write_raw
from model_surgeon.errors import (
    CorruptContainer,
    HeaderSchemaError,
    HeaderTooLarge,
    InvalidDtype,
    InvalidHeaderJSON,
    InvalidOffsets,
    InvalidShape,
)
from model_surgeon.formats.safetensors import DTYPE_SIZES, parse_header
from model_surgeon.io.file_reader import PositionedFile


class TestParseHeader:
    """Valid containers."""

    def test_tensors_and_metadata(self, simple_model):
        header = parse_header(str(simple_model))
        assert list(header.tensors) == [
            "model.embed_tokens.weight",
            "model.layers.0.mlp.up_proj.weight",
            "model.layers.1.mlp.up_proj.weight",
            "model.norm.weight",
        ]
        rec = header.tensors["model.embed_tokens.weight"]
        assert rec.dtype == "F32"
        assert rec.shape == (2, 2)
        assert rec.data_offsets == (0, 16)
        assert rec.numel == 4
        assert header.metadata == {"format": "pt"}
        assert header.data_start == 8 + header.header_length

    def test_header_length_includes_padding(self, simple_model):
        raw = simple_model.read_bytes()
        (n,) = struct.unpack("<Q", raw[:8])
        assert parse_header(str(simple_model)).header_length == n

    def test_non_string_metadata_kept_as_json_text(self, tmp_path):
        path = write_container(
            tmp_path / "m.safetensors",
            {"w": ("F32", (1,), f32(1))},
            metadata={"epochs": 3, "name": "x", "merged": True, "layers": [1, 2]},
        )
        assert parse_header(str(path)).metadata == {
            "epochs": "3", "name": "x", "merged": "true", "layers": "[1, 2]"
        }

    def test_every_dtype_accepted(self, tmp_path):
        tensors = {f"t{i}": (dt, (2,), b"\x00" * (2 * size)) for i, (dt, size) in enumerate(DTYPE_SIZES.items())}
        header = parse_header(str(write_container(tmp_path / "all.safetensors", tensors)))
        assert {r.dtype for r in header.tensors.values()} == set(DTYPE_SIZES)

    def test_zero_element_tensor(self, tmp_path):
        path = write_container(tmp_path / "e.safetensors", {"empty": ("F32", (0, 4), b"")})
        rec = parse_header(str(path)).tensors["empty"]
        assert rec.numel == 0
        assert rec.nbytes == 0

    def test_reads_header_only(self, tmp_path, monkeypatch):
        """A 1 MiB payload must not be touched while parsing."""
        payload = b"\x00" * (1024 * 1024)
        path = write_container(tmp_path / "big.safetensors", {"big": ("U8", (len(payload),), payload)})

        seen = []
        original_exit = PositionedFile.__exit__

        def spy(self, *exc):
            seen.append(self.bytes_read)
            return original_exit(self, *exc)

        monkeypatch.setattr(PositionedFile, "__exit__", spy)
        parse_header(str(path))
        assert len(seen) == 1
        assert seen[0] < 1024


class TestCorruptContainers:
    """Length prefix and JSON failures."""

    def test_file_shorter_than_prefix(self, tmp_path):
        path = tmp_path / "short.safetensors"
        path.write_bytes(b"\x01\x02\x03")
        with pytest.raises(CorruptContainer) as exc:
            parse_header(str(path))
        assert str(path) in str(exc.value)

    def test_zero_header_length(self, tmp_path):
        path = tmp_path / "zero.safetensors"
        path.write_bytes(struct.pack("<Q", 0) + b"{}")
        with pytest.raises(CorruptContainer, match="zero"):
            parse_header(str(path))

    def test_dos_guard(self, tmp_path, monkeypatch):
        path = tmp_path / "huge.safetensors"
        path.write_bytes(struct.pack("<Q", 100 * 1024 * 1024 + 1) + b"{}")

        requested = []
        original_read = PositionedFile.read_at

        def spy(self, offset, length):
            requested.append(length)
            return original_read(self, offset, length)

        monkeypatch.setattr(PositionedFile, "read_at", spy)
        with pytest.raises(HeaderTooLarge):
            parse_header(str(path))
        assert requested == [8]

    def test_custom_header_limit(self, simple_model):
        with pytest.raises(HeaderTooLarge):
            parse_header(str(simple_model), max_header_bytes=16)

    def test_truncated_header(self, tmp_path):
        path = tmp_path / "trunc.safetensors"
        path.write_bytes(struct.pack("<Q", 64) + b'{"a":')
        with pytest.raises(CorruptContainer, match="full header"):
            parse_header(str(path))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.safetensors"
        body = b"{not json}"
        path.write_bytes(struct.pack("<Q", len(body)) + body)
        with pytest.raises(InvalidHeaderJSON):
            parse_header(str(path))

    def test_json_not_an_object(self, tmp_path):
        path = tmp_path / "list.safetensors"
        body = b"[1, 2]"
        path.write_bytes(struct.pack("<Q", len(body)) + body)
        with pytest.raises(InvalidHeaderJSON, match="not an object"):
            parse_header(str(path))


class TestSchemaValidation:
    """Per-tensor entry checks."""

    @pytest.mark.parametrize(
        "entry, error",
        [
            ({"dtype": "F128", "shape": [1], "data_offsets": [0, 16]}, InvalidDtype),
            ({"shape": [1], "data_offsets": [0, 4]}, InvalidDtype),
            ("not a dict", InvalidDtype),
            ({"dtype": "F32", "shape": [-1], "data_offsets": [0, 4]}, InvalidShape),
            ({"dtype": "F32", "shape": [1.5], "data_offsets": [0, 4]}, InvalidShape),
            ({"dtype": "F32", "shape": [True], "data_offsets": [0, 4]}, InvalidShape),
            ({"dtype": "F32", "shape": "1", "data_offsets": [0, 4]}, InvalidShape),
            ({"dtype": "F32", "shape": [1], "data_offsets": [4, 0]}, InvalidOffsets),
            ({"dtype": "F32", "shape": [1], "data_offsets": [0]}, InvalidOffsets),
            ({"dtype": "F32", "shape": [1], "data_offsets": [0, -4]}, InvalidOffsets),
            ({"dtype": "F32", "shape": [2], "data_offsets": [0, 4]}, InvalidOffsets),
        ],
    )
    def test_rejects_bad_entry(self, tmp_path, entry, error):
        path = write_raw(tmp_path / "bad.safetensors", {"w": entry}, b"\x00" * 16)
        with pytest.raises(error) as exc:
            parse_header(str(path))
        assert isinstance(exc.value, HeaderSchemaError)
        assert exc.value.path == str(path)
