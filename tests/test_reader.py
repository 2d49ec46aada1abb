"""
Tests for positioned tensor reads.
"""

import pytest

from conftest import f32, write_container, write_raw
from model_surgeon.errors import ShortRead, TensorNotFound
from model_surgeon.formats.reader import (
    group_by_shard,
    read_shard_batch,
    read_tensor_by_name,
    read_tensor_data,
    read_tensor_from_map,
)
from model_surgeon.formats.safetensors import parse_header
from model_surgeon.formats.sharded import load_model


class TestReadTensorData:
    def test_reads_exact_range(self, simple_model):
        header = parse_header(str(simple_model))
        rec = header.tensors["model.layers.1.mlp.up_proj.weight"]
        data = read_tensor_data(str(simple_model), header.header_length, rec.data_offsets)
        assert data == f32(5, 6)

    def test_by_name(self, simple_model):
        header = parse_header(str(simple_model))
        assert read_tensor_by_name(str(simple_model), header, "model.norm.weight") == f32(1, 1)

    def test_unknown_name(self, simple_model):
        header = parse_header(str(simple_model))
        with pytest.raises(TensorNotFound, match="missing.weight"):
            read_tensor_by_name(str(simple_model), header, "missing.weight")

    def test_short_read_when_data_truncated(self, tmp_path):
        # header declares 16 bytes but only 4 are on disk
        path = write_raw(
            tmp_path / "trunc.safetensors",
            {"w": {"dtype": "F32", "shape": [4], "data_offsets": [0, 16]}},
            f32(1),
        )
        header = parse_header(str(path))
        with pytest.raises(ShortRead, match="expected 16 bytes, got 4"):
            read_tensor_by_name(str(path), header, "w")

    def test_empty_range(self, tmp_path):
        path = write_container(tmp_path / "e.safetensors", {"e": ("F32", (0,), b"")})
        header = parse_header(str(path))
        assert read_tensor_by_name(str(path), header, "e") == b""


class TestMapReads:
    def test_read_from_sharded_map(self, three_shard_model):
        tensor_map = load_model(str(three_shard_model))
        base = str(three_shard_model)
        assert read_tensor_from_map(base, tensor_map, "layers.0.weight") == f32(3, 4, 5)
        assert read_tensor_from_map(base, tensor_map, "norm.weight") == f32(7, 8)

    def test_group_and_batch(self, three_shard_model):
        tensor_map = load_model(str(three_shard_model))
        groups = group_by_shard(str(three_shard_model), tensor_map, ["embed.weight", "layers.0.weight", "norm.weight"])
        assert len(groups) == 2
        first = next(p for p in groups if p.endswith("model-00001-of-00003.safetensors"))
        assert groups[first] == ["embed.weight", "layers.0.weight"]
        batch = read_shard_batch(first, tensor_map, groups[first])
        assert batch == {"embed.weight": f32(1, 2), "layers.0.weight": f32(3, 4, 5)}

    def test_unknown_name_in_map(self, three_shard_model):
        tensor_map = load_model(str(three_shard_model))
        with pytest.raises(TensorNotFound):
            read_tensor_from_map(str(three_shard_model), tensor_map, "nope")
