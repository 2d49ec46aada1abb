"""
Shared fixtures: small SafeTensors containers, shard sets and index files written
into ``tmp_path``.
"""

import json
import struct
from pathlib import Path
from typing import Dict, Optional, Tuple

import numpy as np
import pytest

# name -> (dtype, shape, raw bytes)
TensorSpec = Dict[str, Tuple[str, Tuple[int, ...], bytes]]


def f32(*values: float) -> bytes:
    return np.asarray(values, dtype="<f4").tobytes()


def write_raw(path: Path, header: dict, data: bytes = b"", *, pad_to: int = 8) -> Path:
    """Write a container from an explicit header object and data region."""
    raw = json.dumps(header).encode("utf-8")
    raw += b" " * ((pad_to - (8 + len(raw)) % pad_to) % pad_to)
    path.write_bytes(struct.pack("<Q", len(raw)) + raw + data)
    return path


def write_container(path: Path, tensors: TensorSpec, metadata: Optional[dict] = None) -> Path:
    """Write tensors in the given (declaration) order with contiguous offsets."""
    header: dict = {}
    if metadata is not None:
        header["__metadata__"] = metadata
    data = b""
    for name, (dtype, shape, buf) in tensors.items():
        header[name] = {
            "dtype": dtype,
            "shape": list(shape),
            "data_offsets": [len(data), len(data) + len(buf)],
        }
        data += buf
    return write_raw(path, header, data)


def write_sharded(directory: Path, shards: Dict[str, TensorSpec], *,
                  index_metadata: Optional[dict] = None) -> Path:
    """Write each shard plus ``model.safetensors.index.json``; returns the index path."""
    directory.mkdir(parents=True, exist_ok=True)
    weight_map = {}
    for shard_name, tensors in shards.items():
        write_container(directory / shard_name, tensors)
        for name in tensors:
            weight_map[name] = shard_name
    index: dict = {"weight_map": weight_map}
    if index_metadata is not None:
        index["metadata"] = index_metadata
    index_path = directory / "model.safetensors.index.json"
    index_path.write_text(json.dumps(index), encoding="utf-8")
    return index_path


@pytest.fixture
def simple_model(tmp_path) -> Path:
    return write_container(
        tmp_path / "model.safetensors",
        {
            "model.embed_tokens.weight": ("F32", (2, 2), f32(1, 2, 3, 4)),
            "model.layers.0.mlp.up_proj.weight": ("F32", (2,), f32(1, 2)),
            "model.layers.1.mlp.up_proj.weight": ("F32", (2,), f32(5, 6)),
            "model.norm.weight": ("F32", (2,), f32(1, 1)),
        },
        metadata={"format": "pt"},
    )


@pytest.fixture
def three_shard_model(tmp_path) -> Path:
    return write_sharded(
        tmp_path / "sharded",
        {
            "model-00001-of-00003.safetensors": {
                "embed.weight": ("F32", (2,), f32(1, 2)),
                "layers.0.weight": ("F32", (3,), f32(3, 4, 5)),
            },
            "model-00002-of-00003.safetensors": {
                "layers.1.weight": ("F32", (1,), f32(6)),
            },
            "model-00003-of-00003.safetensors": {
                "norm.weight": ("F32", (2,), f32(7, 8)),
            },
        },
        index_metadata={"total_size": 32},
    )
