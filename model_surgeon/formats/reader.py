"""
Lazy tensor byte access.

Every read is an explicit-offset read of exactly one tensor's byte range; file
handles are opened right before use and closed before returning.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

from model_surgeon.errors import ShortRead, TensorNotFound
from model_surgeon.formats.safetensors import LENGTH_PREFIX, ParsedHeader
from model_surgeon.formats.sharded import UnifiedTensorMap
from model_surgeon.io.file_reader import LocalFileSource, PositionedFile


def _read_range(f: PositionedFile, header_length: int, data_offsets: Tuple[int, int]) -> bytes:
    start, end = data_offsets
    length = end - start
    data = f.read_at(LENGTH_PREFIX + header_length + start, length)
    if len(data) < length:
        raise ShortRead(
            f"Failed to read tensor data: expected {length} bytes, got {len(data)}", path=f.path
        )
    return data


def read_tensor_data(path: str, header_length: int, data_offsets: Tuple[int, int]) -> bytes:
    """Read ``end - start`` bytes at ``8 + header_length + start``."""
    with LocalFileSource(path).open() as f:
        return _read_range(f, header_length, data_offsets)


def read_tensor_by_name(path: str, header: ParsedHeader, name: str) -> bytes:
    record = header.tensors.get(name)
    if record is None:
        raise TensorNotFound(f'Tensor "{name}" not found in header', path=path)
    return read_tensor_data(path, header.header_length, record.data_offsets)


def _shard_location(base_path: str, tensor_map: UnifiedTensorMap, name: str) -> Tuple[str, int]:
    record = tensor_map.tensors.get(name)
    if record is None:
        raise TensorNotFound(f'Tensor "{name}" not found in tensor map', path=base_path)
    header_length = tensor_map.shard_header_lengths.get(record.shard_file)
    if header_length is None:
        raise TensorNotFound(
            f'Header length not found for shard "{record.shard_file}"', path=base_path
        )
    return tensor_map.shard_path(base_path, record.shard_file), header_length


def read_tensor_from_map(base_path: str, tensor_map: UnifiedTensorMap, name: str) -> bytes:
    """Read a tensor of a (possibly sharded) model by name.

    Args:
        base_path: Any path inside the model directory (index or shard file).
        tensor_map: The unified map the name is looked up in.
        name: Tensor name.
    """
    shard_path, header_length = _shard_location(base_path, tensor_map, name)
    return read_tensor_data(shard_path, header_length, tensor_map.tensors[name].data_offsets)


def group_by_shard(
    base_path: str, tensor_map: UnifiedTensorMap, names: Iterable[str]
) -> Dict[str, List[str]]:
    """Group tensor names by the resolved path of the shard holding them."""
    groups: Dict[str, List[str]] = defaultdict(list)
    for name in names:
        shard_path, _ = _shard_location(base_path, tensor_map, name)
        groups[shard_path].append(name)
    return dict(groups)


def read_shard_batch(
    shard_path: str, tensor_map: UnifiedTensorMap, names: List[str]
) -> Dict[str, bytes]:
    """Read several tensors from one shard through a single handle, sequentially."""
    out: Dict[str, bytes] = {}
    with LocalFileSource(shard_path).open() as f:
        for name in names:
            record = tensor_map.tensors[name]
            header_length = tensor_map.shard_header_lengths[record.shard_file]
            out[name] = _read_range(f, header_length, record.data_offsets)
    return out
