"""
Sharded model resolver.

Unifies ``model.safetensors.index.json`` + N shard headers into a single
tensor → shard map. A standalone file is the degenerate one-shard case.
"""

from __future__ import annotations

import json
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from model_surgeon.config import INDEX_FILENAME, MAX_HEADER_BYTES
from model_surgeon.errors import (
    InvalidHeaderJSON,
    MissingShardFiles,
    MissingWeightMap,
    TensorNotInShard,
)
from model_surgeon.formats.safetensors import ParsedHeader, TensorRecord, parse_header
from model_surgeon.observability import Timer


@dataclass(frozen=True)
class ShardedTensorRecord(TensorRecord):
    """A tensor record plus the shard file holding its bytes.

    ``shard_file`` is a basename relative to the model directory, or an absolute
    path for tensors grafted in from another model.
    """

    shard_file: str = ""

    @classmethod
    def from_record(cls, record: TensorRecord, shard_file: str) -> "ShardedTensorRecord":
        return cls(
            dtype=record.dtype,
            shape=record.shape,
            data_offsets=record.data_offsets,
            shard_file=shard_file,
        )


@dataclass(frozen=True)
class UnifiedTensorMap:
    metadata: Dict[str, str] = field(default_factory=dict)
    tensors: Dict[str, ShardedTensorRecord] = field(default_factory=dict)
    shard_header_lengths: Dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.tensors)

    def shard_path(self, base_path: str, shard_file: str) -> str:
        """Resolve a shard identifier against the directory of ``base_path``."""
        if os.path.isabs(shard_file):
            return shard_file
        return os.path.join(os.path.dirname(os.path.abspath(base_path)), shard_file)

    def with_tensors(
        self,
        tensors: Dict[str, ShardedTensorRecord],
        shard_header_lengths: Optional[Dict[str, int]] = None,
    ) -> "UnifiedTensorMap":
        return UnifiedTensorMap(
            metadata=dict(self.metadata),
            tensors=dict(tensors),
            shard_header_lengths=dict(
                self.shard_header_lengths if shard_header_lengths is None else shard_header_lengths
            ),
        )


SINGLE_FILENAME = "model.safetensors"


def resolve_model_path(path: str, *, index_filename: str = INDEX_FILENAME) -> str:
    """Turn a model directory into its index file, or its single ``model.safetensors``."""
    if not os.path.isdir(path):
        return path
    index = os.path.join(path, index_filename)
    if os.path.isfile(index):
        return index
    return os.path.join(path, SINGLE_FILENAME)


def find_index_file(path: str, *, index_filename: str = INDEX_FILENAME) -> Optional[str]:
    """Return the index file for ``path`` (itself, or a sibling), else ``None``."""
    path = resolve_model_path(path, index_filename=index_filename)
    if os.path.basename(path) == index_filename:
        return path
    candidate = os.path.join(os.path.dirname(os.path.abspath(path)), index_filename)
    if os.path.isfile(candidate) and os.access(candidate, os.R_OK):
        return candidate
    return None


def is_sharded_model(path: str, *, index_filename: str = INDEX_FILENAME) -> bool:
    return find_index_file(path, index_filename=index_filename) is not None


def load_single_file(path: str, *, max_header_bytes: int = MAX_HEADER_BYTES) -> UnifiedTensorMap:
    """Wrap one container file as a one-shard map keyed by its basename."""
    header = parse_header(path, max_header_bytes=max_header_bytes)
    shard = os.path.basename(path)
    return UnifiedTensorMap(
        metadata=dict(header.metadata),
        tensors={
            name: ShardedTensorRecord.from_record(rec, shard) for name, rec in header.tensors.items()
        },
        shard_header_lengths={shard: header.header_length},
    )


def _read_index(index_path: str) -> Dict[str, object]:
    try:
        with open(index_path, "r", encoding="utf-8") as f:
            index = json.load(f)
    except ValueError as e:
        raise InvalidHeaderJSON(f"Invalid shard index JSON: {e}", path=index_path) from e
    if not isinstance(index, dict):
        raise InvalidHeaderJSON("Shard index is not a JSON object", path=index_path)
    weight_map = index.get("weight_map")
    if not isinstance(weight_map, dict):
        raise MissingWeightMap('Shard index missing "weight_map"', path=index_path)
    return index


def load_sharded(
    index_path: str,
    *,
    max_workers: int = 4,
    max_header_bytes: int = MAX_HEADER_BYTES,
) -> UnifiedTensorMap:
    """Resolve every tensor listed in an index to its shard's header record."""
    index = _read_index(index_path)
    weight_map: Dict[str, str] = {str(k): str(v) for k, v in index["weight_map"].items()}
    directory = os.path.dirname(os.path.abspath(index_path))

    # unique shards in first-reference order
    shard_files: List[str] = list(dict.fromkeys(weight_map.values()))
    missing = [
        s for s in shard_files if not os.path.isfile(os.path.join(directory, s))
    ]
    if missing:
        raise MissingShardFiles(missing, path=index_path)

    with Timer("shard_headers") as t:
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(shard_files) or 1))) as pool:
            futures = {
                s: pool.submit(
                    parse_header, os.path.join(directory, s), max_header_bytes=max_header_bytes
                )
                for s in shard_files
            }
            # join all before proceeding; the first failure propagates
            headers: Dict[str, ParsedHeader] = {s: fut.result() for s, fut in futures.items()}
    logger.debug(
        "Parsed {n} shard headers in {ms:.2f}ms", n=len(shard_files), ms=t.duration_ms
    )

    metadata: Dict[str, str] = {}
    raw_meta = index.get("metadata")
    if isinstance(raw_meta, dict):
        metadata.update({str(k): v if isinstance(v, str) else json.dumps(v) for k, v in raw_meta.items()})
    shard_header_lengths: Dict[str, int] = {}
    for shard in sorted(shard_files):
        metadata.update(headers[shard].metadata)
        shard_header_lengths[shard] = headers[shard].header_length

    tensors: Dict[str, ShardedTensorRecord] = {}
    for name, shard in weight_map.items():
        record = headers[shard].tensors.get(name)
        if record is None:
            raise TensorNotInShard(
                f'Tensor "{name}" referenced in index but not found in shard "{shard}"',
                path=os.path.join(directory, shard),
            )
        tensors[name] = ShardedTensorRecord.from_record(record, shard)

    return UnifiedTensorMap(
        metadata=metadata, tensors=tensors, shard_header_lengths=shard_header_lengths
    )


def load_model(
    path: str,
    *,
    index_filename: str = INDEX_FILENAME,
    max_workers: int = 4,
    max_header_bytes: int = MAX_HEADER_BYTES,
) -> UnifiedTensorMap:
    """Open an index file, any shard of a sharded model, or a standalone file."""
    path = resolve_model_path(path, index_filename=index_filename)
    index_path = find_index_file(path, index_filename=index_filename)
    if index_path is None:
        logger.debug("No shard index next to {path}; loading as single file", path=path)
        return load_single_file(path, max_header_bytes=max_header_bytes)
    logger.debug("Loading sharded model via {index}", index=index_path)
    return load_sharded(index_path, max_workers=max_workers, max_header_bytes=max_header_bytes)


def model_base_path(path: str, *, index_filename: str = INDEX_FILENAME) -> str:
    """A path whose directory holds every shard of the model opened from ``path``."""
    path = resolve_model_path(path, index_filename=index_filename)
    return find_index_file(path, index_filename=index_filename) or path
