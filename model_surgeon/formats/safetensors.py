"""
Pure-Python SafeTensors header parser.

Binary layout: 8-byte little-endian u64 header length ``N``, ``N`` bytes of UTF-8
JSON (optionally space padded), then the raw tensor bytes. Only ``8 + N`` bytes
are ever read here.
"""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from loguru import logger

from model_surgeon.config import MAX_HEADER_BYTES
from model_surgeon.errors import (
    CorruptContainer,
    HeaderTooLarge,
    InvalidDtype,
    InvalidHeaderJSON,
    InvalidOffsets,
    InvalidShape,
)
from model_surgeon.io.file_reader import LocalFileSource

METADATA_KEY = "__metadata__"
LENGTH_PREFIX = 8

# Bytes per element for each dtype token.
DTYPE_SIZES: Dict[str, int] = {
    "F64": 8,
    "F32": 4,
    "F16": 2,
    "BF16": 2,
    "I64": 8,
    "I32": 4,
    "I16": 2,
    "I8": 1,
    "U8": 1,
    "BOOL": 1,
    "F8_E4M3": 1,
    "F8_E5M2": 1,
}
VALID_DTYPES = frozenset(DTYPE_SIZES)


def _is_int(x: Any) -> bool:
    return isinstance(x, int) and not isinstance(x, bool)


@dataclass(frozen=True)
class TensorRecord:
    """One tensor entry of a header. Offsets are relative to the data region."""

    dtype: str
    shape: Tuple[int, ...]
    data_offsets: Tuple[int, int]

    @property
    def numel(self) -> int:
        n = 1
        for d in self.shape:
            n *= d
        return n

    @property
    def nbytes(self) -> int:
        return self.data_offsets[1] - self.data_offsets[0]

    @property
    def itemsize(self) -> int:
        return DTYPE_SIZES[self.dtype]


@dataclass(frozen=True)
class ParsedHeader:
    metadata: Dict[str, str]
    tensors: Dict[str, TensorRecord]
    header_length: int
    path: Optional[str] = field(default=None, compare=False)

    @property
    def data_start(self) -> int:
        """Absolute file offset of the first tensor byte."""
        return LENGTH_PREFIX + self.header_length


def read_header_length(prefix: bytes, *, path: Optional[str] = None,
                       max_header_bytes: int = MAX_HEADER_BYTES) -> int:
    """Decode and guard the 8-byte length prefix."""
    if len(prefix) < LENGTH_PREFIX:
        raise CorruptContainer(
            f"Could not read header length (got {len(prefix)} bytes)", path=path
        )
    (header_length,) = struct.unpack_from("<Q", prefix, 0)
    if header_length == 0:
        raise CorruptContainer("Header length is zero", path=path)
    if header_length > max_header_bytes:
        raise HeaderTooLarge(
            f"Header size {header_length} bytes exceeds maximum allowed {max_header_bytes} bytes",
            path=path,
        )
    return header_length


def _parse_tensor_entry(name: str, meta: Any, path: Optional[str]) -> TensorRecord:
    if not isinstance(meta, dict):
        raise InvalidDtype(f'Invalid tensor entry for "{name}"', path=path)

    dtype = meta.get("dtype")
    if not isinstance(dtype, str) or dtype not in VALID_DTYPES:
        raise InvalidDtype(f'Invalid dtype "{dtype}" for tensor "{name}"', path=path)

    shape = meta.get("shape")
    if not isinstance(shape, list) or not all(_is_int(x) and x >= 0 for x in shape):
        raise InvalidShape(f'Invalid shape for tensor "{name}"', path=path)

    offsets = meta.get("data_offsets")
    if (
        not isinstance(offsets, list)
        or len(offsets) != 2
        or not all(_is_int(x) and x >= 0 for x in offsets)
        or offsets[0] > offsets[1]
    ):
        raise InvalidOffsets(f'Invalid data_offsets for tensor "{name}"', path=path)

    record = TensorRecord(dtype=dtype, shape=tuple(shape), data_offsets=(offsets[0], offsets[1]))
    expected = record.numel * record.itemsize
    if record.nbytes != expected:
        raise InvalidOffsets(
            f'data_offsets for tensor "{name}" span {record.nbytes} bytes, '
            f"expected {expected} for {dtype}{list(record.shape)}",
            path=path,
        )
    return record


def decode_header(raw: bytes, header_length: int, *, path: Optional[str] = None) -> ParsedHeader:
    """Decode the JSON header region into a ``ParsedHeader``."""
    try:
        header = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidHeaderJSON(f"Header is not valid JSON: {e}", path=path) from e
    if not isinstance(header, dict):
        raise InvalidHeaderJSON("Header JSON is not an object", path=path)

    metadata: Dict[str, str] = {}
    tensors: Dict[str, TensorRecord] = {}
    for name, meta in header.items():
        if name == METADATA_KEY:
            if isinstance(meta, dict):
                # non-string values are stored as their JSON text
                metadata = {
                    str(k): v if isinstance(v, str) else json.dumps(v) for k, v in meta.items()
                }
            continue
        tensors[name] = _parse_tensor_entry(name, meta, path)

    return ParsedHeader(metadata=metadata, tensors=tensors, header_length=header_length, path=path)


def parse_header(path: str, *, max_header_bytes: int = MAX_HEADER_BYTES) -> ParsedHeader:
    """Parse a SafeTensors header without touching tensor data.

    Args:
        path: Container file.
        max_header_bytes: DoS guard for the declared header length.

    Raises:
        CorruptContainer, HeaderTooLarge, InvalidHeaderJSON, InvalidDtype,
        InvalidShape, InvalidOffsets.
    """
    with LocalFileSource(path).open() as f:
        header_length = read_header_length(
            f.read_at(0, LENGTH_PREFIX), path=path, max_header_bytes=max_header_bytes
        )
        raw = f.read_at(LENGTH_PREFIX, header_length)
        if len(raw) < header_length:
            raise CorruptContainer(
                f"Could not read full header (expected {header_length}, got {len(raw)})",
                path=path,
            )
        parsed = decode_header(raw, header_length, path=path)
    logger.debug(
        "Parsed header of {path}: {n} tensors, {hl} header bytes",
        path=path,
        n=len(parsed.tensors),
        hl=header_length,
    )
    return parsed


def parse_header_view(buf: memoryview, *, file_size: int, path: Optional[str] = None,
                      max_header_bytes: int = MAX_HEADER_BYTES) -> ParsedHeader:
    """Same as ``parse_header`` over an already mapped buffer."""
    header_length = read_header_length(
        bytes(buf[:LENGTH_PREFIX]), path=path, max_header_bytes=max_header_bytes
    )
    header_end = LENGTH_PREFIX + header_length
    if header_end > file_size:
        raise CorruptContainer("Header extends beyond EOF", path=path)
    return decode_header(bytes(buf[LENGTH_PREFIX:header_end]), header_length, path=path)
