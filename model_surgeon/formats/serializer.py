"""
SafeTensors serializer.

Writes ``[u64 LE N][N bytes JSON, space padded][tensor bytes]`` with tensors in
lexicographic name order, contiguous gapless offsets, and ``8 + N`` aligned to 8.
"""

from __future__ import annotations

import inspect
import json
import os
import stat
import struct
import tempfile
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from model_surgeon.errors import InvalidDtype, InvalidShape, ShortRead
from model_surgeon.formats.safetensors import LENGTH_PREFIX, METADATA_KEY, VALID_DTYPES
from model_surgeon.observability import Timer

BytesLike = Union[bytes, bytearray, memoryview]
DataProvider = Callable[[], Union[BytesLike, Awaitable[BytesLike]]]
ProgressSink = Callable[[float], None]

HEADER_ALIGNMENT = 8


@dataclass
class SerializedTensor:
    """A tensor to be written: either ``data`` or a ``data_provider`` must be set."""

    dtype: str
    shape: Sequence[int]
    byte_length: int
    data: Optional[BytesLike] = None
    data_provider: Optional[DataProvider] = None


def build_header(
    tensors: Dict[str, SerializedTensor], metadata: Optional[Dict[str, str]] = None
) -> Tuple[bytes, List[str], int]:
    """Build the padded header bytes.

    Returns:
        (padded header bytes, tensor names in write order, total data byte count)
    """
    names = sorted(tensors)
    header: Dict[str, Any] = {METADATA_KEY: {str(k): str(v) for k, v in (metadata or {}).items()}}
    offset = 0
    for name in names:
        t = tensors[name]
        if t.dtype not in VALID_DTYPES:
            raise InvalidDtype(f'Invalid dtype "{t.dtype}" for tensor "{name}"')
        if t.byte_length < 0:
            raise InvalidShape(f'Negative byte length for tensor "{name}"')
        header[name] = {
            "dtype": t.dtype,
            "shape": [int(d) for d in t.shape],
            "data_offsets": [offset, offset + t.byte_length],
        }
        offset += t.byte_length

    raw = json.dumps(header, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    padding = (HEADER_ALIGNMENT - (LENGTH_PREFIX + len(raw)) % HEADER_ALIGNMENT) % HEADER_ALIGNMENT
    return raw + b" " * padding, names, offset


def _check_length(name: str, t: SerializedTensor, buf: BytesLike) -> BytesLike:
    if len(buf) != t.byte_length:
        raise ShortRead(
            f'Tensor "{name}" provided {len(buf)} bytes, header declares {t.byte_length}'
        )
    return buf


class _AtomicWriter:
    """Write to a temp sibling and rename over ``path`` only on success."""

    def __init__(self, path: str):
        self.path = path
        self._tmp: Optional[str] = None
        self.f = None

    def __enter__(self):
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, self._tmp = tempfile.mkstemp(prefix=".msurgeon-", suffix=".tmp", dir=directory)
        self.f = os.fdopen(fd, "wb")
        return self.f

    def __exit__(self, exc_type, exc, tb) -> None:
        self.f.close()
        if exc_type is None:
            # mkstemp creates 0600; give the result the mode a plain open() would
            os.chmod(self._tmp, _target_mode(self.path))
            os.replace(self._tmp, self.path)
        else:
            os.unlink(self._tmp)


def _target_mode(path: str) -> int:
    """Mode of the file being replaced, else ``0o666`` minus the process umask."""
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def _report(on_progress: Optional[ProgressSink], written: int, total: int) -> None:
    if on_progress is not None and total > 0:
        on_progress(written / total)


def _fetch(name: str, t: SerializedTensor) -> Union[BytesLike, Awaitable[BytesLike]]:
    if t.data is not None:
        return t.data
    if t.data_provider is not None:
        return t.data_provider()
    raise ValueError(f"No data or data_provider for tensor {name}")


class _ContainerWrite:
    """One container write: header up front, then tensors in ``names`` order.

    Shared by the sync and async entry points so both time and log the same way.
    """

    def __init__(
        self,
        tensors: Dict[str, SerializedTensor],
        output_path: str,
        metadata: Optional[Dict[str, str]],
        on_progress: Optional[ProgressSink],
    ):
        self.tensors = tensors
        self.output_path = output_path
        self.on_progress = on_progress
        self.header, self.names, self.total = build_header(tensors, metadata)
        self.written = 0
        self._timer = Timer("serialize")
        self._writer = _AtomicWriter(output_path)
        self._f = None

    @property
    def size(self) -> int:
        return LENGTH_PREFIX + len(self.header) + self.total

    def __enter__(self) -> "_ContainerWrite":
        self._timer.__enter__()
        self._f = self._writer.__enter__()
        try:
            self._f.write(struct.pack("<Q", len(self.header)))
            self._f.write(self.header)
        except BaseException as e:
            self._writer.__exit__(type(e), e, e.__traceback__)
            raise
        return self

    def put(self, name: str, buf: BytesLike) -> None:
        t = self.tensors[name]
        self._f.write(_check_length(name, t, buf))
        self.written += t.byte_length
        _report(self.on_progress, self.written, self.total)

    def __exit__(self, exc_type, exc, tb) -> None:
        self._writer.__exit__(exc_type, exc, tb)
        self._timer.__exit__(exc_type, exc, tb)
        if exc_type is None:
            logger.debug(
                "Wrote {n} tensors ({b} data bytes) to {path} in {ms:.2f}ms",
                n=len(self.names),
                b=self.total,
                path=self.output_path,
                ms=self._timer.duration_ms,
            )


def serialize(
    tensors: Dict[str, SerializedTensor],
    output_path: str,
    *,
    metadata: Optional[Dict[str, str]] = None,
    on_progress: Optional[ProgressSink] = None,
) -> int:
    """Write a complete container file. Returns the number of bytes written.

    Providers must be synchronous here; use ``serialize_async`` for coroutine providers.
    """
    with _ContainerWrite(tensors, output_path, metadata, on_progress) as w:
        for name in w.names:
            buf = _fetch(name, tensors[name])
            if inspect.isawaitable(buf):
                # close the un-awaited coroutine before bailing out
                getattr(buf, "close", lambda: None)()
                raise TypeError(f'Asynchronous data provider for "{name}"; use serialize_async')
            w.put(name, buf)
    return w.size


async def serialize_async(
    tensors: Dict[str, SerializedTensor],
    output_path: str,
    *,
    metadata: Optional[Dict[str, str]] = None,
    on_progress: Optional[ProgressSink] = None,
) -> int:
    """Like ``serialize`` but awaits providers that return awaitables."""
    with _ContainerWrite(tensors, output_path, metadata, on_progress) as w:
        for name in w.names:
            buf = _fetch(name, tensors[name])
            if inspect.isawaitable(buf):
                buf = await buf
            w.put(name, buf)
    return w.size
