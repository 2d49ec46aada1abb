"""
Local file access: positioned reads for headers/tensors and a zero-copy mmap view
for whole-file passes (hashing, integrity scans).

Handles are scoped to a ``with`` block and always closed, including on error.
"""

from __future__ import annotations

import mmap
import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class LocalFileSource:
    """Local file source.

    Attributes:
        path: Path to the local file.
    """

    path: str

    def open(self) -> "PositionedFile":
        """Open the file for explicit-offset reads."""
        return PositionedFile(self.path)

    def map(self) -> "MappedFile":
        """Open and memory-map the file read-only."""
        return MappedFile(self.path)


class PositionedFile:
    """Context manager exposing ``read_at(offset, length)`` without moving a shared cursor.

    Only the requested byte range is ever read, so multi-gigabyte files are never
    loaded. ``bytes_read`` accumulates the total transferred through this handle.
    """

    __slots__ = ("_fd", "path", "size", "bytes_read")

    def __init__(self, path: str):
        self.path = path
        self._fd: Optional[int] = None
        self.size: int = 0
        self.bytes_read: int = 0

    def __enter__(self) -> "PositionedFile":
        self._fd = os.open(self.path, os.O_RDONLY | getattr(os, "O_BINARY", 0))
        self.size = os.fstat(self._fd).st_size
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    def read_at(self, offset: int, length: int) -> bytes:
        """Read up to ``length`` bytes at absolute ``offset``; may return fewer at EOF."""
        if self._fd is None:
            raise RuntimeError("PositionedFile is not entered")
        if length <= 0:
            return b""
        chunks = []
        remaining = length
        pos = offset
        while remaining > 0:
            if hasattr(os, "pread"):
                chunk = os.pread(self._fd, remaining, pos)
            else:  # pragma: no cover - Windows
                os.lseek(self._fd, pos, os.SEEK_SET)
                chunk = os.read(self._fd, remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
            pos += len(chunk)
        data = b"".join(chunks)
        self.bytes_read += len(data)
        return data


class MappedFile:
    """Context manager that wraps an mmapped file and exposes a memoryview."""

    __slots__ = ("_fd", "_m", "_mv", "size", "path")

    def __init__(self, path: str):
        self.path = path
        self._fd: Optional[int] = None
        self._m: Optional[mmap.mmap] = None
        self._mv: Optional[memoryview] = None
        self.size: int = 0

    def __enter__(self) -> "MappedFile":
        self._fd = os.open(self.path, os.O_RDONLY | getattr(os, "O_BINARY", 0))
        self.size = os.path.getsize(self.path)
        if self.size > 0:
            self._m = mmap.mmap(self._fd, self.size, access=mmap.ACCESS_READ)
            self._mv = memoryview(self._m)
        else:
            # mmap refuses empty files
            self._mv = memoryview(b"")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._mv is not None:
            self._mv.release()
        if self._m is not None:
            self._m.close()
        if self._fd is not None:
            os.close(self._fd)

    @property
    def view(self) -> memoryview:
        """Zero-copy memoryview over the file bytes."""
        if self._mv is None:
            raise RuntimeError("MappedFile is not entered")
        return self._mv
