"""
Worker pool for CPU/I-O-bound engine work.

A thin wrapper over ``ThreadPoolExecutor`` that hands results back to asyncio
callers. numpy releases the GIL for the heavy parts of decoding and diffing, so
threads keep a host's event loop responsive.
"""
from __future__ import annotations

import asyncio
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, TypeVar

from loguru import logger

T = TypeVar("T")


class WorkerPool:
    """Lazily started pool; cancelling an awaiting caller just drops the result."""

    def __init__(self, max_workers: int = 2, *, name: str = "msurgeon"):
        self.max_workers = max_workers
        self.name = name
        self._executor: Optional[ThreadPoolExecutor] = None
        self._terminated = False

    def _ensure(self) -> ThreadPoolExecutor:
        if self._terminated:
            raise RuntimeError("WorkerPool has been terminated")
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix=self.name
            )
            logger.debug("Started worker pool with {n} threads", n=self.max_workers)
        return self._executor

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> "Future[T]":
        return self._ensure().submit(fn, *args, **kwargs)

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` on a worker thread and await its result."""
        return await asyncio.wrap_future(self.submit(fn, *args, **kwargs))

    def shutdown(self, *, wait: bool = True) -> None:
        self._terminated = True
        if self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=True)
            self._executor = None
