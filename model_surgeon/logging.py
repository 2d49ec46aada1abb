# model_surgeon/logging.py
"""
Logging setup using Loguru, friendly for the engine's worker threads.

- Debug toggle
- Human-readable console formatting
- Optional file sink for long-running host sessions
"""
from __future__ import annotations

import sys
from typing import Optional

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
    "| <level>{level: <8}</level> "
    "| pid={process} tid={thread} "
    "<cyan>{module}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> "
    "- <level>{message}</level>"
)


def configure_logging(*, debug: bool = False, log_file: Optional[str] = None) -> None:
    """Configure loguru logging sinks.

    Args:
        debug: Enable verbose debug logging.
        log_file: Also write records to this path (rotated at 10 MB).
    """
    logger.remove()
    level = "DEBUG" if debug else "INFO"
    logger.add(sys.stderr, level=level, format=_FORMAT, enqueue=True, backtrace=debug, diagnose=debug)
    if log_file:
        logger.add(log_file, level=level, format=_FORMAT, enqueue=True, rotation="10 MB")
