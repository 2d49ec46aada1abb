# model_surgeon/__init__.py
"""
model_surgeon
=============

Introspection and surgery engine for SafeTensors weight files: header-only
parsing, sharded-model unification, LoRA adapter detection, architecture trees,
cross-model alignment and diffing, undoable edits, and byte-exact re-serialization.
"""
from __future__ import annotations

from importlib.metadata import version as _pkg_version

__all__ = ["__version__"]

try:
    # Read version dynamically from installed package metadata
    __version__: str = _pkg_version("model-surgeon")
except Exception:  # pragma: no cover - fallback for development environments
    __version__ = "0.0.0-dev"
