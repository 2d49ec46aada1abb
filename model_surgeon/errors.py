# model_surgeon/errors.py
"""
Error taxonomy for the engine.

Every error carries the failing path (file or tensor/component path) and a short
machine-readable ``code`` so hosts can map failures without parsing messages.
"""
from __future__ import annotations

from typing import List, Optional


class SurgeonError(Exception):
    """Base class for all engine failures."""

    code = "SURGEON_ERROR"

    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path and self.path not in self.message:
            return f"{self.message} ({self.path})"
        return self.message


# --- Container / header -------------------------------------------------------


class CorruptContainer(SurgeonError):
    """Zero or unreadable header length, or truncated header."""

    code = "CORRUPT_CONTAINER"


class HeaderTooLarge(SurgeonError):
    """Header length exceeds the DoS guard."""

    code = "HEADER_TOO_LARGE"


class InvalidHeaderJSON(SurgeonError):
    """Header bytes are not UTF-8 JSON describing an object."""

    code = "INVALID_HEADER_JSON"


class HeaderSchemaError(SurgeonError):
    """A tensor entry in the header violates the schema."""

    code = "HEADER_SCHEMA"


class InvalidDtype(HeaderSchemaError):
    code = "INVALID_DTYPE"


class InvalidShape(HeaderSchemaError):
    code = "INVALID_SHAPE"


class InvalidOffsets(HeaderSchemaError):
    code = "INVALID_OFFSETS"


# --- Tensor access ------------------------------------------------------------


class TensorNotFound(SurgeonError):
    code = "TENSOR_NOT_FOUND"


class ShortRead(SurgeonError):
    """Fewer bytes were available than requested."""

    code = "SHORT_READ"


# --- Sharded models -----------------------------------------------------------


class ShardIntegrityError(SurgeonError):
    code = "SHARD_INTEGRITY"


class MissingWeightMap(ShardIntegrityError):
    code = "MISSING_WEIGHT_MAP"


class MissingShardFiles(ShardIntegrityError):
    """One or more shard files referenced by the index are not on disk."""

    code = "MISSING_SHARD_FILES"

    def __init__(self, missing: List[str], *, path: Optional[str] = None):
        self.missing = list(missing)
        super().__init__(f"Missing shard files: {', '.join(self.missing)}", path=path)


class TensorNotInShard(ShardIntegrityError):
    code = "TENSOR_NOT_IN_SHARD"


# --- Sessions / engine --------------------------------------------------------


class NoActiveSession(SurgeonError):
    code = "NO_ACTIVE_SESSION"


class InvalidOperation(SurgeonError):
    code = "INVALID_OPERATION"


class SourceModelUnavailable(SurgeonError):
    code = "SOURCE_MODEL_UNAVAILABLE"


class ProtocolMismatch(SurgeonError):
    code = "PROTOCOL_MISMATCH"
