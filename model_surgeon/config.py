# model_surgeon/config.py
"""
Engine configuration.

All tunables used by the parsers, the diff engine and the engine facade live in
one dataclass so a host can load them from YAML and pass them down explicitly.

Usage:
    >>> config = EngineConfig.from_yaml("surgeon.yaml")
    >>> config = EngineConfig(diff_element_limit=250_000)
    >>> config.to_yaml("surgeon.yaml")
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict

import yaml
from loguru import logger

MAX_HEADER_BYTES = 100 * 1024 * 1024
DIFF_ELEMENT_LIMIT = 1_000_000
INDEX_FILENAME = "model.safetensors.index.json"
ADAPTER_CONFIG_FILENAME = "adapter_config.json"


@dataclass
class EngineConfig:
    """Tunables for parsing, diffing and saving.

    Attributes:
        max_header_bytes: Reject headers whose declared length exceeds this.
        diff_element_limit: Tensors above this element count are not diffed eagerly.
        preview_count: Number of leading values returned with a tensor diff.
        max_workers: Threads used for shard fan-out and CPU-bound diffing.
        index_filename: Reserved filename of a shard index.
        adapter_config_filename: Side file holding the LoRA adapter config.
        preserve_metadata: Record surgery history in saved metadata.
    """

    max_header_bytes: int = MAX_HEADER_BYTES
    diff_element_limit: int = DIFF_ELEMENT_LIMIT
    preview_count: int = 20
    max_workers: int = 2
    index_filename: str = INDEX_FILENAME
    adapter_config_filename: str = ADAPTER_CONFIG_FILENAME
    preserve_metadata: bool = True

    def validate(self) -> None:
        """Raise ``ValueError`` when a setting is out of range."""
        for name in ("max_header_bytes", "diff_element_limit", "max_workers"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if self.preview_count < 0:
            raise ValueError(f"preview_count must be >= 0, got {self.preview_count}")
        if not self.index_filename or not self.adapter_config_filename:
            raise ValueError("index_filename and adapter_config_filename must be non-empty")

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: {keys}", keys=", ".join(unknown))
        config = cls(**{k: v for k, v in raw.items() if k in known})
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: str | Path) -> "EngineConfig":
        """Load a config from YAML; a missing file is an error, an empty one gives defaults."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        return cls.from_dict(raw)

    def to_yaml(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
