"""
LoRA adapter detection.

Handles both PEFT naming conventions:

1. ``<module>.lora_A.weight`` / ``<module>.lora_B.weight``
2. ``<module>.lora_A.<adapter>.weight`` / ``<module>.lora_B.<adapter>.weight``

A pair exists only when both halves are present; an unmatched half is dropped.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from loguru import logger

from model_surgeon.config import ADAPTER_CONFIG_FILENAME
from model_surgeon.formats.safetensors import TensorRecord

LORA_PATTERN = re.compile(r"^(.+)\.lora_(A|B)(?:\.([^.]+))?\.weight$")
BASE_LAYER_PATTERN = re.compile(r"^(.+)\.base_layer\.weight$")
PEFT_PREFIX = "base_model.model."
DEFAULT_ADAPTER = "default"
LORA_MARKERS = frozenset({"lora_A", "lora_B"})


@dataclass
class AdapterConfig:
    """Subset of a PEFT ``adapter_config.json``; unknown keys survive in ``extra``."""

    r: int = 0
    lora_alpha: float = 0
    target_modules: List[str] = field(default_factory=list)
    lora_dropout: float = 0
    extra: Dict[str, Any] = field(default_factory=dict)
    # raw keys present in the file, so an explicit ``r: 0`` is distinguishable
    present: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "AdapterConfig":
        known = ("r", "lora_alpha", "target_modules", "lora_dropout")
        target_modules = raw.get("target_modules")
        if isinstance(target_modules, str):
            target_modules = [target_modules]
        return cls(
            r=raw.get("r") if raw.get("r") is not None else 0,
            lora_alpha=raw.get("lora_alpha") if raw.get("lora_alpha") is not None else 0,
            target_modules=list(target_modules or []),
            lora_dropout=raw.get("lora_dropout") if raw.get("lora_dropout") is not None else 0,
            extra={k: v for k, v in raw.items() if k not in known},
            present=tuple(k for k in known if raw.get(k) is not None),
        )

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update(
            r=self.r,
            lora_alpha=self.lora_alpha,
            target_modules=list(self.target_modules),
            lora_dropout=self.lora_dropout,
        )
        return out

    @property
    def rank(self) -> Optional[int]:
        return self.r if "r" in self.present else None

    @property
    def alpha(self) -> Optional[float]:
        return self.lora_alpha if "lora_alpha" in self.present else None


@dataclass
class LoraAdapterPair:
    base_tensor_name: str
    lora_a_name: str
    lora_b_name: str
    a_shape: Tuple[int, ...]
    b_shape: Tuple[int, ...]
    adapter_name: str = DEFAULT_ADAPTER
    rank: Optional[int] = None
    alpha: Optional[float] = None

    @property
    def scale(self) -> Optional[float]:
        """``alpha / rank`` when both are known."""
        if self.rank and self.alpha is not None:
            return self.alpha / self.rank
        return None


LoraAdapterMap = Dict[str, List[LoraAdapterPair]]


def has_lora_marker(name: str) -> bool:
    """True when any dot-segment of ``name`` is ``lora_A`` or ``lora_B``."""
    return not LORA_MARKERS.isdisjoint(name.split("."))


def lora_tensor_names(lora_map: LoraAdapterMap) -> Set[str]:
    names: Set[str] = set()
    for pairs in lora_map.values():
        for pair in pairs:
            names.add(pair.lora_a_name)
            names.add(pair.lora_b_name)
    return names


def infer_rank(a_shape: Tuple[int, ...], b_shape: Tuple[int, ...]) -> Optional[int]:
    """Rank from the ``[rank, in]`` / ``[out, rank]`` convention, else ``None``."""
    if len(a_shape) >= 2 and len(b_shape) >= 2 and a_shape[0] == b_shape[-1]:
        return a_shape[0]
    return None


def _base_tensor_name(module_path: str, base_layer_modules: Set[str]) -> str:
    if module_path in base_layer_modules:
        return f"{module_path}.base_layer.weight"
    stripped = module_path[len(PEFT_PREFIX):] if module_path.startswith(PEFT_PREFIX) else module_path
    return f"{stripped}.weight"


def detect_lora_adapters(
    tensors: Mapping[str, TensorRecord], adapter_config: Optional[AdapterConfig] = None
) -> LoraAdapterMap:
    """Pair LoRA A/B tensors per ``(module, adapter)`` and resolve their base tensor."""
    # (module_path, adapter_name) -> {"A": (name, record), "B": (name, record)}
    entries: Dict[Tuple[str, str], Dict[str, Tuple[str, TensorRecord]]] = {}
    base_layer_modules: Set[str] = set()

    for name, record in tensors.items():
        m = LORA_PATTERN.match(name)
        if m:
            module_path, side, adapter_name = m.group(1), m.group(2), m.group(3) or DEFAULT_ADAPTER
            entries.setdefault((module_path, adapter_name), {})[side] = (name, record)
            continue
        base = BASE_LAYER_PATTERN.match(name)
        if base:
            base_layer_modules.add(base.group(1))

    config_rank = adapter_config.rank if adapter_config is not None else None
    config_alpha = adapter_config.alpha if adapter_config is not None else None

    adapter_map: LoraAdapterMap = {}
    dropped = 0
    for (module_path, adapter_name), sides in entries.items():
        if "A" not in sides or "B" not in sides:
            dropped += 1
            continue
        a_name, a_rec = sides["A"]
        b_name, b_rec = sides["B"]
        pair = LoraAdapterPair(
            base_tensor_name=_base_tensor_name(module_path, base_layer_modules),
            lora_a_name=a_name,
            lora_b_name=b_name,
            a_shape=tuple(a_rec.shape),
            b_shape=tuple(b_rec.shape),
            adapter_name=adapter_name,
            rank=config_rank if config_rank is not None else infer_rank(a_rec.shape, b_rec.shape),
            alpha=config_alpha,
        )
        adapter_map.setdefault(module_path, []).append(pair)

    if dropped:
        logger.debug("Dropped {n} unpaired LoRA tensor groups", n=dropped)
    return adapter_map


def load_adapter_config_from_dir(
    directory: str, *, filename: str = ADAPTER_CONFIG_FILENAME
) -> Optional[AdapterConfig]:
    """Load ``adapter_config.json`` from ``directory``; ``None`` when absent or unparsable."""
    config_path = os.path.join(directory, filename)
    if not os.path.isfile(config_path):
        return None
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable adapter config {path}: {err}", path=config_path, err=e)
        return None
    if not isinstance(raw, dict):
        logger.warning("Ignoring adapter config {path}: not a JSON object", path=config_path)
        return None
    return AdapterConfig.from_dict(raw)


def load_adapter_config(
    tensor_path: str, *, filename: str = ADAPTER_CONFIG_FILENAME
) -> Optional[AdapterConfig]:
    """Load the adapter config sitting next to a tensor file (or inside a model directory)."""
    if os.path.isdir(tensor_path):
        return load_adapter_config_from_dir(tensor_path, filename=filename)
    return load_adapter_config_from_dir(
        os.path.dirname(os.path.abspath(tensor_path)), filename=filename
    )
