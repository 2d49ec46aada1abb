"""
Architecture alignment between two independently built trees.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from model_surgeon.analysis.diff import DiffMetrics
from model_surgeon.analysis.lora import PEFT_PREFIX
from model_surgeon.analysis.tree import ArchitectureNode, NodeKind


class AlignmentStatus(str, Enum):
    MATCHED = "matched"
    ONLY_A = "onlyA"
    ONLY_B = "onlyB"


@dataclass
class AlignedComponent:
    path: str
    status: AlignmentStatus
    shape_mismatch: Optional[bool] = None
    diff_metrics: Optional[DiffMetrics] = None


def canonical_path(path: str) -> str:
    """Strip a leading PEFT wrapper prefix."""
    return path[len(PEFT_PREFIX):] if path.startswith(PEFT_PREFIX) else path


def _index(tree: ArchitectureNode) -> Dict[str, ArchitectureNode]:
    return {canonical_path(n.full_path): n for n in tree.walk() if n.kind is not NodeKind.ROOT}


def align_architectures(
    tree_a: ArchitectureNode, tree_b: ArchitectureNode
) -> List[AlignedComponent]:
    """Match both trees' canonical paths into matched / onlyA / onlyB entries.

    Order of the result is unspecified; use ``sort_components`` for display.
    """
    map_a = _index(tree_a)
    map_b = _index(tree_b)

    out: List[AlignedComponent] = []
    for path, node_a in map_a.items():
        node_b = map_b.get(path)
        if node_b is None:
            out.append(AlignedComponent(path=path, status=AlignmentStatus.ONLY_A))
            continue
        mismatch = None
        if (
            node_a.kind is NodeKind.PARAMETER
            and node_b.kind is NodeKind.PARAMETER
            and tuple(node_a.tensor_info.shape) != tuple(node_b.tensor_info.shape)
        ):
            mismatch = True
        out.append(
            AlignedComponent(path=path, status=AlignmentStatus.MATCHED, shape_mismatch=mismatch)
        )
    for path in map_b:
        if path not in map_a:
            out.append(AlignedComponent(path=path, status=AlignmentStatus.ONLY_B))
    return out


def sort_components(components: Iterable[AlignedComponent]) -> List[AlignedComponent]:
    return sorted(components, key=lambda c: c.path)


def summarize_alignment(components: Iterable[AlignedComponent]) -> Dict[str, int]:
    """Count entries per status, plus shape mismatches."""
    summary = {s.value: 0 for s in AlignmentStatus}
    summary["shapeMismatch"] = 0
    for c in components:
        summary[c.status.value] += 1
        if c.shape_mismatch:
            summary["shapeMismatch"] += 1
    return summary
