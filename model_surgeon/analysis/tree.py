"""
Architecture tree builder.

Turns flat dotted tensor names into a hierarchy of components, numbered blocks
and parameter leaves. The build is iterative so very deep models do not hit the
recursion limit, and the returned tree is never mutated afterwards.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from loguru import logger

from model_surgeon.analysis.lora import LoraAdapterMap, LoraAdapterPair, lora_tensor_names
from model_surgeon.formats.safetensors import TensorRecord

_NUMERIC = re.compile(r"^\d+$")

ROOT_NAME = "model"
SIBLING_ORDERS = ("declaration", "alphabetical")


class NodeKind(str, Enum):
    ROOT = "root"
    BLOCK = "block"
    COMPONENT = "component"
    PARAMETER = "parameter"


@dataclass(frozen=True)
class TensorInfo:
    dtype: str
    shape: Tuple[int, ...]


@dataclass
class ArchitectureNode:
    name: str
    full_path: str
    kind: NodeKind
    children: List["ArchitectureNode"] = field(default_factory=list)
    tensor_info: Optional[TensorInfo] = None
    adapters: Optional[Dict[str, LoraAdapterPair]] = None
    block_index: Optional[int] = None
    insertion_order: int = 0

    def child(self, name: str) -> Optional["ArchitectureNode"]:
        for c in self.children:
            if c.name == name:
                return c
        return None

    def find(self, path: str) -> Optional["ArchitectureNode"]:
        """Resolve a dotted path relative to this node ('' is the node itself)."""
        node: Optional[ArchitectureNode] = self
        if not path:
            return node
        for segment in path.split("."):
            node = node.child(segment)
            if node is None:
                return None
        return node

    def walk(self) -> Iterator["ArchitectureNode"]:
        """Pre-order traversal in display order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


def is_numeric_segment(segment: str) -> bool:
    return _NUMERIC.match(segment) is not None


def _sort_key_declaration(node: ArchitectureNode):
    if node.block_index is not None:
        return (0, node.block_index, 0, "")
    return (1, 0, node.insertion_order, node.name)


def _sort_key_alphabetical(node: ArchitectureNode):
    if node.block_index is not None:
        return (0, node.block_index, "")
    return (1, 0, node.name)


def build_architecture_tree(
    tensors: Mapping[str, TensorRecord],
    lora_map: Optional[LoraAdapterMap] = None,
    *,
    sibling_order: str = "declaration",
) -> ArchitectureNode:
    """Build the architecture tree for one model.

    Args:
        tensors: Tensor name → record, in declaration order.
        lora_map: Detected adapters; their A/B tensors are kept out of the tree
            and the pairs are attached to the module node instead.
        sibling_order: ``"declaration"`` orders named siblings by first appearance,
            ``"alphabetical"`` by name. Numbered blocks always come first, by index.
    """
    if sibling_order not in SIBLING_ORDERS:
        raise ValueError(f"sibling_order must be one of {SIBLING_ORDERS}, got {sibling_order!r}")
    lora_map = lora_map or {}
    skip = lora_tensor_names(lora_map)

    root = ArchitectureNode(name=ROOT_NAME, full_path="", kind=NodeKind.ROOT)
    by_path: Dict[str, ArchitectureNode] = {"": root}
    order = 0

    for name, record in tensors.items():
        if name in skip:
            continue
        segments = name.split(".")
        parent = root
        for depth, segment in enumerate(segments):
            path = ".".join(segments[: depth + 1])
            is_leaf = depth == len(segments) - 1
            node = by_path.get(path)
            if node is None:
                block = is_numeric_segment(segment) and not is_leaf
                node = ArchitectureNode(
                    name=segment,
                    full_path=path,
                    kind=NodeKind.BLOCK if block else NodeKind.COMPONENT,
                    block_index=int(segment) if block else None,
                    insertion_order=order,
                )
                parent.children.append(node)
                by_path[path] = node
            if is_leaf:
                # a name that is both a tensor and a prefix of others stays a parameter
                node.kind = NodeKind.PARAMETER
                node.block_index = None
                node.tensor_info = TensorInfo(dtype=record.dtype, shape=tuple(record.shape))
            parent = node
        order += 1

    unattached = 0
    for module_path, pairs in lora_map.items():
        node = by_path.get(module_path)
        if node is None:
            # adapters stored apart from their base model
            unattached += 1
            continue
        if node.adapters is None:
            node.adapters = {}
        for pair in pairs:
            node.adapters[pair.adapter_name] = pair
    if unattached:
        logger.debug("{n} LoRA modules had no matching component in the tree", n=unattached)

    key = _sort_key_declaration if sibling_order == "declaration" else _sort_key_alphabetical
    for node in by_path.values():
        node.children.sort(key=key)
    return root


def iter_parameters(tree: ArchitectureNode) -> Iterator[ArchitectureNode]:
    return (n for n in tree.walk() if n.kind is NodeKind.PARAMETER)


def count_parameters(tree: ArchitectureNode) -> int:
    """Total element count over all parameter leaves."""
    total = 0
    for node in iter_parameters(tree):
        n = 1
        for d in node.tensor_info.shape:
            n *= d
        total += n
    return total
