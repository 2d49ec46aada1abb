"""
Undoable surgery over a unified tensor map.

The session keeps a list of immutable snapshots and a cursor. Every operation
computes a brand-new tensor map from the snapshot under the cursor, drops any
redo branch, and appends the result. Existing snapshots are never modified.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from loguru import logger

from model_surgeon.analysis.lora import has_lora_marker
from model_surgeon.errors import InvalidOperation, SourceModelUnavailable
from model_surgeon.formats.sharded import ShardedTensorRecord, UnifiedTensorMap


class OperationKind(str, Enum):
    RENAME_TENSOR = "renameTensor"
    REMOVE_TENSOR = "removeTensor"
    REPLACE_TENSOR = "replaceTensor"
    RENAME_LORA_ADAPTER = "renameLoraAdapter"
    REMOVE_LORA_ADAPTER = "removeLoraAdapter"


@dataclass(frozen=True)
class SurgeryOperation:
    kind: OperationKind
    target_path: str
    new_name: Optional[str] = None
    source_model: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "SurgeryOperation":
        kind = raw.get("operationType", raw.get("kind"))
        try:
            kind = OperationKind(kind)
        except ValueError as e:
            raise InvalidOperation(f"Unknown operation type: {kind}") from e
        target = raw.get("targetPath", raw.get("target_path"))
        if not isinstance(target, str):
            raise InvalidOperation("targetPath is required")
        return cls(
            kind=kind,
            target_path=target,
            new_name=raw.get("newName", raw.get("new_name")),
            source_model=raw.get("sourceModel", raw.get("source_model")),
        )

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {"operationType": self.kind.value, "targetPath": self.target_path}
        if self.new_name is not None:
            out["newName"] = self.new_name
        if self.source_model is not None:
            out["sourceModel"] = self.source_model
        return out


@dataclass(frozen=True)
class SurgeryState:
    tensors: Dict[str, ShardedTensorRecord]
    metadata: Dict[str, str]
    shard_header_lengths: Dict[str, int]
    operation: Optional[SurgeryOperation] = None


def _under(key: str, target: str) -> bool:
    """``key`` is ``target`` itself or lies in its subtree."""
    return key == target or key.startswith(target + ".")


def _replace_last_segment(path: str, new_name: str) -> str:
    parts = path.split(".")
    parts[-1] = new_name
    return ".".join(parts)


@dataclass
class SurgerySession:
    """Snapshot history with undo/redo for one model.

    Not safe for concurrent mutation; callers serialize access.
    """

    initial: UnifiedTensorMap
    _states: List[SurgeryState] = field(init=False, repr=False)
    _cursor: int = field(init=False, default=0, repr=False)

    def __post_init__(self) -> None:
        self._states = [
            SurgeryState(
                tensors=dict(self.initial.tensors),
                metadata=dict(self.initial.metadata),
                shard_header_lengths=dict(self.initial.shard_header_lengths),
            )
        ]

    # --- history ---------------------------------------------------------------

    @property
    def current_state(self) -> SurgeryState:
        return self._states[self._cursor]

    def current_map(self) -> UnifiedTensorMap:
        state = self.current_state
        return UnifiedTensorMap(
            metadata=dict(state.metadata),
            tensors=dict(state.tensors),
            shard_header_lengths=dict(state.shard_header_lengths),
        )

    @property
    def pending_changes_count(self) -> int:
        return self._cursor

    @property
    def can_undo(self) -> bool:
        return self._cursor > 0

    @property
    def can_redo(self) -> bool:
        return self._cursor < len(self._states) - 1

    @property
    def history(self) -> List[SurgeryOperation]:
        """Operations applied from the original state up to the cursor."""
        return [s.operation for s in self._states[1 : self._cursor + 1] if s.operation is not None]

    def undo(self) -> bool:
        if not self.can_undo:
            return False
        self._cursor -= 1
        return True

    def redo(self) -> bool:
        if not self.can_redo:
            return False
        self._cursor += 1
        return True

    def push(self, state: SurgeryState) -> None:
        """Discard the redo branch and make ``state`` current."""
        del self._states[self._cursor + 1 :]
        self._states.append(state)
        self._cursor += 1

    def _derive(
        self,
        operation: SurgeryOperation,
        tensors: Dict[str, ShardedTensorRecord],
        shard_header_lengths: Optional[Dict[str, int]] = None,
    ) -> SurgeryState:
        current = self.current_state
        return SurgeryState(
            tensors=tensors,
            metadata=dict(current.metadata),
            shard_header_lengths=dict(
                current.shard_header_lengths if shard_header_lengths is None else shard_header_lengths
            ),
            operation=operation,
        )

    def _rewrite(
        self, rename: Callable[[str], Optional[str]]
    ) -> Dict[str, ShardedTensorRecord]:
        """Apply ``rename`` to every key; renamed keys win over colliding untouched keys."""
        renamed: Dict[str, ShardedTensorRecord] = {}
        kept: Dict[str, ShardedTensorRecord] = {}
        for key, record in self.current_state.tensors.items():
            new_key = rename(key)
            if new_key is None:
                kept[key] = record
            else:
                renamed[new_key] = record
        collisions = [k for k in kept if k in renamed]
        if collisions:
            logger.warning(
                "Rename overwrites {n} existing tensors, e.g. {key}", n=len(collisions), key=collisions[0]
            )
        out: Dict[str, ShardedTensorRecord] = {}
        for key, record in self.current_state.tensors.items():
            new_key = rename(key)
            if new_key is None:
                if key not in renamed:
                    out[key] = record
            else:
                out[new_key] = renamed[new_key]
        return out

    # --- operations ------------------------------------------------------------

    def compute_rename_component(self, target_path: str, new_name: str) -> SurgeryState:
        new_base = _replace_last_segment(target_path, new_name)

        def rename(key: str) -> Optional[str]:
            if _under(key, target_path):
                return new_base + key[len(target_path):]
            return None

        op = SurgeryOperation(OperationKind.RENAME_TENSOR, target_path, new_name=new_name)
        return self._derive(op, self._rewrite(rename))

    def compute_remove_tensor(self, target_path: str) -> SurgeryState:
        tensors = {
            k: v for k, v in self.current_state.tensors.items() if not _under(k, target_path)
        }
        return self._derive(SurgeryOperation(OperationKind.REMOVE_TENSOR, target_path), tensors)

    def compute_remove_lora_adapter(self, target_path: str) -> SurgeryState:
        tensors = {
            k: v
            for k, v in self.current_state.tensors.items()
            if not (_under(k, target_path) and has_lora_marker(k))
        }
        return self._derive(SurgeryOperation(OperationKind.REMOVE_LORA_ADAPTER, target_path), tensors)

    def compute_rename_lora_adapter(self, target_path: str, new_adapter_prefix: str) -> SurgeryState:
        def rename(key: str) -> Optional[str]:
            if _under(key, target_path) and has_lora_marker(key):
                return new_adapter_prefix + key[len(target_path):]
            return None

        op = SurgeryOperation(
            OperationKind.RENAME_LORA_ADAPTER, target_path, new_name=new_adapter_prefix
        )
        return self._derive(op, self._rewrite(rename))

    def compute_replace_component(
        self,
        target_path: str,
        source: UnifiedTensorMap,
        source_base_path: str,
    ) -> SurgeryState:
        """Swap the subtree at ``target_path`` for the source model's subtree.

        Grafted tensors are re-pointed at absolute shard paths under
        ``source_base_path``'s directory, so shard basenames shared by both
        models never collide.
        """
        current = self.current_state
        tensors = {k: v for k, v in current.tensors.items() if not _under(k, target_path)}
        lengths = dict(current.shard_header_lengths)
        for key, record in source.tensors.items():
            if not _under(key, target_path):
                continue
            length = source.shard_header_lengths.get(record.shard_file)
            record = ShardedTensorRecord.from_record(
                record, source.shard_path(source_base_path, record.shard_file)
            )
            if length is not None:
                lengths[record.shard_file] = length
            tensors[key] = record
        op = SurgeryOperation(OperationKind.REPLACE_TENSOR, target_path, source_model="B")
        return self._derive(op, tensors, lengths)

    # Mutating wrappers: compute, then push.

    def rename_component(self, target_path: str, new_name: str) -> None:
        self.push(self.compute_rename_component(target_path, new_name))

    def remove_tensor(self, target_path: str) -> None:
        self.push(self.compute_remove_tensor(target_path))

    def remove_lora_adapter(self, target_path: str) -> None:
        self.push(self.compute_remove_lora_adapter(target_path))

    def rename_lora_adapter(self, target_path: str, new_adapter_prefix: str) -> None:
        self.push(self.compute_rename_lora_adapter(target_path, new_adapter_prefix))

    def replace_component(
        self,
        target_path: str,
        source: UnifiedTensorMap,
        source_base_path: str,
    ) -> None:
        self.push(self.compute_replace_component(target_path, source, source_base_path))

    def compute(
        self,
        operation: SurgeryOperation,
        source: Optional[UnifiedTensorMap] = None,
        source_base_path: Optional[str] = None,
    ) -> SurgeryState:
        """Validate ``operation`` and compute its resulting state without pushing it.

        Raises:
            InvalidOperation: missing ``new_name`` for renames, unknown kind.
            SourceModelUnavailable: replace requested without a source model
                or without the path it was loaded from.
        """
        kind = operation.kind
        if kind in (OperationKind.RENAME_TENSOR, OperationKind.RENAME_LORA_ADAPTER):
            if not operation.new_name:
                raise InvalidOperation(f"newName required for {kind.value}", path=operation.target_path)
        if kind is OperationKind.RENAME_TENSOR:
            return self.compute_rename_component(operation.target_path, operation.new_name)
        if kind is OperationKind.REMOVE_TENSOR:
            return self.compute_remove_tensor(operation.target_path)
        if kind is OperationKind.RENAME_LORA_ADAPTER:
            return self.compute_rename_lora_adapter(operation.target_path, operation.new_name)
        if kind is OperationKind.REMOVE_LORA_ADAPTER:
            return self.compute_remove_lora_adapter(operation.target_path)
        if kind is OperationKind.REPLACE_TENSOR:
            if (
                source is None
                or source_base_path is None
                or operation.source_model not in (None, "B")
            ):
                raise SourceModelUnavailable(
                    "Source model B not available", path=operation.target_path
                )
            return self.compute_replace_component(operation.target_path, source, source_base_path)
        raise InvalidOperation(f"Unknown operation type: {kind}", path=operation.target_path)

    def apply(
        self,
        operation: SurgeryOperation,
        source: Optional[UnifiedTensorMap] = None,
        source_base_path: Optional[str] = None,
    ) -> SurgeryState:
        state = self.compute(operation, source, source_base_path)
        self.push(state)
        logger.debug(
            "Applied {op} on {target}: {n} tensors, {p} pending",
            op=operation.kind.value,
            target=operation.target_path,
            n=len(state.tensors),
            p=self.pending_changes_count,
        )
        return state
