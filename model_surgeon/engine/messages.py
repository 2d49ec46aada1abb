"""
Typed request / response values of the engine surface.

Each message is a dataclass tagged with a ``type`` class attribute; hosts own
the wire encoding and can use ``to_wire`` for a JSON-able dict.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from model_surgeon.analysis.alignment import AlignedComponent
from model_surgeon.analysis.diff import DiffMetrics
from model_surgeon.analysis.lora import LoraAdapterMap
from model_surgeon.analysis.tree import ArchitectureNode
from model_surgeon.observability import to_dict
from model_surgeon.surgery.session import SurgeryOperation

PROTOCOL_VERSION = 1


@dataclass
class Message:
    type: ClassVar[str] = "message"


# --- requests -----------------------------------------------------------------


@dataclass
class LoadModel(Message):
    type: ClassVar[str] = "loadModel"
    file_path: str = ""
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class LoadComparison(Message):
    type: ClassVar[str] = "loadComparison"
    file_path: str = ""
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class RequestTensorDiff(Message):
    type: ClassVar[str] = "requestTensorDiff"
    path: str = ""
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class RequestModuleDiff(Message):
    type: ClassVar[str] = "requestModuleDiff"
    paths: List[str] = field(default_factory=list)
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class PerformSurgery(Message):
    type: ClassVar[str] = "performSurgery"
    operation: Optional[SurgeryOperation] = None
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class Undo(Message):
    type: ClassVar[str] = "undo"
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class Redo(Message):
    type: ClassVar[str] = "redo"
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class SaveModel(Message):
    type: ClassVar[str] = "saveModel"
    output_path: str = ""
    preserve_metadata: Optional[bool] = None
    protocol_version: int = PROTOCOL_VERSION


# --- responses ----------------------------------------------------------------


@dataclass
class ModelLoaded(Message):
    type: ClassVar[str] = "modelLoaded"
    tree: ArchitectureNode
    lora_map: LoraAdapterMap
    tensor_count: int
    file_path: str
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class ComparisonResult(Message):
    type: ClassVar[str] = "comparisonResult"
    aligned_components: List[AlignedComponent]
    tree_b: ArchitectureNode
    lora_map_b: LoraAdapterMap
    file_path_b: str
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class TensorDiffResult(Message):
    type: ClassVar[str] = "tensorDiffResult"
    path: str
    metrics: DiffMetrics
    preview_a: List[float]
    preview_b: List[float]
    shape: Tuple[int, ...]
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class ModuleDiffEntry:
    metrics: Optional[DiffMetrics] = None
    error: Optional[str] = None


@dataclass
class ModuleDiffResult(Message):
    type: ClassVar[str] = "moduleDiffResult"
    results: Dict[str, ModuleDiffEntry]
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class SurgeryResult(Message):
    type: ClassVar[str] = "surgeryResult"
    success: bool
    updated_tree: Optional[ArchitectureNode] = None
    pending_changes: int = 0
    error: Optional[str] = None
    code: Optional[str] = None
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class SaveResult(Message):
    type: ClassVar[str] = "saveResult"
    output_path: str
    bytes_written: int
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class Progress(Message):
    type: ClassVar[str] = "progress"
    task_id: str
    label: str
    percent: float
    protocol_version: int = PROTOCOL_VERSION


@dataclass
class ErrorResult(Message):
    type: ClassVar[str] = "error"
    message: str
    code: Optional[str] = None
    path: Optional[str] = None
    protocol_version: int = PROTOCOL_VERSION


def to_wire(message: Message) -> Dict[str, Any]:
    """Plain dict form with the ``type`` tag included."""
    out = to_dict(message)
    out["type"] = message.type
    return out
