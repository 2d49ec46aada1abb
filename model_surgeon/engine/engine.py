"""
Engine facade: the operation surface consumed by a host (CLI, editor, server).

The engine is an ordinary caller-owned object; several can coexist. Heavy work
runs on a ``WorkerPool`` and every public operation is an awaitable that either
returns a plain result value or raises a ``SurgeonError``. ``dispatch`` wraps
that into typed result messages for message-driven hosts.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional

from loguru import logger

from model_surgeon.analysis.alignment import AlignmentStatus, align_architectures
from model_surgeon.analysis.diff import compute_model_diffs, compute_tensor_diff
from model_surgeon.analysis.lora import (
    PEFT_PREFIX,
    AdapterConfig,
    LoraAdapterMap,
    detect_lora_adapters,
    load_adapter_config,
)
from model_surgeon.analysis.tree import ArchitectureNode, NodeKind, build_architecture_tree
from model_surgeon.config import EngineConfig
from model_surgeon.engine.messages import (
    PROTOCOL_VERSION,
    ComparisonResult,
    ErrorResult,
    LoadComparison,
    LoadModel,
    Message,
    ModelLoaded,
    ModuleDiffEntry,
    ModuleDiffResult,
    PerformSurgery,
    Progress,
    Redo,
    RequestModuleDiff,
    RequestTensorDiff,
    SaveModel,
    SaveResult,
    SurgeryResult,
    TensorDiffResult,
    Undo,
)
from model_surgeon.engine.workers import WorkerPool
from model_surgeon.errors import (
    InvalidOperation,
    NoActiveSession,
    ProtocolMismatch,
    SourceModelUnavailable,
    SurgeonError,
)
from model_surgeon.formats.sharded import UnifiedTensorMap, load_model, model_base_path
from model_surgeon.surgery.save import save_surgery_result
from model_surgeon.surgery.session import SurgeryOperation, SurgerySession

ProgressCallback = Callable[[Progress], None]


@dataclass
class LoadedModel:
    """One opened model and everything derived from it."""

    file_path: str
    base_path: str
    tensor_map: UnifiedTensorMap
    adapter_config: Optional[AdapterConfig]
    lora_map: LoraAdapterMap
    tree: ArchitectureNode


class ModelEngine:
    """Caller-owned engine holding model A, optional model B and a surgery session."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        pool: Optional[WorkerPool] = None,
    ):
        self.config = config or EngineConfig()
        self.config.validate()
        self.on_progress = on_progress
        self._owns_pool = pool is None
        self.pool = pool or WorkerPool(self.config.max_workers)
        self.model_a: Optional[LoadedModel] = None
        self.model_b: Optional[LoadedModel] = None
        self.session: Optional[SurgerySession] = None

    # --- helpers ---------------------------------------------------------------

    def _progress(self, task_id: str, label: str, percent: float) -> None:
        if self.on_progress is not None:
            self.on_progress(Progress(task_id=task_id, label=label, percent=percent))

    def _load(self, path: str) -> LoadedModel:
        cfg = self.config
        tensor_map = load_model(
            path,
            index_filename=cfg.index_filename,
            max_workers=cfg.max_workers,
            max_header_bytes=cfg.max_header_bytes,
        )
        adapter_config = load_adapter_config(path, filename=cfg.adapter_config_filename)
        lora_map = detect_lora_adapters(tensor_map.tensors, adapter_config)
        return LoadedModel(
            file_path=path,
            base_path=model_base_path(path, index_filename=cfg.index_filename),
            tensor_map=tensor_map,
            adapter_config=adapter_config,
            lora_map=lora_map,
            tree=build_architecture_tree(tensor_map.tensors, lora_map),
        )

    def _require_a(self) -> LoadedModel:
        if self.model_a is None or self.session is None:
            raise NoActiveSession("No model is loaded")
        return self.model_a

    def _require_b(self) -> LoadedModel:
        if self.model_b is None:
            raise SourceModelUnavailable("No comparison model is loaded")
        return self.model_b

    def _current_a_map(self) -> UnifiedTensorMap:
        self._require_a()
        return self.session.current_map()

    def _rebuild_a(self) -> ArchitectureNode:
        """Re-detect adapters and rebuild model A's tree from the session state."""
        a = self._require_a()
        tensor_map = self.session.current_map()
        a.lora_map = detect_lora_adapters(tensor_map.tensors, a.adapter_config)
        a.tree = build_architecture_tree(tensor_map.tensors, a.lora_map)
        return a.tree

    # --- operations ------------------------------------------------------------

    async def open(self, path: str) -> ModelLoaded:
        self._progress("load", "Parsing model header", 10)
        loaded = await self.pool.run(self._load, path)
        self._progress("load", "Building architecture tree", 90)
        self.model_a = loaded
        self.model_b = None
        self.session = SurgerySession(loaded.tensor_map)
        logger.info(
            "Opened {path}: {n} tensors, {m} LoRA modules",
            path=path,
            n=len(loaded.tensor_map),
            m=len(loaded.lora_map),
        )
        self._progress("load", "Done", 100)
        return ModelLoaded(
            tree=loaded.tree,
            lora_map=loaded.lora_map,
            tensor_count=len(loaded.tensor_map),
            file_path=path,
        )

    async def open_comparison(self, path: str) -> ComparisonResult:
        a = self._require_a()
        self._progress("load-compare", "Parsing model B header", 10)
        b = await self.pool.run(self._load, path)
        self._progress("load-compare", "Aligning architectures", 50)
        components = align_architectures(a.tree, b.tree)

        parameters = [
            c.path
            for c in components
            if c.status is AlignmentStatus.MATCHED
            and not c.shape_mismatch
            and _is_parameter_path(a.tree, c.path)
        ]
        self._progress("load-compare", "Computing weight differences", 75)
        diffs = await self.pool.run(
            compute_model_diffs,
            self.session.current_map(),
            a.base_path,
            b.tensor_map,
            b.base_path,
            sorted(parameters),
            element_limit=self.config.diff_element_limit,
            max_workers=self.config.max_workers,
        )
        for c in components:
            c.diff_metrics = diffs.metrics.get(c.path)
        for failed, err in diffs.errors.items():
            logger.warning("Diff failed for {path}: {err}", path=failed, err=err)

        self.model_b = b
        self._progress("load-compare", "Done", 100)
        return ComparisonResult(
            aligned_components=components,
            tree_b=b.tree,
            lora_map_b=b.lora_map,
            file_path_b=path,
        )

    async def request_tensor_diff(self, path: str) -> TensorDiffResult:
        a = self._require_a()
        b = self._require_b()
        diff = await self.pool.run(
            compute_tensor_diff,
            self._current_a_map(),
            a.base_path,
            b.tensor_map,
            b.base_path,
            path,
            preview_count=self.config.preview_count,
        )
        return TensorDiffResult(
            path=path,
            metrics=diff.metrics,
            preview_a=diff.preview_a,
            preview_b=diff.preview_b,
            shape=diff.shape,
        )

    async def request_module_diff(self, paths: List[str]) -> ModuleDiffResult:
        """Diff each path independently; failures are reported per path."""
        a = self._require_a()
        b = self._require_b()
        map_a = self._current_a_map()

        def one(path: str) -> ModuleDiffEntry:
            try:
                diff = compute_tensor_diff(
                    map_a, a.base_path, b.tensor_map, b.base_path, path, preview_count=0
                )
            except (SurgeonError, OSError) as e:
                return ModuleDiffEntry(error=str(e))
            return ModuleDiffEntry(metrics=diff.metrics)

        entries = await asyncio.gather(*(self.pool.run(one, p) for p in paths))
        return ModuleDiffResult(results=dict(zip(paths, entries)))

    async def perform_surgery(self, operation: SurgeryOperation) -> SurgeryResult:
        """Validate and apply one operation; nothing is pushed unless it fully succeeds."""
        self._require_a()
        if operation is None:
            raise InvalidOperation("operation is required")
        source = None
        source_base = None
        if self.model_b is not None:
            source = self.model_b.tensor_map
            source_base = self.model_b.base_path
        session = self.session
        state = await self.pool.run(session.compute, operation, source, source_base)
        # pushed on the caller's side, after the computation has completed
        session.push(state)
        tree = self._rebuild_a()
        logger.info(
            "Surgery {op} on {target}; {p} pending changes",
            op=operation.kind.value,
            target=operation.target_path,
            p=session.pending_changes_count,
        )
        return SurgeryResult(
            success=True, updated_tree=tree, pending_changes=session.pending_changes_count
        )

    async def undo(self) -> SurgeryResult:
        self._require_a()
        moved = self.session.undo()
        return SurgeryResult(
            success=moved,
            updated_tree=self._rebuild_a(),
            pending_changes=self.session.pending_changes_count,
        )

    async def redo(self) -> SurgeryResult:
        self._require_a()
        moved = self.session.redo()
        return SurgeryResult(
            success=moved,
            updated_tree=self._rebuild_a(),
            pending_changes=self.session.pending_changes_count,
        )

    async def save(self, output_path: str, *, preserve_metadata: Optional[bool] = None) -> SaveResult:
        a = self._require_a()
        preserve = self.config.preserve_metadata if preserve_metadata is None else preserve_metadata
        loop = asyncio.get_running_loop()

        def report(fraction: float) -> None:
            loop.call_soon_threadsafe(self._progress, "save", "Writing tensors", fraction * 100)

        written = await self.pool.run(
            save_surgery_result,
            self.session,
            a.base_path,
            output_path,
            preserve_metadata=preserve,
            on_progress=report if self.on_progress is not None else None,
        )
        return SaveResult(output_path=output_path, bytes_written=written)

    async def dispatch(self, request: Message) -> Message:
        """Route a request message; failures come back as result messages."""
        version = getattr(request, "protocol_version", None)
        if version != PROTOCOL_VERSION:
            err = ProtocolMismatch(
                f"Protocol version mismatch: expected {PROTOCOL_VERSION}, got {version}"
            )
            return ErrorResult(message=str(err), code=err.code)
        try:
            if isinstance(request, LoadModel):
                return await self.open(request.file_path)
            if isinstance(request, LoadComparison):
                return await self.open_comparison(request.file_path)
            if isinstance(request, RequestTensorDiff):
                return await self.request_tensor_diff(request.path)
            if isinstance(request, RequestModuleDiff):
                return await self.request_module_diff(request.paths)
            if isinstance(request, PerformSurgery):
                try:
                    return await self.perform_surgery(request.operation)
                except SurgeonError as e:
                    return SurgeryResult(success=False, error=str(e), code=e.code)
            if isinstance(request, Undo):
                return await self.undo()
            if isinstance(request, Redo):
                return await self.redo()
            if isinstance(request, SaveModel):
                return await self.save(request.output_path, preserve_metadata=request.preserve_metadata)
            raise InvalidOperation(f"Unknown request type: {request.type}")
        except SurgeonError as e:
            logger.error("{type} failed: {err}", type=request.type, err=e)
            return ErrorResult(message=str(e), code=e.code, path=e.path)
        except OSError as e:
            logger.error("{type} failed: {err}", type=request.type, err=e)
            return ErrorResult(message=str(e), code="IO_ERROR", path=e.filename)

    def close(self) -> None:
        if self._owns_pool:
            self.pool.shutdown()

    async def __aenter__(self) -> "ModelEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


def _is_parameter_path(tree: ArchitectureNode, path: str) -> bool:
    node = tree.find(path)
    if node is None:
        node = tree.find(PEFT_PREFIX + path)
    return node is not None and node.kind is NodeKind.PARAMETER

