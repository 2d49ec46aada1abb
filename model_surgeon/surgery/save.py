"""
Persist the current state of a surgery session as a new container file.
"""

from __future__ import annotations

import json
from typing import Dict, Optional

from loguru import logger

from model_surgeon.formats.reader import read_tensor_data
from model_surgeon.formats.serializer import ProgressSink, SerializedTensor, serialize
from model_surgeon.formats.sharded import ShardedTensorRecord, UnifiedTensorMap
from model_surgeon.surgery.session import SurgerySession

OPERATIONS_KEY = "model_surgeon.operations"
SOURCE_KEY = "model_surgeon.source"


def _provider(base_path: str, state_map: UnifiedTensorMap, record: ShardedTensorRecord):
    # records carry their own shard and offsets, so renamed or grafted
    # tensors are read from wherever their bytes actually live
    def read() -> bytes:
        return read_tensor_data(
            state_map.shard_path(base_path, record.shard_file),
            state_map.shard_header_lengths[record.shard_file],
            record.data_offsets,
        )

    return read


def save_surgery_result(
    session: SurgerySession,
    base_path: str,
    output_path: str,
    *,
    preserve_metadata: bool = True,
    on_progress: Optional[ProgressSink] = None,
) -> int:
    """Write the session's current tensor map to ``output_path``.

    Args:
        session: Session whose cursor state is saved.
        base_path: Path inside the original model directory (index or shard file).
        output_path: Destination container file.
        preserve_metadata: Record the applied operations and source path in
            ``__metadata__`` when there is any history.
        on_progress: Receives the written fraction after each tensor.

    Returns:
        Total bytes written.
    """
    state_map = session.current_map()
    metadata: Dict[str, str] = dict(state_map.metadata)
    history = session.history
    if preserve_metadata and history:
        metadata[OPERATIONS_KEY] = json.dumps([op.to_dict() for op in history])
        metadata[SOURCE_KEY] = base_path

    tensors = {
        name: SerializedTensor(
            dtype=record.dtype,
            shape=record.shape,
            byte_length=record.nbytes,
            data_provider=_provider(base_path, state_map, record),
        )
        for name, record in state_map.tensors.items()
    }
    written = serialize(tensors, output_path, metadata=metadata, on_progress=on_progress)
    logger.info(
        "Saved {n} tensors ({ops} operations) to {out}",
        n=len(tensors),
        ops=len(history),
        out=output_path,
    )
    return written
