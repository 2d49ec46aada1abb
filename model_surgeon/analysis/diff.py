"""
Weight difference metrics between two models.

Reads are grouped by shard file so each shard is opened at most once per batch;
shards are read concurrently, tensors within a shard sequentially.
"""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
from loguru import logger

from model_surgeon.analysis.decode import decode_tensor
from model_surgeon.analysis.lora import PEFT_PREFIX
from model_surgeon.config import DIFF_ELEMENT_LIMIT
from model_surgeon.errors import SurgeonError, TensorNotFound
from model_surgeon.formats.reader import group_by_shard, read_shard_batch, read_tensor_from_map
from model_surgeon.formats.sharded import UnifiedTensorMap
from model_surgeon.observability import Timer


@dataclass
class DiffMetrics:
    cosine_similarity: float
    l2_norm_diff: float
    max_abs_diff: float
    mean_abs_diff: float


@dataclass
class TensorDiff:
    metrics: DiffMetrics
    preview_a: List[float]
    preview_b: List[float]
    shape: Tuple[int, ...]
    shape_b: Tuple[int, ...] = ()


@dataclass
class ModelDiffResult:
    """Per-path outcome of a batch diff.

    Paths absent from both ``metrics`` and ``errors`` were skipped (not present in
    both models, shape-incompatible, or above the element limit).
    """

    metrics: Dict[str, DiffMetrics] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


def compute_metrics(a: np.ndarray, b: np.ndarray) -> DiffMetrics:
    """Cosine similarity, L2 / max / mean absolute difference over the common prefix.

    Positions where either side is inf or NaN are left out, so the metrics stay
    finite; if nothing finite remains the result is that of two empty inputs.
    """
    n = min(a.size, b.size)
    a = np.asarray(a, dtype=np.float64).ravel()[:n]
    b = np.asarray(b, dtype=np.float64).ravel()[:n]
    finite = np.isfinite(a) & np.isfinite(b)
    if not finite.all():
        a, b = a[finite], b[finite]
        n = a.size
    if n == 0:
        return DiffMetrics(cosine_similarity=1.0, l2_norm_diff=0.0, max_abs_diff=0.0, mean_abs_diff=0.0)

    dot = float(np.dot(a, b))
    norm_a = math.sqrt(float(np.dot(a, a)))
    norm_b = math.sqrt(float(np.dot(b, b)))
    if norm_a != 0.0 and norm_b != 0.0:
        cosine = dot / (norm_a * norm_b)
    elif norm_a == 0.0 and norm_b == 0.0:
        cosine = 1.0
    else:
        cosine = 0.0
    cosine = float(np.clip(cosine, -1.0, 1.0))

    diff = np.abs(a - b)
    return DiffMetrics(
        cosine_similarity=cosine,
        l2_norm_diff=math.sqrt(float(np.dot(diff, diff))),
        max_abs_diff=float(diff.max()),
        mean_abs_diff=float(diff.sum()) / n,
    )


def resolve_tensor_name(tensor_map: UnifiedTensorMap, path: str) -> Optional[str]:
    """Find the tensor for a canonical path, allowing for a PEFT wrapper prefix."""
    if path in tensor_map.tensors:
        return path
    prefixed = PEFT_PREFIX + path
    if prefixed in tensor_map.tensors:
        return prefixed
    return None


def _preview(values: np.ndarray, count: int) -> List[float]:
    return [float(v) for v in values[:count]]


def compute_tensor_diff(
    map_a: UnifiedTensorMap,
    base_a: str,
    map_b: UnifiedTensorMap,
    base_b: str,
    path: str,
    *,
    preview_count: int = 20,
) -> TensorDiff:
    """Diff one tensor present in both models (shapes may differ)."""
    name_a = resolve_tensor_name(map_a, path)
    name_b = resolve_tensor_name(map_b, path)
    if name_a is None:
        raise TensorNotFound(f'Tensor "{path}" not found in model A', path=base_a)
    if name_b is None:
        raise TensorNotFound(f'Tensor "{path}" not found in model B', path=base_b)
    rec_a = map_a.tensors[name_a]
    rec_b = map_b.tensors[name_b]
    values_a = decode_tensor(read_tensor_from_map(base_a, map_a, name_a), rec_a.dtype)
    values_b = decode_tensor(read_tensor_from_map(base_b, map_b, name_b), rec_b.dtype)
    return TensorDiff(
        metrics=compute_metrics(values_a, values_b),
        preview_a=_preview(values_a, preview_count),
        preview_b=_preview(values_b, preview_count),
        shape=tuple(rec_a.shape),
        shape_b=tuple(rec_b.shape),
    )


def _read_all(
    pool: ThreadPoolExecutor,
    base_path: str,
    tensor_map: UnifiedTensorMap,
    names: Iterable[str],
) -> Tuple[Dict[str, bytes], Dict[str, str]]:
    groups = group_by_shard(base_path, tensor_map, names)
    futures = {
        shard_path: pool.submit(read_shard_batch, shard_path, tensor_map, shard_names)
        for shard_path, shard_names in groups.items()
    }
    data: Dict[str, bytes] = {}
    errors: Dict[str, str] = {}
    for shard_path, fut in futures.items():
        try:
            data.update(fut.result())
        except (OSError, SurgeonError) as e:
            for name in groups[shard_path]:
                errors[name] = f"{shard_path}: {e}"
    return data, errors


def compute_model_diffs(
    map_a: UnifiedTensorMap,
    base_a: str,
    map_b: UnifiedTensorMap,
    base_b: str,
    paths: Iterable[str],
    *,
    element_limit: int = DIFF_ELEMENT_LIMIT,
    max_workers: int = 4,
) -> ModelDiffResult:
    """Eagerly diff matched, shape-compatible tensors under ``element_limit`` elements.

    Args:
        map_a, base_a: Model A tensor map and a path inside its directory.
        map_b, base_b: Same for model B.
        paths: Canonical paths to consider (usually the matched parameters).
        element_limit: Larger tensors are skipped, not errors.
        max_workers: Threads used to read shard files concurrently.
    """
    result = ModelDiffResult()
    eligible: Dict[str, Tuple[str, str]] = {}
    for path in paths:
        name_a = resolve_tensor_name(map_a, path)
        name_b = resolve_tensor_name(map_b, path)
        if name_a is None or name_b is None:
            result.skipped.append(path)
            continue
        rec_a = map_a.tensors[name_a]
        rec_b = map_b.tensors[name_b]
        if tuple(rec_a.shape) != tuple(rec_b.shape) or rec_a.numel > element_limit:
            result.skipped.append(path)
            continue
        if (
            rec_a.shard_file not in map_a.shard_header_lengths
            or rec_b.shard_file not in map_b.shard_header_lengths
        ):
            result.errors[path] = f"Header length not found for shard of \"{path}\""
            continue
        eligible[path] = (name_a, name_b)

    if not eligible:
        return result

    with Timer("model_diff") as t, ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        data_a, errors_a = _read_all(pool, base_a, map_a, [a for a, _ in eligible.values()])
        data_b, errors_b = _read_all(pool, base_b, map_b, [b for _, b in eligible.values()])

        for path, (name_a, name_b) in eligible.items():
            err = errors_a.get(name_a) or errors_b.get(name_b)
            if err is not None:
                result.errors[path] = err
                continue
            try:
                values_a = decode_tensor(data_a[name_a], map_a.tensors[name_a].dtype)
                values_b = decode_tensor(data_b[name_b], map_b.tensors[name_b].dtype)
            except SurgeonError as e:
                result.errors[path] = str(e)
                continue
            result.metrics[path] = compute_metrics(values_a, values_b)

    logger.debug(
        "Diffed {n} tensors ({e} errors, {s} skipped) in {ms:.2f}ms",
        n=len(result.metrics),
        e=len(result.errors),
        s=len(result.skipped),
        ms=t.duration_ms,
    )
    return result
