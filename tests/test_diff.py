"""
Tests for weight difference metrics, single-tensor diffs and batched model diffs.
"""

import math

import numpy as np
import pytest

from conftest import f32, write_container
from model_surgeon.analysis.decode import decode_tensor
from model_surgeon.analysis.diff import compute_metrics, compute_model_diffs, compute_tensor_diff
from model_surgeon.errors import TensorNotFound
from model_surgeon.formats.sharded import load_model


class TestMetrics:
    def test_reference_vectors(self):
        m = compute_metrics(np.array([1.0, 2.0]), np.array([3.0, 4.0]))
        assert m.cosine_similarity == pytest.approx(0.9838, abs=1e-4)
        assert m.l2_norm_diff == pytest.approx(2.828, abs=1e-3)
        assert m.max_abs_diff == 2.0
        assert m.mean_abs_diff == 2.0

    def test_identical_vectors(self):
        v = np.array([0.5, -1.0, 3.0])
        m = compute_metrics(v, v.copy())
        assert m.cosine_similarity == pytest.approx(1.0)
        assert m.l2_norm_diff == 0.0
        assert m.max_abs_diff == 0.0

    def test_common_prefix_only(self):
        m = compute_metrics(np.array([1.0, 2.0, 100.0]), np.array([1.0, 2.0]))
        assert m.max_abs_diff == 0.0

    def test_zero_vectors(self):
        zeros = np.zeros(3)
        assert compute_metrics(zeros, zeros).cosine_similarity == 1.0
        assert compute_metrics(zeros, np.ones(3)).cosine_similarity == 0.0

    def test_empty_inputs(self):
        m = compute_metrics(np.array([]), np.array([1.0]))
        assert (m.cosine_similarity, m.l2_norm_diff, m.max_abs_diff, m.mean_abs_diff) == (1.0, 0.0, 0.0, 0.0)

    def test_opposite_vectors(self):
        assert compute_metrics(np.array([1.0, 1.0]), np.array([-1.0, -1.0])).cosine_similarity == pytest.approx(-1.0)

    def test_non_finite_positions_are_skipped(self):
        v = decode_tensor(np.array([0x7C00, 0x3C00], dtype="<u2").tobytes(), "F16")
        assert math.isinf(v[0])
        m = compute_metrics(v, v.copy())
        assert (m.cosine_similarity, m.l2_norm_diff, m.max_abs_diff, m.mean_abs_diff) == (1.0, 0.0, 0.0, 0.0)

        m = compute_metrics(np.array([np.nan, 1.0, 2.0]), np.array([5.0, 1.0, 4.0]))
        assert m.max_abs_diff == 2.0
        assert m.mean_abs_diff == 1.0
        assert -1.0 <= m.cosine_similarity <= 1.0

    def test_all_non_finite(self):
        m = compute_metrics(np.array([np.inf, np.nan]), np.array([1.0, 2.0]))
        assert (m.cosine_similarity, m.l2_norm_diff, m.max_abs_diff, m.mean_abs_diff) == (1.0, 0.0, 0.0, 0.0)


@pytest.fixture
def model_pair(tmp_path):
    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()
    a = write_container(
        tmp_path / "a" / "model.safetensors",
        {
            "w": ("F32", (2,), f32(1, 2)),
            "big": ("F32", (4,), f32(1, 2, 3, 4)),
            "only_a": ("F32", (1,), f32(0)),
            "shaped": ("F32", (2,), f32(1, 1)),
        },
    )
    b = write_container(
        tmp_path / "b" / "model.safetensors",
        {
            "base_model.model.w": ("F32", (2,), f32(3, 4)),
            "big": ("F32", (4,), f32(1, 2, 3, 5)),
            "shaped": ("F32", (3,), f32(1, 1, 1)),
        },
    )
    return (str(a), load_model(str(a))), (str(b), load_model(str(b)))


class TestTensorDiff:
    def test_single_tensor_with_wrapper_prefix(self, model_pair):
        (base_a, map_a), (base_b, map_b) = model_pair
        diff = compute_tensor_diff(map_a, base_a, map_b, base_b, "w", preview_count=1)
        assert diff.metrics.max_abs_diff == 2.0
        assert diff.preview_a == [1.0]
        assert diff.preview_b == [3.0]
        assert diff.shape == (2,)

    def test_shapes_may_differ(self, model_pair):
        (base_a, map_a), (base_b, map_b) = model_pair
        diff = compute_tensor_diff(map_a, base_a, map_b, base_b, "shaped")
        assert diff.shape == (2,)
        assert diff.shape_b == (3,)
        assert diff.metrics.cosine_similarity == pytest.approx(1.0)

    def test_missing_in_b(self, model_pair):
        (base_a, map_a), (base_b, map_b) = model_pair
        with pytest.raises(TensorNotFound, match="model B"):
            compute_tensor_diff(map_a, base_a, map_b, base_b, "only_a")


class TestModelDiffs:
    def test_batch_policy(self, model_pair):
        (base_a, map_a), (base_b, map_b) = model_pair
        result = compute_model_diffs(
            map_a, base_a, map_b, base_b, ["w", "big", "only_a", "shaped"], element_limit=3
        )
        assert set(result.metrics) == {"w"}
        assert result.metrics["w"].l2_norm_diff == pytest.approx(math.sqrt(8))
        # too big, missing on one side, shape-incompatible
        assert sorted(result.skipped) == ["big", "only_a", "shaped"]
        assert result.errors == {}

    def test_read_failure_reported_per_path(self, model_pair):
        (base_a, map_a), (base_b, map_b) = model_pair
        broken = map_b.with_tensors(map_b.tensors, shard_header_lengths={})
        result = compute_model_diffs(map_a, base_a, broken, base_b, ["w", "big"])
        assert set(result.errors) == {"w", "big"}
        assert result.metrics == {}
