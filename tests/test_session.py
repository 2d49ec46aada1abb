"""
Tests for the undoable surgery session.
"""

import pytest

from conftest import f32, write_container
from model_surgeon.errors import InvalidOperation, SourceModelUnavailable
from model_surgeon.formats.reader import read_tensor_from_map
from model_surgeon.formats.sharded import ShardedTensorRecord, UnifiedTensorMap, load_model
from model_surgeon.surgery.session import OperationKind, SurgeryOperation, SurgerySession


def tmap(*names, shard="model.safetensors", length=128):
    tensors = {
        n: ShardedTensorRecord(dtype="F32", shape=(1,), data_offsets=(4 * i, 4 * i + 4), shard_file=shard)
        for i, n in enumerate(names)
    }
    return UnifiedTensorMap(metadata={"format": "pt"}, tensors=tensors, shard_header_lengths={shard: length})


BASE = tmap(
    "embed.weight",
    "layers.1.attn.q.weight",
    "layers.1.attn.q.lora_A.weight",
    "layers.1.attn.q.lora_B.weight",
    "layers.1.mlp.weight",
    "layers.10.mlp.weight",
    "norm.weight",
)


class TestHistory:
    def test_undo_redo_cycle(self):
        s = SurgerySession(BASE)
        n = len(s.current_state.tensors)
        s.remove_tensor("norm.weight")
        assert len(s.current_state.tensors) == n - 1
        assert s.pending_changes_count == 1
        assert s.undo()
        assert len(s.current_state.tensors) == n
        assert s.pending_changes_count == 0
        assert s.redo()
        assert len(s.current_state.tensors) == n - 1
        assert s.pending_changes_count == 1

    def test_new_operation_discards_redo_branch(self):
        s = SurgerySession(BASE)
        s.remove_tensor("norm.weight")
        s.undo()
        s.remove_tensor("embed.weight")
        assert not s.can_redo
        assert s.redo() is False
        assert "norm.weight" in s.current_state.tensors
        assert "embed.weight" not in s.current_state.tensors

    def test_undo_at_start_is_noop(self):
        s = SurgerySession(BASE)
        assert s.undo() is False
        assert s.pending_changes_count == 0

    def test_snapshots_are_not_mutated(self):
        s = SurgerySession(BASE)
        before = dict(s.current_state.tensors)
        s.rename_component("layers.1", "one")
        s.undo()
        assert s.current_state.tensors == before
        assert BASE.tensors == before

    def test_history_follows_cursor(self):
        s = SurgerySession(BASE)
        s.remove_tensor("norm.weight")
        s.rename_component("embed", "tok_embeddings")
        assert [op.kind for op in s.history] == [OperationKind.REMOVE_TENSOR, OperationKind.RENAME_TENSOR]
        s.undo()
        assert [op.kind for op in s.history] == [OperationKind.REMOVE_TENSOR]


class TestOperations:
    def test_rename_replaces_last_segment_of_subtree(self):
        s = SurgerySession(BASE)
        s.rename_component("layers.1", "one")
        keys = set(s.current_state.tensors)
        assert "layers.one.attn.q.weight" in keys
        assert "layers.one.mlp.weight" in keys
        # a sibling sharing the textual prefix is not under the target
        assert "layers.10.mlp.weight" in keys
        assert not any(k.startswith("layers.1.") for k in keys)

    def test_rename_keeps_record(self):
        s = SurgerySession(BASE)
        s.rename_component("norm.weight", "scale")
        assert s.current_state.tensors["norm.scale"] == BASE.tensors["norm.weight"]

    def test_remove_subtree(self):
        s = SurgerySession(BASE)
        s.remove_tensor("layers.1")
        assert set(s.current_state.tensors) == {"embed.weight", "layers.10.mlp.weight", "norm.weight"}

    def test_remove_lora_keeps_base_weight(self):
        s = SurgerySession(BASE)
        s.remove_lora_adapter("layers.1.attn.q")
        keys = set(s.current_state.tensors)
        assert "layers.1.attn.q.weight" in keys
        assert not any("lora_" in k for k in keys)

    def test_rename_lora_leaves_base_weight(self):
        s = SurgerySession(BASE)
        s.rename_lora_adapter("layers.1.attn.q", "layers.1.attn.query")
        keys = set(s.current_state.tensors)
        assert "layers.1.attn.query.lora_A.weight" in keys
        assert "layers.1.attn.query.lora_B.weight" in keys
        assert "layers.1.attn.q.weight" in keys
        assert "layers.1.attn.query.weight" not in keys

    def test_replace_grafts_source_subtree(self, tmp_path):
        source = tmap("layers.1.mlp.weight", "layers.1.mlp.bias", "other.weight", shard="b.safetensors", length=64)
        base_b = str(tmp_path / "b" / "b.safetensors")
        s = SurgerySession(BASE)
        s.replace_component("layers.1.mlp", source, base_b)
        tensors = s.current_state.tensors
        assert "layers.1.mlp.bias" in tensors
        assert "other.weight" not in tensors
        grafted = tensors["layers.1.mlp.weight"]
        assert grafted.shard_file == str(tmp_path / "b" / "b.safetensors")
        assert s.current_state.shard_header_lengths[grafted.shard_file] == 64
        # untouched tensors keep their shard
        assert tensors["layers.1.attn.q.weight"].shard_file == "model.safetensors"

    def test_replace_between_same_named_shards(self, tmp_path):
        """Both models use ``model.safetensors``; each side keeps its own header length."""
        (tmp_path / "a").mkdir()
        (tmp_path / "b").mkdir()
        path_a = write_container(
            tmp_path / "a" / "model.safetensors",
            {"x.weight": ("F32", (2,), f32(1, 2)), "y.weight": ("F32", (2,), f32(3, 4))},
        )
        path_b = write_container(
            tmp_path / "b" / "model.safetensors",
            {
                "x.weight": ("F32", (2,), f32(7, 8)),
                "a.much.longer.tensor.name.to.grow.the.header": ("F32", (1,), f32(0)),
            },
            metadata={"format": "pt", "note": "makes the header longer"},
        )
        map_a, map_b = load_model(str(path_a)), load_model(str(path_b))
        assert map_a.shard_header_lengths["model.safetensors"] != map_b.shard_header_lengths["model.safetensors"]

        s = SurgerySession(map_a)
        s.replace_component("x", map_b, str(path_b))
        current = s.current_map()
        assert current.shard_header_lengths["model.safetensors"] == map_a.shard_header_lengths["model.safetensors"]
        assert read_tensor_from_map(str(path_a), current, "x.weight") == f32(7, 8)
        assert read_tensor_from_map(str(path_a), current, "y.weight") == f32(3, 4)


class TestValidation:
    def test_rename_requires_new_name(self):
        s = SurgerySession(BASE)
        with pytest.raises(InvalidOperation):
            s.apply(SurgeryOperation(OperationKind.RENAME_TENSOR, "norm"))
        assert s.pending_changes_count == 0

    def test_replace_requires_source(self):
        s = SurgerySession(BASE)
        with pytest.raises(SourceModelUnavailable):
            s.apply(SurgeryOperation(OperationKind.REPLACE_TENSOR, "norm", source_model="B"))
        assert s.pending_changes_count == 0

    def test_replace_requires_source_location(self):
        s = SurgerySession(BASE)
        source = tmap("norm.weight", shard="model.safetensors", length=64)
        with pytest.raises(SourceModelUnavailable):
            s.apply(SurgeryOperation(OperationKind.REPLACE_TENSOR, "norm"), source)
        assert s.pending_changes_count == 0

    def test_operation_from_dict(self):
        op = SurgeryOperation.from_dict({"operationType": "renameTensor", "targetPath": "a.b", "newName": "c"})
        assert op == SurgeryOperation(OperationKind.RENAME_TENSOR, "a.b", new_name="c")
        assert op.to_dict() == {"operationType": "renameTensor", "targetPath": "a.b", "newName": "c"}

    def test_unknown_operation_kind(self):
        with pytest.raises(InvalidOperation):
            SurgeryOperation.from_dict({"operationType": "explode", "targetPath": "a"})

    def test_missing_target(self):
        with pytest.raises(InvalidOperation):
            SurgeryOperation.from_dict({"operationType": "removeTensor"})
