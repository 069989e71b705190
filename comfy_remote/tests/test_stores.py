"""Tests for the workflow store and the run history store."""

import json

import pytest

from comfy_remote.exceptions import (
    HistoryItemNotFoundError,
    SecurityError,
    ValidationError,
    WorkflowNotFoundError,
)
from comfy_remote.history import HistoryStore, RunRecord, safe_filename
from comfy_remote.workflow_store import (
    StoredWorkflow,
    WorkflowStore,
    normalize_workflows,
    summarize_workflow,
)


class TestSummary:
    def test_text_to_image_summary(self, sample_graph):
        summary = summarize_workflow(sample_graph)

        assert summary.total_nodes == 8
        assert summary.workflow_type == "text-to-image"
        assert summary.type_counts["CLIPTextEncode"] == 2
        assert [n["id"] for n in summary.positive_prompt_nodes] == [6]
        assert [n["id"] for n in summary.negative_prompt_nodes] == [7]
        assert summary.save_image_nodes == [{"id": 9, "type": "SaveImage", "title": None}]

    def test_image_to_image_summary(self, img2img_graph):
        summary = summarize_workflow(img2img_graph)
        assert summary.workflow_type == "image-to-image"
        assert len(summary.load_image_nodes) == 1

    def test_non_graph_is_empty(self):
        summary = summarize_workflow("nope")
        assert summary.total_nodes == 0
        assert summary.workflow_type == "unknown"


class TestNormalizeWorkflows:
    def test_single_graph(self, sample_graph):
        workflows = normalize_workflows(sample_graph)
        assert len(workflows) == 1
        assert workflows[0].id.startswith("workflow-1-")
        assert workflows[0].raw == sample_graph

    def test_list_with_ids_and_names(self, sample_graph):
        workflows = normalize_workflows(
            [{"id": "a", "name": "First", "raw": sample_graph}, {"title": "Second", "nodes": []}]
        )
        assert [(wf.id, wf.name) for wf in workflows] == [("a", "First"), ("Second", "Second")]

    def test_items_key(self, sample_graph):
        workflows = normalize_workflows({"items": [{"id": "x", "raw": sample_graph}]})
        assert workflows[0].id == "x"
        assert workflows[0].name == "x"

    def test_id_keyed_mapping(self, sample_graph, img2img_graph):
        workflows = normalize_workflows({"txt": sample_graph, "edit": img2img_graph})
        assert [wf.id for wf in workflows] == ["txt", "edit"]
        assert workflows[1].summary.workflow_type == "image-to-image"

    def test_duplicate_ids_dropped(self):
        workflows = normalize_workflows([{"id": "a", "nodes": []}, {"id": "a", "nodes": [{}]}])
        assert len(workflows) == 1
        assert workflows[0].raw == {"id": "a", "nodes": []}

    def test_non_mapping_entries_skipped(self):
        assert normalize_workflows([1, "x", None]) == []
        assert normalize_workflows("text") == []


class TestWorkflowStore:
    def test_missing_file_is_empty(self, tmp_path):
        assert WorkflowStore(tmp_path / "none.json").read_all() == []

    def test_corrupt_file_is_empty(self, tmp_path):
        path = tmp_path / "workflows.json"
        path.write_text("{not json")
        assert WorkflowStore(path).read_all() == []

    def test_import_persists(self, tmp_path, sample_graph):
        path = tmp_path / "data" / "workflows.json"
        store = WorkflowStore(path)
        store.import_payload({"workflows": [{"id": "a", "name": "A", "raw": sample_graph}]})

        on_disk = json.loads(path.read_text())
        assert on_disk["workflows"][0]["id"] == "a"
        assert on_disk["workflows"][0]["raw"] == sample_graph
        assert store.get("a").summary.total_nodes == 8

    def test_import_renames_colliding_ids(self, tmp_path, sample_graph):
        store = WorkflowStore(tmp_path / "workflows.json")
        store.import_payload([{"id": "a", "raw": sample_graph}])
        store.import_payload([{"id": "a", "raw": sample_graph}])
        merged = store.import_payload([{"id": "a", "raw": sample_graph}])

        assert [wf.id for wf in merged] == ["a", "a-1", "a-2"]

    def test_import_empty_payload_rejected(self, tmp_path):
        store = WorkflowStore(tmp_path / "workflows.json")
        with pytest.raises(ValidationError):
            store.import_payload([])

    def test_rename_and_delete(self, tmp_path, sample_graph):
        store = WorkflowStore(tmp_path / "workflows.json")
        store.import_payload([{"id": "a", "raw": sample_graph}, {"id": "b", "raw": sample_graph}])

        store.rename("a", "Renamed")
        assert store.get("a").name == "Renamed"

        remaining = store.delete("a")
        assert [wf.id for wf in remaining] == ["b"]
        with pytest.raises(WorkflowNotFoundError):
            store.get("a")

    def test_unknown_ids(self, tmp_path):
        store = WorkflowStore(tmp_path / "workflows.json")
        with pytest.raises(WorkflowNotFoundError):
            store.rename("zzz", "x")
        with pytest.raises(WorkflowNotFoundError):
            store.delete("zzz")

    def test_stored_workflow_without_summary_is_resummarized(self, sample_graph):
        workflow = StoredWorkflow.from_dict({"id": "a", "raw": sample_graph})
        assert workflow.name == "a"
        assert workflow.summary.total_nodes == 8
        assert "raw" not in workflow.to_dict(include_raw=False)


class TestSafeFilename:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("ComfyUI_00001_.png", "ComfyUI_00001_.png"),
            ("../../etc/passwd", "passwd.png"),
            ("my image (1).png", "my_image_1_.png"),
            (None, "output.png"),
            ("", "output.png"),
        ],
    )
    def test_safe_filename(self, name, expected):
        assert safe_filename(name) == expected


class TestHistoryStore:
    def _store(self, tmp_path) -> HistoryStore:
        return HistoryStore(tmp_path / "history.json", tmp_path / "outputs")

    def test_append_writes_record_and_file(self, tmp_path):
        store = self._store(tmp_path)
        record = store.append(b"PNG", "ComfyUI_00001_.png", {"job_id": "j1", "seed": 5, "bogus": 1})

        assert record.stored_filename.endswith("-ComfyUI_00001_.png")
        assert record.original_filename == "ComfyUI_00001_.png"
        assert record.created_at.endswith("Z")
        assert record.seed == 5
        assert (tmp_path / "outputs" / record.stored_filename).read_bytes() == b"PNG"
        assert store.get(record.id) == record

    def test_newest_first(self, tmp_path):
        store = self._store(tmp_path)
        first = store.append(b"1", "a.png")
        second = store.append(b"2", "b.png")
        assert [r.id for r in store.read_all()] == [second.id, first.id]

    def test_delete_removes_file(self, tmp_path):
        store = self._store(tmp_path)
        record = store.append(b"1", "a.png")

        deleted = store.delete(record.id)

        assert deleted.id == record.id
        assert store.read_all() == []
        assert not (tmp_path / "outputs" / record.stored_filename).exists()
        with pytest.raises(HistoryItemNotFoundError):
            store.delete(record.id)

    def test_file_path(self, tmp_path):
        store = self._store(tmp_path)
        record = store.append(b"1", "a.png")
        assert store.file_path(record.stored_filename).is_file()

        with pytest.raises(HistoryItemNotFoundError):
            store.file_path("missing.png")
        with pytest.raises(SecurityError):
            store.file_path("../history.json")

    def test_records_without_required_fields_skipped(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text(json.dumps([{"id": "x"}, {"id": "y", "stored_filename": "y.png", "extra": 1}]))
        records = HistoryStore(path, tmp_path / "outputs").read_all()

        assert [r.id for r in records] == ["y"]
        assert records[0].original_filename == "y.png"

    def test_record_from_dict_ignores_unknown_keys(self):
        record = RunRecord.from_dict(
            {"id": "r", "created_at": "t", "original_filename": "o", "stored_filename": "s", "extra": 1}
        )
        assert record.to_dict()["stored_filename"] == "s"
        assert "extra" not in record.to_dict()
