"""Tests for external state stores."""

from __future__ import annotations

import json

import pytest

from realm.exceptions import StateError
from realm.state.external import InMemoryState, JsonFileState
from realm.tools.structurer import StructurerToolExecutor


class TestInMemoryState:
    def test_put_and_get(self):
        state = InMemoryState()
        state.put("summary", "text")
        assert state.get("summary") == "text"
        assert state.has("summary")
        assert state.get("missing", "default") == "default"

    def test_put_overwrites(self):
        state = InMemoryState()
        state.put("status", "draft")
        state.put("status", "final")
        assert state.get("status") == "final"
        assert len(state) == 1

    def test_empty_key_rejected(self):
        state = InMemoryState()
        with pytest.raises(StateError):
            state.put("", 1)
        with pytest.raises(StateError):
            state.append_to_array("", [1])

    def test_append_creates_and_extends(self):
        state = InMemoryState()
        assert state.append_to_array("issues", [{"id": 1}]) == 1
        assert state.append_to_array("issues", [{"id": 2}, {"id": 3}]) == 3
        assert [i["id"] for i in state.get("issues")] == [1, 2, 3]

    def test_append_to_non_array_fails(self):
        state = InMemoryState({"summary": "text"})
        with pytest.raises(StateError, match="not an array"):
            state.append_to_array("summary", ["x"])
        assert state.get("summary") == "text"

    def test_keys_keep_insertion_order(self):
        state = InMemoryState()
        for key in ("b", "a", "c"):
            state.put(key, True)
        assert state.keys() == ["b", "a", "c"]
        assert [k for k, _ in state.items()] == ["b", "a", "c"]

    def test_snapshot_is_a_deep_copy(self):
        state = InMemoryState()
        state.append_to_array("items", [{"n": 1}])
        snapshot = state.snapshot()
        snapshot["items"][0]["n"] = 99
        assert state.get("items")[0]["n"] == 1

    def test_summarize(self):
        state = InMemoryState()
        assert state.summarize() == "Nothing stored yet."
        state.append_to_array("issues", [1, 2])
        state.put("flag", True)
        summary = state.summarize()
        assert "- issues (2 items" in summary
        assert "- flag (True)" in summary


class FlakyState(InMemoryState):
    """Write-through store whose checkpoint write can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail = False

    def _persist(self, data):
        if self.fail:
            raise StateError("disk full")


class TestWriteThroughFailure:
    def test_failed_put_leaves_memory_unchanged(self):
        state = FlakyState()
        state.put("summary", "first")
        state.fail = True
        with pytest.raises(StateError, match="disk full"):
            state.put("summary", "second")
        with pytest.raises(StateError):
            state.put("status", "draft")
        assert state.get("summary") == "first"
        assert not state.has("status")

    def test_failed_append_leaves_memory_unchanged(self):
        state = FlakyState()
        state.append_to_array("items", [1])
        held = state.get("items")
        state.fail = True
        with pytest.raises(StateError):
            state.append_to_array("items", [2, 3])
        with pytest.raises(StateError):
            state.append_to_array("new", [1])
        assert state.get("items") == [1]
        assert held == [1]
        assert not state.has("new")

    def test_unwritable_checkpoint(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        state = JsonFileState(blocker / "run.json")
        with pytest.raises(StateError, match="Cannot write"):
            state.put("summary", "text")
        assert len(state) == 0

    def test_tool_reports_error_without_committing(self, source_text):
        state = FlakyState()
        executor = StructurerToolExecutor(source_text, state=state)
        state.fail = True
        result = executor.execute("update_json_section", {"section": "meta", "data": "{}"})
        assert result.startswith("Error:")
        assert "disk full" in result
        assert executor.draft == {}


class TestJsonFileState:
    def test_writes_through(self, tmp_path):
        path = tmp_path / "state" / "run.json"
        state = JsonFileState(path)
        state.put("summary", "µ text")
        state.append_to_array("items", [1])

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data == {"summary": "µ text", "items": [1]}
        assert not path.with_suffix(".json.tmp").exists()

    def test_existing_checkpoint_is_overwritten_by_default(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text(json.dumps({"json:timeline": [1, 2]}), encoding="utf-8")

        state = JsonFileState(path)
        assert len(state) == 0
        assert json.loads(path.read_text()) == {}
        state.put("json:meta", {})
        assert json.loads(path.read_text()) == {"json:meta": {}}

    def test_resumes_existing_checkpoint(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text(json.dumps({"items": [1, 2]}), encoding="utf-8")

        state = JsonFileState(path, resume=True)
        assert state.append_to_array("items", [3]) == 3
        assert json.loads(path.read_text())["items"] == [1, 2, 3]

    def test_resume_without_file_starts_empty(self, tmp_path):
        state = JsonFileState(tmp_path / "run.json", resume=True)
        assert len(state) == 0

    def test_invalid_checkpoint(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StateError, match="Cannot load"):
            JsonFileState(path, resume=True)

    def test_checkpoint_must_be_object(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(StateError, match="not a JSON object"):
            JsonFileState(path, resume=True)

    def test_path_property(self, tmp_path):
        path = tmp_path / "run.json"
        assert JsonFileState(path).path == path
