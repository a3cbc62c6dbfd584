"""Tests for the tool executor framework and argument validation."""

from __future__ import annotations

import pytest

from realm.exceptions import StateError
from realm.tools.base import (
    GateResult,
    ToolArgumentError,
    ToolExecutor,
    ToolSpec,
    object_schema,
    string_param,
    validate_arguments,
)


class NotesExecutor(ToolExecutor):
    """Minimal executor: write notes, complete once two exist."""

    role = "notes"
    completion_tool = "complete_notes"
    sentinel_prefix = "NOTES_COMPLETE|"

    def tool_specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                "add_note",
                "Add a note.",
                self.add_note,
                object_schema(
                    {"text": string_param("Note text"), "priority": {"type": "integer"}},
                    ["text"],
                ),
            ),
            ToolSpec("explode", "Always fails.", self.explode),
            ToolSpec("bad_state", "Writes an empty key.", self.bad_state),
            ToolSpec(
                "complete_notes",
                "Finish.",
                self.complete,
                object_schema({"summary": string_param("Summary")}, ["summary"]),
            ),
        ]

    def add_note(self, text: str, priority: int = 0) -> str:
        count = self.state.append_to_array("notes", [{"text": text, "priority": priority}])
        return f"Stored note {count}"

    def explode(self) -> str:
        raise KeyError("boom")

    def bad_state(self) -> str:
        self.state.put("", 1)
        return "unreachable"

    def check_completion(self, args: dict) -> GateResult:
        notes = self.state.get("notes", [])
        if len(notes) < 2:
            return GateResult.blocked([f"Only {len(notes)} note(s) written (need 2)."])
        return GateResult.complete(
            summary=args["summary"],
            payload=self.finalize(),
            signal=f"{self.sentinel_prefix}{args['summary']}",
        )

    def finalize(self) -> str:
        return "\n".join(n["text"] for n in self.state.get("notes", []))


class TestValidateArguments:
    def test_required_missing(self):
        schema = object_schema({"query": string_param("q")}, ["query"])
        with pytest.raises(ToolArgumentError, match="missing required argument"):
            validate_arguments(schema, {})

    def test_required_null_counts_as_missing(self):
        schema = object_schema({"query": string_param("q")}, ["query"])
        with pytest.raises(ToolArgumentError):
            validate_arguments(schema, {"query": None})

    def test_unknown_keys_dropped(self):
        schema = object_schema({"query": string_param("q")}, ["query"])
        assert validate_arguments(schema, {"query": "TSH", "extra": 1}) == {"query": "TSH"}

    def test_lossless_coercions(self):
        schema = object_schema({
            "year": {"type": "integer"},
            "value": {"type": "string"},
        })
        assert validate_arguments(schema, {"year": 2021.0, "value": 5.7}) == {
            "year": 2021, "value": "5.7",
        }

    def test_wrong_type_rejected(self):
        schema = object_schema({"include_context": {"type": "boolean"}})
        with pytest.raises(ToolArgumentError, match="must be boolean"):
            validate_arguments(schema, {"include_context": "yes"})

    def test_bool_is_not_an_integer(self):
        schema = object_schema({"year": {"type": "integer"}})
        with pytest.raises(ToolArgumentError):
            validate_arguments(schema, {"year": True})

    def test_array_items_checked(self):
        schema = object_schema({"items": {"type": "array", "items": {"type": "string"}}})
        assert validate_arguments(schema, {"items": ["<li>a</li>"]}) == {"items": ["<li>a</li>"]}
        with pytest.raises(ToolArgumentError, match=r"items\[1\]"):
            validate_arguments(schema, {"items": ["ok", {"html": "x"}]})

    def test_non_object_arguments(self):
        with pytest.raises(ToolArgumentError):
            validate_arguments(object_schema(), ["not", "a", "dict"])

    def test_none_is_empty(self):
        assert validate_arguments(object_schema(), None) == {}


class TestGateResult:
    def test_blocked_needs_reasons(self):
        with pytest.raises(ValueError):
            GateResult.blocked([])

    def test_render_guidance_numbers_reasons(self):
        gate = GateResult.blocked(["first", "second"])
        text = gate.render_guidance(footer="Fix these.")
        assert "1. first" in text
        assert "2. second" in text
        assert text.endswith("Fix these.")


class TestToolExecutor:
    def test_definitions_follow_declaration_order(self):
        executor = NotesExecutor()
        assert executor.tool_names == ["add_note", "explode", "bad_state", "complete_notes"]
        definition = executor.tool_definitions()[0]
        assert definition.name == "add_note"
        assert definition.parameters["required"] == ["text"]

    def test_unknown_tool(self):
        assert NotesExecutor().execute("delete_everything", {}) == "Unknown tool: delete_everything"

    def test_invalid_arguments_reported_not_raised(self):
        result = NotesExecutor().execute("add_note", {})
        assert result.startswith("Error: missing required argument")

    def test_handler_exception_reported(self):
        result = NotesExecutor().execute("explode")
        assert result == "Tool error: KeyError: 'boom'"

    def test_state_error_reported(self):
        result = NotesExecutor().execute("bad_state")
        assert result.startswith("Error: State key must be")

    def test_write_tool_returns_confirmation(self):
        executor = NotesExecutor()
        assert executor.execute("add_note", {"text": "TSH normal"}) == "Stored note 1"
        assert executor.state.get("notes") == [{"text": "TSH normal", "priority": 0}]

    def test_blocked_completion_does_not_commit(self):
        executor = NotesExecutor()
        executor.execute("add_note", {"text": "one"})
        before = executor.state.snapshot()

        first = executor.execute("complete_notes", {"summary": "done"})
        second = executor.execute("complete_notes", {"summary": "done"})

        assert first == second
        assert "Only 1 note(s) written" in first
        assert not executor.is_completion_signal(first)
        assert executor.completion is None
        assert executor.state.snapshot() == before

    def test_accepted_completion(self):
        executor = NotesExecutor()
        executor.execute("add_note", {"text": "one"})
        executor.execute("add_note", {"text": "two"})

        result = executor.execute("complete_notes", {"summary": "two notes"})

        assert result == "NOTES_COMPLETE|two notes"
        assert executor.is_completion_signal(result)
        assert executor.completion is not None
        assert executor.completion.payload == "one\ntwo"

    def test_duplicate_tool_names_rejected(self):
        class Duplicated(NotesExecutor):
            def tool_specs(self):
                specs = super().tool_specs()
                return specs + [specs[0]]

        with pytest.raises(ValueError, match="already registered"):
            Duplicated()

    def test_completion_tool_must_be_registered(self):
        class Missing(NotesExecutor):
            completion_tool = "finish"

        with pytest.raises(ValueError, match="completion tool"):
            Missing()

    def test_default_state_summary(self):
        executor = NotesExecutor()
        assert executor.external_state_summary() == "Nothing stored yet."

    def test_state_error_type(self):
        executor = NotesExecutor()
        with pytest.raises(StateError):
            executor.bad_state()
