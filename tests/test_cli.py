"""Tests for CLI entry point."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from realm.__main__ import cli
from realm.models.base import ModelProvider, ModelResponse, ToolCall


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run from an empty directory with no config file and no API key."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("REALM_MODEL", raising=False)
    monkeypatch.delenv("REALM_SUMMARY_MODEL", raising=False)
    monkeypatch.delenv("REALM_MAX_ITERATIONS", raising=False)
    return tmp_path


class FinishingProvider(ModelProvider):
    """Writes every structurer section in one turn, then completes."""

    def __init__(self, config):
        self.turns = [
            [
                ToolCall(id=str(i), name="update_json_section", arguments={"section": s, "data": "{}"})
                for i, s in enumerate((
                    "executiveSummary", "criticalFindings", "timeline", "diagnoses", "systemsHealth",
                ))
            ],
            [ToolCall(id="done", name="complete_structuring", arguments={"summary": "all sections"})],
        ]

    async def generate(self, conversation, *, tools=None, system_instruction=None, model=None):
        return ModelResponse(tool_calls=self.turns.pop(0))

    async def health_check(self) -> bool:
        return True

    @property
    def name(self) -> str:
        return "finishing"

    async def close(self) -> None:
        pass


class TestCLI:
    """Test CLI commands."""

    def test_help(self, isolated):
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Realm" in result.output

    def test_version(self, isolated):
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.4.0" in result.output

    def test_run_help(self, isolated):
        runner = CliRunner()
        result = runner.invoke(cli, ["run", "--help"])
        assert result.exit_code == 0
        assert "--source" in result.output
        assert "--state" in result.output

    def test_invalid_config_file(self, isolated):
        bad = isolated / "bad.toml"
        bad.write_text("[compression]\nthreshold = 2\n")
        runner = CliRunner()
        result = runner.invoke(cli, ["--config", str(bad), "config"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestEstimate:
    def test_list_of_entries(self, isolated):
        path = isolated / "conversation.json"
        path.write_text(json.dumps([
            {"role": "user", "parts": [{"text": "a" * 400}]},
            {"role": "model", "parts": [{"text": "ok"}]},
        ]))
        runner = CliRunner()
        result = runner.invoke(cli, ["estimate", str(path)])
        assert result.exit_code == 0
        assert result.output.startswith("2 entries, ~")
        tokens = int(result.output.split("~")[1].split()[0])
        assert tokens > 100

    def test_wrapped_conversation(self, isolated):
        path = isolated / "run.json"
        path.write_text(json.dumps({"conversation": [{"role": "user", "parts": [{"text": "hi"}]}]}))
        runner = CliRunner()
        result = runner.invoke(cli, ["estimate", str(path)])
        assert result.exit_code == 0
        assert "1 entries" in result.output

    def test_invalid_json(self, isolated):
        path = isolated / "broken.json"
        path.write_text("[{")
        runner = CliRunner()
        result = runner.invoke(cli, ["estimate", str(path)])
        assert result.exit_code == 1
        assert "Invalid JSON" in result.output

    def test_unknown_role_in_entry(self, isolated):
        path = isolated / "odd.json"
        path.write_text(json.dumps([{"role": "system", "parts": []}]))
        runner = CliRunner()
        result = runner.invoke(cli, ["estimate", str(path)])
        assert result.exit_code == 1
        assert "Invalid conversation entry" in result.output


class TestShowConfig:
    def test_api_key_redacted(self, isolated, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "very-secret-abcd")
        runner = CliRunner()
        result = runner.invoke(cli, ["config"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["model"]["api_key"] == "***abcd"
        assert "very-secret" not in result.output
        assert data["loop"]["max_iterations"] == 25


class TestRun:
    def test_source_required(self, isolated, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "key")
        runner = CliRunner()
        result = runner.invoke(cli, ["run", "analyst"])
        assert result.exit_code == 1
        assert "--source is required" in result.output

    def test_structured_json_required(self, isolated, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "key")
        runner = CliRunner()
        result = runner.invoke(cli, ["run", "renderer"])
        assert result.exit_code == 1
        assert "--input" in result.output

    def test_api_key_required(self, isolated, source_text):
        source = isolated / "record.md"
        source.write_text(source_text, encoding="utf-8")
        runner = CliRunner()
        result = runner.invoke(cli, ["run", "analyst", "--source", str(source)])
        assert result.exit_code == 1
        assert "No API key configured" in result.output

    def test_structurer_run_writes_output(self, isolated, source_text, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "key")
        monkeypatch.setattr("realm.models.gemini_provider.GeminiProvider", FinishingProvider)
        (isolated / "realm.toml").write_text("[loop]\ninter_call_delay_seconds = 0\n")
        source = isolated / "record.md"
        source.write_text(source_text, encoding="utf-8")
        output = isolated / "structured.json"

        runner = CliRunner()
        result = runner.invoke(cli, [
            "run", "structurer",
            "--source", str(source),
            "--output", str(output),
            "--state", str(isolated / "state.json"),
            "--quiet",
        ])

        assert result.exit_code == 0, result.output
        document = json.loads(output.read_text(encoding="utf-8"))
        assert len(document) == 5
        assert "structurer: done after 2 iteration(s)" in result.output
        assert json.loads((isolated / "state.json").read_text())["json:timeline"] == {}
        logs = list((isolated / ".realm" / "logs").glob("structurer-*.jsonl"))
        assert len(logs) == 1

    def _run_structurer(self, isolated, source_text, *extra):
        (isolated / "realm.toml").write_text("[loop]\ninter_call_delay_seconds = 0\n")
        source = isolated / "record.md"
        source.write_text(source_text, encoding="utf-8")
        output = isolated / "structured.json"
        result = CliRunner().invoke(cli, [
            "run", "structurer",
            "--source", str(source),
            "--output", str(output),
            "--quiet",
            *extra,
        ])
        assert result.exit_code == 0, result.output
        return json.loads(output.read_text(encoding="utf-8"))

    def test_leftover_state_is_not_reused(self, isolated, source_text, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "key")
        monkeypatch.setattr("realm.models.gemini_provider.GeminiProvider", FinishingProvider)
        state = isolated / "state.json"
        state.write_text(json.dumps({"json:stale": {"from": "last run"}}))

        document = self._run_structurer(isolated, source_text, "--state", str(state))

        assert "stale" not in document
        assert "json:stale" not in json.loads(state.read_text())

    def test_resume_keeps_previous_state(self, isolated, source_text, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "key")
        monkeypatch.setattr("realm.models.gemini_provider.GeminiProvider", FinishingProvider)
        state = isolated / "state.json"
        state.write_text(json.dumps({"json:stale": {"from": "last run"}}))

        document = self._run_structurer(isolated, source_text, "--state", str(state), "--resume")

        assert document["stale"] == {"from": "last run"}

    def test_resume_requires_state(self, isolated, source_text, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "key")
        source = isolated / "record.md"
        source.write_text(source_text, encoding="utf-8")
        result = CliRunner().invoke(cli, ["run", "analyst", "--source", str(source), "--resume"])
        assert result.exit_code == 1
        assert "--resume needs a --state file" in result.output
