"""Tests for CLI commands.

Tests the flowrunner CLI commands using Click's CliRunner:
- run: Execute a workflow file
- validate: Structural checks and tree rendering
- models: Model list with provider availability
- runs: Recent runs
- show: One run's node results
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from flowrunner.cli import main
from flowrunner.core.state import Database

PASSTHROUGH_WORKFLOW = {
    "id": "wf-echo",
    "name": "Echo",
    "nodes": [
        {"id": "t", "type": "trigger", "data": {"label": "Start"}},
        {"id": "o", "type": "output", "data": {"label": "Result"}},
    ],
    "edges": [{"source": "t", "target": "o"}],
}


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def isolated_fs(cli_runner):
    """Create an isolated filesystem for CLI tests."""
    with cli_runner.isolated_filesystem():
        yield Path.cwd()


def _write_workflow(path: Path, workflow: dict) -> str:
    path.write_text(yaml.safe_dump(workflow))
    return str(path)


class TestRunCommand:
    """Tests for 'flowrunner run' command."""

    def test_run_passthrough(self, cli_runner, isolated_fs):
        """Run executes the workflow and records it in the database."""
        wf = _write_workflow(isolated_fs / "echo.yaml", PASSTHROUGH_WORKFLOW)

        result = cli_runner.invoke(main, ["run", wf, "--input", "hello there", "--db", "runs.db"])

        assert result.exit_code == 0, result.output
        assert "hello there" in result.output
        assert "completed" in result.output
        runs = Database("runs.db").list_runs()
        assert len(runs) == 1
        assert runs[0].workflow_id == "wf-echo"

    def test_run_accepts_json(self, cli_runner, isolated_fs):
        """JSON workflow files load like YAML."""
        path = isolated_fs / "echo.json"
        path.write_text(json.dumps(PASSTHROUGH_WORKFLOW))

        result = cli_runner.invoke(main, ["run", str(path), "-i", "x", "--db", "runs.db"])

        assert result.exit_code == 0, result.output

    def test_run_without_input(self, cli_runner, isolated_fs):
        """Manual triggers need input."""
        wf = _write_workflow(isolated_fs / "echo.yaml", PASSTHROUGH_WORKFLOW)

        result = cli_runner.invoke(main, ["run", wf, "--db", "runs.db"])

        assert result.exit_code == 1
        assert "Input is required" in result.output

    def test_run_failed_node_exits_nonzero(self, cli_runner, isolated_fs):
        """A failed node marks the run failed."""
        workflow = {
            "nodes": [
                {"id": "t", "type": "trigger"},
                {"id": "w", "type": "webhook"},
            ],
            "edges": [{"source": "t", "target": "w"}],
        }
        wf = _write_workflow(isolated_fs / "hook.yaml", workflow)

        result = cli_runner.invoke(main, ["run", wf, "-i", "x", "--db", "runs.db"])

        assert result.exit_code == 1
        assert "failed" in result.output

    def test_run_cycle(self, cli_runner, isolated_fs):
        """Cyclic workflows are rejected."""
        workflow = {
            "nodes": [
                {"id": "t", "type": "trigger"},
                {"id": "a", "type": "delay"},
                {"id": "b", "type": "delay"},
            ],
            "edges": [
                {"source": "t", "target": "a"},
                {"source": "a", "target": "b"},
                {"source": "b", "target": "a"},
            ],
        }
        wf = _write_workflow(isolated_fs / "loop.yaml", workflow)

        result = cli_runner.invoke(main, ["run", wf, "-i", "x", "--db", "runs.db"])

        assert result.exit_code == 1
        assert "Circular dependency" in result.output

    def test_run_invalid_schema(self, cli_runner, isolated_fs):
        wf = _write_workflow(isolated_fs / "bad.yaml", {"nodes": [{"type": "trigger"}]})

        result = cli_runner.invoke(main, ["run", wf, "-i", "x"])

        assert result.exit_code == 1
        assert "Error validating workflow schema" in result.output

    def test_run_not_a_mapping(self, cli_runner, isolated_fs):
        path = isolated_fs / "list.yaml"
        path.write_text("- a\n- b\n")

        result = cli_runner.invoke(main, ["run", "list.yaml", "-i", "x"])

        assert result.exit_code == 1
        assert "Expected a mapping" in result.output

    def test_invalid_config(self, cli_runner, isolated_fs):
        """Bad config values are reported before anything runs."""
        wf = _write_workflow(isolated_fs / "echo.yaml", PASSTHROUGH_WORKFLOW)
        (isolated_fs / "config.yaml").write_text("delay_cap_seconds: -5\n")

        result = cli_runner.invoke(main, ["--config", "config.yaml", "run", wf, "-i", "x"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestValidateCommand:
    """Tests for 'flowrunner validate' command."""

    def test_valid_workflow(self, cli_runner, isolated_fs):
        wf = _write_workflow(isolated_fs / "echo.yaml", PASSTHROUGH_WORKFLOW)

        result = cli_runner.invoke(main, ["validate", wf])

        assert result.exit_code == 0, result.output
        assert "Workflow is valid" in result.output
        assert "Start" in result.output

    def test_invalid_workflow(self, cli_runner, isolated_fs):
        workflow = {"nodes": [{"id": "d", "type": "delay"}], "edges": []}
        wf = _write_workflow(isolated_fs / "bad.yaml", workflow)

        result = cli_runner.invoke(main, ["validate", wf, "--no-tree"])

        assert result.exit_code == 1
        assert "Validation Errors" in result.output
        assert "Start Trigger" in result.output

    def test_reports_missing_fields(self, cli_runner, isolated_fs):
        workflow = {
            "nodes": [
                {"id": "t", "type": "trigger"},
                {"id": "w", "type": "webhook"},
                {"id": "o", "type": "output"},
            ],
            "edges": [{"source": "t", "target": "w"}, {"source": "w", "target": "o"}],
        }
        wf = _write_workflow(isolated_fs / "hook.yaml", workflow)

        result = cli_runner.invoke(main, ["validate", wf, "--no-tree"])

        assert result.exit_code == 0
        assert "1 field(s) still to fill in" in result.output


class TestModelsCommand:
    def test_lists_models(self, cli_runner, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

        result = cli_runner.invoke(main, ["models"])

        assert result.exit_code == 0
        assert "Models" in result.output
        assert "✓" in result.output


class TestRunsAndShowCommands:
    """Tests for 'flowrunner runs' and 'flowrunner show'."""

    def test_runs_without_database(self, cli_runner, isolated_fs):
        result = cli_runner.invoke(main, ["runs", "--db", "missing.db"])

        assert result.exit_code == 0
        assert "No run database found" in result.output

    def test_runs_lists_recorded_runs(self, cli_runner, isolated_fs):
        db = Database("runs.db")
        run_id = db.create_run("wf-list", "x")

        result = cli_runner.invoke(main, ["runs", "--db", "runs.db"])

        assert result.exit_code == 0
        assert run_id[:8] in result.output

    def test_show_json(self, cli_runner, isolated_fs):
        wf = _write_workflow(isolated_fs / "echo.yaml", PASSTHROUGH_WORKFLOW)
        cli_runner.invoke(main, ["run", wf, "-i", "ping", "--db", "runs.db"])
        run_id = Database("runs.db").list_runs()[0].id

        result = cli_runner.invoke(main, ["show", run_id, "--db", "runs.db", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["id"] == run_id
        assert data["status"] == "completed"
        assert data["nodeResults"]["o"]["output"] == "ping"

    def test_show_table(self, cli_runner, isolated_fs):
        db = Database("runs.db")
        run_id = db.create_run("wf-show", "input text")

        result = cli_runner.invoke(main, ["show", run_id, "--db", "runs.db"])

        assert result.exit_code == 0
        assert "wf-show" in result.output

    def test_show_unknown_run(self, cli_runner, isolated_fs):
        Database("runs.db")

        result = cli_runner.invoke(main, ["show", "nope", "--db", "runs.db"])

        assert result.exit_code == 1
        assert "not found" in result.output
