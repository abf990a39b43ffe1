"""
Tests for the command line interface.

Tests cover:
- Version and configuration display
- Run status and reports from file storage
- Learning export/import and graph export
- Missing execution service handling
"""

import asyncio
import json

import pytest
import yaml
from click.testing import CliRunner

from proofgate.cli import main
from proofgate.learning import FixLearningStore
from proofgate.models.base import FixStrategy
from proofgate.models.workflow import WorkflowState
from proofgate.orchestrator import WorkflowStateStore
from proofgate.storage import create_stores
from proofgate.version import __version__


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def storage_dir(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def config_file(tmp_path, storage_dir):
    path = tmp_path / "proofgate.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "storage": {"backend": "file", "base_dir": str(storage_dir)},
                "retry": {"max_attempts": 4},
                "logging": {"level": "WARNING"},
            }
        )
    )
    return path


@pytest.fixture
def records(storage_dir):
    _, record_store = create_stores("file", storage_dir)
    return record_store


def invoke(runner, config_file, *args):
    return runner.invoke(main, ["--config", str(config_file), *args])


class TestBasics:
    """Tests for top-level options and the config command."""

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_config(self, runner, config_file):
        result = invoke(runner, config_file, "config")

        assert result.exit_code == 0
        assert "Max Attempts: 4" in result.output
        assert "Backend: file" in result.output

    def test_missing_config_file(self, runner):
        result = runner.invoke(main, ["--config", "/nonexistent.yaml", "config"])

        assert result.exit_code != 0

    def test_invalid_config(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("retry:\n  max_attempts: 0\n")

        result = runner.invoke(main, ["--config", str(path), "config"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_verify_without_backend(self, runner, config_file):
        result = invoke(runner, config_file, "verify", "run-1", "commit:abc")

        assert result.exit_code == 1
        assert "No execution service configured" in result.output


class TestRuns:
    """Tests for status and report."""

    def test_status_empty(self, runner, config_file):
        result = invoke(runner, config_file, "status")

        assert result.exit_code == 0
        assert "No runs found" in result.output

    def test_status_lists_runs(self, runner, config_file, records):
        store = WorkflowStateStore(records)
        store.save(WorkflowState(run_id="run-a", target="commit:1"))
        store.save(WorkflowState(run_id="run-b", target="commit:2"))

        result = invoke(runner, config_file, "status")

        assert result.exit_code == 0
        assert "run-a" in result.output
        assert "run-b" in result.output

    def test_status_single_run(self, runner, config_file, records):
        WorkflowStateStore(records).save(WorkflowState(run_id="run-a", target="commit:1"))

        result = invoke(runner, config_file, "status", "run-a")

        assert result.exit_code == 0
        assert "commit:1" in result.output
        assert "pending" in result.output

    def test_status_unknown_run(self, runner, config_file):
        result = invoke(runner, config_file, "status", "missing")

        assert result.exit_code == 1
        assert "Unknown run" in result.output

    def test_report_json(self, runner, config_file, records):
        WorkflowStateStore(records).save(WorkflowState(run_id="run-a", target="commit:1"))

        result = invoke(runner, config_file, "report", "run-a", "--json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["run_id"] == "run-a"
        assert data["verification"] is None
        assert data["fix_attempts"] == []


class TestLearnings:
    """Tests for the learnings group and graph command."""

    def test_import_then_export(self, runner, config_file, tmp_path):
        source = tmp_path / "in.json"
        source.write_text(
            json.dumps(
                [
                    {"failure_pattern": "cannot find module <str>", "fix_strategy": "dependency_add"},
                    {"failure_pattern": "timeout waiting for <str>", "fix_strategy": "condition_fix"},
                ]
            )
        )
        out = tmp_path / "out.json"

        imported = invoke(runner, config_file, "learnings", "import", str(source))
        exported = invoke(runner, config_file, "learnings", "export", str(out))

        assert imported.exit_code == 0
        assert "Imported 2" in imported.output
        assert exported.exit_code == 0
        rows = json.loads(out.read_text())
        assert {r["fix_strategy"] for r in rows} == {"dependency_add", "condition_fix"}
        assert all(r["times_succeeded"] == 1 for r in rows)

    def test_import_invalid_file(self, runner, config_file, tmp_path):
        source = tmp_path / "bad.json"
        source.write_text("[{\"failure_pattern\": \"x\"}]")

        result = invoke(runner, config_file, "learnings", "import", str(source))

        assert result.exit_code == 1
        assert "Invalid learnings file" in result.output

    def test_stats(self, runner, config_file, records):
        store = FixLearningStore(records)
        asyncio.run(store.record("cannot find module <str>", FixStrategy.DEPENDENCY_ADD, True))

        result = invoke(runner, config_file, "learnings", "stats")

        assert result.exit_code == 0
        assert "Reliable patterns: 1" in result.output
        assert "dependency_add" in result.output

    def test_graph_dot(self, runner, config_file, records):
        store = FixLearningStore(records)
        asyncio.run(store.record("cannot find module <str>", FixStrategy.DEPENDENCY_ADD, True))

        result = invoke(runner, config_file, "graph", "--format", "dot")

        assert result.exit_code == 0
        assert result.output.startswith("digraph KnowledgeGraph {")
        assert "strategy:dependency_add" in result.output

    def test_graph_json_to_file(self, runner, config_file, tmp_path):
        out = tmp_path / "graph.json"

        result = invoke(runner, config_file, "graph", "-f", "json", "-o", str(out))

        assert result.exit_code == 0
        assert json.loads(out.read_text()) == {"nodes": [], "edges": []}
