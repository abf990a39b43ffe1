"""
Unit tests for the run journal.

Tests cover:
- Event serialization
- Per-run JSONL files in write order
- Corrupt line tolerance
"""

import json

import pytest

from proofgate.orchestrator import (
    FixAttemptEvent,
    RunCompleteEvent,
    RunJournal,
    RunStartEvent,
    StageErrorEvent,
    StageTransitionEvent,
)


@pytest.mark.orchestrator
class TestRunJournal:
    """Tests for RunJournal."""

    def test_events_round_trip_in_order(self, tmp_path):
        journal = RunJournal(tmp_path / "journal")
        journal.record(RunStartEvent(run_id="r1", target="abc", criteria=["ok"]))
        journal.record(StageTransitionEvent(run_id="r1", from_stage="pending", to_stage="executing"))
        journal.record(StageErrorEvent(run_id="r1", stage="executing", error="boom", error_type="RuntimeError", retry=1))
        journal.record(FixAttemptEvent(run_id="r1", attempt_number=1, tier="cheap", strategy="import_fix", success=True))
        journal.record(RunCompleteEvent(run_id="r1", stage="completed", execution_attempts=2, fix_attempts=1))

        events = journal.read("r1")

        assert [e["type"] for e in events] == [
            "run_start",
            "stage_transition",
            "stage_error",
            "fix_attempt",
            "run_complete",
        ]
        assert events[0]["criteria"] == ["ok"]
        assert events[2]["retry"] == 1
        assert events[3]["strategy"] == "import_fix"

    def test_one_file_per_run(self, tmp_path):
        journal = RunJournal(tmp_path)
        journal.record(RunStartEvent(run_id="r1"))
        journal.record(RunStartEvent(run_id="r2"))

        assert len(journal.read("r1")) == 1
        assert len(journal.read("r2")) == 1
        assert journal.path_for("r1").name == "r1.jsonl"

    def test_unknown_run_is_empty(self, tmp_path):
        assert RunJournal(tmp_path).read("missing") == []

    def test_skips_corrupt_lines(self, tmp_path):
        journal = RunJournal(tmp_path)
        journal.record(RunStartEvent(run_id="r1"))
        with journal.path_for("r1").open("a", encoding="utf-8") as f:
            f.write("{not json\n\n")
        journal.record(RunCompleteEvent(run_id="r1", stage="failed"))

        assert [e["type"] for e in journal.read("r1")] == ["run_start", "run_complete"]

    def test_to_json(self):
        event = StageTransitionEvent(run_id="r1", from_stage="executing", to_stage="rejected")

        data = json.loads(event.to_json())

        assert data["type"] == "stage_transition"
        assert data["to_stage"] == "rejected"
        assert "timestamp" in data
