"""
Run Journal.

Append-only JSONL audit trail of every run. One file per run, one event
per line:

- run_start: run accepted
- stage_transition: stage changed
- stage_error: a stage raised (retried or fatal)
- fix_attempt: a fix attempt completed
- run_complete: terminal stage reached

The journal is for humans and offline analysis; WorkflowState is the
source of truth for resuming.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from proofgate.storage import sanitize_key

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class JournalEvent:
    """Base journal event.

    Attributes:
        type: Event type identifier
        run_id: Owning run
        timestamp: ISO timestamp
    """

    type: str
    run_id: str = ""
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class RunStartEvent(JournalEvent):
    type: str = "run_start"
    target: str = ""
    criteria: list[str] = field(default_factory=list)


@dataclass
class StageTransitionEvent(JournalEvent):
    type: str = "stage_transition"
    from_stage: str = ""
    to_stage: str = ""
    reason: str = ""
    execution_attempt: int = 0


@dataclass
class StageErrorEvent(JournalEvent):
    """A stage raised.

    Attributes:
        stage: Stage whose work raised
        error: Error message
        error_type: Exception class name
        retry: Retry number this error triggers, 0 when it is fatal
    """

    type: str = "stage_error"
    stage: str = ""
    error: str = ""
    error_type: str = ""
    retry: int = 0


@dataclass
class FixAttemptEvent(JournalEvent):
    type: str = "fix_attempt"
    attempt_number: int = 0
    tier: str = ""
    strategy: str = ""
    success: bool = False
    cost_usd: float = 0.0


@dataclass
class RunCompleteEvent(JournalEvent):
    type: str = "run_complete"
    stage: str = ""
    reason: str | None = None
    execution_attempts: int = 0
    fix_attempts: int = 0
    total_cost_usd: float = 0.0
    duration_seconds: float = 0.0


class RunJournal:
    """Writes and reads per-run JSONL journals.

    Usage:
        journal = RunJournal("./.proofgate/journal")
        journal.record(StageTransitionEvent(run_id="r1", from_stage="pending", to_stage="executing"))
        events = journal.read("r1")
    """

    def __init__(self, directory: str | Path) -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, run_id: str) -> Path:
        return self._dir / f"{sanitize_key(run_id)}.jsonl"

    def record(self, event: JournalEvent) -> None:
        """Append an event to its run's journal."""
        self._atomic_append(self.path_for(event.run_id), event.to_json() + "\n")
        logger.debug(f"[{event.run_id}] Journal event: {event.type}")

    def read(self, run_id: str) -> list[dict[str, Any]]:
        """All events of a run in write order; unreadable lines are skipped."""
        path = self.path_for(run_id)
        if not path.exists():
            return []

        events = []
        for line_no, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning(f"Skipping corrupt journal line {line_no} in {path}")
        return events

    @staticmethod
    def _atomic_append(path: Path, content: str) -> None:
        """Append by rewriting to a tmp file and renaming over the journal."""
        tmp_path = path.with_suffix(".tmp")
        try:
            existing = path.read_text(encoding="utf-8") if path.exists() else ""
            tmp_path.write_text(existing + content, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            logger.error(f"Failed to write journal {path}: {e}")
            raise
