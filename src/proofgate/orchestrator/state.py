"""
Workflow State Management.

The transition table of the per-run state machine and the persistence of
WorkflowState. State is written before the work of a stage runs, so a
crashed run resumes from the last persisted stage rather than from the
beginning.

Any non-terminal stage may also move straight to `failed` (stage error
or cancellation) or `timed_out` (stage deadline exceeded).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from proofgate.errors import InvalidTransitionError, StatePersistenceError
from proofgate.models.base import WorkflowStage, WorkflowStatus
from proofgate.models.workflow import StageTransition, WorkflowState
from proofgate.storage import RecordStore

logger = logging.getLogger(__name__)

STATES_COLLECTION = "workflow_states"

TRANSITIONS: dict[WorkflowStage, frozenset[WorkflowStage]] = {
    WorkflowStage.PENDING: frozenset({WorkflowStage.EXECUTING}),
    WorkflowStage.EXECUTING: frozenset(
        {WorkflowStage.EVIDENCE_COLLECTED, WorkflowStage.REJECTED}
    ),
    WorkflowStage.EVIDENCE_COLLECTED: frozenset({WorkflowStage.RED_FLAG_CHECKED}),
    WorkflowStage.RED_FLAG_CHECKED: frozenset({WorkflowStage.VERIFYING}),
    WorkflowStage.VERIFYING: frozenset({WorkflowStage.ACCEPTED, WorkflowStage.REJECTED}),
    WorkflowStage.ACCEPTED: frozenset({WorkflowStage.COMPLETED}),
    WorkflowStage.REJECTED: frozenset({WorkflowStage.DIAGNOSING, WorkflowStage.ESCALATED}),
    WorkflowStage.DIAGNOSING: frozenset({WorkflowStage.FIX_SELECTED, WorkflowStage.ESCALATED}),
    WorkflowStage.FIX_SELECTED: frozenset({WorkflowStage.FIX_APPLYING}),
    WorkflowStage.FIX_APPLYING: frozenset({WorkflowStage.EXECUTING, WorkflowStage.REJECTED}),
}

# Reachable from every non-terminal stage
ABORT_STAGES = frozenset({WorkflowStage.FAILED, WorkflowStage.TIMED_OUT})

TERMINAL_STATUS: dict[WorkflowStage, WorkflowStatus] = {
    WorkflowStage.COMPLETED: WorkflowStatus.COMPLETED,
    WorkflowStage.ESCALATED: WorkflowStatus.ESCALATED,
    WorkflowStage.TIMED_OUT: WorkflowStatus.TIMED_OUT,
    WorkflowStage.FAILED: WorkflowStatus.FAILED,
}


def allowed_transitions(stage: WorkflowStage) -> frozenset[WorkflowStage]:
    """Stages reachable from a stage in one step."""
    if stage.is_terminal:
        return frozenset()
    return TRANSITIONS.get(stage, frozenset()) | ABORT_STAGES


def validate_transition(from_stage: WorkflowStage, to_stage: WorkflowStage) -> None:
    """Raise InvalidTransitionError unless the move is in the table."""
    if to_stage not in allowed_transitions(from_stage):
        raise InvalidTransitionError(
            f"Invalid transition: {from_stage.value} -> {to_stage.value}"
        )


def apply_transition(
    state: WorkflowState,
    to_stage: WorkflowStage,
    reason: str = "",
) -> WorkflowState:
    """Return a copy of state moved to a new stage.

    Appends the transition to the history, updates the coarse status and
    stamps completion time for terminal stages.

    Raises:
        InvalidTransitionError: If the move is not allowed
    """
    validate_transition(state.stage, to_stage)
    now = datetime.now(UTC)

    updates: dict = {
        "stage": to_stage,
        "updated_at": now,
        "history": [
            *state.history,
            StageTransition(from_stage=state.stage, to_stage=to_stage, at=now, reason=reason),
        ],
    }
    if to_stage.is_terminal:
        updates["status"] = TERMINAL_STATUS[to_stage]
        updates["completed_at"] = now
        if reason:
            updates["terminal_reason"] = reason

    return state.model_copy(update=updates, deep=True)


class WorkflowStateStore:
    """Persists WorkflowState keyed by run id.

    Every failure to write state is raised as StatePersistenceError: the
    orchestrator cannot track runs reliably without it.
    """

    def __init__(self, records: RecordStore) -> None:
        self._records = records

    def save(self, state: WorkflowState) -> None:
        try:
            self._records.put(STATES_COLLECTION, state.run_id, state.to_dict())
        except OSError as e:
            logger.critical(f"[{state.run_id}] Failed to persist workflow state: {e}")
            raise StatePersistenceError(f"Failed to persist state for run {state.run_id}: {e}") from e

    def load(self, run_id: str) -> WorkflowState | None:
        data = self._records.get(STATES_COLLECTION, run_id)
        return WorkflowState.model_validate(data) if data else None

    def exists(self, run_id: str) -> bool:
        return self._records.exists(STATES_COLLECTION, run_id)

    def run_ids(self) -> list[str]:
        return self._records.keys(STATES_COLLECTION)

    def load_all(self) -> list[WorkflowState]:
        return [WorkflowState.model_validate(row) for row in self._records.list(STATES_COLLECTION)]

    def incomplete(self) -> list[WorkflowState]:
        """Persisted runs that have not reached a terminal stage."""
        return [state for state in self.load_all() if not state.is_terminal]
