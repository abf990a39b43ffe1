"""
Workflow State Models.

WorkflowState is owned exclusively by the orchestrator and persisted on
every stage transition so a crashed run resumes from its last stage.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from proofgate.models.base import (
    EscalationReason,
    FixStrategy,
    WorkflowStage,
    WorkflowStatus,
)
from proofgate.models.fixing import FixApplication, FixAttempt, FixPlan, RootCauseAnalysis
from proofgate.models.red_flags import RedFlagReport
from proofgate.models.verification import VerificationReport

# Run ids name record files and key per-attempt records as "{run_id}__{attempt}"
RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StartResult(str, Enum):
    """Result of start_verification."""

    ACCEPTED = "accepted"
    ALREADY_EXISTS = "already_exists"


class VerificationRequest(BaseModel):
    """Request from the upstream pipeline to verify a code change."""

    run_id: str = Field(..., min_length=1)
    target: str = Field(..., description="Opaque code-change reference")
    criteria: list[str] = Field(default_factory=list, description="Acceptance criteria")

    @field_validator("run_id")
    @classmethod
    def validate_run_id(cls, v: str) -> str:
        """Letters, digits, dot, dash and single underscores only."""
        if not RUN_ID_PATTERN.match(v) or "__" in v:
            raise ValueError(
                f"Invalid run id {v!r}: use letters, digits, '.', '-' or single '_' "
                "(at most 128 characters)"
            )
        return v


class StageTransition(BaseModel):
    """One entry of the transition history."""

    from_stage: WorkflowStage
    to_stage: WorkflowStage
    at: datetime = Field(default_factory=_utcnow)
    reason: str = ""


class PendingFix(BaseModel):
    """A fix that was applied and awaits the next verification verdict."""

    plan: FixPlan
    application: FixApplication
    cost_usd: float = Field(default=0.0, ge=0.0)
    tokens_used: int = Field(default=0, ge=0)


class WorkflowState(BaseModel):
    """Persistent state of one verification run.

    Attributes:
        run_id: Run identifier
        target: Original code-change reference
        criteria: Acceptance criteria
        stage: Current stage
        status: Coarse status
        execution_attempt: Number of the latest execution attempt
        retry_count: Completed fix attempts
        tier_index: Position on the model-tier ladder
        failed_strategies: Strategies that failed in this run
        current_change_ref: Code handle the next execution runs against
        fix_plan: Strategy selected for the next fix application
        pending_fix: Applied fix awaiting its verdict
        total_cost_usd: Cumulative fix cost
        stage_results: Latest result snapshot per stage
        history: Transition history
        escalation_reason: Why the run escalated
        terminal_reason: Human-readable reason for a terminal state
        error: Error attached to a failed run
        flagged_for_review: A verifier pass recommended manual review
    """

    run_id: str
    target: str
    criteria: list[str] = Field(default_factory=list)
    stage: WorkflowStage = WorkflowStage.PENDING
    status: WorkflowStatus = WorkflowStatus.RUNNING
    execution_attempt: int = Field(default=0, ge=0)
    retry_count: int = Field(default=0, ge=0)
    tier_index: int = Field(default=0, ge=0)
    failed_strategies: list[FixStrategy] = Field(default_factory=list)
    current_change_ref: str = ""
    fix_plan: FixPlan | None = None
    pending_fix: PendingFix | None = None
    total_cost_usd: float = Field(default=0.0, ge=0.0)
    stage_results: dict[str, dict[str, Any]] = Field(default_factory=dict)
    history: list[StageTransition] = Field(default_factory=list)
    escalation_reason: EscalationReason | None = None
    terminal_reason: str | None = None
    error: str | None = None
    flagged_for_review: bool = False
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage.is_terminal

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or _utcnow()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return self.model_dump(mode="json")


class RunReport(BaseModel):
    """Human-readable review package for one run."""

    run_id: str
    state: WorkflowState
    verification: VerificationReport | None = None
    red_flags: RedFlagReport | None = None
    root_cause: RootCauseAnalysis | None = None
    fix_attempts: list[FixAttempt] = Field(default_factory=list)
    bundle_ids: list[str] = Field(default_factory=list)

    @property
    def summary(self) -> str:
        """One-line summary of the run outcome."""
        state = self.state
        parts = [f"{self.run_id}: {state.stage.value}"]
        if self.verification is not None:
            parts.append(
                f"confidence {self.verification.confidence_score} "
                f"({self.verification.recommendation.value})"
            )
        if self.red_flags is not None and self.red_flags.flags:
            parts.append(f"{len(self.red_flags.flags)} red flag(s)")
        if self.fix_attempts:
            parts.append(f"{len(self.fix_attempts)} fix attempt(s)")
        if state.terminal_reason:
            parts.append(state.terminal_reason)
        return ", ".join(parts)
