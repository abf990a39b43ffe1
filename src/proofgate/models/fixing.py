"""
Diagnosis and Repair Models.

- RootCauseAnalysis: one per failing execution attempt
- FixPlan / FixApplication: request and reply of the external fix call
- FixAttempt: append-only log of repair attempts within a run
- FixLearning: cross-run success statistics per (pattern, strategy)
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from proofgate.models.base import Complexity, FailureCategory, FixStrategy, ModelTier


class RootCauseAnalysis(BaseModel):
    """Diagnosis of a failing attempt.

    Attributes:
        run_id: Owning run
        attempt: Execution attempt diagnosed
        bundle_id: Bundle diagnosed, None when the execution had no outcome
        category: Failure category
        complexity: Estimated fix complexity
        root_cause: Concrete root-cause statement
        failure_pattern: Normalized signature used as the learning-store key
        recommended_strategy: Initial repair direction, if any
        confidence: Classifier confidence in [0, 1]
        symptoms: Observed symptoms
        involved_files: Files referenced by the stack trace
        diagnosis_reasoning: How the classification was reached
        estimated_fix_difficulty: 1-3, or 0 when a human must decide
        error_message: Primary error text the diagnosis was based on
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    attempt: int = Field(ge=1)
    bundle_id: str | None = None
    category: FailureCategory
    complexity: Complexity
    root_cause: str
    failure_pattern: str
    recommended_strategy: FixStrategy | None = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    symptoms: tuple[str, ...] = ()
    involved_files: tuple[str, ...] = ()
    diagnosis_reasoning: str = ""
    estimated_fix_difficulty: int = Field(default=2, ge=0, le=3)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class FixPlan(BaseModel):
    """Request sent to the external fix-application call."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    attempt_number: int = Field(ge=1, description="Fix attempt number within the run")
    execution_attempt: int = Field(ge=1, description="Execution attempt being repaired")
    strategy: FixStrategy
    strategy_description: str = ""
    tier: ModelTier
    model_name: str
    target: str = Field(..., description="Code-change reference to repair")
    criteria: tuple[str, ...] = ()
    rca: RootCauseAnalysis


class FixApplication(BaseModel):
    """Reply from the external fix-application call.

    Attributes:
        success: Whether the fix was applied (not whether it works)
        changes_made: Description of the applied change
        change_ref: Handle of the changed code to execute next
        error_message: Why the application failed
        cost_usd: Reported cost, estimated from the tier when absent
        tokens_used: Reported token usage
    """

    success: bool
    changes_made: str = ""
    change_ref: str | None = None
    error_message: str | None = None
    cost_usd: float | None = Field(default=None, ge=0.0)
    tokens_used: int | None = Field(default=None, ge=0)


class FixAttempt(BaseModel):
    """One completed repair attempt.

    A fix attempt completes when the next verification verdict is known
    (or immediately, as a failure, when the fix could not be applied).
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    attempt_number: int = Field(ge=1)
    execution_attempt: int = Field(ge=1)
    tier: ModelTier
    model_used: str
    strategy: FixStrategy
    failure_pattern: str
    success: bool
    cost_usd: float = Field(default=0.0, ge=0.0)
    tokens_used: int = Field(default=0, ge=0)
    changes_made: str = ""
    change_ref: str | None = None
    error_message: str | None = None
    completed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class FixLearning(BaseModel):
    """Success statistics for a (failure pattern, fix strategy) pair.

    The success rate is always derived from the counters and never stored
    independently of them.
    """

    model_config = ConfigDict(frozen=True)

    failure_pattern: str
    fix_strategy: FixStrategy
    times_tried: int = Field(default=0, ge=0)
    times_succeeded: int = Field(default=0, ge=0)
    error_regex: str | None = None
    file_pattern: str | None = None
    complexity: Complexity | None = None
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def validate_counters(self) -> FixLearning:
        """Successes cannot exceed tries."""
        if self.times_succeeded > self.times_tried:
            raise ValueError(
                f"times_succeeded ({self.times_succeeded}) exceeds times_tried ({self.times_tried})"
            )
        return self

    @computed_field
    @property
    def success_rate(self) -> float:
        """times_succeeded / times_tried, 0.0 when never tried."""
        if self.times_tried == 0:
            return 0.0
        return self.times_succeeded / self.times_tried

    @property
    def key(self) -> tuple[str, FixStrategy]:
        return (self.failure_pattern, self.fix_strategy)
