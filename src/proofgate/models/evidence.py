"""
Evidence Data Models.

Raw execution output arrives from the external execution backend as a
RawExecutionOutput: an optional outcome, a list of raw artifacts (bytes
plus a typed detail record) and the actions the executor claims to have
performed. The Evidence Collector normalizes this into an immutable
EvidenceBundle whose artifacts are content-addressed ArtifactRefs.

Artifact details are a tagged union on `kind` so detectors can match
exhaustively on the artifact type instead of probing open dictionaries.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from proofgate.models.base import ArtifactKind, ExecutionKind

# =============================================================================
# Artifact details (tagged union)
# =============================================================================


class ScreenshotDetail(BaseModel):
    """Screenshot artifact metadata.

    Attributes:
        phase: When the screenshot was captured relative to the action
        shows_error: Whether the captured screen displays an error state
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["screenshot"] = "screenshot"
    phase: Literal["before", "after", "other"] = "other"
    shows_error: bool = False


class DomSnapshotDetail(BaseModel):
    """DOM / application state snapshot metadata.

    Attributes:
        element_count: Number of elements in the snapshot
        changes: Number of DOM mutations observed during the run
        missing_elements: Expected elements that were not found
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["dom_snapshot"] = "dom_snapshot"
    element_count: int = Field(default=0, ge=0)
    changes: int = Field(default=0, ge=0)
    missing_elements: tuple[str, ...] = ()


class LogDetail(BaseModel):
    """Log artifact metadata.

    `line_count` and `error_lines` are filled in by the collector from the
    log bytes when the executor did not provide them.

    Attributes:
        source: Log source name (console, build, test_output)
        line_count: Number of non-empty lines
        error_lines: Lines matching error patterns
        expects_errors: The test intentionally produces errors
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["log"] = "log"
    source: str = "console"
    line_count: int | None = Field(default=None, ge=0)
    error_lines: tuple[str, ...] = ()
    expects_errors: bool = False


class TraceEntry(BaseModel):
    """A single request/response pair in a network or API trace."""

    model_config = ConfigDict(frozen=True)

    method: str = "GET"
    url: str = ""
    status: int | None = Field(default=None, description="None when no response was received")
    duration_ms: float = Field(default=0.0, ge=0.0)


class TraceDetail(BaseModel):
    """Network / API / process trace metadata.

    Attributes:
        entries: Request/response pairs captured in the trace
        exit_code: Process exit code recorded by the trace, if any
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["trace"] = "trace"
    entries: tuple[TraceEntry, ...] = ()
    exit_code: int | None = None

    @property
    def total_duration_ms(self) -> float:
        """Sum of entry durations."""
        return sum(e.duration_ms for e in self.entries)


class ToolCallDetail(BaseModel):
    """A recorded tool invocation.

    Attributes:
        tool: Tool name (e.g. mcp__browser__click)
        request_id: Correlation id of the request
        has_response: Whether a matching response was captured
        succeeded: Tool-reported success, None if unknown
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_call"] = "tool_call"
    tool: str
    request_id: str = ""
    has_response: bool = False
    succeeded: bool | None = None


class CoverageDetail(BaseModel):
    """Coverage report metadata."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["coverage"] = "coverage"
    line_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    assertion_count: int = Field(default=0, ge=0)


ArtifactDetail = Annotated[
    Union[
        ScreenshotDetail,
        DomSnapshotDetail,
        LogDetail,
        TraceDetail,
        ToolCallDetail,
        CoverageDetail,
    ],
    Field(discriminator="kind"),
]


# =============================================================================
# Raw execution output (input to the collector)
# =============================================================================

# Keyword -> artifact kind used to infer what a claimed action must produce
_CLAIM_KEYWORDS: list[tuple[tuple[str, ...], ArtifactKind]] = [
    (("test", "suite", "spec"), ArtifactKind.TRACE),
    (("request", "endpoint", "api call"), ArtifactKind.TRACE),
    (("build", "compile", "install", "lint"), ArtifactKind.LOG),
    (("screenshot", "capture"), ArtifactKind.SCREENSHOT),
    (("navigate", "click", "render", "page"), ArtifactKind.DOM_SNAPSHOT),
    (("coverage",), ArtifactKind.COVERAGE),
    (("tool", "invoke"), ArtifactKind.TOOL_CALL),
]


class ClaimedAction(BaseModel):
    """An action the executor claims to have performed.

    Attributes:
        description: Free text, e.g. "ran tests"
        expected_artifact: Artifact kind that proves the action happened
    """

    model_config = ConfigDict(frozen=True)

    description: str
    expected_artifact: ArtifactKind

    @classmethod
    def from_description(cls, description: str) -> ClaimedAction:
        """Infer the expected artifact kind from the action text.

        Falls back to LOG when nothing more specific matches.
        """
        lowered = description.lower()
        for keywords, kind in _CLAIM_KEYWORDS:
            if any(k in lowered for k in keywords):
                return cls(description=description, expected_artifact=kind)
        return cls(description=description, expected_artifact=ArtifactKind.LOG)


class ExecutionOutcome(BaseModel):
    """Structured pass/fail summary reported by the executor.

    Attributes:
        passed: Whether the executor claims the test passed
        duration_ms: Wall-clock duration of the execution
        assertions_total: Assertions evaluated
        assertions_passed: Assertions that passed
        exit_code: Process exit code, if reported
        error_message: Primary error message on failure
        stack_trace: Stack trace on failure
        explanation: Executor note explaining intentional coverage changes
    """

    model_config = ConfigDict(frozen=True)

    passed: bool
    duration_ms: float = Field(default=0.0, ge=0.0)
    assertions_total: int = Field(default=0, ge=0)
    assertions_passed: int = Field(default=0, ge=0)
    exit_code: int | None = None
    error_message: str | None = None
    stack_trace: str | None = None
    explanation: str | None = None

    @model_validator(mode="after")
    def validate_assertions(self) -> ExecutionOutcome:
        """Passed assertions cannot exceed the total."""
        if self.assertions_passed > self.assertions_total:
            raise ValueError(
                f"assertions_passed ({self.assertions_passed}) exceeds "
                f"assertions_total ({self.assertions_total})"
            )
        return self


class RawArtifact(BaseModel):
    """One artifact as produced by the execution backend."""

    detail: ArtifactDetail
    content: bytes
    captured_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    label: str = ""


class RawExecutionOutput(BaseModel):
    """Everything the execution backend returned for one execution.

    `outcome` is None when the executor crashed before reporting; the
    collector refuses to build a bundle from such output.
    """

    test_name: str = ""
    execution_kind: ExecutionKind = ExecutionKind.API
    outcome: ExecutionOutcome | None = None
    artifacts: list[RawArtifact] = Field(default_factory=list)
    claimed_actions: list[ClaimedAction] = Field(default_factory=list)
    change_ref: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Normalized evidence
# =============================================================================


class ArtifactRef(BaseModel):
    """Content-addressed reference to a stored artifact.

    Attributes:
        content_hash: SHA-256 hex digest of the artifact bytes
        path: Storage path of the bytes in the artifact store
        captured_at: When the artifact was captured
        size_bytes: Size of the stored bytes
        label: Optional human label
        detail: Kind-specific metadata
    """

    model_config = ConfigDict(frozen=True)

    content_hash: str
    path: str
    captured_at: datetime
    size_bytes: int = Field(ge=0)
    label: str = ""
    detail: ArtifactDetail

    @property
    def kind(self) -> ArtifactKind:
        """Artifact kind from the detail tag."""
        return ArtifactKind(self.detail.kind)


class EvidenceBundle(BaseModel):
    """Immutable record of everything captured for one execution attempt.

    Attributes:
        bundle_id: Deterministic id derived from run, attempt and hashes
        run_id: Owning run
        attempt: Execution attempt number (1-based)
        execution_kind: UI or API execution
        test_name: Name of the executed test
        artifacts: Ordered artifact references
        outcome: Structured outcome summary
        claimed_actions: Actions the executor claims to have performed
        change_ref: Code-change handle the execution ran against
        outcome_missing: The executor reported no outcome; `outcome` is a
            synthesized failure kept so the artifacts stay on record
        created_at: When the bundle was written
    """

    model_config = ConfigDict(frozen=True)

    bundle_id: str
    run_id: str
    attempt: int = Field(ge=1)
    execution_kind: ExecutionKind
    test_name: str = ""
    artifacts: tuple[ArtifactRef, ...] = ()
    outcome: ExecutionOutcome
    claimed_actions: tuple[ClaimedAction, ...] = ()
    change_ref: str | None = None
    outcome_missing: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def artifacts_of(self, kind: ArtifactKind) -> list[ArtifactRef]:
        """Return artifacts of the given kind in bundle order."""
        return [a for a in self.artifacts if a.kind == kind]

    def has_kind(self, kind: ArtifactKind) -> bool:
        """Whether at least one artifact of the kind is present."""
        return any(a.kind == kind for a in self.artifacts)

    @computed_field
    @property
    def content_hashes(self) -> list[str]:
        """Content hashes in artifact order."""
        return [a.content_hash for a in self.artifacts]
