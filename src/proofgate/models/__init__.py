"""
Proofgate - Core Data Models

Pydantic models for every record the verification pipeline produces.
Immutable records (bundles, flags, reports, diagnoses, fix attempts) are
frozen; WorkflowState is the only mutable record and is owned by the
orchestrator.
"""

from proofgate.models.base import (
    TERMINAL_STAGES,
    ArtifactKind,
    Complexity,
    DetectorVerdict,
    EscalationReason,
    ExecutionKind,
    FailureCategory,
    FixStrategy,
    FlagCategory,
    ModelTier,
    Recommendation,
    Severity,
    WorkflowStage,
    WorkflowStatus,
)
from proofgate.models.evidence import (
    ArtifactDetail,
    ArtifactRef,
    ClaimedAction,
    CoverageDetail,
    DomSnapshotDetail,
    EvidenceBundle,
    ExecutionOutcome,
    LogDetail,
    RawArtifact,
    RawExecutionOutput,
    ScreenshotDetail,
    ToolCallDetail,
    TraceDetail,
    TraceEntry,
)
from proofgate.models.fixing import (
    FixApplication,
    FixAttempt,
    FixLearning,
    FixPlan,
    RootCauseAnalysis,
)
from proofgate.models.red_flags import RedFlag, RedFlagReport
from proofgate.models.verification import (
    CrossValidationNote,
    VerificationFactors,
    VerificationFinding,
    VerificationReport,
)
from proofgate.models.workflow import (
    PendingFix,
    RunReport,
    StageTransition,
    StartResult,
    VerificationRequest,
    WorkflowState,
)

__all__ = [
    # Enums
    "ArtifactKind",
    "Complexity",
    "DetectorVerdict",
    "EscalationReason",
    "ExecutionKind",
    "FailureCategory",
    "FixStrategy",
    "FlagCategory",
    "ModelTier",
    "Recommendation",
    "Severity",
    "TERMINAL_STAGES",
    "WorkflowStage",
    "WorkflowStatus",
    # Evidence
    "ArtifactDetail",
    "ArtifactRef",
    "ClaimedAction",
    "CoverageDetail",
    "DomSnapshotDetail",
    "EvidenceBundle",
    "ExecutionOutcome",
    "LogDetail",
    "RawArtifact",
    "RawExecutionOutput",
    "ScreenshotDetail",
    "ToolCallDetail",
    "TraceDetail",
    "TraceEntry",
    # Red flags
    "RedFlag",
    "RedFlagReport",
    # Verification
    "CrossValidationNote",
    "VerificationFactors",
    "VerificationFinding",
    "VerificationReport",
    # Fixing
    "FixApplication",
    "FixAttempt",
    "FixLearning",
    "FixPlan",
    "RootCauseAnalysis",
    # Workflow
    "PendingFix",
    "RunReport",
    "StageTransition",
    "StartResult",
    "VerificationRequest",
    "WorkflowState",
]
