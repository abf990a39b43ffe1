"""
Base enumerations shared across proofgate data models.

All enums derive from (str, Enum) so they serialize to their plain
value in JSON records and YAML configuration.
"""

from enum import Enum


class ExecutionKind(str, Enum):
    """How a test was executed."""

    UI = "ui"
    API = "api"


class ArtifactKind(str, Enum):
    """Kind of captured evidence artifact."""

    SCREENSHOT = "screenshot"
    DOM_SNAPSHOT = "dom_snapshot"
    LOG = "log"
    TRACE = "trace"
    TOOL_CALL = "tool_call"
    COVERAGE = "coverage"


class Severity(str, Enum):
    """Severity of a red flag or analysis finding.

    Ordered from least to most severe; use `rank` for comparisons.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class FlagCategory(str, Enum):
    """Category of a red flag."""

    MISSING_EVIDENCE = "missing_evidence"
    INCONSISTENT_EVIDENCE = "inconsistent_evidence"
    UNVERIFIED_CLAIM = "unverified_claim"
    TIMING_ANOMALY = "timing_anomaly"
    COVERAGE_REGRESSION = "coverage_regression"


class DetectorVerdict(str, Enum):
    """Aggregate verdict of the red flag detector."""

    PASS = "pass"
    REVIEW = "review"
    FAIL = "fail"


class Recommendation(str, Enum):
    """Independent verifier recommendation."""

    ACCEPT = "accept"
    REVIEW = "review"
    REJECT = "reject"


class FailureCategory(str, Enum):
    """Root cause failure category."""

    SYNTAX = "syntax"
    LOGIC = "logic"
    INTEGRATION = "integration"
    ENVIRONMENT = "environment"


class Complexity(str, Enum):
    """Estimated fix complexity."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    REQUIRES_HUMAN = "requires_human"


class FixStrategy(str, Enum):
    """Concrete repair strategies the fix service can apply."""

    TYPO_CORRECTION = "typo_correction"
    SYNTAX_FIX = "syntax_fix"
    FORMATTING = "formatting"
    REFACTOR = "refactor"
    ALGORITHM_FIX = "algorithm_fix"
    CONDITION_FIX = "condition_fix"
    IMPORT_FIX = "import_fix"
    DEPENDENCY_ADD = "dependency_add"
    API_UPDATE = "api_update"
    ENV_VAR_ADD = "env_var_add"
    CONFIG_FIX = "config_fix"
    PERMISSION_FIX = "permission_fix"


class ModelTier(str, Enum):
    """Cost/capability tier used for fix attempts."""

    CHEAP = "cheap"
    BALANCED = "balanced"
    CAPABLE = "capable"


class WorkflowStage(str, Enum):
    """Stages of the per-run verification state machine."""

    PENDING = "pending"
    EXECUTING = "executing"
    EVIDENCE_COLLECTED = "evidence_collected"
    RED_FLAG_CHECKED = "red_flag_checked"
    VERIFYING = "verifying"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DIAGNOSING = "diagnosing"
    FIX_SELECTED = "fix_selected"
    FIX_APPLYING = "fix_applying"
    COMPLETED = "completed"
    ESCALATED = "escalated"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible."""
        return self in TERMINAL_STAGES


TERMINAL_STAGES = frozenset(
    {
        WorkflowStage.COMPLETED,
        WorkflowStage.ESCALATED,
        WorkflowStage.TIMED_OUT,
        WorkflowStage.FAILED,
    }
)


class WorkflowStatus(str, Enum):
    """Coarse run status exposed to callers."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"
    TIMED_OUT = "timed_out"


class EscalationReason(str, Enum):
    """Why a run was handed off for external intervention."""

    MAX_RETRIES = "Max retries exhausted"
    NO_STRATEGIES = "No more strategies available"
    REQUIRES_HUMAN = "Root cause requires human decision"
    COST_BUDGET = "Cost budget exhausted"
