"""
Configuration Data Models.

Defines all configuration schemas using Pydantic for validation
and type safety.
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from proofgate.models.base import ExecutionKind, ModelTier, WorkflowStage


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StorageBackend(str, Enum):
    """Where records and artifacts are persisted."""

    FILE = "file"
    MEMORY = "memory"


class TierModelConfig(BaseModel):
    """Model assigned to one rung of the tier ladder.

    Attributes:
        name: Model identifier passed to the fix service
        cost_per_million_tokens: Blended cost used for estimates
        estimated_tokens: Token estimate per fix attempt when unreported
    """

    name: str = Field(
        ...,
        description="Model identifier",
        examples=["claude-haiku-4-5", "claude-opus-4-5"],
    )
    cost_per_million_tokens: float = Field(
        default=0.0,
        ge=0.0,
        description="Cost per million tokens (USD)",
    )
    estimated_tokens: int = Field(
        default=5000,
        ge=0,
        description="Estimated tokens per fix attempt",
    )

    def estimate_cost(self, tokens: int | None = None) -> float:
        """Estimate cost in USD for a number of tokens."""
        used = self.estimated_tokens if tokens is None else tokens
        return used / 1_000_000 * self.cost_per_million_tokens


# Default tier ladder models
DEFAULT_TIER_MODELS: dict[ModelTier, TierModelConfig] = {
    ModelTier.CHEAP: TierModelConfig(
        name="claude-haiku-4-5",
        cost_per_million_tokens=1.25,
    ),
    ModelTier.BALANCED: TierModelConfig(
        name="claude-sonnet-4-5",
        cost_per_million_tokens=15.0,
    ),
    ModelTier.CAPABLE: TierModelConfig(
        name="claude-opus-4-5",
        cost_per_million_tokens=75.0,
    ),
}


class ModelsConfig(BaseModel):
    """Model tier ladder configuration.

    Attributes:
        tiers: Model per tier
    """

    tiers: dict[ModelTier, TierModelConfig] = Field(
        default_factory=lambda: {k: v.model_copy() for k, v in DEFAULT_TIER_MODELS.items()},
        description="Model per tier",
    )

    @field_validator("tiers")
    @classmethod
    def fill_missing_tiers(cls, v: dict[ModelTier, TierModelConfig]) -> dict[ModelTier, TierModelConfig]:
        """Fall back to defaults for tiers not configured."""
        merged = {k: d.model_copy() for k, d in DEFAULT_TIER_MODELS.items()}
        merged.update(v)
        return merged

    def get_tier_config(self, tier: ModelTier) -> TierModelConfig:
        """Get the model configuration for a tier."""
        return self.tiers[tier]


class OrchestratorSettings(BaseModel):
    """Scheduling, timeout and stage-retry settings.

    Attributes:
        max_concurrent_runs: Concurrency ceiling for active runs
        default_stage_timeout: Timeout in seconds for stages without an override
        stage_timeouts: Per-stage timeout overrides in seconds
        stage_retry_limit: Retries of a stage that raised before failing the run
    """

    max_concurrent_runs: int = Field(
        default=3,
        ge=1,
        le=64,
        description="Maximum runs executing concurrently",
    )
    default_stage_timeout: float = Field(
        default=300.0,
        gt=0.0,
        description="Default per-stage timeout (seconds)",
    )
    stage_timeouts: dict[WorkflowStage, float] = Field(
        default_factory=lambda: {
            WorkflowStage.EXECUTING: 900.0,
            WorkflowStage.FIX_APPLYING: 900.0,
        },
        description="Per-stage timeout overrides (seconds)",
    )
    stage_retry_limit: int = Field(
        default=1,
        ge=0,
        le=5,
        description="Retries for a stage that raised",
    )

    @field_validator("stage_timeouts")
    @classmethod
    def validate_timeouts(cls, v: dict[WorkflowStage, float]) -> dict[WorkflowStage, float]:
        """Timeouts must be positive."""
        for stage, seconds in v.items():
            if seconds <= 0:
                raise ValueError(f"Timeout for stage '{stage.value}' must be positive")
        return v

    def timeout_for(self, stage: WorkflowStage) -> float:
        """Get the timeout for a stage."""
        return self.stage_timeouts.get(stage, self.default_stage_timeout)


class VerificationConfig(BaseModel):
    """Independent verifier configuration.

    Attributes:
        accept_threshold: Minimum score for ACCEPT
        review_threshold: Minimum score for REVIEW
        verifier_tier: Tier of the model provisioning the verifier
    """

    accept_threshold: int = Field(
        default=90,
        ge=0,
        le=100,
        description="Minimum confidence for accept",
    )
    review_threshold: int = Field(
        default=60,
        ge=0,
        le=100,
        description="Minimum confidence for manual review",
    )
    verifier_tier: ModelTier = Field(
        default=ModelTier.BALANCED,
        description="Verifier model tier (never the cheap tier)",
    )

    @field_validator("verifier_tier")
    @classmethod
    def validate_verifier_tier(cls, v: ModelTier) -> ModelTier:
        """The verifier must not run on the cheapest tier."""
        if v == ModelTier.CHEAP:
            raise ValueError("verifier_tier must not be the cheap tier")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "VerificationConfig":
        """Accept threshold must be above review threshold."""
        if self.accept_threshold <= self.review_threshold:
            raise ValueError(
                f"accept_threshold ({self.accept_threshold}) must be greater than "
                f"review_threshold ({self.review_threshold})"
            )
        return self


class DetectionConfig(BaseModel):
    """Red flag detector configuration.

    Attributes:
        missing_evidence: Enable the missing-evidence check
        inconsistent_evidence: Enable the inconsistent-evidence check
        unverified_claims: Enable the unverified-tool-claim check
        timing_anomalies: Enable the timing-anomaly check
        coverage_regression: Enable the coverage-regression check
        min_duration_ms: Minimum plausible duration per execution kind
        history_min_samples: Prior attempts needed for historical timing
        history_fast_ratio: Fraction of the mean below which a run is suspicious
        history_stddev_factor: Std-devs below the mean that raise severity
    """

    missing_evidence: bool = True
    inconsistent_evidence: bool = True
    unverified_claims: bool = True
    timing_anomalies: bool = True
    coverage_regression: bool = True
    min_duration_ms: dict[ExecutionKind, float] = Field(
        default_factory=lambda: {ExecutionKind.UI: 500.0, ExecutionKind.API: 100.0},
        description="Minimum plausible duration per execution kind (ms)",
    )
    history_min_samples: int = Field(default=3, ge=1)
    history_fast_ratio: float = Field(default=0.5, gt=0.0, lt=1.0)
    history_stddev_factor: float = Field(default=2.5, gt=0.0)


class LearningConfig(BaseModel):
    """Fix learning store configuration.

    Attributes:
        reliability_threshold: Success rate above which a learning is reused
        similarity_threshold: Minimum keyword similarity for a near match
        graph_min_success_rate: Rows at or above this rate enter the graph
    """

    reliability_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    similarity_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    graph_min_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)


class RetryConfig(BaseModel):
    """Retry / tier escalation configuration.

    Attributes:
        max_attempts: Hard ceiling on fix attempts per run
        max_total_cost_usd: Optional cost budget per run
    """

    max_attempts: int = Field(default=3, ge=1, le=10)
    max_total_cost_usd: float | None = Field(default=None, ge=0.0)


class StorageConfig(BaseModel):
    """Persistence configuration.

    Attributes:
        backend: file or memory
        base_dir: Root directory for the file backend
    """

    backend: StorageBackend = Field(default=StorageBackend.FILE)
    base_dir: str = Field(default=".proofgate")

    @field_validator("base_dir")
    @classmethod
    def validate_base_dir(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Storage base_dir cannot be empty")
        return v


class BackendConfig(BaseModel):
    """Remote execution service configuration."""

    base_url: str | None = Field(default=None, description="Execution service URL")
    timeout: float = Field(default=120.0, gt=0.0)
    max_retries: int = Field(default=3, ge=1, le=10)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(default=LogLevel.INFO)
    file: str | None = Field(default=None, description="Optional log file path")


class ProofgateConfig(BaseModel):
    """Root configuration for the entire system.

    Attributes:
        orchestrator: Scheduling and timeout settings
        verification: Verifier thresholds
        detection: Red flag checks
        learning: Learning store thresholds
        retry: Retry ceiling and cost budget
        models: Tier ladder models
        storage: Persistence
        backend: Execution service
        logging: Logging
        debug: Enable debug mode
    """

    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    debug: bool = Field(default=False)
