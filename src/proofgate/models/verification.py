"""
Verification Report Models.

The Independent Verifier produces exactly one VerificationReport per
(bundle, verifier pass). Reports are immutable once written.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from proofgate.models.base import ModelTier, Recommendation, Severity

FindingSource = Literal[
    "outcome", "integrity", "cross_validation", "skeptical", "red_flag", "completeness"
]


class VerificationFinding(BaseModel):
    """A per-evidence finding that contributed to the confidence score.

    Attributes:
        source: Which verifier pass produced the finding
        name: Finding identifier within the pass
        severity: Finding severity
        message: Human-readable explanation
        score_delta: Signed contribution to the confidence score
        artifact_hashes: Artifacts the finding refers to
    """

    model_config = ConfigDict(frozen=True)

    source: FindingSource
    name: str
    severity: Severity = Severity.MEDIUM
    message: str
    score_delta: float = 0.0
    artifact_hashes: tuple[str, ...] = ()


class CrossValidationNote(BaseModel):
    """Result of corroborating two independent pieces of evidence."""

    model_config = ConfigDict(frozen=True)

    check: str
    matched: bool
    expected: str = ""
    actual: str = ""
    severity: Severity = Severity.MEDIUM
    message: str = ""


class VerificationFactors(BaseModel):
    """Sub-scores reported alongside the confidence score."""

    model_config = ConfigDict(frozen=True)

    evidence_completeness: float = Field(default=0.0, ge=0.0, le=100.0)
    evidence_consistency: float = Field(default=0.0, ge=0.0, le=100.0)
    integrity_passed: bool = True


class VerificationReport(BaseModel):
    """Outcome of the independent verification pass.

    A report with any critical red flag never recommends ACCEPT. REVIEW is
    treated as reject by the automatic pipeline and flagged for escalation.

    Attributes:
        run_id: Owning run
        attempt: Execution attempt verified
        bundle_id: Verified bundle
        confidence_score: Confidence in [0, 100]
        recommendation: accept / review / reject
        findings: Per-evidence findings
        cross_validation: Cross-validation notes
        factors: Sub-scores
        critical_flags: Number of critical red flags considered
        verifier_model: Model name that provisioned the verifier
        verifier_tier: Tier of the verifier model
        reasoning: Short explanation of the recommendation
        created_at: When the report was produced
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    attempt: int = Field(ge=1)
    bundle_id: str
    confidence_score: int = Field(ge=0, le=100)
    recommendation: Recommendation
    findings: tuple[VerificationFinding, ...] = ()
    cross_validation: tuple[CrossValidationNote, ...] = ()
    factors: VerificationFactors = Field(default_factory=VerificationFactors)
    critical_flags: int = Field(default=0, ge=0)
    verifier_model: str = ""
    verifier_tier: ModelTier = ModelTier.BALANCED
    reasoning: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def passed(self) -> bool:
        """Only ACCEPT counts as a pass for automation."""
        return self.recommendation == Recommendation.ACCEPT

    @property
    def needs_review(self) -> bool:
        return self.recommendation == Recommendation.REVIEW
