"""
Proofgate - Red Flag Detection

Independent checks over an evidence bundle that surface missing,
inconsistent, or unverified evidence before independent verification.
"""

from proofgate.red_flags.checks import (
    DEFAULT_CHECKS,
    REQUIRED_ARTIFACTS,
    CheckContext,
    CoverageRegressionCheck,
    InconsistentEvidenceCheck,
    MissingEvidenceCheck,
    RedFlagCheck,
    TimingAnomalyCheck,
    UnverifiedClaimCheck,
)
from proofgate.red_flags.detector import (
    BatchDetectionSummary,
    RedFlagDetector,
    aggregate_batch,
    sort_flags,
)

__all__ = [
    # Checks
    "DEFAULT_CHECKS",
    "REQUIRED_ARTIFACTS",
    "CheckContext",
    "CoverageRegressionCheck",
    "InconsistentEvidenceCheck",
    "MissingEvidenceCheck",
    "RedFlagCheck",
    "TimingAnomalyCheck",
    "UnverifiedClaimCheck",
    # Detector
    "BatchDetectionSummary",
    "RedFlagDetector",
    "aggregate_batch",
    "sort_flags",
]
