"""
Proofgate - Independent Verification

Second review of an evidence bundle and its red flags:

- IntegrityChecker: stored artifacts match their references
- CrossValidator: independent artifacts corroborate each other
- SkepticalAnalyzer: reasons to disbelieve the claimed result
- IndependentVerifier: combines the passes into a confidence score
"""

from proofgate.verification.cross_validation import CrossValidator
from proofgate.verification.integrity import IntegrityChecker, IntegrityResult
from proofgate.verification.skeptical import (
    SkepticalAnalyzer,
    SkepticalResult,
    SuspiciousPattern,
)
from proofgate.verification.verifier import (
    EXPECTED_ARTIFACT_COUNT,
    RED_FLAG_PENALTY,
    IndependentVerifier,
    decide_recommendation,
)

__all__ = [
    "CrossValidator",
    "IntegrityChecker",
    "IntegrityResult",
    "SkepticalAnalyzer",
    "SkepticalResult",
    "SuspiciousPattern",
    "EXPECTED_ARTIFACT_COUNT",
    "RED_FLAG_PENALTY",
    "IndependentVerifier",
    "decide_recommendation",
]
