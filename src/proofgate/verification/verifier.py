"""
Independent Verifier.

A second, separately provisioned review of an evidence bundle and its red
flags. It never trusts the executor's self-report: it re-reads artifacts
from the store, corroborates them against each other and actively searches
for reasons to disbelieve the claimed result.

Scoring (start at 100, clamp to [0, 100]):
- red flags: critical -50, high -20, medium -10
- cross-validation mismatches: -15 each
- missing required artifacts: -25 each
- suspicious patterns: high -20, others -10, scaled x1.25 when the worst
  red flag is high and x1.5 when it is critical
- failed integrity pass: -30
- complete required evidence: +10
- the executor itself reports failure: -50

Any critical red flag forces REJECT regardless of the score, and so does
an outcome that reports failure: the gate only accepts verified passes.
"""

from __future__ import annotations

import asyncio
import logging

from proofgate.config.models import DetectionConfig, ModelsConfig, VerificationConfig
from proofgate.models.base import ExecutionKind, Recommendation, Severity
from proofgate.models.evidence import EvidenceBundle
from proofgate.models.red_flags import RedFlagReport
from proofgate.models.verification import (
    CrossValidationNote,
    VerificationFactors,
    VerificationFinding,
    VerificationReport,
)
from proofgate.red_flags.checks import REQUIRED_ARTIFACTS
from proofgate.storage import ArtifactStore
from proofgate.verification.cross_validation import CrossValidator
from proofgate.verification.integrity import IntegrityChecker, IntegrityResult
from proofgate.verification.skeptical import SkepticalAnalyzer, SkepticalResult

logger = logging.getLogger(__name__)

RED_FLAG_PENALTY: dict[Severity, float] = {
    Severity.CRITICAL: 50.0,
    Severity.HIGH: 20.0,
    Severity.MEDIUM: 10.0,
    Severity.LOW: 0.0,
}
MISMATCH_PENALTY = 15.0
MISSING_ARTIFACT_PENALTY = 25.0
HIGH_PATTERN_PENALTY = 20.0
PATTERN_PENALTY = 10.0
INTEGRITY_PENALTY = 30.0
REPORTED_FAILURE_PENALTY = 50.0
COMPLETE_EVIDENCE_BONUS = 10.0

# Skeptical weight by the most severe red flag present
SKEPTICISM_MULTIPLIER: dict[Severity, float] = {
    Severity.HIGH: 1.25,
    Severity.CRITICAL: 1.5,
}

# Artifacts a thorough run of each kind produces
EXPECTED_ARTIFACT_COUNT: dict[ExecutionKind, int] = {
    ExecutionKind.UI: 5,
    ExecutionKind.API: 2,
}


def decide_recommendation(
    score: int,
    critical_flags: int,
    config: VerificationConfig | None = None,
    reported_pass: bool = True,
) -> Recommendation:
    """Map a confidence score and critical flag count to a recommendation.

    Args:
        score: Confidence score in [0, 100]
        critical_flags: Number of critical red flags on the bundle
        config: Thresholds; defaults to VerificationConfig()
        reported_pass: Whether the executor reported the test as passed

    Returns:
        REJECT on any critical flag or a reported failure, otherwise ACCEPT at or above the
        accept threshold, REVIEW at or above the review threshold, else REJECT
    """
    config = config or VerificationConfig()
    if critical_flags > 0 or not reported_pass:
        return Recommendation.REJECT
    if score >= config.accept_threshold:
        return Recommendation.ACCEPT
    if score >= config.review_threshold:
        return Recommendation.REVIEW
    return Recommendation.REJECT


class IndependentVerifier:
    """Produces a VerificationReport for a bundle and its red flags.

    Usage:
        verifier = IndependentVerifier(artifact_store, config.verification)
        report = await verifier.verify(bundle, flag_report, history)
    """

    def __init__(
        self,
        artifact_store: ArtifactStore,
        config: VerificationConfig | None = None,
        detection: DetectionConfig | None = None,
        models: ModelsConfig | None = None,
    ) -> None:
        self._config = config or VerificationConfig()
        self._models = models or ModelsConfig()
        self._integrity = IntegrityChecker(artifact_store)
        self._cross = CrossValidator()
        self._skeptical = SkepticalAnalyzer(detection)

    @property
    def config(self) -> VerificationConfig:
        return self._config

    @property
    def model_name(self) -> str:
        """Model provisioning this verifier, distinct from the executor's."""
        return self._models.get_tier_config(self._config.verifier_tier).name

    async def verify(
        self,
        bundle: EvidenceBundle,
        flag_report: RedFlagReport,
        history: list[EvidenceBundle] | None = None,
    ) -> VerificationReport:
        """Verify a bundle.

        The passes read artifact bytes from storage, so they run off the
        event loop.

        Args:
            bundle: Bundle under verification
            flag_report: Red flags raised for the bundle
            history: Earlier bundles of the same run, oldest first

        Returns:
            Immutable verification report
        """
        return await asyncio.to_thread(self.evaluate, bundle, flag_report, history or [])

    def evaluate(
        self,
        bundle: EvidenceBundle,
        flag_report: RedFlagReport,
        history: list[EvidenceBundle],
    ) -> VerificationReport:
        """Synchronous verification; same inputs always give the same report."""
        integrity = self._integrity.check(bundle)
        notes = self._cross.validate(bundle, history)
        skeptical = self._skeptical.analyze(bundle, flag_report)

        findings: list[VerificationFinding] = []
        findings.extend(self._outcome_findings(bundle))
        findings.extend(self._red_flag_findings(flag_report))
        findings.extend(self._mismatch_findings(notes))
        findings.extend(self._completeness_findings(bundle))
        findings.extend(self._skeptical_findings(skeptical, flag_report))
        findings.extend(self._integrity_findings(integrity))

        raw_score = 100.0 + sum(f.score_delta for f in findings)
        score = int(round(max(0.0, min(100.0, raw_score))))

        critical = sum(1 for f in flag_report.flags if f.severity == Severity.CRITICAL)
        recommendation = decide_recommendation(
            score, critical, self._config, reported_pass=bundle.outcome.passed
        )

        mismatches = sum(1 for n in notes if not n.matched)
        expected = EXPECTED_ARTIFACT_COUNT[bundle.execution_kind]
        factors = VerificationFactors(
            evidence_completeness=min(100.0, len(bundle.artifacts) / expected * 100.0),
            evidence_consistency=max(0.0, 100.0 - mismatches * MISMATCH_PENALTY),
            integrity_passed=integrity.passed,
        )

        report = VerificationReport(
            run_id=bundle.run_id,
            attempt=bundle.attempt,
            bundle_id=bundle.bundle_id,
            confidence_score=score,
            recommendation=recommendation,
            findings=tuple(findings),
            cross_validation=tuple(notes),
            factors=factors,
            critical_flags=critical,
            verifier_model=self.model_name,
            verifier_tier=self._config.verifier_tier,
            reasoning=self._reasoning(
                score, recommendation, critical, mismatches, skeptical, bundle.outcome.passed
            ),
        )

        logger.info(
            f"Verified {bundle.run_id} attempt {bundle.attempt}: "
            f"confidence {score} -> {recommendation.value}"
        )
        return report

    @staticmethod
    def _outcome_findings(bundle: EvidenceBundle) -> list[VerificationFinding]:
        outcome = bundle.outcome
        if outcome.passed:
            return []
        return [
            VerificationFinding(
                source="outcome",
                name="reported_failure",
                severity=Severity.HIGH,
                message=outcome.error_message or "Executor reported the test as failed",
                score_delta=-REPORTED_FAILURE_PENALTY,
            )
        ]

    @staticmethod
    def _red_flag_findings(flag_report: RedFlagReport) -> list[VerificationFinding]:
        return [
            VerificationFinding(
                source="red_flag",
                name=flag.check,
                severity=flag.severity,
                message=flag.description,
                score_delta=-RED_FLAG_PENALTY[flag.severity],
                artifact_hashes=flag.artifact_hashes,
            )
            for flag in flag_report.flags
        ]

    @staticmethod
    def _mismatch_findings(notes: list[CrossValidationNote]) -> list[VerificationFinding]:
        return [
            VerificationFinding(
                source="cross_validation",
                name=note.check,
                severity=note.severity,
                message=note.message,
                score_delta=-MISMATCH_PENALTY,
            )
            for note in notes
            if not note.matched
        ]

    @staticmethod
    def _completeness_findings(bundle: EvidenceBundle) -> list[VerificationFinding]:
        required = REQUIRED_ARTIFACTS[bundle.execution_kind]
        missing = [kind for kind in required if not bundle.has_kind(kind)]
        if not missing:
            return [
                VerificationFinding(
                    source="completeness",
                    name="complete_evidence",
                    severity=Severity.LOW,
                    message="All required artifacts are present",
                    score_delta=COMPLETE_EVIDENCE_BONUS,
                )
            ]
        return [
            VerificationFinding(
                source="completeness",
                name=f"missing_{kind.value}",
                severity=Severity.HIGH,
                message=f"Required {kind.value} artifact is missing",
                score_delta=-MISSING_ARTIFACT_PENALTY,
            )
            for kind in missing
        ]

    @staticmethod
    def _skeptical_findings(
        skeptical: SkepticalResult, flag_report: RedFlagReport
    ) -> list[VerificationFinding]:
        worst = flag_report.max_severity
        multiplier = SKEPTICISM_MULTIPLIER.get(worst, 1.0) if worst else 1.0
        findings = []
        for pattern in skeptical.patterns:
            base = HIGH_PATTERN_PENALTY if pattern.severity == Severity.HIGH else PATTERN_PENALTY
            findings.append(
                VerificationFinding(
                    source="skeptical",
                    name=pattern.name,
                    severity=pattern.severity,
                    message=pattern.description,
                    score_delta=-base * multiplier,
                )
            )
        return findings

    @staticmethod
    def _integrity_findings(integrity: IntegrityResult) -> list[VerificationFinding]:
        if integrity.passed:
            return []
        return [
            VerificationFinding(
                source="integrity",
                name="integrity_failed",
                severity=Severity.HIGH,
                message="; ".join(integrity.errors) or "Integrity pass failed",
                score_delta=-INTEGRITY_PENALTY,
            )
        ]

    def _reasoning(
        self,
        score: int,
        recommendation: Recommendation,
        critical: int,
        mismatches: int,
        skeptical: SkepticalResult,
        reported_pass: bool = True,
    ) -> str:
        if critical:
            return (
                f"Rejected: {critical} critical red flag(s) present; "
                f"confidence {score} is not considered"
            )
        if not reported_pass:
            return f"Rejected: the executor reported the test as failed (confidence {score})"
        parts = [f"Confidence {score}"]
        if recommendation == Recommendation.ACCEPT:
            parts.append(f"meets the accept threshold of {self._config.accept_threshold}")
        elif recommendation == Recommendation.REVIEW:
            parts.append(
                f"is between the review ({self._config.review_threshold}) and accept "
                f"({self._config.accept_threshold}) thresholds"
            )
        else:
            parts.append(f"is below the review threshold of {self._config.review_threshold}")
        if mismatches:
            parts.append(f"{mismatches} cross-validation mismatch(es)")
        if skeptical.suspicious:
            parts.append(f"concerns: {'; '.join(skeptical.concerns)}")
        return ", ".join(parts)
