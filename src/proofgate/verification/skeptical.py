"""
Skeptical Analysis Pass.

Actively looks for reasons to disbelieve a claimed result. Patterns are
deliberately overlapping with the red flag checks: the verifier re-derives
its doubts from the raw evidence instead of trusting the detector.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from proofgate.config.models import DetectionConfig
from proofgate.models.base import ArtifactKind, ExecutionKind, Severity
from proofgate.models.evidence import CoverageDetail, EvidenceBundle, LogDetail, TraceDetail
from proofgate.models.red_flags import RedFlagReport
from proofgate.red_flags.checks import REQUIRED_ARTIFACTS

logger = logging.getLogger(__name__)


@dataclass
class SuspiciousPattern:
    """One reason to doubt the claimed result."""

    name: str
    description: str
    severity: Severity
    evidence: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "severity": self.severity.value,
            "evidence": dict(self.evidence),
        }


@dataclass
class SkepticalResult:
    """Outcome of the skeptical pass."""

    patterns: list[SuspiciousPattern] = field(default_factory=list)

    @property
    def suspicious(self) -> bool:
        return bool(self.patterns)

    @property
    def concerns(self) -> list[str]:
        return [p.description for p in self.patterns]

    @property
    def recommend_manual_review(self) -> bool:
        return any(p.severity == Severity.HIGH for p in self.patterns)


class SkepticalAnalyzer:
    """Searches for suspicious patterns in a bundle and its red flags."""

    def __init__(self, config: DetectionConfig | None = None) -> None:
        self._config = config or DetectionConfig()

    def analyze(self, bundle: EvidenceBundle, flag_report: RedFlagReport) -> SkepticalResult:
        """Collect every suspicious pattern found."""
        candidates = [
            self._too_perfect(bundle),
            self._too_fast(bundle),
            self._missing_artifacts(bundle),
            self._red_flags_ignored(bundle, flag_report),
            self._inconsistent_timing(bundle),
        ]
        if bundle.execution_kind == ExecutionKind.UI:
            candidates.extend(
                [
                    self._zero_network(bundle),
                    self._zero_dom_changes(bundle),
                    self._empty_logs(bundle),
                ]
            )

        result = SkepticalResult(patterns=[p for p in candidates if p is not None])
        if result.suspicious:
            logger.debug(f"Skeptical pass on {bundle.bundle_id[:12]}: {result.concerns}")
        return result

    @staticmethod
    def _too_perfect(bundle: EvidenceBundle) -> SuspiciousPattern | None:
        """No log errors at all and exactly 100% coverage."""
        coverage = [ref.detail for ref in bundle.artifacts if isinstance(ref.detail, CoverageDetail)]
        if not coverage or not any(c.line_percent >= 100.0 for c in coverage):
            return None
        logs = [ref.detail for ref in bundle.artifacts if isinstance(ref.detail, LogDetail)]
        if any(log.error_lines for log in logs):
            return None
        return SuspiciousPattern(
            name="too_perfect",
            description="Results are suspiciously perfect (no errors, 100% coverage)",
            severity=Severity.MEDIUM,
            evidence={"coverage": 100.0},
        )

    def _too_fast(self, bundle: EvidenceBundle) -> SuspiciousPattern | None:
        duration = bundle.outcome.duration_ms
        minimum = self._config.min_duration_ms.get(bundle.execution_kind, 0.0)
        if duration <= 0 or duration >= minimum:
            return None
        return SuspiciousPattern(
            name="too_fast",
            description=(
                f"Test completed in {duration:.0f}ms (expected >= {minimum:.0f}ms "
                f"for a {bundle.execution_kind.value} test)"
            ),
            severity=Severity.HIGH,
            evidence={"duration_ms": duration, "minimum_ms": minimum},
        )

    @staticmethod
    def _missing_artifacts(bundle: EvidenceBundle) -> SuspiciousPattern | None:
        if not bundle.artifacts:
            return SuspiciousPattern(
                name="missing_artifacts",
                description="Test has no artifacts at all - likely not actually run",
                severity=Severity.HIGH,
            )
        missing = [
            kind.value
            for kind in REQUIRED_ARTIFACTS[bundle.execution_kind]
            if not bundle.has_kind(kind)
        ]
        if not missing:
            return None
        return SuspiciousPattern(
            name="missing_artifacts",
            description=f"Missing expected artifacts: {', '.join(missing)}",
            severity=Severity.MEDIUM,
            evidence={"missing": missing},
        )

    @staticmethod
    def _red_flags_ignored(
        bundle: EvidenceBundle, flag_report: RedFlagReport
    ) -> SuspiciousPattern | None:
        """The executor reports pass despite serious red flags."""
        serious = [f for f in flag_report.flags if f.severity.rank >= Severity.HIGH.rank]
        if not serious or not bundle.outcome.passed:
            return None
        return SuspiciousPattern(
            name="red_flags_ignored",
            description=f"Test passed but {len(serious)} high/critical red flag(s) were detected",
            severity=Severity.HIGH,
            evidence={"flags": [f.check for f in serious]},
        )

    @staticmethod
    def _inconsistent_timing(bundle: EvidenceBundle) -> SuspiciousPattern | None:
        """Traced request time far exceeds the whole test duration."""
        duration = bundle.outcome.duration_ms
        traces = [ref.detail for ref in bundle.artifacts if isinstance(ref.detail, TraceDetail)]
        if duration <= 0 or not traces:
            return None
        network_ms = sum(t.total_duration_ms for t in traces)
        if network_ms <= duration * 2:
            return None
        return SuspiciousPattern(
            name="inconsistent_timing",
            description=(
                f"Traced requests took {network_ms:.0f}ms but the test took {duration:.0f}ms"
            ),
            severity=Severity.MEDIUM,
            evidence={"network_ms": network_ms, "duration_ms": duration},
        )

    @staticmethod
    def _zero_network(bundle: EvidenceBundle) -> SuspiciousPattern | None:
        traces = bundle.artifacts_of(ArtifactKind.TRACE)
        if not traces or any(ref.detail.entries for ref in traces):
            return None
        return SuspiciousPattern(
            name="zero_network",
            description="UI test has no network activity (likely not actually run)",
            severity=Severity.HIGH,
        )

    @staticmethod
    def _zero_dom_changes(bundle: EvidenceBundle) -> SuspiciousPattern | None:
        snapshots = bundle.artifacts_of(ArtifactKind.DOM_SNAPSHOT)
        if not snapshots or any(ref.detail.changes for ref in snapshots):
            return None
        return SuspiciousPattern(
            name="zero_dom_changes",
            description="UI test has no DOM changes (likely not actually run)",
            severity=Severity.MEDIUM,
        )

    @staticmethod
    def _empty_logs(bundle: EvidenceBundle) -> SuspiciousPattern | None:
        logs = bundle.artifacts_of(ArtifactKind.LOG)
        if not logs or any(ref.detail.line_count for ref in logs):
            return None
        return SuspiciousPattern(
            name="empty_logs",
            description="UI test has no console output",
            severity=Severity.LOW,
        )
