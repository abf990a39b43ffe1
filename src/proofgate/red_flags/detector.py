"""
Red Flag Detector.

Runs the configured set of independent checks over one EvidenceBundle and
unions their flags into a RedFlagReport. A report with zero flags only
permits the run to proceed to verification; it is not proof of success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from proofgate.config.models import DetectionConfig
from proofgate.models.base import DetectorVerdict, Severity
from proofgate.models.evidence import EvidenceBundle
from proofgate.models.red_flags import RedFlag, RedFlagReport
from proofgate.red_flags.checks import DEFAULT_CHECKS, CheckContext, RedFlagCheck

logger = logging.getLogger(__name__)


def sort_flags(flags: list[RedFlag]) -> list[RedFlag]:
    """Order flags most severe first, keeping check order within a severity."""
    return sorted(flags, key=lambda f: -f.severity.rank)


class RedFlagDetector:
    """Scans evidence bundles for fabricated or incomplete work.

    Usage:
        detector = RedFlagDetector(config.detection)
        report = detector.detect(bundle, history=earlier_bundles)
        if report.has_critical:
            ...
    """

    def __init__(
        self,
        config: DetectionConfig | None = None,
        checks: list[RedFlagCheck] | None = None,
    ) -> None:
        """Initialize the detector.

        Args:
            config: Detection configuration (check toggles and thresholds)
            checks: Check instances to run; defaults to every built-in check
        """
        self._config = config or DetectionConfig()
        self._checks = checks if checks is not None else [cls() for cls in DEFAULT_CHECKS]

    @property
    def checks(self) -> list[RedFlagCheck]:
        return list(self._checks)

    def detect(
        self,
        bundle: EvidenceBundle,
        history: list[EvidenceBundle] | None = None,
    ) -> RedFlagReport:
        """Run all enabled checks over a bundle.

        Args:
            bundle: Bundle to inspect
            history: Earlier bundles of the same run, oldest first

        Returns:
            RedFlagReport with flags ordered most severe first
        """
        context = CheckContext(
            bundle=bundle,
            history=sorted(history or [], key=lambda b: b.attempt),
            config=self._config,
        )

        flags: list[RedFlag] = []
        checks_run: list[str] = []
        for check in self._checks:
            if not check.is_enabled(self._config):
                logger.debug(f"Skipping disabled check {check.name}")
                continue
            found = check.run(context)
            checks_run.append(check.name)
            logger.debug(f"Check {check.name} raised {len(found)} flag(s) on {bundle.bundle_id[:12]}")
            flags.extend(found)

        report = RedFlagReport(
            run_id=bundle.run_id,
            attempt=bundle.attempt,
            bundle_id=bundle.bundle_id,
            flags=tuple(sort_flags(flags)),
            checks_run=tuple(checks_run),
        )

        if report.flags:
            logger.warning(
                f"{len(report.flags)} red flag(s) on {bundle.run_id} attempt {bundle.attempt}: "
                f"{report.severity_summary} -> {report.verdict.value}"
            )
        else:
            logger.info(f"No red flags on {bundle.run_id} attempt {bundle.attempt}")

        return report


@dataclass
class BatchDetectionSummary:
    """Aggregate view over many red flag reports.

    Attributes:
        total_reports: Number of reports aggregated
        total_flags: Number of flags across all reports
        by_severity: Flag count per severity
        by_category: Flag count per category
        by_verdict: Report count per detector verdict
        failing_runs: Run ids with a FAIL verdict
    """

    total_reports: int = 0
    total_flags: int = 0
    by_severity: dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in Severity})
    by_category: dict[str, int] = field(default_factory=dict)
    by_verdict: dict[str, int] = field(
        default_factory=lambda: {v.value: 0 for v in DetectorVerdict}
    )
    failing_runs: list[str] = field(default_factory=list)

    @property
    def fail_rate(self) -> float:
        if self.total_reports == 0:
            return 0.0
        return self.by_verdict[DetectorVerdict.FAIL.value] / self.total_reports

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_reports": self.total_reports,
            "total_flags": self.total_flags,
            "by_severity": dict(self.by_severity),
            "by_category": dict(self.by_category),
            "by_verdict": dict(self.by_verdict),
            "failing_runs": list(self.failing_runs),
            "fail_rate": self.fail_rate,
        }


def aggregate_batch(reports: list[RedFlagReport]) -> BatchDetectionSummary:
    """Aggregate red flag reports from many runs."""
    summary = BatchDetectionSummary()
    for report in reports:
        summary.total_reports += 1
        summary.total_flags += len(report.flags)
        summary.by_verdict[report.verdict.value] += 1
        for flag in report.flags:
            summary.by_severity[flag.severity.value] += 1
            key = flag.category.value
            summary.by_category[key] = summary.by_category.get(key, 0) + 1
        if report.verdict == DetectorVerdict.FAIL and report.run_id not in summary.failing_runs:
            summary.failing_runs.append(report.run_id)
    return summary
