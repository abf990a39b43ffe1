"""
Red Flag Checks.

Each check is independent: it reads one EvidenceBundle (plus the earlier
bundles of the same run where it needs a baseline) and returns zero or
more RedFlags. Checks never mutate the bundle and never depend on each
other's output; the detector unions their results.

Checks:
- MissingEvidenceCheck: claimed actions and required artifacts (critical)
- InconsistentEvidenceCheck: artifacts contradict the claimed outcome (high)
- UnverifiedClaimCheck: tool invocations without request/response proof (critical)
- TimingAnomalyCheck: implausible durations (medium / low)
- CoverageRegressionCheck: coverage drop vs the prior attempt (high)
"""

from __future__ import annotations

import logging
import re
import statistics
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from proofgate.config.models import DetectionConfig
from proofgate.models.base import ArtifactKind, ExecutionKind, FlagCategory, Severity
from proofgate.models.evidence import (
    CoverageDetail,
    DomSnapshotDetail,
    EvidenceBundle,
    LogDetail,
    ScreenshotDetail,
    ToolCallDetail,
    TraceDetail,
)
from proofgate.models.red_flags import RedFlag

logger = logging.getLogger(__name__)

# Artifacts a run must carry to back a claimed pass
REQUIRED_ARTIFACTS: dict[ExecutionKind, tuple[ArtifactKind, ...]] = {
    ExecutionKind.UI: (ArtifactKind.SCREENSHOT, ArtifactKind.DOM_SNAPSHOT, ArtifactKind.LOG),
    ExecutionKind.API: (ArtifactKind.TRACE, ArtifactKind.LOG),
}

# Tool names declared in a test name, e.g. "mcp__browser__click"
TOOL_NAME_PATTERN = re.compile(r"mcp__[A-Za-z0-9-]+__[A-Za-z0-9_-]+")


@dataclass
class CheckContext:
    """Input shared by all checks for one bundle.

    Attributes:
        bundle: Bundle under inspection
        history: Earlier bundles of the same run, oldest first
        config: Detection configuration
    """

    bundle: EvidenceBundle
    history: list[EvidenceBundle] = field(default_factory=list)
    config: DetectionConfig = field(default_factory=DetectionConfig)

    @property
    def previous(self) -> EvidenceBundle | None:
        """The attempt immediately before this one, if any."""
        return self.history[-1] if self.history else None

    @property
    def claims_pass(self) -> bool:
        return self.bundle.outcome.passed


class RedFlagCheck(ABC):
    """Base class for a detector check.

    Attributes:
        name: Check identifier prefix used in RedFlag.check
        category: Category of every flag the check raises
        config_key: DetectionConfig toggle that enables the check
    """

    name: str = ""
    category: FlagCategory
    config_key: str = ""

    def is_enabled(self, config: DetectionConfig) -> bool:
        return bool(getattr(config, self.config_key, True))

    @abstractmethod
    def run(self, context: CheckContext) -> list[RedFlag]:
        """Inspect the bundle and return the flags raised."""

    def _flag(
        self,
        severity: Severity,
        rule: str,
        description: str,
        artifact_hashes: tuple[str, ...] = (),
        **details: str | int | float | bool | None,
    ) -> RedFlag:
        return RedFlag(
            severity=severity,
            category=self.category,
            check=f"{self.name}.{rule}",
            description=description,
            artifact_hashes=artifact_hashes,
            details=details,
        )


# =============================================================================
# Missing evidence
# =============================================================================


class MissingEvidenceCheck(RedFlagCheck):
    """A claimed action or a claimed pass has no artifact backing it."""

    name = "missing_evidence"
    category = FlagCategory.MISSING_EVIDENCE
    config_key = "missing_evidence"

    def run(self, context: CheckContext) -> list[RedFlag]:
        bundle = context.bundle
        flags: list[RedFlag] = []
        flagged_kinds: set[ArtifactKind] = set()

        for action in bundle.claimed_actions:
            if bundle.has_kind(action.expected_artifact):
                continue
            flagged_kinds.add(action.expected_artifact)
            flags.append(
                self._flag(
                    Severity.CRITICAL,
                    "claimed_action",
                    f"Claimed action '{action.description}' has no "
                    f"{action.expected_artifact.value} artifact",
                    action=action.description,
                    expected_artifact=action.expected_artifact.value,
                )
            )

        if not context.claims_pass:
            return flags

        for kind in REQUIRED_ARTIFACTS[bundle.execution_kind]:
            if kind in flagged_kinds or bundle.has_kind(kind):
                continue
            flags.append(
                self._flag(
                    Severity.CRITICAL,
                    "required_artifact",
                    f"{bundle.execution_kind.value.upper()} run claims pass without a "
                    f"{kind.value} artifact",
                    expected_artifact=kind.value,
                )
            )

        for ref in bundle.artifacts_of(ArtifactKind.LOG):
            if ref.size_bytes == 0 or ref.detail.line_count == 0:
                flags.append(
                    self._flag(
                        Severity.CRITICAL,
                        "empty_log",
                        "Log artifact is empty but the run claims pass",
                        (ref.content_hash,),
                        source=ref.detail.source,
                    )
                )

        return flags


# =============================================================================
# Inconsistent evidence
# =============================================================================


class InconsistentEvidenceCheck(RedFlagCheck):
    """Two pieces of evidence disagree about the same fact."""

    name = "inconsistent_evidence"
    category = FlagCategory.INCONSISTENT_EVIDENCE
    config_key = "inconsistent_evidence"

    def run(self, context: CheckContext) -> list[RedFlag]:
        flags: list[RedFlag] = []
        if context.claims_pass:
            flags.extend(self._contradicts_pass(context.bundle))
        flags.extend(self._duplicate_artifacts(context.bundle))
        flags.extend(self._stale_evidence(context))
        return flags

    def _contradicts_pass(self, bundle: EvidenceBundle) -> list[RedFlag]:
        """Artifacts that show failure while the outcome claims pass."""
        flags: list[RedFlag] = []
        outcome = bundle.outcome

        if outcome.exit_code not in (None, 0):
            flags.append(
                self._flag(
                    Severity.HIGH,
                    "exit_code",
                    f"Outcome claims pass but reports exit code {outcome.exit_code}",
                    exit_code=outcome.exit_code,
                )
            )

        if outcome.assertions_passed < outcome.assertions_total:
            flags.append(
                self._flag(
                    Severity.HIGH,
                    "failed_assertions",
                    f"Outcome claims pass but only {outcome.assertions_passed} of "
                    f"{outcome.assertions_total} assertions passed",
                    assertions_total=outcome.assertions_total,
                    assertions_passed=outcome.assertions_passed,
                )
            )

        for ref in bundle.artifacts:
            detail = ref.detail
            if isinstance(detail, TraceDetail):
                failing = [e for e in detail.entries if e.status is not None and e.status >= 400]
                if failing:
                    flags.append(
                        self._flag(
                            Severity.HIGH,
                            "http_error_status",
                            f"Trace shows {len(failing)} error response(s) "
                            f"(first: {failing[0].method} {failing[0].url} -> {failing[0].status})",
                            (ref.content_hash,),
                            error_responses=len(failing),
                        )
                    )
                if detail.exit_code not in (None, 0):
                    flags.append(
                        self._flag(
                            Severity.HIGH,
                            "trace_exit_code",
                            f"Outcome claims pass but trace shows exit code {detail.exit_code}",
                            (ref.content_hash,),
                            exit_code=detail.exit_code,
                        )
                    )
            elif isinstance(detail, LogDetail):
                if detail.error_lines and not detail.expects_errors:
                    flags.append(
                        self._flag(
                            Severity.HIGH,
                            "log_errors",
                            f"Log contains {len(detail.error_lines)} error line(s) "
                            f"(first: {detail.error_lines[0][:120]})",
                            (ref.content_hash,),
                            error_lines=len(detail.error_lines),
                        )
                    )
            elif isinstance(detail, ScreenshotDetail):
                if detail.shows_error:
                    flags.append(
                        self._flag(
                            Severity.HIGH,
                            "screenshot_error",
                            "Screenshot displays an error state",
                            (ref.content_hash,),
                            phase=detail.phase,
                        )
                    )
            elif isinstance(detail, DomSnapshotDetail):
                if detail.missing_elements:
                    flags.append(
                        self._flag(
                            Severity.HIGH,
                            "missing_elements",
                            f"DOM snapshot is missing expected elements: "
                            f"{', '.join(detail.missing_elements)}",
                            (ref.content_hash,),
                            missing=len(detail.missing_elements),
                        )
                    )

        return flags

    def _duplicate_artifacts(self, bundle: EvidenceBundle) -> list[RedFlag]:
        """Same-kind artifacts with identical bytes (e.g. before == after)."""
        flags: list[RedFlag] = []
        seen: dict[tuple[ArtifactKind, str], int] = {}
        for ref in bundle.artifacts:
            key = (ref.kind, ref.content_hash)
            seen[key] = seen.get(key, 0) + 1

        for (kind, digest), count in seen.items():
            if count > 1:
                flags.append(
                    self._flag(
                        Severity.HIGH,
                        "duplicate_artifact",
                        f"{count} {kind.value} artifacts have identical content",
                        (digest,),
                        kind=kind.value,
                        count=count,
                    )
                )
        return flags

    def _stale_evidence(self, context: CheckContext) -> list[RedFlag]:
        """Every artifact is byte-identical to the previous attempt."""
        previous = context.previous
        current = context.bundle.content_hashes
        if previous is None or not current:
            return []
        if sorted(current) != sorted(previous.content_hashes):
            return []
        return [
            self._flag(
                Severity.HIGH,
                "stale_evidence",
                f"All {len(current)} artifact(s) are identical to attempt {previous.attempt}",
                tuple(current),
                previous_attempt=previous.attempt,
            )
        ]


# =============================================================================
# Unverified tool claims
# =============================================================================


class UnverifiedClaimCheck(RedFlagCheck):
    """A tool invocation has no matching request/response pair."""

    name = "unverified_claim"
    category = FlagCategory.UNVERIFIED_CLAIM
    config_key = "unverified_claims"

    def run(self, context: CheckContext) -> list[RedFlag]:
        bundle = context.bundle
        flags: list[RedFlag] = []
        invoked: set[str] = set()

        for ref in bundle.artifacts_of(ArtifactKind.TOOL_CALL):
            detail = ref.detail
            if not isinstance(detail, ToolCallDetail):
                continue
            invoked.add(detail.tool)
            if not detail.has_response:
                flags.append(
                    self._flag(
                        Severity.CRITICAL,
                        "no_response",
                        f"Tool call '{detail.tool}' has no matching response",
                        (ref.content_hash,),
                        tool=detail.tool,
                        request_id=detail.request_id,
                    )
                )

        for tool in sorted(set(TOOL_NAME_PATTERN.findall(bundle.test_name))):
            if tool not in invoked:
                flags.append(
                    self._flag(
                        Severity.CRITICAL,
                        "tool_not_invoked",
                        f"Test declares tool '{tool}' but it was never invoked",
                        tool=tool,
                    )
                )

        return flags


# =============================================================================
# Timing anomalies
# =============================================================================


class TimingAnomalyCheck(RedFlagCheck):
    """Elapsed time is implausible for the claimed work."""

    name = "timing_anomaly"
    category = FlagCategory.TIMING_ANOMALY
    config_key = "timing_anomalies"

    def run(self, context: CheckContext) -> list[RedFlag]:
        if not context.claims_pass:
            return []

        bundle = context.bundle
        config = context.config
        duration = bundle.outcome.duration_ms
        flags: list[RedFlag] = []

        minimum = config.min_duration_ms.get(bundle.execution_kind, 0.0)
        if duration < minimum:
            flags.append(
                self._flag(
                    Severity.MEDIUM,
                    "too_fast",
                    f"Run took {duration:.0f}ms, below the {minimum:.0f}ms minimum "
                    f"for a {bundle.execution_kind.value} run",
                    duration_ms=duration,
                    minimum_ms=minimum,
                )
            )

        flags.extend(self._historical(context, duration))

        if bundle.execution_kind == ExecutionKind.UI:
            flags.extend(self._idle_ui(bundle))

        return flags

    def _historical(self, context: CheckContext, duration: float) -> list[RedFlag]:
        """Compare against earlier passing attempts of the same run."""
        config = context.config
        samples = [
            b.outcome.duration_ms
            for b in context.history
            if b.outcome.passed and b.outcome.duration_ms > 0
        ]
        if len(samples) < config.history_min_samples:
            return []

        mean = statistics.fmean(samples)
        if duration >= mean * config.history_fast_ratio:
            return []

        stddev = statistics.pstdev(samples)
        severity = (
            Severity.MEDIUM
            if duration < mean - config.history_stddev_factor * stddev
            else Severity.LOW
        )
        return [
            self._flag(
                severity,
                "historical",
                f"Run took {duration:.0f}ms, under {config.history_fast_ratio:.0%} of the "
                f"{mean:.0f}ms average over {len(samples)} prior attempt(s)",
                duration_ms=duration,
                mean_ms=round(mean, 2),
                stddev_ms=round(stddev, 2),
            )
        ]

    def _idle_ui(self, bundle: EvidenceBundle) -> list[RedFlag]:
        """UI runs that never touched the network or the DOM."""
        flags: list[RedFlag] = []

        traces = bundle.artifacts_of(ArtifactKind.TRACE)
        if traces and all(not ref.detail.entries for ref in traces):
            flags.append(
                self._flag(
                    Severity.MEDIUM,
                    "no_network",
                    "UI run recorded zero network requests",
                    tuple(ref.content_hash for ref in traces),
                )
            )

        snapshots = bundle.artifacts_of(ArtifactKind.DOM_SNAPSHOT)
        if snapshots and sum(ref.detail.changes for ref in snapshots) == 0:
            flags.append(
                self._flag(
                    Severity.MEDIUM,
                    "no_dom_changes",
                    "UI run recorded zero DOM changes",
                    tuple(ref.content_hash for ref in snapshots),
                )
            )

        return flags


# =============================================================================
# Coverage regression
# =============================================================================


class CoverageRegressionCheck(RedFlagCheck):
    """Coverage or assertion count dropped vs the prior attempt."""

    name = "coverage_regression"
    category = FlagCategory.COVERAGE_REGRESSION
    config_key = "coverage_regression"

    def run(self, context: CheckContext) -> list[RedFlag]:
        previous = context.previous
        bundle = context.bundle
        if previous is None or bundle.outcome.explanation:
            return []

        flags: list[RedFlag] = []

        before = previous.outcome.assertions_total
        after = bundle.outcome.assertions_total
        if after < before:
            flags.append(
                self._flag(
                    Severity.HIGH,
                    "assertion_count",
                    f"Assertion count dropped from {before} to {after} without explanation",
                    previous=before,
                    current=after,
                )
            )

        previous_cov = self._line_coverage(previous)
        current_cov = self._line_coverage(bundle)
        if previous_cov is not None and current_cov is not None and current_cov < previous_cov:
            flags.append(
                self._flag(
                    Severity.HIGH,
                    "line_coverage",
                    f"Line coverage dropped from {previous_cov:.1f}% to {current_cov:.1f}% "
                    "without explanation",
                    tuple(ref.content_hash for ref in bundle.artifacts_of(ArtifactKind.COVERAGE)),
                    previous=previous_cov,
                    current=current_cov,
                )
            )

        return flags

    @staticmethod
    def _line_coverage(bundle: EvidenceBundle) -> float | None:
        reports = [
            ref.detail for ref in bundle.artifacts if isinstance(ref.detail, CoverageDetail)
        ]
        if not reports:
            return None
        return max(r.line_percent for r in reports)


DEFAULT_CHECKS: tuple[type[RedFlagCheck], ...] = (
    MissingEvidenceCheck,
    InconsistentEvidenceCheck,
    UnverifiedClaimCheck,
    TimingAnomalyCheck,
    CoverageRegressionCheck,
)
