"""
Cross-Validation Pass.

Corroborates independent pieces of evidence against each other. Every
check only runs when the evidence it compares is present; a skipped
check produces no note.
"""

from __future__ import annotations

import logging
import statistics

from proofgate.models.base import ArtifactKind, ExecutionKind, Severity
from proofgate.models.evidence import (
    CoverageDetail,
    DomSnapshotDetail,
    EvidenceBundle,
    LogDetail,
    ScreenshotDetail,
    TraceDetail,
)
from proofgate.models.verification import CrossValidationNote

logger = logging.getLogger(__name__)

# Relative deviation from the historical mean duration still considered normal
DURATION_TOLERANCE = 0.5


def _details(bundle: EvidenceBundle, detail_type: type) -> list:
    return [ref.detail for ref in bundle.artifacts if isinstance(ref.detail, detail_type)]


def _log_errors(bundle: EvidenceBundle) -> int:
    return sum(
        len(d.error_lines) for d in _details(bundle, LogDetail) if not d.expects_errors
    )


class CrossValidator:
    """Compares independent evidence sources for contradictions."""

    def validate(
        self,
        bundle: EvidenceBundle,
        history: list[EvidenceBundle] | None = None,
    ) -> list[CrossValidationNote]:
        """Run every applicable cross-validation check.

        Args:
            bundle: Bundle under verification
            history: Earlier bundles of the same run, oldest first

        Returns:
            One note per check that ran
        """
        history = history or []
        checks = (
            self._screenshot_vs_log(bundle),
            self._trace_vs_schema(bundle),
            self._duration_vs_history(bundle, history),
            self._coverage_vs_previous(bundle, history),
            self._network_vs_ui(bundle),
            self._errors_vs_result(bundle),
        )
        notes = [note for note in checks if note is not None]
        mismatches = [n for n in notes if not n.matched]
        logger.debug(
            f"Cross-validation on {bundle.bundle_id[:12]}: "
            f"{len(notes)} check(s), {len(mismatches)} mismatch(es)"
        )
        return notes

    @staticmethod
    def _screenshot_vs_log(bundle: EvidenceBundle) -> CrossValidationNote | None:
        """A screenshot showing an error must be echoed by the logs."""
        screenshots = _details(bundle, ScreenshotDetail)
        if not screenshots or not bundle.has_kind(ArtifactKind.LOG):
            return None

        shows_error = any(s.shows_error for s in screenshots)
        log_errors = _log_errors(bundle)
        mismatch = shows_error and log_errors == 0
        return CrossValidationNote(
            check="screenshot_vs_log",
            matched=not mismatch,
            expected="log errors when the screen shows an error",
            actual=f"screen error={shows_error}, log errors={log_errors}",
            severity=Severity.HIGH if mismatch else Severity.LOW,
            message=(
                "Screenshot shows an error state but the logs have no errors"
                if mismatch
                else "Screenshot and logs are consistent"
            ),
        )

    @staticmethod
    def _trace_vs_schema(bundle: EvidenceBundle) -> CrossValidationNote | None:
        """Every traced API request must have a response status."""
        if bundle.execution_kind != ExecutionKind.API:
            return None
        traces = _details(bundle, TraceDetail)
        if not traces:
            return None

        entries = [e for t in traces for e in t.entries]
        unanswered = [e for e in entries if e.status is None]
        matched = bool(entries) and not unanswered
        if not entries:
            message = "Trace contains no request/response entries"
        elif unanswered:
            message = f"{len(unanswered)} traced request(s) have no response status"
        else:
            message = "Trace entries all carry a response status"
        return CrossValidationNote(
            check="trace_vs_schema",
            matched=matched,
            expected="status on every entry",
            actual=f"{len(entries) - len(unanswered)}/{len(entries)} answered",
            severity=Severity.LOW if matched else Severity.MEDIUM,
            message=message,
        )

    @staticmethod
    def _duration_vs_history(
        bundle: EvidenceBundle, history: list[EvidenceBundle]
    ) -> CrossValidationNote | None:
        """Duration must be within tolerance of earlier attempts."""
        samples = [b.outcome.duration_ms for b in history if b.outcome.duration_ms > 0]
        duration = bundle.outcome.duration_ms
        if not samples or duration <= 0:
            return None

        mean = statistics.fmean(samples)
        deviation = abs(duration - mean) / mean
        matched = deviation <= DURATION_TOLERANCE
        return CrossValidationNote(
            check="duration_vs_history",
            matched=matched,
            expected=f"~{mean:.0f}ms",
            actual=f"{duration:.0f}ms",
            severity=(
                Severity.LOW if matched else Severity.HIGH if deviation > 1.0 else Severity.MEDIUM
            ),
            message=(
                f"Duration {duration:.0f}ms is within range of the {mean:.0f}ms average"
                if matched
                else f"Duration {duration:.0f}ms deviates {deviation:.0%} from the "
                f"{mean:.0f}ms average"
            ),
        )

    @staticmethod
    def _coverage_vs_previous(
        bundle: EvidenceBundle, history: list[EvidenceBundle]
    ) -> CrossValidationNote | None:
        """Coverage should not shrink between attempts."""
        current = _details(bundle, CoverageDetail)
        if not current or not history:
            return None
        previous = _details(history[-1], CoverageDetail)
        if not previous:
            return None

        before = max(c.line_percent for c in previous)
        after = max(c.line_percent for c in current)
        change = after - before
        matched = change >= 0 or bool(bundle.outcome.explanation)
        return CrossValidationNote(
            check="coverage_vs_previous",
            matched=matched,
            expected=f">= {before:.1f}%",
            actual=f"{after:.1f}%",
            severity=Severity.LOW,
            message=f"Coverage changed by {change:+.1f}% since the previous attempt",
        )

    @staticmethod
    def _network_vs_ui(bundle: EvidenceBundle) -> CrossValidationNote | None:
        """UI network activity and DOM changes should appear together."""
        if bundle.execution_kind != ExecutionKind.UI:
            return None
        traces = _details(bundle, TraceDetail)
        snapshots = _details(bundle, DomSnapshotDetail)
        if not traces or not snapshots:
            return None

        requests = sum(len(t.entries) for t in traces)
        changes = sum(s.changes for s in snapshots)
        matched = (requests > 0) == (changes > 0)
        return CrossValidationNote(
            check="network_vs_ui",
            matched=matched,
            expected="network activity together with DOM changes",
            actual=f"{requests} request(s), {changes} DOM change(s)",
            severity=Severity.LOW if matched else Severity.MEDIUM,
            message=(
                "Network activity and UI changes are consistent"
                if matched
                else f"Inconsistent: {requests} network request(s) but {changes} DOM change(s)"
            ),
        )

    @staticmethod
    def _errors_vs_result(bundle: EvidenceBundle) -> CrossValidationNote | None:
        """A passing run must not have unexpected errors in its logs."""
        if not bundle.has_kind(ArtifactKind.LOG):
            return None

        errors = _log_errors(bundle)
        mismatch = bundle.outcome.passed and errors > 0
        return CrossValidationNote(
            check="errors_vs_result",
            matched=not mismatch,
            expected="no log errors on a passing run",
            actual=f"passed={bundle.outcome.passed}, log errors={errors}",
            severity=Severity.HIGH if mismatch else Severity.LOW,
            message=(
                f"Run passed but its logs contain {errors} error line(s)"
                if mismatch
                else "Log errors match the test result"
            ),
        )
