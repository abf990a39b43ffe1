"""
Unit tests for red flag detection.

Tests cover:
- A fully evidenced run raises no flags
- Missing evidence for claimed actions and claimed passes (critical)
- Evidence that contradicts a claimed pass (high)
- Duplicate and stale artifacts
- Tool invocations without proof (critical)
- Timing anomalies against fixed minimums and run history
- Coverage regressions between attempts
- Check toggles, flag ordering and batch aggregation
"""

import pytest

from proofgate.config.models import DetectionConfig
from proofgate.models.base import ArtifactKind, DetectorVerdict, FlagCategory, Severity
from proofgate.models.evidence import RawArtifact, ToolCallDetail
from proofgate.red_flags import RedFlagDetector, aggregate_batch, sort_flags


@pytest.fixture
def detector() -> RedFlagDetector:
    return RedFlagDetector()


def checks_of(report) -> list[str]:
    return [f.check for f in report.flags]


@pytest.mark.detection
class TestCleanRuns:
    """Well-evidenced runs pass detection."""

    def test_healthy_api_run_has_no_flags(self, detector, make_bundle):
        report = detector.detect(make_bundle())

        assert report.flags == ()
        assert report.verdict == DetectorVerdict.PASS
        assert report.recommendation == "PROCEED: no red flags detected."
        assert len(report.checks_run) == 5

    def test_healthy_ui_run_has_no_flags(self, detector, make_bundle, make_ui):
        report = detector.detect(make_bundle(make_ui()))
        assert report.flags == ()

    def test_honest_failure_has_no_flags(self, detector, make_bundle, make_failing):
        report = detector.detect(make_bundle(make_failing()))
        assert report.flags == ()


@pytest.mark.detection
class TestMissingEvidence:
    """Claims without backing artifacts are critical."""

    def test_claimed_tests_without_trace(self, detector, make_bundle, make_raw):
        report = detector.detect(make_bundle(make_raw(include_trace=False)))

        assert checks_of(report) == ["missing_evidence.claimed_action"]
        flag = report.flags[0]
        assert flag.severity == Severity.CRITICAL
        assert flag.category == FlagCategory.MISSING_EVIDENCE
        assert flag.details["expected_artifact"] == ArtifactKind.TRACE.value
        assert report.verdict == DetectorVerdict.FAIL
        assert report.recommendation.startswith("REJECT: 1 critical")

    def test_claimed_action_checked_even_on_failure(self, detector, make_bundle, make_raw):
        raw = make_raw(passed=False, include_trace=False, error_message="boom")
        report = detector.detect(make_bundle(raw))
        assert checks_of(report) == ["missing_evidence.claimed_action"]

    def test_pass_without_required_log(self, detector, make_bundle, make_raw):
        report = detector.detect(make_bundle(make_raw(claimed=(), include_log=False)))

        assert checks_of(report) == ["missing_evidence.required_artifact"]
        assert report.flags[0].details["expected_artifact"] == "log"

    def test_empty_log_on_claimed_pass(self, detector, make_bundle, make_raw):
        report = detector.detect(make_bundle(make_raw(log_text="")))

        assert "missing_evidence.empty_log" in checks_of(report)
        assert report.has_critical


@pytest.mark.detection
class TestInconsistentEvidence:
    """Artifacts contradicting the claimed outcome are high severity."""

    def test_http_error_in_trace(self, detector, make_bundle, make_raw, make_trace):
        raw = make_raw(include_trace=False, extra=[make_trace(1, statuses=(200, 500))])
        report = detector.detect(make_bundle(raw))

        assert checks_of(report) == ["inconsistent_evidence.http_error_status"]
        assert report.flags[0].severity == Severity.HIGH
        assert report.verdict == DetectorVerdict.REVIEW

    def test_error_lines_in_log(self, detector, make_bundle, make_raw):
        report = detector.detect(make_bundle(make_raw(log_text="Error: login button not found\n")))
        assert checks_of(report) == ["inconsistent_evidence.log_errors"]

    def test_expected_errors_are_ignored(self, detector, make_bundle, make_raw, make_log):
        raw = make_raw(
            include_log=False,
            extra=[make_log(1, "Error: invalid password (expected)\n", expects_errors=True)],
        )
        report = detector.detect(make_bundle(raw))
        assert report.flags == ()

    def test_failed_assertions_on_pass(self, detector, make_bundle, make_raw):
        report = detector.detect(make_bundle(make_raw(assertions=(5, 3))))
        assert checks_of(report) == ["inconsistent_evidence.failed_assertions"]

    def test_trace_exit_code_on_pass(self, detector, make_bundle, make_raw, make_trace):
        raw = make_raw(include_trace=False, extra=[make_trace(1, exit_code=2)])
        report = detector.detect(make_bundle(raw))
        assert checks_of(report) == ["inconsistent_evidence.trace_exit_code"]

    def test_duplicate_artifacts(self, detector, make_bundle, make_raw, make_log):
        raw = make_raw(extra=[make_log(1)])
        report = detector.detect(make_bundle(raw))

        assert checks_of(report) == ["inconsistent_evidence.duplicate_artifact"]
        assert report.flags[0].details == {"kind": "log", "count": 2}

    def test_stale_evidence_between_attempts(self, detector, collector, make_raw):
        first = collector.collect(make_raw(attempt=1), "run-1", 1)
        second = collector.collect(make_raw(attempt=1), "run-1", 2)

        report = detector.detect(second, history=[first])

        assert checks_of(report) == ["inconsistent_evidence.stale_evidence"]
        assert report.flags[0].details["previous_attempt"] == 1

    def test_fresh_evidence_is_not_stale(self, detector, collector, make_raw):
        first = collector.collect(make_raw(attempt=1), "run-1", 1)
        second = collector.collect(make_raw(attempt=2), "run-1", 2)
        assert detector.detect(second, history=[first]).flags == ()


@pytest.mark.detection
class TestUnverifiedClaims:
    """Tool invocations must have request/response proof."""

    def test_tool_call_without_response(self, detector, make_bundle, make_raw):
        call = RawArtifact(
            detail=ToolCallDetail(tool="mcp__browser__click", request_id="r1", has_response=False),
            content=b'{"request": "click #login"}',
        )
        report = detector.detect(make_bundle(make_raw(extra=[call])))

        assert checks_of(report) == ["unverified_claim.no_response"]
        assert report.flags[0].details["tool"] == "mcp__browser__click"

    def test_declared_tool_never_invoked(self, detector, make_bundle, make_raw):
        raw = make_raw().model_copy(update={"test_name": "login via mcp__browser__navigate"})
        report = detector.detect(make_bundle(raw))
        assert checks_of(report) == ["unverified_claim.tool_not_invoked"]

    def test_answered_tool_call_is_fine(self, detector, make_bundle, make_raw):
        call = RawArtifact(
            detail=ToolCallDetail(tool="mcp__browser__navigate", request_id="r1", has_response=True),
            content=b'{"request": "goto /login", "response": "ok"}',
        )
        raw = make_raw(extra=[call]).model_copy(update={"test_name": "login via mcp__browser__navigate"})
        assert detector.detect(make_bundle(raw)).flags == ()


@pytest.mark.detection
class TestTimingAnomalies:
    """Implausible durations raise medium or low flags."""

    def test_too_fast_for_api_run(self, detector, make_bundle, make_raw):
        report = detector.detect(make_bundle(make_raw(duration_ms=20.0)))

        assert checks_of(report) == ["timing_anomaly.too_fast"]
        assert report.flags[0].severity == Severity.MEDIUM
        assert report.verdict == DetectorVerdict.PASS

    def test_much_faster_than_history(self, detector, collector, make_raw):
        history = [collector.collect(make_raw(attempt=n), "run-1", n) for n in (1, 2, 3)]
        current = collector.collect(make_raw(attempt=4, duration_ms=300.0), "run-1", 4)

        report = detector.detect(current, history=history)

        assert checks_of(report) == ["timing_anomaly.historical"]
        assert report.flags[0].details["mean_ms"] == 1500.0

    def test_history_needs_enough_samples(self, detector, collector, make_raw):
        history = [collector.collect(make_raw(attempt=n), "run-1", n) for n in (1, 2)]
        current = collector.collect(make_raw(attempt=3, duration_ms=300.0), "run-1", 3)
        assert detector.detect(current, history=history).flags == ()

    def test_failed_attempts_are_not_a_baseline(self, detector, collector, make_failing, make_raw):
        history = [collector.collect(make_failing(attempt=n), "run-1", n) for n in (1, 2, 3)]
        current = collector.collect(make_raw(attempt=4, duration_ms=300.0), "run-1", 4)
        assert detector.detect(current, history=history).flags == ()


@pytest.mark.detection
class TestCoverageRegression:
    """Coverage drops between attempts need an explanation."""

    def test_line_coverage_drop(self, detector, collector, make_ui):
        first = collector.collect(make_ui(attempt=1, coverage=80.0), "run-1", 1)
        second = collector.collect(make_ui(attempt=2, coverage=60.0), "run-1", 2)

        report = detector.detect(second, history=[first])

        assert checks_of(report) == ["coverage_regression.line_coverage"]
        assert report.flags[0].severity == Severity.HIGH

    def test_assertion_count_drop(self, detector, collector, make_raw):
        first = collector.collect(make_raw(attempt=1), "run-1", 1)
        second = collector.collect(make_raw(attempt=2, assertions=(3, 3)), "run-1", 2)

        report = detector.detect(second, history=[first])
        assert checks_of(report) == ["coverage_regression.assertion_count"]

    def test_explained_drop_is_accepted(self, detector, collector, make_raw):
        first = collector.collect(make_raw(attempt=1), "run-1", 1)
        raw = make_raw(attempt=2, assertions=(3, 3))
        raw = raw.model_copy(
            update={"outcome": raw.outcome.model_copy(update={"explanation": "removed duplicate cases"})}
        )
        second = collector.collect(raw, "run-1", 2)

        assert detector.detect(second, history=[first]).flags == ()


@pytest.mark.detection
class TestDetectorBehaviour:
    """Toggles, ordering and aggregation."""

    def test_disabled_check_is_skipped(self, make_bundle, make_raw):
        detector = RedFlagDetector(DetectionConfig(missing_evidence=False))
        report = detector.detect(make_bundle(make_raw(include_trace=False)))

        assert report.flags == ()
        assert "missing_evidence" not in report.checks_run

    def test_flags_ordered_most_severe_first(self, detector, make_bundle, make_raw):
        raw = make_raw(include_trace=False, duration_ms=20.0, log_text="fatal: lost session\n")
        report = detector.detect(make_bundle(raw))

        severities = [f.severity for f in report.flags]
        assert severities == [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM]
        assert report.max_severity == Severity.CRITICAL
        assert report.severity_summary == {"low": 0, "medium": 1, "high": 1, "critical": 1}

    def test_sort_flags_is_stable_within_severity(self, detector, make_bundle, make_raw):
        raw = make_raw(include_trace=False, include_log=False, claimed=("ran tests", "started server"))
        flags = list(detector.detect(make_bundle(raw)).flags)

        assert [f.details["expected_artifact"] for f in sort_flags(flags)] == ["trace", "log"]

    def test_aggregate_batch(self, detector, collector, make_raw):
        clean = detector.detect(collector.collect(make_raw(), "run-a", 1))
        failing = detector.detect(collector.collect(make_raw(include_trace=False), "run-b", 1))

        summary = aggregate_batch([clean, failing])

        assert summary.total_reports == 2
        assert summary.total_flags == 1
        assert summary.failing_runs == ["run-b"]
        assert summary.fail_rate == 0.5
        assert summary.to_dict()["by_category"] == {"missing_evidence": 1}
