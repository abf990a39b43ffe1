"""
Root Cause Analyzer.

Diagnoses a rejected attempt from its evidence bundle, red flags, the
verifier's report and the fix attempts already made in the run. The
output is a RootCauseAnalysis carrying a category, a concrete statement,
a complexity estimate, and a normalized failure pattern that keys the
fix learning store.

Three inputs drive the diagnosis, in order of preference:

1. Error text (explicit error, outcome error message or stack trace):
   keyword classification via FailureClassifier
2. Red flags: the evidence does not support the claimed result; the
   most severe flag decides the category
3. Nothing concrete: a low-confidence logic diagnosis
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from proofgate.models.base import ArtifactKind, Complexity, FailureCategory, FixStrategy, FlagCategory
from proofgate.models.evidence import EvidenceBundle, ScreenshotDetail, TraceDetail
from proofgate.models.fixing import FixAttempt, RootCauseAnalysis
from proofgate.models.red_flags import RedFlag, RedFlagReport
from proofgate.models.verification import VerificationReport
from proofgate.rca.classifier import FailureClassification, FailureClassifier
from proofgate.red_flags.detector import sort_flags

logger = logging.getLogger(__name__)

MAX_PATTERN_LENGTH = 200

# Stack frame formats: JavaScript "at fn (file:line:col)" and Python tracebacks
JS_FRAME_PATTERN = re.compile(r"at .+ \((.+):\d+:\d+\)")
PY_FRAME_PATTERN = re.compile(r'File "(.+)", line \d+')

FLAG_CATEGORIES: dict[FlagCategory, FailureCategory] = {
    FlagCategory.MISSING_EVIDENCE: FailureCategory.INTEGRATION,
    FlagCategory.UNVERIFIED_CLAIM: FailureCategory.INTEGRATION,
    FlagCategory.TIMING_ANOMALY: FailureCategory.ENVIRONMENT,
    FlagCategory.INCONSISTENT_EVIDENCE: FailureCategory.LOGIC,
    FlagCategory.COVERAGE_REGRESSION: FailureCategory.LOGIC,
}

# Error keyword -> recommended strategy, first hit wins
KEYWORD_STRATEGIES: list[tuple[tuple[str, ...], FixStrategy]] = [
    (("cannot find module", "no module named", "modulenotfounderror"), FixStrategy.DEPENDENCY_ADD),
    (("permission denied", "eacces"), FixStrategy.PERMISSION_FIX),
    (("environment variable",), FixStrategy.ENV_VAR_ADD),
    (("unexpected token",), FixStrategy.SYNTAX_FIX),
    (("missing semicolon", "typo"), FixStrategy.TYPO_CORRECTION),
    (("404",), FixStrategy.API_UPDATE),
]

CATEGORY_DEFAULT_STRATEGY: dict[FailureCategory, FixStrategy] = {
    FailureCategory.SYNTAX: FixStrategy.SYNTAX_FIX,
    FailureCategory.INTEGRATION: FixStrategy.IMPORT_FIX,
    FailureCategory.ENVIRONMENT: FixStrategy.CONFIG_FIX,
    FailureCategory.LOGIC: FixStrategy.REFACTOR,
}

FIX_DIFFICULTY: dict[Complexity, int] = {
    Complexity.SIMPLE: 1,
    Complexity.MODERATE: 2,
    Complexity.COMPLEX: 3,
    Complexity.REQUIRES_HUMAN: 0,
}


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line
    return text


def normalize_failure_pattern(text: str) -> str:
    """Reduce error text to a stable signature.

    Quoted strings and numbers are replaced by placeholders so the same
    failure in different runs maps to the same learning-store key.
    """
    pattern = text.strip().lower()
    pattern = re.sub(r"'[^']*'|\"[^\"]*\"|`[^`]*`", "<str>", pattern)
    pattern = re.sub(r"\b\d+(\.\d+)?\b", "<n>", pattern)
    pattern = re.sub(r"\s+", " ", pattern)
    return pattern[:MAX_PATTERN_LENGTH]


def extract_involved_files(stack_trace: str | None) -> list[str]:
    """Files referenced by a stack trace, in order of first appearance."""
    if not stack_trace:
        return []
    files: list[str] = []
    for match in (*JS_FRAME_PATTERN.finditer(stack_trace), *PY_FRAME_PATTERN.finditer(stack_trace)):
        path = match.group(1)
        if path not in files:
            files.append(path)
    return files


def recommend_strategy(error_message: str, category: FailureCategory) -> FixStrategy:
    """Initial repair direction from error keywords, else the category default."""
    message = error_message.lower()
    for keywords, strategy in KEYWORD_STRATEGIES:
        if any(k in message for k in keywords):
            return strategy
    return CATEGORY_DEFAULT_STRATEGY[category]


class RootCauseAnalyzer:
    """Produces a RootCauseAnalysis for a rejected attempt.

    Usage:
        analyzer = RootCauseAnalyzer()
        rca = analyzer.analyze(run_id, attempt, bundle, flag_report, prior_attempts)
    """

    def __init__(self, classifier: FailureClassifier | None = None) -> None:
        self._classifier = classifier or FailureClassifier()

    def analyze(
        self,
        run_id: str,
        attempt: int,
        bundle: EvidenceBundle | None,
        flag_report: RedFlagReport | None = None,
        prior_attempts: Sequence[FixAttempt] = (),
        error: str | None = None,
        verification: VerificationReport | None = None,
    ) -> RootCauseAnalysis:
        """Diagnose one failing attempt.

        Args:
            run_id: Owning run
            attempt: Execution attempt diagnosed
            bundle: Evidence bundle, None when the execution had no outcome
            flag_report: Red flags raised for the bundle
            prior_attempts: Fix attempts already made in this run
            error: Error text from outside the bundle (e.g. a crashed execution)
            verification: Verifier report, used for symptoms

        Returns:
            RootCauseAnalysis
        """
        outcome = bundle.outcome if bundle is not None else None
        stack_trace = outcome.stack_trace if outcome is not None else None
        error_text = error or (outcome.error_message if outcome is not None else None) or stack_trace
        flags = sort_flags(list(flag_report.flags)) if flag_report is not None else []
        involved_files = extract_involved_files(stack_trace)
        symptoms = self._symptoms(error_text, bundle, flags, verification)

        if error_text:
            classification = self._classifier.classify(error_text, stack_trace, involved_files)
            root_cause = self._root_cause_statement(error_text, classification.category, prior_attempts)
            failure_pattern = normalize_failure_pattern(_first_line(error_text))
            recommended = recommend_strategy(error_text, classification.category)
        elif flags:
            classification = self._classify_flags(flags)
            top = flags[0]
            root_cause = f"Evidence does not support the claimed result: {top.description}"
            failure_pattern = f"{top.check}: {normalize_failure_pattern(top.description)}"[
                :MAX_PATTERN_LENGTH
            ]
            recommended = CATEGORY_DEFAULT_STRATEGY[classification.category]
        else:
            classification = FailureClassification(
                category=FailureCategory.LOGIC,
                complexity=Complexity.MODERATE,
                confidence=0.3,
                reasoning="Verifier rejected the attempt without a concrete error or red flag",
            )
            root_cause = self._low_confidence_statement(verification)
            failure_pattern = "verification rejected: no error reported"
            recommended = CATEGORY_DEFAULT_STRATEGY[FailureCategory.LOGIC]

        rca = RootCauseAnalysis(
            run_id=run_id,
            attempt=attempt,
            bundle_id=bundle.bundle_id if bundle is not None else None,
            category=classification.category,
            complexity=classification.complexity,
            root_cause=root_cause,
            failure_pattern=failure_pattern,
            recommended_strategy=recommended,
            confidence=classification.confidence,
            symptoms=tuple(symptoms),
            involved_files=tuple(involved_files),
            diagnosis_reasoning=classification.reasoning,
            estimated_fix_difficulty=FIX_DIFFICULTY[classification.complexity],
            error_message=error_text,
        )

        logger.info(
            f"[{run_id}] RCA attempt {attempt}: {rca.category.value}/{rca.complexity.value} "
            f"-> {rca.recommended_strategy.value if rca.recommended_strategy else 'none'}"
        )
        return rca

    # -------------------------------------------------------------------------
    # Classification helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _classify_flags(flags: list[RedFlag]) -> FailureClassification:
        top = flags[0]
        category = FLAG_CATEGORIES[top.category]
        return FailureClassification(
            category=category,
            complexity=Complexity.SIMPLE,
            confidence=0.6 if top.is_critical else 0.5,
            reasoning=(
                f"Diagnosis driven by {len(flags)} red flag(s); most severe is "
                f"{top.severity.value} {top.category.value}"
            ),
        )

    @staticmethod
    def _root_cause_statement(
        error_text: str,
        category: FailureCategory,
        prior_attempts: Sequence[FixAttempt],
    ) -> str:
        message = error_text.lower()

        if category == FailureCategory.SYNTAX:
            if "unexpected token" in message:
                return "Syntax error: Unexpected token in code"
            if "missing semicolon" in message:
                return "Syntax error: Missing semicolon"
            return "Syntax error in code"

        if category == FailureCategory.INTEGRATION:
            module = re.search(r"cannot find module ['\"]([^'\"]+)['\"]", error_text, re.IGNORECASE)
            if module is None:
                module = re.search(r"no module named ['\"]([^'\"]+)['\"]", error_text, re.IGNORECASE)
            if module is not None:
                return f"Missing dependency: {module.group(1)}"
            if "404" in message:
                return "API endpoint not found (404)"
            return "Integration error with external dependency"

        if category == FailureCategory.ENVIRONMENT:
            if "permission denied" in message or "eacces" in message:
                return "Permission denied - file or directory access issue"
            if "environment variable" in message:
                return "Missing environment variable"
            return "Environment configuration error"

        if prior_attempts:
            return f"Logic error: Previous {len(prior_attempts)} fix(es) did not address underlying issue"
        return "Logic error in implementation"

    @staticmethod
    def _low_confidence_statement(verification: VerificationReport | None) -> str:
        if verification is None:
            return "Attempt rejected without a reported error"
        return (
            f"Verifier rejected the attempt with confidence {verification.confidence_score}: "
            f"{verification.reasoning or 'no reasoning given'}"
        )

    # -------------------------------------------------------------------------
    # Symptoms
    # -------------------------------------------------------------------------

    @staticmethod
    def _symptoms(
        error_text: str | None,
        bundle: EvidenceBundle | None,
        flags: list[RedFlag],
        verification: VerificationReport | None,
    ) -> list[str]:
        symptoms: list[str] = []
        if error_text:
            symptoms.append(f"Error: {error_text[:100]}")

        if bundle is not None:
            for ref in bundle.artifacts_of(ArtifactKind.SCREENSHOT):
                if isinstance(ref.detail, ScreenshotDetail) and ref.detail.shows_error:
                    symptoms.append("Screenshot shows error state")
                    break

            failed_requests = sum(
                1
                for ref in bundle.artifacts_of(ArtifactKind.TRACE)
                if isinstance(ref.detail, TraceDetail)
                for entry in ref.detail.entries
                if entry.status is None or entry.status >= 400
            )
            if failed_requests:
                symptoms.append(f"{failed_requests} failed network request(s)")

        symptoms.extend(f"Red flag: {flag.description}" for flag in flags)

        if verification is not None:
            symptoms.extend(
                f"Cross-validation: {note.message}"
                for note in verification.cross_validation
                if not note.matched and note.message
            )
        return symptoms
