"""
Failure Classifier.

Keyword heuristics that map error text to a failure category and a fix
complexity, with a confidence and a short reasoning string.
"""

from __future__ import annotations

from dataclasses import dataclass

from proofgate.models.base import Complexity, FailureCategory

SYNTAX_KEYWORDS = (
    "syntaxerror",
    "unexpected token",
    "unexpected identifier",
    "missing semicolon",
    "invalid syntax",
)

INTEGRATION_KEYWORDS = (
    "cannot find module",
    "modulenotfounderror",
    "no module named",
    "import error",
    "importerror",
    "no such file",
    "enoent",
    "404",
    "connection refused",
    "network error",
    "timeout",
)

ENVIRONMENT_KEYWORDS = (
    "permission denied",
    "eacces",
    "environment variable",
    "config",
    "not defined",
    "undefined is not",
    "cannot read properties of undefined",
)

SIMPLE_KEYWORDS = ("typo", "missing semicolon", "unexpected token", "import")

HUMAN_KEYWORDS = (
    "architecture",
    "design",
    "business logic",
    "ambiguous",
    "unclear requirement",
)

CATEGORY_REASONS = {
    FailureCategory.SYNTAX: "Error message indicates syntax issue",
    FailureCategory.INTEGRATION: "Error suggests missing dependency or API issue",
    FailureCategory.ENVIRONMENT: "Error points to configuration or environment problem",
    FailureCategory.LOGIC: "Error indicates logic or assertion failure",
}

COMPLEXITY_REASONS = {
    Complexity.SIMPLE: "Issue appears straightforward to fix",
    Complexity.MODERATE: "Issue may require some investigation",
    Complexity.COMPLEX: "Issue involves multiple components",
    Complexity.REQUIRES_HUMAN: "Issue requires architectural or business decision",
}


@dataclass(frozen=True)
class FailureClassification:
    """Result of classifying an error."""

    category: FailureCategory
    complexity: Complexity
    confidence: float
    reasoning: str


class FailureClassifier:
    """Classifies failures by category and complexity."""

    def classify(
        self,
        error_message: str,
        stack_trace: str | None = None,
        files_involved: list[str] | None = None,
    ) -> FailureClassification:
        """Classify an error.

        Args:
            error_message: Primary error text
            stack_trace: Stack trace, searched for category keywords too
            files_involved: Files implicated by the failure

        Returns:
            FailureClassification
        """
        category = self.classify_category(error_message, stack_trace)
        complexity = self.classify_complexity(error_message, files_involved)
        return FailureClassification(
            category=category,
            complexity=complexity,
            confidence=self._confidence(category, complexity, error_message),
            reasoning=f"{CATEGORY_REASONS[category]}. {COMPLEXITY_REASONS[complexity]}",
        )

    @staticmethod
    def classify_category(error_message: str, stack_trace: str | None = None) -> FailureCategory:
        message = error_message.lower()
        trace = (stack_trace or "").lower()

        if any(k in message for k in SYNTAX_KEYWORDS) or "syntaxerror" in trace:
            return FailureCategory.SYNTAX
        if any(k in message for k in INTEGRATION_KEYWORDS) or "modulenotfounderror" in trace:
            return FailureCategory.INTEGRATION
        if any(k in message for k in ENVIRONMENT_KEYWORDS):
            return FailureCategory.ENVIRONMENT
        return FailureCategory.LOGIC

    @staticmethod
    def classify_complexity(
        error_message: str,
        files_involved: list[str] | None = None,
    ) -> Complexity:
        message = error_message.lower()
        file_count = len(files_involved or [])

        if file_count <= 1 and any(k in message for k in SIMPLE_KEYWORDS):
            return Complexity.SIMPLE
        if any(k in message for k in HUMAN_KEYWORDS):
            return Complexity.REQUIRES_HUMAN
        if file_count > 3:
            return Complexity.COMPLEX
        return Complexity.MODERATE

    @staticmethod
    def _confidence(category: FailureCategory, complexity: Complexity, error_message: str) -> float:
        message = error_message.lower()
        confidence = 0.5

        if category == FailureCategory.SYNTAX and "syntaxerror" in message:
            confidence += 0.4
        if category == FailureCategory.INTEGRATION and (
            "modulenotfounderror" in message or "404" in message
        ):
            confidence += 0.3
        if category == FailureCategory.ENVIRONMENT and "permission denied" in message:
            confidence += 0.3
        if complexity == Complexity.SIMPLE and len(error_message) < 100:
            confidence += 0.2

        return min(confidence, 1.0)
