"""
Failure Pattern Matcher.

Matches a failure against known learnings in three steps, first hit wins:

1. exact pattern with a reliable success rate
2. a reliable row whose error_regex matches the error text
3. the reliable row with the highest keyword (Jaccard) similarity above
   the similarity threshold
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from proofgate.learning.store import FixLearningStore, extract_keywords, jaccard_similarity
from proofgate.models.base import FixStrategy
from proofgate.models.fixing import FixLearning

logger = logging.getLogger(__name__)


def _regex_matches(pattern: str, text: str) -> bool:
    try:
        return re.search(pattern, text, re.IGNORECASE) is not None
    except re.error:
        logger.debug(f"Skipping invalid error_regex: {pattern}")
        return False


class FailurePatternMatcher:
    """Finds the most relevant learning for a failure."""

    def __init__(self, store: FixLearningStore) -> None:
        self._store = store

    @property
    def reliability_threshold(self) -> float:
        return self._store.config.reliability_threshold

    @property
    def similarity_threshold(self) -> float:
        return self._store.config.similarity_threshold

    def is_reliable(self, learning: FixLearning) -> bool:
        return learning.success_rate > self.reliability_threshold

    async def match(
        self,
        failure_pattern: str,
        error_message: str | None = None,
        exclude: Iterable[FixStrategy] = (),
    ) -> FixLearning | None:
        """Best matching reliable learning, or None.

        Args:
            failure_pattern: Normalized failure signature
            error_message: Raw error text for regex matching; defaults to the pattern
            exclude: Strategies that must not be returned
        """
        excluded = set(exclude)
        text = error_message or failure_pattern

        exact = await self._store.ranked_fixes(failure_pattern, excluded)
        if exact and self.is_reliable(exact[0]):
            logger.debug(f"Exact learning match: {exact[0].fix_strategy.value}")
            return exact[0]

        candidates = [
            row
            for row in await self._store.reliable()
            if row.fix_strategy not in excluded and self.is_reliable(row)
        ]

        for row in candidates:
            if row.error_regex and _regex_matches(row.error_regex, text):
                logger.debug(f"Regex learning match: {row.error_regex} -> {row.fix_strategy.value}")
                return row

        keywords = extract_keywords(failure_pattern)
        best: FixLearning | None = None
        best_score = 0.0
        for row in candidates:
            score = jaccard_similarity(keywords, extract_keywords(row.failure_pattern))
            if score > best_score and score > self.similarity_threshold:
                best, best_score = row, score

        if best is not None:
            logger.debug(f"Similar learning match ({best_score:.2f}): {best.fix_strategy.value}")
        return best

    @staticmethod
    def match_confidence(error_message: str, learning: FixLearning) -> float:
        """Confidence that a learning applies to an error, in [0, 1]."""
        confidence = 0.0
        if error_message == learning.failure_pattern:
            confidence += 0.5
        if learning.error_regex and _regex_matches(learning.error_regex, error_message):
            confidence += 0.3
        confidence += learning.success_rate * 0.2
        return min(confidence, 1.0)
