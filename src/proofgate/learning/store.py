"""
Fix Learning Store.

Persistent memory of which fix strategies work for which failure
patterns. One row per (failure pattern, fix strategy) pair holds the
times_tried / times_succeeded counters; the success rate is always
derived from them.

The store is the only state mutated by many runs at once. Every counter
update for a key is a read-increment-write performed under that key's
lock, so concurrent recorders never lose an update.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from proofgate.config.models import LearningConfig
from proofgate.models.base import Complexity, FixStrategy
from proofgate.models.fixing import FixLearning
from proofgate.storage import RecordStore

logger = logging.getLogger(__name__)

LEARNINGS_COLLECTION = "fix_learnings"

# Words too common in error text to indicate similarity
STOPWORDS = frozenset(
    {"error", "failed", "the", "a", "an", "is", "in", "at", "of", "to", "from"}
)


def extract_keywords(text: str) -> list[str]:
    """Lowercased words longer than three characters, minus stopwords."""
    return [w for w in re.split(r"\W+", text.lower()) if len(w) > 3 and w not in STOPWORDS]


def jaccard_similarity(first: Iterable[str], second: Iterable[str]) -> float:
    """Jaccard similarity of two keyword collections, 0.0 when either is empty."""
    a, b = set(first), set(second)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def learning_key(failure_pattern: str, strategy: FixStrategy) -> str:
    """Record key for a (pattern, strategy) pair.

    Patterns are free text, so the key uses a digest of the pattern.
    """
    digest = hashlib.sha256(failure_pattern.encode("utf-8")).hexdigest()[:32]
    return f"{digest}__{strategy.value}"


def rank_learnings(learnings: Iterable[FixLearning]) -> list[FixLearning]:
    """Order by success rate, then by how often the row was tried."""
    return sorted(learnings, key=lambda row: (-row.success_rate, -row.times_tried))


@dataclass
class LearningStats:
    """Summary statistics over reliable learnings.

    Attributes:
        total_patterns: Number of reliable rows
        avg_success_rate: Mean success rate of those rows
        top_strategies: Best strategies by mean success rate (max 5)
    """

    total_patterns: int = 0
    avg_success_rate: float = 0.0
    top_strategies: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_patterns": self.total_patterns,
            "avg_success_rate": self.avg_success_rate,
            "top_strategies": list(self.top_strategies),
        }


class FixLearningStore:
    """Keyed, concurrency-safe store of FixLearning rows.

    Usage:
        store = FixLearningStore(record_store, config.learning)
        await store.record("cannot find module 'x'", FixStrategy.DEPENDENCY_ADD, success=True)
        best = await store.best_fix("cannot find module 'x'")
    """

    def __init__(self, record_store: RecordStore, config: LearningConfig | None = None) -> None:
        self._records = record_store
        self._config = config or LearningConfig()
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def config(self) -> LearningConfig:
        return self._config

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def record(
        self,
        failure_pattern: str,
        strategy: FixStrategy,
        success: bool,
        error_regex: str | None = None,
        file_pattern: str | None = None,
        complexity: Complexity | None = None,
    ) -> FixLearning:
        """Upsert the counters for a (pattern, strategy) pair.

        Args:
            failure_pattern: Failure signature
            strategy: Strategy that was applied
            success: Whether the fix resolved the failure
            error_regex: Optional regex qualifier for matching error text
            file_pattern: Optional file glob qualifier
            complexity: Optional complexity qualifier

        Returns:
            The updated row
        """
        key = learning_key(failure_pattern, strategy)
        async with self._lock_for(key):
            existing = await asyncio.to_thread(self._records.get, LEARNINGS_COLLECTION, key)
            current = FixLearning.model_validate(existing) if existing else None

            updated = FixLearning(
                failure_pattern=failure_pattern,
                fix_strategy=strategy,
                times_tried=(current.times_tried if current else 0) + 1,
                times_succeeded=(current.times_succeeded if current else 0) + (1 if success else 0),
                error_regex=error_regex or (current.error_regex if current else None),
                file_pattern=file_pattern or (current.file_pattern if current else None),
                complexity=complexity or (current.complexity if current else None),
                last_updated=datetime.now(UTC),
            )
            await asyncio.to_thread(
                self._records.put, LEARNINGS_COLLECTION, key, updated.model_dump(mode="json")
            )

        logger.debug(
            f"Recorded {strategy.value} {'success' if success else 'failure'} for "
            f"'{failure_pattern[:60]}': {updated.times_succeeded}/{updated.times_tried}"
        )
        return updated

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, failure_pattern: str, strategy: FixStrategy) -> FixLearning | None:
        """Row for a (pattern, strategy) pair, None if never recorded."""
        data = await asyncio.to_thread(
            self._records.get, LEARNINGS_COLLECTION, learning_key(failure_pattern, strategy)
        )
        return FixLearning.model_validate(data) if data else None

    async def all(self) -> list[FixLearning]:
        """Every row in the store."""
        rows = await asyncio.to_thread(self._records.list, LEARNINGS_COLLECTION)
        return [FixLearning.model_validate(row) for row in rows]

    async def ranked_fixes(
        self,
        failure_pattern: str,
        exclude: Iterable[FixStrategy] = (),
    ) -> list[FixLearning]:
        """Rows with exactly this pattern, best first."""
        excluded = set(exclude)
        rows = [
            row
            for row in await self.all()
            if row.failure_pattern == failure_pattern and row.fix_strategy not in excluded
        ]
        return rank_learnings(rows)

    async def reliable(self, threshold: float | None = None) -> list[FixLearning]:
        """Rows whose success rate is above the threshold, best first."""
        limit = self._config.reliability_threshold if threshold is None else threshold
        return rank_learnings(row for row in await self.all() if row.success_rate > limit)

    async def similar_patterns(self, failure_pattern: str) -> list[FixLearning]:
        """Reliable rows sharing at least one keyword with the pattern."""
        keywords = set(extract_keywords(failure_pattern))
        if not keywords:
            return []
        return [
            row
            for row in await self.reliable()
            if keywords & set(extract_keywords(row.failure_pattern))
        ]

    async def best_fix(
        self,
        failure_pattern: str,
        exclude: Iterable[FixStrategy] = (),
    ) -> FixLearning | None:
        """Highest-success row for an exact pattern, else for a near match.

        Args:
            failure_pattern: Failure signature
            exclude: Strategies to skip (e.g. already failed in this run)

        Returns:
            Best row, or None when nothing matches
        """
        excluded = set(exclude)
        exact = await self.ranked_fixes(failure_pattern, excluded)
        if exact:
            return exact[0]

        near = [
            row for row in await self.similar_patterns(failure_pattern)
            if row.fix_strategy not in excluded
        ]
        ranked = rank_learnings(near)
        return ranked[0] if ranked else None

    async def stats(self) -> LearningStats:
        """Statistics over reliable rows."""
        rows = await self.reliable()
        if not rows:
            return LearningStats()

        by_strategy: dict[FixStrategy, list[float]] = {}
        for row in rows:
            by_strategy.setdefault(row.fix_strategy, []).append(row.success_rate)

        top = sorted(
            (
                {
                    "strategy": strategy.value,
                    "success_rate": sum(rates) / len(rates),
                    "uses": len(rates),
                }
                for strategy, rates in by_strategy.items()
            ),
            key=lambda item: -item["success_rate"],
        )[:5]

        return LearningStats(
            total_patterns=len(rows),
            avg_success_rate=sum(r.success_rate for r in rows) / len(rows),
            top_strategies=top,
        )

    # -------------------------------------------------------------------------
    # Export / import
    # -------------------------------------------------------------------------

    async def export_learnings(self) -> list[dict[str, Any]]:
        """All rows as JSON-serializable dictionaries."""
        return [row.model_dump(mode="json") for row in rank_learnings(await self.all())]

    async def import_learnings(self, rows: Iterable[FixLearning | dict[str, Any]]) -> int:
        """Import rows from a backup.

        A row that carries counters restores them when its pair has no
        row yet, so an export/import round trip keeps every success rate.
        A row without counters, or one whose pair already exists, counts
        as one successful attempt of that pair.

        Returns:
            Number of rows imported
        """
        imported = 0
        for row in rows:
            learning = row if isinstance(row, FixLearning) else FixLearning.model_validate(row)
            if learning.times_tried == 0 or not await self._restore(learning):
                await self.record(
                    learning.failure_pattern,
                    learning.fix_strategy,
                    success=True,
                    error_regex=learning.error_regex,
                    file_pattern=learning.file_pattern,
                    complexity=learning.complexity,
                )
            imported += 1
        logger.info(f"Imported {imported} learning(s)")
        return imported

    async def _restore(self, learning: FixLearning) -> bool:
        """Write a row as-is if its key is empty. False if the key is taken."""
        key = learning_key(learning.failure_pattern, learning.fix_strategy)
        async with self._lock_for(key):
            if await asyncio.to_thread(self._records.get, LEARNINGS_COLLECTION, key):
                return False
            await asyncio.to_thread(
                self._records.put, LEARNINGS_COLLECTION, key, learning.model_dump(mode="json")
            )
        return True
