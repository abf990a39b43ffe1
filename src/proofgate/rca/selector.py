"""
Fix Strategy Selector.

Chooses the repair strategy for the next fix attempt. Decision order,
first match wins:

1. A learning for this failure pattern that is reliable and has not
   failed in this run
2. The root cause analysis recommendation, unless it failed in this run
3. The failure category's candidate list minus failed strategies,
   preferring candidates that suit the current model tier; ties are
   broken by the knowledge graph's global strategy ranking

When nothing remains the selector raises StrategyExhaustedError, which
the orchestrator turns into an escalation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Literal

from proofgate.errors import StrategyExhaustedError
from proofgate.learning.graph import KnowledgeGraph
from proofgate.learning.matcher import FailurePatternMatcher
from proofgate.learning.store import FixLearningStore
from proofgate.models.base import FailureCategory, FixStrategy, ModelTier
from proofgate.models.fixing import RootCauseAnalysis

logger = logging.getLogger(__name__)

SelectionSource = Literal["learning", "rca", "category"]

STRATEGY_DESCRIPTIONS: dict[FixStrategy, str] = {
    FixStrategy.TYPO_CORRECTION: "Fix simple typos in variable names, function calls, or strings",
    FixStrategy.SYNTAX_FIX: "Fix syntax errors like missing brackets, semicolons, or quotes",
    FixStrategy.FORMATTING: "Fix code formatting issues",
    FixStrategy.REFACTOR: "Refactor code structure to fix logic issues",
    FixStrategy.ALGORITHM_FIX: "Fix algorithmic errors in business logic",
    FixStrategy.CONDITION_FIX: "Fix conditional logic (if/else, loops, comparisons)",
    FixStrategy.IMPORT_FIX: "Fix import statements or module paths",
    FixStrategy.DEPENDENCY_ADD: "Add missing package dependencies",
    FixStrategy.API_UPDATE: "Update API calls to match current API specification",
    FixStrategy.ENV_VAR_ADD: "Add missing environment variables",
    FixStrategy.CONFIG_FIX: "Fix configuration files or settings",
    FixStrategy.PERMISSION_FIX: "Fix file or directory permissions",
}

CATEGORY_STRATEGIES: dict[FailureCategory, tuple[FixStrategy, ...]] = {
    FailureCategory.SYNTAX: (
        FixStrategy.TYPO_CORRECTION,
        FixStrategy.SYNTAX_FIX,
        FixStrategy.FORMATTING,
    ),
    FailureCategory.LOGIC: (
        FixStrategy.CONDITION_FIX,
        FixStrategy.ALGORITHM_FIX,
        FixStrategy.REFACTOR,
    ),
    FailureCategory.INTEGRATION: (
        FixStrategy.IMPORT_FIX,
        FixStrategy.DEPENDENCY_ADD,
        FixStrategy.API_UPDATE,
    ),
    FailureCategory.ENVIRONMENT: (
        FixStrategy.ENV_VAR_ADD,
        FixStrategy.CONFIG_FIX,
        FixStrategy.PERMISSION_FIX,
    ),
}

# Strategies each tier handles well: cheap models get mechanical edits,
# capable models get structural changes
TIER_PREFERENCES: dict[ModelTier, frozenset[FixStrategy]] = {
    ModelTier.CHEAP: frozenset(
        {FixStrategy.TYPO_CORRECTION, FixStrategy.IMPORT_FIX, FixStrategy.FORMATTING}
    ),
    ModelTier.BALANCED: frozenset(
        {
            FixStrategy.SYNTAX_FIX,
            FixStrategy.DEPENDENCY_ADD,
            FixStrategy.ENV_VAR_ADD,
            FixStrategy.CONFIG_FIX,
        }
    ),
    ModelTier.CAPABLE: frozenset(
        {
            FixStrategy.REFACTOR,
            FixStrategy.ALGORITHM_FIX,
            FixStrategy.CONDITION_FIX,
            FixStrategy.API_UPDATE,
            FixStrategy.PERMISSION_FIX,
        }
    ),
}


def describe_strategy(strategy: FixStrategy) -> str:
    return STRATEGY_DESCRIPTIONS[strategy]


@dataclass
class StrategySelection:
    """A chosen strategy and where the choice came from.

    Attributes:
        strategy: Strategy to apply
        source: learning, rca or category
        description: Human-readable description of the strategy
        success_rate: Learned success rate when chosen from the learning store
    """

    strategy: FixStrategy
    source: SelectionSource
    description: str
    success_rate: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "strategy": self.strategy.value,
            "source": self.source,
            "description": self.description,
            "success_rate": self.success_rate,
        }


class FixStrategySelector:
    """Selects a fix strategy from learnings, RCA and the category catalogue.

    Usage:
        selector = FixStrategySelector(learning_store)
        selection = await selector.select(rca, ModelTier.CHEAP, failed=[...])
    """

    def __init__(
        self,
        store: FixLearningStore,
        matcher: FailurePatternMatcher | None = None,
    ) -> None:
        self._store = store
        self._matcher = matcher or FailurePatternMatcher(store)

    async def select(
        self,
        rca: RootCauseAnalysis,
        tier: ModelTier,
        failed: Iterable[FixStrategy] = (),
    ) -> StrategySelection:
        """Choose the strategy for the next fix attempt.

        Args:
            rca: Diagnosis of the failing attempt
            tier: Model tier of the next attempt
            failed: Strategies that already failed in this run

        Returns:
            StrategySelection

        Raises:
            StrategyExhaustedError: If every candidate already failed
        """
        excluded = set(failed)

        learned = await self._matcher.match(rca.failure_pattern, rca.error_message, exclude=excluded)
        if learned is not None and self._matcher.is_reliable(learned):
            logger.info(
                f"[{rca.run_id}] Using learned strategy {learned.fix_strategy.value} "
                f"({learned.success_rate:.0%} success)"
            )
            return StrategySelection(
                strategy=learned.fix_strategy,
                source="learning",
                description=describe_strategy(learned.fix_strategy),
                success_rate=learned.success_rate,
            )

        if rca.recommended_strategy is not None and rca.recommended_strategy not in excluded:
            logger.info(f"[{rca.run_id}] Using RCA strategy {rca.recommended_strategy.value}")
            return StrategySelection(
                strategy=rca.recommended_strategy,
                source="rca",
                description=describe_strategy(rca.recommended_strategy),
            )

        candidates = [s for s in CATEGORY_STRATEGIES[rca.category] if s not in excluded]
        if not candidates:
            raise StrategyExhaustedError(failed=[s.value for s in excluded])

        strategy = await self._pick_for_tier(candidates, tier)
        logger.info(f"[{rca.run_id}] Using {rca.category.value} strategy {strategy.value} for {tier.value} tier")
        return StrategySelection(
            strategy=strategy,
            source="category",
            description=describe_strategy(strategy),
        )

    async def _pick_for_tier(self, candidates: list[FixStrategy], tier: ModelTier) -> FixStrategy:
        """Candidate best suited to the tier, ranked by the graph on ties."""
        preferred = [s for s in candidates if s in TIER_PREFERENCES[tier]]
        if len(preferred) == 1:
            return preferred[0]

        pool = preferred or candidates
        if len(pool) == 1:
            return pool[0]

        graph = await KnowledgeGraph.from_store(self._store)
        ranking = [r.strategy for r in graph.top_strategies(limit=len(FixStrategy))]
        for name in ranking:
            for strategy in pool:
                if strategy.value == name:
                    return strategy
        return pool[0]
