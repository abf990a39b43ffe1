"""
Retry Manager.

Enforces the per-run fix budget: a hard ceiling on fix attempts and an
optional cost budget. Every completed FixAttempt is recorded to the fix
learning store whether it succeeded or not.

A RetryManager is built per run from the persisted attempt history, so
it holds no state that a crash could lose.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from proofgate.config.models import RetryConfig
from proofgate.learning.store import FixLearningStore
from proofgate.models.base import Complexity, EscalationReason, FixStrategy
from proofgate.models.fixing import FixAttempt

logger = logging.getLogger(__name__)


@dataclass
class RetrySummary:
    """Summary of a run's fix attempts.

    Attributes:
        total_attempts: Completed fix attempts
        successful_attempts: Attempts whose fix passed verification
        total_cost_usd: Cumulative cost
        cost_by_model: Cost per model name
        strategies_tried: Strategies in attempt order
        models_used: Distinct models in first-use order
        failure_reasons: Human-readable reason per failed attempt
    """

    total_attempts: int = 0
    successful_attempts: int = 0
    total_cost_usd: float = 0.0
    cost_by_model: dict[str, float] = field(default_factory=dict)
    strategies_tried: list[str] = field(default_factory=list)
    models_used: list[str] = field(default_factory=list)
    failure_reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_attempts": self.total_attempts,
            "successful_attempts": self.successful_attempts,
            "total_cost_usd": round(self.total_cost_usd, 6),
            "cost_by_model": dict(self.cost_by_model),
            "strategies_tried": list(self.strategies_tried),
            "models_used": list(self.models_used),
            "failure_reasons": list(self.failure_reasons),
        }


class RetryManager:
    """Retry ceiling, cost budget and learning feedback for one run.

    Usage:
        manager = RetryManager(run_id, learning_store, config.retry, attempts)
        reason = manager.escalation_reason()
        if reason is None:
            ...
        await manager.record_attempt(attempt, complexity=rca.complexity)
    """

    def __init__(
        self,
        run_id: str,
        store: FixLearningStore,
        config: RetryConfig | None = None,
        attempts: Iterable[FixAttempt] = (),
    ) -> None:
        self.run_id = run_id
        self._store = store
        self._config = config or RetryConfig()
        self._attempts: list[FixAttempt] = sorted(attempts, key=lambda a: a.attempt_number)

    @property
    def attempts(self) -> list[FixAttempt]:
        return list(self._attempts)

    @property
    def attempts_used(self) -> int:
        return len(self._attempts)

    @property
    def total_cost(self) -> float:
        return sum(a.cost_usd for a in self._attempts)

    @property
    def next_attempt_number(self) -> int:
        return self.attempts_used + 1

    @property
    def failed_strategies(self) -> list[FixStrategy]:
        """Strategies that failed in this run, in attempt order, deduplicated."""
        failed: list[FixStrategy] = []
        for attempt in self._attempts:
            if not attempt.success and attempt.strategy not in failed:
                failed.append(attempt.strategy)
        return failed

    def escalation_reason(self, total_cost: float | None = None) -> EscalationReason | None:
        """Why no further fix attempt may be made, or None.

        Args:
            total_cost: Cumulative cost override (e.g. from WorkflowState)
        """
        if self.attempts_used >= self._config.max_attempts:
            return EscalationReason.MAX_RETRIES

        budget = self._config.max_total_cost_usd
        spent = self.total_cost if total_cost is None else total_cost
        if budget is not None and spent >= budget:
            return EscalationReason.COST_BUDGET
        return None

    def can_retry(self, total_cost: float | None = None) -> bool:
        return self.escalation_reason(total_cost) is None

    async def record_attempt(
        self,
        attempt: FixAttempt,
        complexity: Complexity | None = None,
        error_regex: str | None = None,
    ) -> None:
        """Append a completed attempt and feed its outcome to the learning store."""
        self._attempts.append(attempt)
        await self._store.record(
            attempt.failure_pattern,
            attempt.strategy,
            success=attempt.success,
            error_regex=error_regex,
            complexity=complexity,
        )
        logger.info(
            f"[{self.run_id}] Fix attempt {attempt.attempt_number} ({attempt.strategy.value} on "
            f"{attempt.tier.value}) {'succeeded' if attempt.success else 'failed'}"
        )

    def summary(self) -> RetrySummary:
        result = RetrySummary(total_attempts=self.attempts_used)
        for attempt in self._attempts:
            if attempt.success:
                result.successful_attempts += 1
            result.total_cost_usd += attempt.cost_usd
            result.cost_by_model[attempt.model_used] = (
                result.cost_by_model.get(attempt.model_used, 0.0) + attempt.cost_usd
            )
            result.strategies_tried.append(attempt.strategy.value)
            if attempt.model_used not in result.models_used:
                result.models_used.append(attempt.model_used)
        result.failure_reasons = self.analyze_failures()
        return result

    def analyze_failures(self) -> list[str]:
        """One line per failed attempt explaining why it failed."""
        return [
            f"Retry {a.attempt_number} ({a.strategy.value}): "
            f"{a.error_message or 'Fix did not resolve issue'}"
            for a in self._attempts
            if not a.success
        ]
