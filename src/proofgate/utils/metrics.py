"""
Proofgate Metrics Collection.

In-process metrics for the verification pipeline, fed by the
orchestrator and exposed through `MetricsCollector.get_summary()`.

Key Components:
    - StageMetrics: call counts and durations per workflow stage
    - CostMetrics: fix cost and token usage by model and tier
    - OutcomeMetrics: terminal outcomes, verdicts and red flags
    - MetricsCollector: aggregation with an async stage timing context
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, computed_field

from proofgate.models.base import Recommendation, WorkflowStage
from proofgate.models.red_flags import RedFlagReport


@dataclass
class StageMetrics:
    """Timing for one workflow stage across all runs.

    Attributes:
        stage: Stage name
        calls: Times the stage's work ran
        failures: Runs of the work that raised or timed out
        total_seconds: Cumulative duration
        max_seconds: Longest single duration
    """

    stage: str
    calls: int = 0
    failures: int = 0
    total_seconds: float = 0.0
    max_seconds: float = 0.0

    @property
    def average_seconds(self) -> float:
        return self.total_seconds / self.calls if self.calls else 0.0

    def record(self, duration_seconds: float, success: bool = True) -> None:
        self.calls += 1
        if not success:
            self.failures += 1
        self.total_seconds += duration_seconds
        self.max_seconds = max(self.max_seconds, duration_seconds)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "stage": self.stage,
            "calls": self.calls,
            "failures": self.failures,
            "total_seconds": self.total_seconds,
            "average_seconds": self.average_seconds,
            "max_seconds": self.max_seconds,
        }


class CostMetrics(BaseModel):
    """Fix cost tracking.

    Attributes:
        tokens: Total tokens reported or estimated
        cost_usd: Total cost in USD
        fix_calls: Number of fix applications
        by_model: Breakdown by model name
        by_tier: Breakdown by model tier
    """

    tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)
    fix_calls: int = Field(default=0, ge=0)
    by_model: dict[str, dict[str, Any]] = Field(default_factory=dict)
    by_tier: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def add_usage(
        self,
        tokens: int,
        cost_usd: float,
        model: str = "unknown",
        tier: str = "unknown",
    ) -> None:
        """Add one fix call's usage.

        Args:
            tokens: Tokens used
            cost_usd: Cost in USD
            model: Model name
            tier: Model tier
        """
        self.tokens += tokens
        self.cost_usd += cost_usd
        self.fix_calls += 1

        for bucket, key in ((self.by_model, model), (self.by_tier, tier)):
            entry = bucket.setdefault(key, {"tokens": 0, "cost_usd": 0.0, "calls": 0})
            entry["tokens"] += tokens
            entry["cost_usd"] += cost_usd
            entry["calls"] += 1


class OutcomeMetrics(BaseModel):
    """Run outcomes and verification verdicts.

    Attributes:
        runs_started: Runs accepted by start_verification
        terminal: Count per terminal stage
        recommendations: Count per verifier recommendation
        red_flags: Count per red flag severity
        scores: Confidence scores of every verification
    """

    runs_started: int = Field(default=0, ge=0)
    terminal: dict[str, int] = Field(default_factory=dict)
    recommendations: dict[str, int] = Field(default_factory=dict)
    red_flags: dict[str, int] = Field(default_factory=dict)
    scores: list[int] = Field(default_factory=list)

    @computed_field
    @property
    def completion_rate(self) -> float:
        """Share of finished runs that completed."""
        finished = sum(self.terminal.values())
        if finished == 0:
            return 0.0
        return self.terminal.get(WorkflowStage.COMPLETED.value, 0) / finished

    @computed_field
    @property
    def average_score(self) -> float:
        if not self.scores:
            return 0.0
        return sum(self.scores) / len(self.scores)


class MetricsCollector:
    """Central metrics aggregation for the orchestrator.

    Usage:
        collector = MetricsCollector()

        async with collector.stage_context(WorkflowStage.VERIFYING):
            ...

        collector.record_cost(tokens=1200, cost_usd=0.004, model="m", tier="cheap")
        summary = collector.get_summary()
    """

    def __init__(self) -> None:
        self._start_time = datetime.now(UTC)
        self._stages: dict[str, StageMetrics] = {}
        self._cost = CostMetrics()
        self._outcomes = OutcomeMetrics()

    @property
    def cost(self) -> CostMetrics:
        return self._cost

    @property
    def outcomes(self) -> OutcomeMetrics:
        return self._outcomes

    def stage(self, stage: WorkflowStage) -> StageMetrics:
        return self._stages.setdefault(stage.value, StageMetrics(stage=stage.value))

    def record_stage(self, stage: WorkflowStage, duration_seconds: float, success: bool = True) -> None:
        self.stage(stage).record(duration_seconds, success)

    @asynccontextmanager
    async def stage_context(self, stage: WorkflowStage) -> AsyncIterator[None]:
        """Time a stage's work; failures are counted and re-raised."""
        start = time.perf_counter()
        try:
            yield
        except BaseException:
            self.record_stage(stage, time.perf_counter() - start, success=False)
            raise
        self.record_stage(stage, time.perf_counter() - start, success=True)

    def record_cost(self, tokens: int, cost_usd: float, model: str, tier: str) -> None:
        self._cost.add_usage(tokens=tokens, cost_usd=cost_usd, model=model, tier=tier)

    def record_run_started(self) -> None:
        self._outcomes.runs_started += 1

    def record_terminal(self, stage: WorkflowStage) -> None:
        self._outcomes.terminal[stage.value] = self._outcomes.terminal.get(stage.value, 0) + 1

    def record_verification(self, recommendation: Recommendation, score: int) -> None:
        key = recommendation.value
        self._outcomes.recommendations[key] = self._outcomes.recommendations.get(key, 0) + 1
        self._outcomes.scores.append(score)

    def record_red_flags(self, report: RedFlagReport) -> None:
        for severity, count in report.severity_summary.items():
            if count:
                self._outcomes.red_flags[severity] = self._outcomes.red_flags.get(severity, 0) + count

    def get_summary(self) -> dict[str, Any]:
        """Get a metrics summary.

        Returns:
            Dictionary with timing, stage, cost and outcome metrics
        """
        now = datetime.now(UTC)
        return {
            "timing": {
                "start_time": self._start_time.isoformat(),
                "end_time": now.isoformat(),
                "total_duration_seconds": (now - self._start_time).total_seconds(),
            },
            "stages": {name: sm.to_dict() for name, sm in self._stages.items()},
            "cost": {
                "total_cost_usd": self._cost.cost_usd,
                "tokens": self._cost.tokens,
                "fix_calls": self._cost.fix_calls,
                "by_model": self._cost.by_model,
                "by_tier": self._cost.by_tier,
            },
            "outcomes": self._outcomes.model_dump(exclude={"scores"}),
        }

    def export_json(self, filepath: str | Path, indent: int = 2) -> None:
        """Export the summary to a JSON file."""
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(self.get_summary(), f, indent=indent, default=str)

    def reset(self) -> None:
        """Reset all collected metrics."""
        self._start_time = datetime.now(UTC)
        self._stages.clear()
        self._cost = CostMetrics()
        self._outcomes = OutcomeMetrics()


# Module-level default instance
_default_collector: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get or create the default metrics collector."""
    global _default_collector
    if _default_collector is None:
        _default_collector = MetricsCollector()
    return _default_collector
