"""
Model Tier Ladder.

The escalation policy is an ordered list of tiers walked by index. The
index is persisted in WorkflowState so a resumed run continues on the
rung it reached instead of restarting at the cheapest tier.
"""

from __future__ import annotations

from proofgate.config.models import ModelsConfig, TierModelConfig
from proofgate.models.base import Complexity, ModelTier

TIER_LADDER: tuple[ModelTier, ...] = (
    ModelTier.CHEAP,
    ModelTier.BALANCED,
    ModelTier.CAPABLE,
)

# Lowest rung a diagnosis of this complexity starts on
COMPLEXITY_FLOOR: dict[Complexity, int] = {
    Complexity.SIMPLE: 0,
    Complexity.MODERATE: 1,
    Complexity.COMPLEX: 2,
    Complexity.REQUIRES_HUMAN: 2,
}


def tier_index_for(fix_attempt: int, complexity: Complexity | None = None) -> int:
    """Ladder index for the k-th fix attempt of a run (1-based).

    One rung per failed attempt, never below the complexity floor and
    never past the top of the ladder.
    """
    if fix_attempt < 1:
        raise ValueError(f"fix_attempt must be >= 1, got {fix_attempt}")
    floor = COMPLEXITY_FLOOR[complexity] if complexity is not None else 0
    return min(max(fix_attempt - 1, floor), len(TIER_LADDER) - 1)


def tier_at(index: int) -> ModelTier:
    """Tier at a ladder index, clamped to the ladder."""
    return TIER_LADDER[max(0, min(index, len(TIER_LADDER) - 1))]


class TierLadder:
    """Maps ladder positions to configured models.

    Usage:
        ladder = TierLadder(config.models)
        tier = ladder.tier_for(attempt, rca.complexity)
        model = ladder.model_for(tier)
    """

    def __init__(self, models: ModelsConfig | None = None) -> None:
        self._models = models or ModelsConfig()

    @property
    def tiers(self) -> tuple[ModelTier, ...]:
        return TIER_LADDER

    def tier_for(self, fix_attempt: int, complexity: Complexity | None = None) -> ModelTier:
        return TIER_LADDER[tier_index_for(fix_attempt, complexity)]

    def model_for(self, tier: ModelTier) -> TierModelConfig:
        return self._models.get_tier_config(tier)

    def estimate_cost(self, tier: ModelTier, tokens: int | None = None) -> float:
        """Estimated USD cost of one attempt on a tier."""
        return self.model_for(tier).estimate_cost(tokens)
