"""
Proofgate - Fix Attempts

Tier escalation and retry budgeting for the repair loop:

- TierLadder: cheap -> balanced -> capable, walked by a persisted index
- RetryManager: attempt ceiling, cost budget and learning feedback
"""

from proofgate.fixing.ladder import (
    COMPLEXITY_FLOOR,
    TIER_LADDER,
    TierLadder,
    tier_at,
    tier_index_for,
)
from proofgate.fixing.retry import RetryManager, RetrySummary

__all__ = [
    # Ladder
    "COMPLEXITY_FLOOR",
    "TIER_LADDER",
    "TierLadder",
    "tier_at",
    "tier_index_for",
    # Retry
    "RetryManager",
    "RetrySummary",
]
