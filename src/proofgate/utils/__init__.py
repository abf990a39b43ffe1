"""
Proofgate - Utilities

Metrics collection for the verification pipeline.
"""

from proofgate.utils.metrics import (
    CostMetrics,
    MetricsCollector,
    OutcomeMetrics,
    StageMetrics,
    get_metrics_collector,
)

__all__ = [
    "CostMetrics",
    "MetricsCollector",
    "OutcomeMetrics",
    "StageMetrics",
    "get_metrics_collector",
]
