"""
Proofgate - Root Cause Analysis

Diagnosis of rejected attempts and selection of the next repair:

- FailureClassifier: keyword classification of error text
- RootCauseAnalyzer: RootCauseAnalysis from evidence, flags and history
- FixStrategySelector: learning-first strategy selection per model tier
"""

from proofgate.rca.analyzer import (
    CATEGORY_DEFAULT_STRATEGY,
    RootCauseAnalyzer,
    extract_involved_files,
    normalize_failure_pattern,
    recommend_strategy,
)
from proofgate.rca.classifier import FailureClassification, FailureClassifier
from proofgate.rca.selector import (
    CATEGORY_STRATEGIES,
    STRATEGY_DESCRIPTIONS,
    TIER_PREFERENCES,
    FixStrategySelector,
    StrategySelection,
    describe_strategy,
)

__all__ = [
    # Analyzer
    "CATEGORY_DEFAULT_STRATEGY",
    "RootCauseAnalyzer",
    "extract_involved_files",
    "normalize_failure_pattern",
    "recommend_strategy",
    # Classifier
    "FailureClassification",
    "FailureClassifier",
    # Selector
    "CATEGORY_STRATEGIES",
    "STRATEGY_DESCRIPTIONS",
    "TIER_PREFERENCES",
    "FixStrategySelector",
    "StrategySelection",
    "describe_strategy",
]
