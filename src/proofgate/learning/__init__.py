"""
Proofgate - Fix Learning

Cross-run memory of which fix strategies resolve which failure patterns:

- FixLearningStore: atomic counter upserts and lookups
- FailurePatternMatcher: exact, regex and keyword-similarity matching
- KnowledgeGraph: read-only graph projection for ranking and export
"""

from proofgate.learning.graph import (
    GraphEdge,
    GraphNode,
    KnowledgeGraph,
    StrategyPath,
    StrategyRanking,
    failure_node_id,
    sanitize_node_id,
)
from proofgate.learning.matcher import FailurePatternMatcher
from proofgate.learning.store import (
    LEARNINGS_COLLECTION,
    FixLearningStore,
    LearningStats,
    extract_keywords,
    jaccard_similarity,
    learning_key,
    rank_learnings,
)

__all__ = [
    # Graph
    "GraphEdge",
    "GraphNode",
    "KnowledgeGraph",
    "StrategyPath",
    "StrategyRanking",
    "failure_node_id",
    "sanitize_node_id",
    # Matcher
    "FailurePatternMatcher",
    # Store
    "LEARNINGS_COLLECTION",
    "FixLearningStore",
    "LearningStats",
    "extract_keywords",
    "jaccard_similarity",
    "learning_key",
    "rank_learnings",
]
