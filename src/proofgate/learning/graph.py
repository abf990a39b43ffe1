"""
Knowledge Graph.

Read-only projection of the fix learning store. Nodes are failure
patterns, strategies and complexity categories. Edges connect
failure -> strategy (weight = success rate) and failure -> category
(weight 1.0). The graph is rebuilt from the store's rows on demand and
never persisted, so it cannot drift from the counters.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from proofgate.learning.store import FixLearningStore, rank_learnings
from proofgate.models.fixing import FixLearning

NodeType = Literal["failure", "strategy", "category"]

NODE_COLORS: dict[str, str] = {
    "failure": "lightblue",
    "strategy": "lightgreen",
    "category": "lightyellow",
}


def sanitize_node_id(text: str) -> str:
    """Lowercase, collapse non-alphanumerics to '_', keep 50 characters."""
    return re.sub(r"[^a-z0-9]+", "_", text.lower())[:50]


def failure_node_id(failure_pattern: str) -> str:
    """Readable slug plus a digest of the full pattern.

    Patterns often share a long prefix, so the slug alone is not unique.
    """
    digest = hashlib.sha256(failure_pattern.encode("utf-8")).hexdigest()[:8]
    return f"failure:{sanitize_node_id(failure_pattern)}-{digest}"


@dataclass(frozen=True)
class GraphNode:
    id: str
    type: NodeType
    label: str
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type, "label": self.label, "metadata": self.metadata}


@dataclass(frozen=True)
class GraphEdge:
    source: str
    target: str
    weight: float
    metadata: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.source,
            "to": self.target,
            "weight": self.weight,
            "metadata": self.metadata,
        }


@dataclass
class StrategyPath:
    """A weighted failure -> strategy path."""

    strategy: str
    weight: float


@dataclass
class StrategyRanking:
    """A strategy ranked by its mean edge weight."""

    strategy: str
    avg_success: float
    uses: int

    def to_dict(self) -> dict[str, Any]:
        return {"strategy": self.strategy, "avg_success": self.avg_success, "uses": self.uses}


class KnowledgeGraph:
    """Failure/strategy/category graph built from learning rows.

    Usage:
        graph = KnowledgeGraph.from_learnings(await store.all(), min_success_rate=0.5)
        graph.top_strategies(limit=3)
        print(graph.to_dot())
    """

    def __init__(self, nodes: list[GraphNode], edges: list[GraphEdge]) -> None:
        self.nodes = nodes
        self.edges = edges

    @classmethod
    def from_learnings(
        cls,
        learnings: list[FixLearning],
        min_success_rate: float = 0.5,
    ) -> KnowledgeGraph:
        """Project learning rows at or above min_success_rate into a graph."""
        nodes: list[GraphNode] = []
        edges: list[GraphEdge] = []
        seen: set[str] = set()

        def add_node(node: GraphNode) -> None:
            if node.id not in seen:
                seen.add(node.id)
                nodes.append(node)

        for row in rank_learnings(r for r in learnings if r.success_rate >= min_success_rate):
            failure_id = failure_node_id(row.failure_pattern)
            add_node(
                GraphNode(
                    id=failure_id,
                    type="failure",
                    label=row.failure_pattern,
                    metadata={
                        "complexity": row.complexity.value if row.complexity else None,
                        "error_regex": row.error_regex,
                        "file_pattern": row.file_pattern,
                    },
                )
            )

            strategy_id = f"strategy:{row.fix_strategy.value}"
            add_node(GraphNode(id=strategy_id, type="strategy", label=row.fix_strategy.value))
            edges.append(
                GraphEdge(
                    source=failure_id,
                    target=strategy_id,
                    weight=row.success_rate,
                    metadata={
                        "times_tried": row.times_tried,
                        "times_succeeded": row.times_succeeded,
                    },
                )
            )

            if row.complexity is not None:
                category_id = f"category:{row.complexity.value}"
                add_node(GraphNode(id=category_id, type="category", label=row.complexity.value))
                edges.append(GraphEdge(source=failure_id, target=category_id, weight=1.0))

        return cls(nodes, edges)

    @classmethod
    async def from_store(cls, store: FixLearningStore) -> KnowledgeGraph:
        """Build from the current contents of a learning store."""
        return cls.from_learnings(await store.all(), store.config.graph_min_success_rate)

    def find_paths(self, failure_pattern: str) -> list[StrategyPath]:
        """Strategies reachable from a failure, heaviest first."""
        failure_id = failure_node_id(failure_pattern)
        paths = [
            StrategyPath(strategy=edge.target.removeprefix("strategy:"), weight=edge.weight)
            for edge in self.edges
            if edge.source == failure_id and edge.target.startswith("strategy:")
        ]
        return sorted(paths, key=lambda p: -p.weight)

    def top_strategies(self, limit: int = 5) -> list[StrategyRanking]:
        """Strategies by mean failure -> strategy edge weight."""
        totals: dict[str, list[float]] = {}
        for edge in self.edges:
            if edge.target.startswith("strategy:"):
                totals.setdefault(edge.target.removeprefix("strategy:"), []).append(edge.weight)

        rankings = [
            StrategyRanking(strategy=s, avg_success=sum(w) / len(w), uses=len(w))
            for s, w in totals.items()
        ]
        rankings.sort(key=lambda r: (-r.avg_success, -r.uses))
        return rankings[:limit]

    def stats(self) -> dict[str, Any]:
        """Node/edge counts and mean edge weight."""
        counts = {t: sum(1 for n in self.nodes if n.type == t) for t in NODE_COLORS}
        return {
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            "failure_nodes": counts["failure"],
            "strategy_nodes": counts["strategy"],
            "category_nodes": counts["category"],
            "avg_edge_weight": (
                sum(e.weight for e in self.edges) / len(self.edges) if self.edges else 0.0
            ),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    def to_json(self) -> str:
        """Export as indented JSON."""
        return json.dumps(self.to_dict(), indent=2)

    def to_dot(self) -> str:
        """Export as Graphviz DOT."""
        lines = [
            "digraph KnowledgeGraph {",
            "  rankdir=LR;",
            "  node [shape=box];",
            "",
        ]
        for node in self.nodes:
            label = node.label.replace('"', '\\"')
            lines.append(
                f'  "{node.id}" [label="{label}", fillcolor="{NODE_COLORS[node.type]}", style=filled];'
            )
        lines.append("")
        for edge in self.edges:
            lines.append(f'  "{edge.source}" -> "{edge.target}" [label="{edge.weight * 100:.0f}%"];')
        lines.append("}")
        return "\n".join(lines)
