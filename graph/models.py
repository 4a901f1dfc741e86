"""
graph/models.py -- Result shapes returned by the graph index.

Pure data containers, built fresh on every query so callers never hold a
reference into the live index.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class GraphNode:
    id: str
    name: str
    ci_type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    relationship_type: str
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphData:
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)


@dataclass
class CINetwork:
    center: str
    nodes: list[GraphNode] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)


@dataclass
class RelationshipEdge:
    """One relationship seen from a CI, with the CI on the other end."""

    id: str
    relationship_type: str
    direction: str  # "outgoing" | "incoming"
    related_ci: GraphNode
    attributes: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    created_by: str = ""


@dataclass
class CIImpact:
    id: str
    name: str
    ci_type: str
    depth: int
    direction: str  # "downstream" | "upstream"


@dataclass
class ImpactAnalysis:
    """downstream: CIs with a path into the subject (they depend on it).
    upstream: CIs reachable from the subject (it depends on them).
    """

    ci_id: str
    downstream: list[CIImpact] = field(default_factory=list)
    upstream: list[CIImpact] = field(default_factory=list)


@dataclass
class CIConnectivity:
    id: str
    name: str
    ci_type: str
    connection_count: int


@dataclass
class TypeUsage:
    ci_type: str
    count: int
