"""
graph/index.py -- Traversal index over CIs and relationships.

The graph index is a derived projection of the primary store: nodes are CIs
(keyed by CI id, carrying a denormalised copy of name, type, attributes and
tags) and edges are relationships (keyed by relationship id). It is written
only by graph/sync.py and can be rebuilt from the primary store at any time.

GraphIndex is the structural interface the service layer depends on.
NetworkXGraphIndex realises it in-process on a networkx MultiDiGraph; the
traversal work (reachability, cycle enumeration) is done by networkx.

Concurrency: networkx graphs are not thread-safe. Every public method holds
the index session (a re-entrant lock) for exactly one operation and releases
it on return; results are fresh dataclasses, never views into the graph.

All reads are deterministic for a given graph: ties are broken by name or id.
A CI that is not in the index yields empty results rather than an error.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Optional, Protocol

import networkx as nx

from cmdb.models import ConfigurationItem, Relationship
from graph.models import (
    CIConnectivity,
    CIImpact,
    CINetwork,
    GraphData,
    GraphEdge,
    GraphNode,
    ImpactAnalysis,
    RelationshipEdge,
    TypeUsage,
)

logger = logging.getLogger("lattice.graph")

DEFAULT_CYCLE_LIMIT = 50


class GraphIndex(Protocol):
    """Mirror and query contract the service layer relies on."""

    def upsert_ci(self, ci: ConfigurationItem) -> None: ...

    def remove_ci(self, ci_id: str) -> None: ...

    def upsert_relationship(self, rel: Relationship, source: ConfigurationItem, target: ConfigurationItem) -> None: ...

    def remove_relationship(self, rel_id: str) -> None: ...

    def rebuild(self, cis: Iterable[ConfigurationItem], relationships: Iterable[Relationship]) -> None: ...

    def neighbors(self, ci_id: str) -> list[RelationshipEdge]: ...

    def subgraph(self, types: Optional[list[str]], search: Optional[str], limit: int) -> GraphData: ...

    def network(self, ci_id: str, depth: int) -> CINetwork: ...

    def find_cycles(self, limit: int = DEFAULT_CYCLE_LIMIT) -> list[list[str]]: ...

    def impact_analysis(self, ci_id: str) -> ImpactAnalysis: ...

    def most_connected(self, limit: int) -> list[CIConnectivity]: ...

    def type_usage(self) -> list[TypeUsage]: ...

    def node_count(self) -> int: ...

    def edge_count(self) -> int: ...


class NetworkXGraphIndex:
    """In-process GraphIndex backed by networkx.MultiDiGraph.

    Usage:
        index = NetworkXGraphIndex()
        index.rebuild(store.list_all_cis(), store.list_all_relationships())
        index.find_cycles()
    """

    def __init__(self) -> None:
        self._graph = nx.MultiDiGraph()
        # relationship id -> (source id, target id), so removals need no scan
        self._edges: dict[str, tuple[str, str]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def session(self) -> Iterator[nx.MultiDiGraph]:
        """Hold the index for one operation."""
        with self._lock:
            yield self._graph

    # ------------------------------------------------------------------
    # Mirror operations
    # ------------------------------------------------------------------

    def upsert_ci(self, ci: ConfigurationItem) -> None:
        with self.session() as g:
            _add_node(g, ci)

    def remove_ci(self, ci_id: str) -> None:
        """Drop a CI node and every edge touching it."""
        with self.session() as g:
            if ci_id not in g:
                return
            for _, _, key in list(g.in_edges(ci_id, keys=True)) + list(g.out_edges(ci_id, keys=True)):
                self._edges.pop(key, None)
            g.remove_node(ci_id)

    def upsert_relationship(self, rel: Relationship, source: ConfigurationItem, target: ConfigurationItem) -> None:
        """Add or refresh an edge, refreshing both endpoint nodes first."""
        with self.session() as g:
            _add_node(g, source)
            _add_node(g, target)
            previous = self._edges.get(rel.id)
            if previous is not None and previous != (rel.source_id, rel.target_id):
                g.remove_edge(previous[0], previous[1], key=rel.id)
            _add_edge(g, rel)
            self._edges[rel.id] = (rel.source_id, rel.target_id)

    def remove_relationship(self, rel_id: str) -> None:
        with self.session() as g:
            endpoints = self._edges.pop(rel_id, None)
            if endpoints is not None and g.has_edge(endpoints[0], endpoints[1], key=rel_id):
                g.remove_edge(endpoints[0], endpoints[1], key=rel_id)

    def rebuild(self, cis: Iterable[ConfigurationItem], relationships: Iterable[Relationship]) -> None:
        """Replace the whole index with the given CIs and relationships.

        The new graph is built aside and swapped in under the lock, so readers
        see either the old projection or the new one. Relationships whose
        endpoints are not among cis are skipped with a warning.
        """
        graph = nx.MultiDiGraph()
        edges: dict[str, tuple[str, str]] = {}
        for ci in cis:
            _add_node(graph, ci)
        for rel in relationships:
            if rel.source_id not in graph or rel.target_id not in graph:
                logger.warning("Skipping relationship %s: endpoint missing from rebuild set", rel.id)
                continue
            _add_edge(graph, rel)
            edges[rel.id] = (rel.source_id, rel.target_id)
        with self.session():
            self._graph = graph
            self._edges = edges

    def node_count(self) -> int:
        with self.session() as g:
            return g.number_of_nodes()

    def edge_count(self) -> int:
        with self.session() as g:
            return g.number_of_edges()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def neighbors(self, ci_id: str) -> list[RelationshipEdge]:
        """Every relationship touching ci_id, oldest first, with the other endpoint."""
        with self.session() as g:
            if ci_id not in g:
                return []
            result = [
                _relationship_edge(g, key, data, "outgoing", other)
                for _, other, key, data in g.out_edges(ci_id, keys=True, data=True)
            ]
            result.extend(
                _relationship_edge(g, key, data, "incoming", other)
                for other, _, key, data in g.in_edges(ci_id, keys=True, data=True)
            )
        result.sort(key=lambda e: (e.created_at, e.id))
        return result

    def subgraph(self, types: Optional[list[str]], search: Optional[str], limit: int) -> GraphData:
        """Nodes matching the type and name filters (first `limit` by name) and the edges among them.

        Edges are deduplicated by (source, target, relationship_type).
        """
        term = search.lower() if search else None
        wanted = set(types) if types else None
        with self.session() as g:
            matches = [
                node_id
                for node_id, data in g.nodes(data=True)
                if (wanted is None or data["ci_type"] in wanted) and (term is None or term in data["name"].lower())
            ]
            matches.sort(key=lambda n: (g.nodes[n]["name"], n))
            kept = matches[:limit]
            kept_set = set(kept)
            nodes = [_graph_node(g, n) for n in kept]
            seen: set[tuple[str, str, str]] = set()
            edges = []
            for u, v, key, data in g.edges(keys=True, data=True):
                if u not in kept_set or v not in kept_set:
                    continue
                triple = (u, v, data["relationship_type"])
                if triple in seen:
                    continue
                seen.add(triple)
                edges.append(_graph_edge(u, v, key, data))
        edges.sort(key=lambda e: e.id)
        return GraphData(nodes=nodes, edges=edges)

    def network(self, ci_id: str, depth: int) -> CINetwork:
        """CIs within `depth` hops of ci_id ignoring direction, plus the edges on those paths.

        The centre is included in nodes. An edge is included when its nearer
        endpoint is fewer than `depth` hops from the centre.
        """
        with self.session() as g:
            if ci_id not in g:
                return CINetwork(center=ci_id)
            distances = nx.single_source_shortest_path_length(g.to_undirected(as_view=True), ci_id, cutoff=depth)
            ordered = sorted(distances, key=lambda n: (distances[n], g.nodes[n]["name"], n))
            nodes = [_graph_node(g, n) for n in ordered]
            edges = [
                _graph_edge(u, v, key, data)
                for u, v, key, data in g.edges(keys=True, data=True)
                if u in distances and v in distances and min(distances[u], distances[v]) < depth
            ]
        edges.sort(key=lambda e: e.id)
        return CINetwork(center=ci_id, nodes=nodes, edges=edges)

    def find_cycles(self, limit: int = DEFAULT_CYCLE_LIMIT) -> list[list[str]]:
        """Simple directed cycles, each starting and ending at its smallest id.

        Parallel edges are collapsed first, so two relationship types between
        the same pair do not produce duplicate cycles. At most `limit` cycles
        are enumerated.
        """
        with self.session() as g:
            collapsed = nx.DiGraph(g)
        cycles = []
        for cycle in itertools.islice(nx.simple_cycles(collapsed), limit):
            start = cycle.index(min(cycle))
            rotated = cycle[start:] + cycle[:start]
            cycles.append(rotated + [rotated[0]])
        cycles.sort()
        return cycles

    def impact_analysis(self, ci_id: str) -> ImpactAnalysis:
        """Who is affected if ci_id fails (downstream) and what ci_id relies on (upstream)."""
        with self.session() as g:
            if ci_id not in g:
                return ImpactAnalysis(ci_id=ci_id)
            into = nx.single_source_shortest_path_length(g.reverse(copy=False), ci_id)
            out_of = nx.single_source_shortest_path_length(g, ci_id)
            downstream = _impacts(g, into, ci_id, "downstream")
            upstream = _impacts(g, out_of, ci_id, "upstream")
        return ImpactAnalysis(ci_id=ci_id, downstream=downstream, upstream=upstream)

    def most_connected(self, limit: int) -> list[CIConnectivity]:
        """CIs ranked by distinct neighbours in either direction, then by id."""
        with self.session() as g:
            ranked = []
            for node_id, data in g.nodes(data=True):
                adjacent = set(g.successors(node_id)) | set(g.predecessors(node_id))
                adjacent.discard(node_id)
                if adjacent:
                    ranked.append(CIConnectivity(node_id, data["name"], data["ci_type"], len(adjacent)))
        ranked.sort(key=lambda c: (-c.connection_count, c.id))
        return ranked[:limit]

    def type_usage(self) -> list[TypeUsage]:
        with self.session() as g:
            counts = Counter(data["ci_type"] for _, data in g.nodes(data=True))
        return [TypeUsage(ci_type, count) for ci_type, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))]


# ---------------------------------------------------------------------------
# Graph <-> dataclass helpers
# ---------------------------------------------------------------------------


def _add_node(g: nx.MultiDiGraph, ci: ConfigurationItem) -> None:
    g.add_node(ci.id, name=ci.name, ci_type=ci.ci_type, attributes=dict(ci.attributes), tags=list(ci.tags))


def _add_edge(g: nx.MultiDiGraph, rel: Relationship) -> None:
    g.add_edge(
        rel.source_id,
        rel.target_id,
        key=rel.id,
        relationship_type=rel.relationship_type,
        attributes=dict(rel.attributes),
        created_at=rel.created_at,
        created_by=rel.created_by,
    )


def _graph_node(g: nx.MultiDiGraph, node_id: str) -> GraphNode:
    data = g.nodes[node_id]
    return GraphNode(
        id=node_id,
        name=data["name"],
        ci_type=data["ci_type"],
        attributes=dict(data["attributes"]),
        tags=list(data["tags"]),
    )


def _graph_edge(source: str, target: str, key: str, data: dict) -> GraphEdge:
    return GraphEdge(
        id=key,
        source=source,
        target=target,
        relationship_type=data["relationship_type"],
        attributes=dict(data["attributes"]),
    )


def _relationship_edge(g: nx.MultiDiGraph, key: str, data: dict, direction: str, other: str) -> RelationshipEdge:
    return RelationshipEdge(
        id=key,
        relationship_type=data["relationship_type"],
        direction=direction,
        related_ci=_graph_node(g, other),
        attributes=dict(data["attributes"]),
        created_at=data.get("created_at", ""),
        created_by=data.get("created_by", ""),
    )


def _impacts(g: nx.MultiDiGraph, distances: dict[str, int], ci_id: str, direction: str) -> list[CIImpact]:
    impacts = [
        CIImpact(node_id, g.nodes[node_id]["name"], g.nodes[node_id]["ci_type"], depth, direction)
        for node_id, depth in distances.items()
        if node_id != ci_id
    ]
    impacts.sort(key=lambda i: (i.depth, i.id))
    return impacts
