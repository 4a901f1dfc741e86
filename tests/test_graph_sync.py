"""Unit tests for graph/sync.py -- outbox replay between the primary store and the graph index.

Covers:
- mirror_now() applies and acknowledges the outbox row
- mirror_now() never raises; a failed mirror stays pending with backoff
- apply() re-reads the primary store: a stale upsert becomes a removal
- drain() replays due rows; rows past max_attempts are reported divergent and logged CRITICAL
- reconcile() rebuilds the index and clears only rows up to the watermark
- backoff_seconds() doubles and caps
"""

import logging
from unittest.mock import MagicMock

import pytest

from cmdb.models import CITypeDefinition, ConfigurationItem, OutboxEntry, Relationship
from cmdb.store import CMDBStore
from graph.index import NetworkXGraphIndex
from graph.sync import MAX_BACKOFF_SECONDS, GraphSync

# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    s = CMDBStore("sqlite:///:memory:")
    s.create_ci_type(CITypeDefinition(name="Server"))
    yield s
    s.close()


@pytest.fixture
def graph() -> NetworkXGraphIndex:
    return NetworkXGraphIndex()


@pytest.fixture
def sync(store, graph) -> GraphSync:
    return GraphSync(store, graph, max_attempts=2, base_delay_seconds=0)


def _flaky_graph(real: NetworkXGraphIndex, failures: int) -> MagicMock:
    """A graph index whose upsert_ci raises for the first `failures` calls, then delegates."""
    flaky = MagicMock(wraps=real)
    effects = [ConnectionError("graph unavailable") for _ in range(failures)]

    def _upsert(ci):
        if effects:
            raise effects.pop()
        real.upsert_ci(ci)

    flaky.upsert_ci.side_effect = _upsert
    return flaky


# ---------------------------------------------------------------------------
# mirror_now()
# ---------------------------------------------------------------------------


class TestMirrorNow:
    def test_applies_and_acks(self, store, graph, sync):
        ci, entry = store.create_ci(ConfigurationItem(name="web-1", ci_type="Server"))
        assert sync.mirror_now(entry) is True
        assert graph.node_count() == 1
        assert store.count_outbox() == 0

    def test_failure_is_logged_and_left_pending(self, store, graph, caplog):
        sync = GraphSync(store, _flaky_graph(graph, failures=1), base_delay_seconds=0)
        _, entry = store.create_ci(ConfigurationItem(name="web-1", ci_type="Server"))

        with caplog.at_level(logging.ERROR, logger="lattice.graph"):
            assert sync.mirror_now(entry) is False

        assert "Graph mirror failed for upsert_ci" in caplog.text
        (pending,) = store.pending_outbox()
        assert pending.attempts == 1
        assert pending.last_error == "graph unavailable"

    def test_stale_upsert_becomes_removal(self, store, graph, sync):
        """An upsert replayed after the CI was deleted must not resurrect the node."""
        ci, created = store.create_ci(ConfigurationItem(name="web-1", ci_type="Server"))
        graph.upsert_ci(ci)
        store.delete_ci(ci.id)
        sync.apply(created)
        assert graph.node_count() == 0

    def test_relationship_upsert_carries_endpoints(self, store, graph, sync):
        a, _ = store.create_ci(ConfigurationItem(name="a", ci_type="Server"))
        b, _ = store.create_ci(ConfigurationItem(name="b", ci_type="Server"))
        rel, entry = store.create_relationship(Relationship(source_id=a.id, target_id=b.id, relationship_type="uses"))
        sync.mirror_now(entry)
        assert (graph.node_count(), graph.edge_count()) == (2, 1)

    def test_unknown_operation_rejected(self, sync):
        with pytest.raises(ValueError):
            sync.apply(OutboxEntry(operation="truncate", entity_id="x", id=1))


# ---------------------------------------------------------------------------
# drain()
# ---------------------------------------------------------------------------


class TestDrain:
    def test_replays_pending_rows(self, store, graph, sync):
        store.create_ci(ConfigurationItem(name="a", ci_type="Server"))
        store.create_ci(ConfigurationItem(name="b", ci_type="Server"))
        report = sync.drain()
        assert (report.applied, report.failed, report.divergent) == (2, 0, [])
        assert graph.node_count() == 2
        assert store.count_outbox() == 0

    def test_recovers_after_transient_failure(self, store, graph):
        sync = GraphSync(store, _flaky_graph(graph, failures=1), max_attempts=3, base_delay_seconds=0)
        store.create_ci(ConfigurationItem(name="a", ci_type="Server"))
        assert sync.drain().failed == 1
        report = sync.drain()
        assert report.applied == 1
        assert store.count_outbox() == 0
        assert graph.node_count() == 1

    def test_divergence_logged_critical(self, store, graph, caplog):
        sync = GraphSync(store, _flaky_graph(graph, failures=5), max_attempts=2, base_delay_seconds=0)
        ci, _ = store.create_ci(ConfigurationItem(name="a", ci_type="Server"))

        with caplog.at_level(logging.WARNING, logger="lattice.graph"):
            first = sync.drain()
            second = sync.drain()

        assert first.divergent == []
        assert second.divergent == [ci.id]
        critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
        assert len(critical) == 1
        assert "diverged" in critical[0].getMessage()


# ---------------------------------------------------------------------------
# reconcile()
# ---------------------------------------------------------------------------


class TestReconcile:
    def test_rebuilds_and_clears_outbox(self, store, graph, sync):
        a, _ = store.create_ci(ConfigurationItem(name="a", ci_type="Server"))
        b, _ = store.create_ci(ConfigurationItem(name="b", ci_type="Server"))
        store.create_relationship(Relationship(source_id=a.id, target_id=b.id, relationship_type="uses"))
        graph.upsert_ci(ConfigurationItem(id="stale", name="stale", ci_type="Server"))

        report = sync.reconcile()

        assert (report.nodes, report.edges, report.cleared) == (2, 1, 3)
        assert store.count_outbox() == 0

    def test_empty_outbox(self, sync):
        assert sync.reconcile().cleared == 0


def test_backoff_doubles_and_caps(store, graph):
    """Retry delay grows exponentially from base_delay_seconds up to one hour."""
    sync = GraphSync(store, graph, base_delay_seconds=2.0)
    assert [sync.backoff_seconds(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]
    assert sync.backoff_seconds(40) == MAX_BACKOFF_SECONDS
