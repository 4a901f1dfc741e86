"""
graph/sync.py -- Keeps the graph index in step with the primary store.

Every primary write leaves a graph_outbox row (see cmdb/store.py). GraphSync
turns those rows into graph index mutations:

  mirror_now()  -- called on the write path right after the commit. Applies
                   the row, acknowledges it, and on failure logs at error
                   level and schedules a retry. Never raises: the primary
                   write is already durable and the caller must see success.
  drain()       -- replays rows whose retry time has come, oldest first.
                   Rows that keep failing back off exponentially; once a row
                   reaches max_attempts it is reported as divergent and logged
                   at CRITICAL on every further failure.
  reconcile()   -- rebuilds the whole index from the primary store and clears
                   the outbox rows the rebuild covered.

apply() always re-reads the entity from the primary store instead of trusting
the payload of the write that produced the row. An upsert whose entity has
since been deleted becomes a removal, so replaying a row any number of times
converges on the primary store's current truth.

The store read and the graph mutation in apply() run under one mirror lock,
and reconcile() holds the same lock from the outbox watermark through the
swap. A write that commits meanwhile mirrors after the lock is released, so
it can neither resurrect a deleted CI nor land on a graph about to be replaced.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from cmdb.models import OutboxEntry
from cmdb.store import CMDBStore
from graph.index import GraphIndex

MAX_BACKOFF_SECONDS = 60 * 60


@dataclass
class DrainReport:
    applied: int = 0
    failed: int = 0
    divergent: list[str] = field(default_factory=list)  # entity ids past max_attempts


@dataclass
class ReconcileReport:
    nodes: int
    edges: int
    cleared: int


class GraphSync:
    def __init__(
        self,
        store: CMDBStore,
        graph: GraphIndex,
        logger: Optional[logging.Logger] = None,
        max_attempts: int = 8,
        base_delay_seconds: float = 2.0,
    ) -> None:
        self.store = store
        self.graph = graph
        self.logger = logger or logging.getLogger("lattice.graph")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self._mirror_lock = threading.RLock()

    def apply(self, entry: OutboxEntry) -> None:
        """Apply one outbox row to the graph index using current primary-store state."""
        with self._mirror_lock:
            self._apply(entry)

    def _apply(self, entry: OutboxEntry) -> None:
        if entry.operation == "upsert_ci":
            ci = self.store.get_ci(entry.entity_id)
            if ci is None:
                self.graph.remove_ci(entry.entity_id)
            else:
                self.graph.upsert_ci(ci)
        elif entry.operation == "remove_ci":
            self.graph.remove_ci(entry.entity_id)
        elif entry.operation == "upsert_relationship":
            rel = self.store.get_relationship(entry.entity_id)
            source = self.store.get_ci(rel.source_id) if rel is not None else None
            target = self.store.get_ci(rel.target_id) if rel is not None else None
            if rel is None or source is None or target is None:
                self.graph.remove_relationship(entry.entity_id)
            else:
                self.graph.upsert_relationship(rel, source, target)
        elif entry.operation == "remove_relationship":
            self.graph.remove_relationship(entry.entity_id)
        else:
            raise ValueError(f"unknown outbox operation {entry.operation!r}")

    def mirror_now(self, entry: OutboxEntry) -> bool:
        """Best-effort mirror on the write path. Returns True when the graph is in step."""
        try:
            self.apply(entry)
        except Exception as exc:
            self.logger.error(
                "Graph mirror failed for %s %s (outbox %s): %s",
                entry.operation,
                entry.entity_id,
                entry.id,
                exc,
            )
            try:
                self._record_failure(entry, exc)
            except Exception:
                self.logger.exception("Could not record graph mirror failure for outbox %s", entry.id)
            return False
        try:
            self.store.ack_outbox(entry.id)
        except Exception:
            # The row stays pending; drain() will re-apply it idempotently.
            self.logger.exception("Could not acknowledge outbox %s", entry.id)
        return True

    def drain(self, batch_size: int = 100) -> DrainReport:
        """Replay due outbox rows. Primary-store errors propagate to the caller."""
        report = DrainReport()
        for entry in self.store.pending_outbox(limit=batch_size):
            try:
                self.apply(entry)
            except Exception as exc:
                attempts = self._record_failure(entry, exc)
                report.failed += 1
                if attempts >= self.max_attempts:
                    report.divergent.append(entry.entity_id)
                    self.logger.critical(
                        "Graph index diverged from primary store: %s %s failed %d times, last error: %s",
                        entry.operation,
                        entry.entity_id,
                        attempts,
                        exc,
                    )
                else:
                    self.logger.warning(
                        "Graph mirror retry %d/%d failed for %s %s: %s",
                        attempts,
                        self.max_attempts,
                        entry.operation,
                        entry.entity_id,
                        exc,
                    )
                continue
            self.store.ack_outbox(entry.id)
            report.applied += 1
        if report.applied or report.failed:
            self.logger.info("Graph outbox drained: %d applied, %d failed", report.applied, report.failed)
        return report

    def reconcile(self) -> ReconcileReport:
        """Re-derive the graph index from the primary store.

        The outbox watermark is read before the snapshot, so only rows whose
        effects the snapshot already contains are cleared.
        """
        with self._mirror_lock:
            watermark = self.store.max_outbox_id()
            cis = self.store.list_all_cis()
            relationships = self.store.list_all_relationships()
            self.graph.rebuild(cis, relationships)
            cleared = self.store.clear_outbox(up_to_id=watermark) if watermark is not None else 0
        report = ReconcileReport(nodes=self.graph.node_count(), edges=self.graph.edge_count(), cleared=cleared)
        self.logger.info(
            "Graph index reconciled: %d nodes, %d edges, %d outbox rows cleared",
            report.nodes,
            report.edges,
            report.cleared,
        )
        return report

    def backoff_seconds(self, attempts: int) -> float:
        return min(self.base_delay_seconds * 2 ** (attempts - 1), MAX_BACKOFF_SECONDS)

    def _record_failure(self, entry: OutboxEntry, exc: Exception) -> int:
        attempts = entry.attempts + 1
        next_attempt = datetime.now(timezone.utc) + timedelta(seconds=self.backoff_seconds(attempts))
        self.store.record_outbox_failure(entry.id, attempts, str(exc) or type(exc).__name__, next_attempt.isoformat())
        return attempts
