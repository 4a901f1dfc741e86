"""
cmdb/service.py -- Consistency orchestration across the CMDB's stores.

CMDBService is the only entry point for changing CIs, CI types and
relationships. It validates against the CI type schema, writes the primary
store, then propagates to the secondary stores in a fixed order:

    primary store write  ->  graph index mirror  ->  cache invalidation  ->  audit append

Failure policy:
  - Primary store failures propagate and abort the operation.
  - Graph mirror, cache and audit failures after the primary commit are logged
    at error level and swallowed; the caller still sees success. A failed
    graph mirror stays in the outbox and is retried by graph/sync.py.
  - NotFound / ValidationFailed / Conflict / InvalidReference are expected
    outcomes raised to the caller and never logged as errors here.

Reads of single CIs go through the cache (read-through, fixed TTL). Graph
queries are delegated to the graph index; this layer only clamps parameters
and checks that the subject CI exists.

Every collaborator, the logger included, is injected through the
constructor so tests can substitute fakes and capture log output.

Usage:
    service = CMDBService(store, graph, cache, audit, users)
    actor = Principal(id="42", ip_address="10.0.0.9", user_agent="curl/8")
    ci = service.create_ci(ConfigurationItem(name="web-1", ci_type="Server", attributes={...}), actor)
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import asdict, replace
from typing import Any, Optional, Protocol

from audit.models import AuditLogEntry
from audit.store import AuditStore
from auth.store import UserStore
from cache.store import Cache, build_cache
from cmdb.errors import ConflictError, InternalError, InvalidReferenceError, NotFoundError, ValidationFailedError
from cmdb.models import (
    AttributeDefinition,
    CIFilters,
    CITypeDefinition,
    CITypeFilters,
    ConfigurationItem,
    DashboardStats,
    Pagination,
    Principal,
    Relationship,
    RelationshipFilters,
    ci_from_dict,
    ci_to_dict,
)
from cmdb.store import MISSING, REFERENCED, CMDBStore
from cmdb.validation import validate, validate_definition
from core.config import Settings
from graph.index import DEFAULT_CYCLE_LIMIT, GraphIndex, NetworkXGraphIndex
from graph.models import CIConnectivity, CINetwork, GraphData, ImpactAnalysis, RelationshipEdge, TypeUsage
from graph.sync import DrainReport, GraphSync, ReconcileReport

GRAPH_LIMIT_RANGE = (1, 500)
DEPTH_RANGE = (1, 5)


class UserCounter(Protocol):
    def count_users(self) -> int: ...

    def close(self) -> None: ...


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(value, high))


class CMDBService:
    def __init__(
        self,
        store: CMDBStore,
        graph: GraphIndex,
        cache: Cache,
        audit: AuditStore,
        users: UserCounter,
        logger: Optional[logging.Logger] = None,
        store_timeout: float = 10.0,
        sync: Optional[GraphSync] = None,
    ) -> None:
        self.store = store
        self.graph = graph
        self.cache = cache
        self.audit = audit
        self.users = users
        self.logger = logger or logging.getLogger("lattice.cmdb")
        self.store_timeout = store_timeout
        self.sync = sync or GraphSync(store, graph, logger=self.logger)

    # ------------------------------------------------------------------
    # CI types
    # ------------------------------------------------------------------

    def create_ci_type(self, definition: CITypeDefinition, actor: Principal) -> CITypeDefinition:
        errors = validate_definition(definition.required_attributes, definition.optional_attributes)
        if errors:
            raise ValidationFailedError(errors, "CI type definition is invalid.")
        if self.store.get_ci_type_by_name(definition.name) is not None:
            raise ConflictError(f"CI type '{definition.name}' already exists", {"name": definition.name})
        created = self.store.create_ci_type(replace(definition, created_by=actor.id))
        self._record_audit("ci_type", created.id, "create", actor, {"name": created.name})
        return created

    def get_ci_type(self, type_id: str) -> CITypeDefinition:
        ci_type = self.store.get_ci_type(type_id)
        if ci_type is None:
            raise NotFoundError(f"CI type {type_id} not found")
        return ci_type

    def list_ci_types(self, filters: CITypeFilters) -> tuple[list[CITypeDefinition], Pagination]:
        return self.store.list_ci_types(filters)

    def update_ci_type(
        self,
        type_id: str,
        actor: Principal,
        description: Optional[str] = None,
        required_attributes: Optional[list[AttributeDefinition]] = None,
        optional_attributes: Optional[list[AttributeDefinition]] = None,
    ) -> CITypeDefinition:
        """Change a CI type's description or attribute lists. The name is immutable.

        A schema change is refused with ConflictError when any existing CI of
        the type would stop validating; details list the offending CIs.
        """
        current = self.get_ci_type(type_id)
        candidate = replace(
            current,
            required_attributes=(
                required_attributes if required_attributes is not None else current.required_attributes
            ),
            optional_attributes=(
                optional_attributes if optional_attributes is not None else current.optional_attributes
            ),
        )
        errors = validate_definition(candidate.required_attributes, candidate.optional_attributes)
        if errors:
            raise ValidationFailedError(errors, "CI type definition is invalid.")

        if required_attributes is not None or optional_attributes is not None:
            broken: dict[str, list[dict]] = {}
            for ci in self.store.list_cis_by_type(current.name):
                ci_errors = validate(candidate, ci.attributes)
                if ci_errors:
                    broken[ci.id] = [asdict(e) for e in ci_errors]
            if broken:
                raise ConflictError(
                    f"{len(broken)} configuration item(s) of type '{current.name}' would no longer validate",
                    {"invalid_cis": broken},
                )

        updated = self.store.update_ci_type(
            type_id,
            actor.id,
            description=description,
            required_attributes=required_attributes,
            optional_attributes=optional_attributes,
        )
        if updated is None:
            raise NotFoundError(f"CI type {type_id} not found")

        changes: dict[str, Any] = {}
        if description is not None:
            changes["description"] = description
        if required_attributes is not None:
            changes["required_attributes"] = [asdict(d) for d in required_attributes]
        if optional_attributes is not None:
            changes["optional_attributes"] = [asdict(d) for d in optional_attributes]
        self._record_audit("ci_type", type_id, "update", actor, {"name": updated.name, "changes": changes})
        return updated

    def delete_ci_type(self, type_id: str, actor: Principal) -> None:
        outcome, definition = self.store.delete_ci_type(type_id)
        if outcome == MISSING:
            raise NotFoundError(f"CI type {type_id} not found")
        if outcome == REFERENCED:
            raise ConflictError(f"CI type '{definition.name}' is still used by configuration items")
        self._record_audit("ci_type", type_id, "delete", actor, {"name": definition.name})

    # ------------------------------------------------------------------
    # Configuration items
    # ------------------------------------------------------------------

    def create_ci(self, ci: ConfigurationItem, actor: Principal) -> ConfigurationItem:
        """Validate and persist a new CI, then mirror, invalidate and audit it."""
        schema = self.store.get_ci_type_by_name(ci.ci_type)
        if schema is None:
            raise NotFoundError(f"CI type '{ci.ci_type}' not found")
        errors = validate(schema, ci.attributes)
        if errors:
            raise ValidationFailedError(errors)
        if self.store.get_ci_by_name_and_type(ci.name, ci.ci_type) is not None:
            raise ConflictError(
                f"configuration item '{ci.name}' of type '{ci.ci_type}' already exists",
                {"name": ci.name, "ci_type": ci.ci_type},
            )

        created, pending = self.store.create_ci(replace(ci, created_by=actor.id))

        self.sync.mirror_now(pending)
        self._invalidate(created.id)
        self._record_audit("ci", created.id, "create", actor, {"ci_name": created.name, "ci_type": created.ci_type})
        return created

    def get_ci(self, ci_id: str) -> ConfigurationItem:
        """Cache first; on a miss read the primary store and populate the cache."""
        cached = self._cache_get(ci_id)
        if cached is not None:
            return cached
        ci = self.store.get_ci(ci_id)
        if ci is None:
            raise NotFoundError(f"configuration item {ci_id} not found")
        self._cache_set(ci)
        return ci

    def list_cis(self, filters: CIFilters) -> tuple[list[ConfigurationItem], Pagination]:
        return self.store.list_cis(filters)

    def update_ci(
        self,
        ci_id: str,
        actor: Principal,
        attributes: Optional[dict[str, Any]] = None,
        tags: Optional[list[str]] = None,
    ) -> ConfigurationItem:
        """Replace a CI's attributes and/or tags.

        attributes, when given, replaces the whole map; the complete resulting
        map is revalidated against the CI type, not just the changed keys.
        """
        current = self.store.get_ci(ci_id)
        if current is None:
            raise NotFoundError(f"configuration item {ci_id} not found")
        schema = self.store.get_ci_type_by_name(current.ci_type)
        if schema is None:
            raise NotFoundError(f"CI type '{current.ci_type}' not found")
        merged = attributes if attributes is not None else current.attributes
        errors = validate(schema, merged)
        if errors:
            raise ValidationFailedError(errors)

        result = self.store.update_ci(ci_id, actor.id, attributes=attributes, tags=tags)
        if result is None:
            raise NotFoundError(f"configuration item {ci_id} not found")
        updated, pending = result

        changes: dict[str, Any] = {}
        if attributes is not None:
            changes["attributes"] = attributes
        if tags is not None:
            changes["tags"] = tags

        self.sync.mirror_now(pending)
        self._invalidate(ci_id)
        self._record_audit("ci", ci_id, "update", actor, {"ci_name": updated.name, "changes": changes})
        return updated

    def delete_ci(self, ci_id: str, actor: Principal) -> None:
        """Delete a CI that no relationship references.

        The reference check and the delete are one conditional statement in
        the primary store, so a concurrently created relationship cannot be
        orphaned.
        """
        current = self.store.get_ci(ci_id)
        if current is None:
            raise NotFoundError(f"configuration item {ci_id} not found")
        outcome, pending = self.store.delete_ci(ci_id)
        if outcome == MISSING:
            raise NotFoundError(f"configuration item {ci_id} not found")
        if outcome == REFERENCED:
            raise ConflictError(
                f"configuration item '{current.name}' still has relationships; delete them first",
                {"ci_id": ci_id},
            )

        self.sync.mirror_now(pending)
        self._invalidate(ci_id)
        self._record_audit("ci", ci_id, "delete", actor, {"ci_name": current.name, "ci_type": current.ci_type})

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def create_relationship(self, rel: Relationship, actor: Principal) -> Relationship:
        if rel.source_id == rel.target_id:
            raise InvalidReferenceError("cannot create self-referencing relationship", {"ci_id": rel.source_id})
        for role, ci_id in (("source", rel.source_id), ("target", rel.target_id)):
            if self.store.get_ci(ci_id) is None:
                raise InvalidReferenceError(f"{role} configuration item {ci_id} not found", {f"{role}_id": ci_id})

        created, pending = self.store.create_relationship(replace(rel, created_by=actor.id))

        self.sync.mirror_now(pending)
        self._record_audit(
            "relationship",
            created.id,
            "create",
            actor,
            {
                "source_id": created.source_id,
                "target_id": created.target_id,
                "relationship_type": created.relationship_type,
            },
        )
        return created

    def get_relationship(self, rel_id: str) -> Relationship:
        rel = self.store.get_relationship(rel_id)
        if rel is None:
            raise NotFoundError(f"relationship {rel_id} not found")
        return rel

    def list_relationships(self, filters: RelationshipFilters) -> tuple[list[Relationship], Pagination]:
        return self.store.list_relationships(filters)

    def update_relationship(self, rel_id: str, attributes: dict[str, Any], actor: Principal) -> Relationship:
        """Replace a relationship's attributes. Type and endpoints never change."""
        result = self.store.update_relationship(rel_id, attributes, actor.id)
        if result is None:
            raise NotFoundError(f"relationship {rel_id} not found")
        updated, pending = result
        self.sync.mirror_now(pending)
        self._record_audit("relationship", rel_id, "update", actor, {"changes": {"attributes": attributes}})
        return updated

    def delete_relationship(self, rel_id: str, actor: Principal) -> None:
        result = self.store.delete_relationship(rel_id)
        if result is None:
            raise NotFoundError(f"relationship {rel_id} not found")
        deleted, pending = result
        self.sync.mirror_now(pending)
        self._record_audit(
            "relationship",
            rel_id,
            "delete",
            actor,
            {
                "source_id": deleted.source_id,
                "target_id": deleted.target_id,
                "relationship_type": deleted.relationship_type,
            },
        )

    # ------------------------------------------------------------------
    # Graph queries
    # ------------------------------------------------------------------

    def get_graph_data(
        self, ci_types: Optional[list[str]] = None, search: Optional[str] = None, limit: int = 100
    ) -> GraphData:
        return self.graph.subgraph(ci_types or None, search or None, _clamp(limit, GRAPH_LIMIT_RANGE))

    def get_ci_network(self, ci_id: str, depth: int = 2) -> CINetwork:
        self.get_ci(ci_id)
        return self.graph.network(ci_id, _clamp(depth, DEPTH_RANGE))

    def get_ci_relationships(self, ci_id: str) -> list[RelationshipEdge]:
        self.get_ci(ci_id)
        return self.graph.neighbors(ci_id)

    def find_cycles(self) -> list[list[str]]:
        return self.graph.find_cycles(DEFAULT_CYCLE_LIMIT)

    def get_impact_analysis(self, ci_id: str) -> ImpactAnalysis:
        self.get_ci(ci_id)
        return self.graph.impact_analysis(ci_id)

    def get_most_connected_cis(self, limit: int = 10) -> list[CIConnectivity]:
        return self.graph.most_connected(_clamp(limit, GRAPH_LIMIT_RANGE))

    def get_ci_types_by_usage(self) -> list[TypeUsage]:
        return self.graph.type_usage()

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def get_dashboard_stats(self) -> DashboardStats:
        """Run the four counts concurrently. Any failure or timeout fails the call."""
        jobs = {
            "total_cis": self.store.count_cis,
            "total_ci_types": self.store.count_ci_types,
            "total_relationships": self.store.count_relationships,
            "total_users": self.users.count_users,
        }
        pool = ThreadPoolExecutor(max_workers=len(jobs), thread_name_prefix="dashboard")
        try:
            futures = {name: pool.submit(job) for name, job in jobs.items()}
            deadline = time.monotonic() + self.store_timeout
            results: dict[str, int] = {}
            for name, future in futures.items():
                try:
                    results[name] = future.result(timeout=max(deadline - time.monotonic(), 0))
                except FuturesTimeout as exc:
                    self.logger.error("Dashboard count %s timed out after %.1fs", name, self.store_timeout)
                    raise InternalError("dashboard statistics timed out") from exc
                except Exception as exc:
                    self.logger.error("Dashboard count %s failed: %s", name, exc)
                    raise InternalError("dashboard statistics unavailable") from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return DashboardStats(**results)

    # ------------------------------------------------------------------
    # Graph maintenance
    # ------------------------------------------------------------------

    def drain_graph_outbox(self, batch_size: int = 100) -> DrainReport:
        return self.sync.drain(batch_size)

    def reconcile_graph(self) -> ReconcileReport:
        return self.sync.reconcile()

    def graph_status(self) -> dict[str, int]:
        return {
            "nodes": self.graph.node_count(),
            "edges": self.graph.edge_count(),
            "pending_outbox": self.store.count_outbox(),
        }

    # ------------------------------------------------------------------
    # Secondary-store helpers (log and swallow)
    # ------------------------------------------------------------------

    def _cache_get(self, ci_id: str) -> Optional[ConfigurationItem]:
        try:
            data = self.cache.get(ci_id)
        except Exception as exc:
            self.logger.warning("Cache read failed for ci:%s, falling back to store: %s", ci_id, exc)
            return None
        return ci_from_dict(data) if data is not None else None

    def _cache_set(self, ci: ConfigurationItem) -> None:
        try:
            self.cache.set(ci.id, ci_to_dict(ci))
        except Exception as exc:
            self.logger.error("Cache populate failed for ci:%s: %s", ci.id, exc)

    def _invalidate(self, ci_id: str) -> None:
        try:
            self.cache.delete(ci_id)
        except Exception as exc:
            self.logger.error("Cache invalidation failed for ci:%s: %s", ci_id, exc)

    def _record_audit(
        self, entity_type: str, entity_id: str, action: str, actor: Principal, details: dict[str, Any]
    ) -> None:
        entry = AuditLogEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            performed_by=actor.id,
            details=details,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
        )
        try:
            self.audit.record(entry)
        except Exception as exc:
            self.logger.error("Audit append failed for %s %s %s: %s", action, entity_type, entity_id, exc)

    def close(self) -> None:
        """Release every store the service owns. Used by the API lifespan and the CLI."""
        self.cache.close()
        self.audit.close()
        self.users.close()
        self.store.close()


def build_service(settings: Settings) -> CMDBService:
    """Wire stores, graph index, cache and sync from settings.

    The graph index starts empty; callers reconcile it before serving reads.
    """
    store = CMDBStore(**_db_kwargs(settings.database_url), timeout=settings.store_timeout_seconds)
    users = UserStore(**_db_kwargs(settings.database_url))
    audit = AuditStore(**_db_kwargs(settings.resolved_audit_database_url()))
    graph = NetworkXGraphIndex()
    sync = GraphSync(
        store,
        graph,
        logger=logging.getLogger("lattice.graph"),
        max_attempts=settings.graph_sync_max_attempts,
        base_delay_seconds=settings.graph_sync_base_delay_seconds,
    )
    return CMDBService(
        store,
        graph,
        build_cache(settings),
        audit,
        users,
        logger=logging.getLogger("lattice.cmdb"),
        store_timeout=settings.store_timeout_seconds,
        sync=sync,
    )


def _db_kwargs(url: Optional[str]) -> dict:
    return {"db_url": url} if url else {}
