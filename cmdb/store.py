"""
cmdb/store.py -- SQLAlchemy-backed system of record for the Lattice CMDB.

Uses SQLAlchemy Core (not ORM) so the dataclasses in cmdb/models.py remain the
authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change.

Pattern: Repository + Data Mapper. CMDBStore is the repository; the _row_to_*
functions are the mappers. The service layer never touches SQL directly.

Integrity rules enforced by the schema, not by callers:
  - ci_type_definitions.name is unique
  - configuration_items.ci_type references ci_type_definitions.name
  - (name, ci_type) is unique per configuration item
  - relationships.source_id / target_id reference configuration_items.id
  - (source_id, target_id, relationship_type) is unique, source <> target
Unique violations surface as ConflictError.

Graph outbox: every CI or relationship mutation inserts a graph_outbox row in
the same transaction as the primary write, so a crash between the commit and
the graph mirror leaves a durable record of the pending work. Write methods
return (entity, OutboxEntry); graph/sync.py drains and acknowledges the rows.

Deletes are single conditional statements (delete-where-not-referenced) so
there is no window between checking references and removing the row.

Attributes, tags and attribute definitions are JSON text columns because CI
type schemas are user-defined at runtime.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = CMDBStore()                               # SQLite default
    store = CMDBStore("postgresql://user:pw@host/db") # PostgreSQL
    ci, pending = store.create_ci(ConfigurationItem(name="web-1", ci_type="Server"))
    outcome, pending = store.delete_ci(ci.id)
    store.close()
"""

import json
import uuid
from dataclasses import asdict, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from cmdb.errors import ConflictError, InvalidReferenceError
from cmdb.models import (
    AttributeDefinition,
    AttributeValidation,
    CIFilters,
    CITypeDefinition,
    CITypeFilters,
    ConfigurationItem,
    OutboxEntry,
    Pagination,
    Relationship,
    RelationshipFilters,
)

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'lattice_cmdb.db'}"

MAX_PAGE_SIZE = 500

# delete_ci / delete_ci_type outcomes
DELETED = "deleted"
REFERENCED = "referenced"
MISSING = "missing"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_ci_types = Table(
    "ci_type_definitions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("required_attributes", Text, nullable=False),  # JSON array of definitions
    Column("optional_attributes", Text, nullable=False),
    Column("created_by", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_by", String(64)),
    Column("updated_at", String(32), nullable=False),
)

_cis = Table(
    "configuration_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("ci_type", String(100), ForeignKey("ci_type_definitions.name"), nullable=False),
    Column("attributes", Text, nullable=False),  # JSON object
    Column("tags", Text, nullable=False),  # JSON array, sorted
    Column("created_by", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_by", String(64)),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("name", "ci_type", name="uq_ci_name_type"),
)

_relationships = Table(
    "relationships",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("source_id", String(36), ForeignKey("configuration_items.id"), nullable=False),
    Column("target_id", String(36), ForeignKey("configuration_items.id"), nullable=False),
    Column("relationship_type", String(100), nullable=False),
    Column("attributes", Text, nullable=False),
    Column("created_by", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_by", String(64)),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("source_id", "target_id", "relationship_type", name="uq_relationship_triple"),
    CheckConstraint("source_id <> target_id", name="ck_relationship_not_self"),
)

_outbox = Table(
    "graph_outbox",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("operation", String(32), nullable=False),
    Column("entity_id", String(36), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("next_attempt_at", String(32), nullable=False),
    Column("last_error", Text),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool, and foreign keys are off by default.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _normalise_tags(tags) -> list[str]:
    return sorted({t for t in tags if t})


def _definitions_to_json(definitions: list[AttributeDefinition]) -> str:
    return json.dumps([asdict(d) for d in definitions])


def _definitions_from_json(raw: str) -> list[AttributeDefinition]:
    definitions = []
    for item in json.loads(raw or "[]"):
        validation = item.get("validation")
        definitions.append(
            AttributeDefinition(
                name=item["name"],
                type=item["type"],
                description=item.get("description", ""),
                validation=AttributeValidation(**validation) if validation else None,
            )
        )
    return definitions


def clamp_page(page: int, limit: int, max_limit: int = MAX_PAGE_SIZE) -> tuple[int, int]:
    """Return (page, limit) forced into page >= 1 and 1 <= limit <= max_limit."""
    return max(page, 1), min(max(limit, 1), max_limit)


def build_pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, total_pages=(total + limit - 1) // limit)


def _contains_ci(column, term: str):
    """Case-insensitive substring match with LIKE wildcards escaped."""
    return func.lower(column, type_=String).contains(term.lower(), autoescape=True)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CMDBStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 10.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # FastAPI runs sync handlers in a threadpool, so a pooled
            # connection may be used from a thread other than its creator.
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # CI types
    # ------------------------------------------------------------------

    def create_ci_type(self, ci_type: CITypeDefinition) -> CITypeDefinition:
        """Insert a CI type definition. Raises ConflictError if the name is taken."""
        now = _now_iso()
        created = replace(ci_type, id=_new_id(), created_at=now, updated_at=now, updated_by=None)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _ci_types.insert().values(
                        id=created.id,
                        name=created.name,
                        description=created.description,
                        required_attributes=_definitions_to_json(created.required_attributes),
                        optional_attributes=_definitions_to_json(created.optional_attributes),
                        created_by=created.created_by,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise ConflictError(f"CI type '{ci_type.name}' already exists") from exc
        return created

    def get_ci_type(self, type_id: str) -> Optional[CITypeDefinition]:
        """Fetch a CI type by id. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_ci_types.select().where(_ci_types.c.id == type_id)).fetchone()
        return _row_to_ci_type(row) if row is not None else None

    def get_ci_type_by_name(self, name: str) -> Optional[CITypeDefinition]:
        """Fetch a CI type by its unique name. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_ci_types.select().where(_ci_types.c.name == name)).fetchone()
        return _row_to_ci_type(row) if row is not None else None

    def list_ci_types(self, filters: CITypeFilters) -> tuple[list[CITypeDefinition], Pagination]:
        """Return one page of CI types ordered by name, optionally filtered by a search term."""
        page, limit = clamp_page(filters.page, filters.limit)
        clauses = []
        if filters.search:
            clauses.append(
                or_(
                    _contains_ci(_ci_types.c.name, filters.search),
                    _contains_ci(_ci_types.c.description, filters.search),
                )
            )
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_ci_types).where(*clauses)).scalar_one()
            rows = conn.execute(
                _ci_types.select()
                .where(*clauses)
                .order_by(_ci_types.c.name)
                .limit(limit)
                .offset((page - 1) * limit)
            ).fetchall()
        return [_row_to_ci_type(r) for r in rows], build_pagination(page, limit, total)

    def update_ci_type(
        self,
        type_id: str,
        updated_by: str,
        description: Optional[str] = None,
        required_attributes: Optional[list[AttributeDefinition]] = None,
        optional_attributes: Optional[list[AttributeDefinition]] = None,
    ) -> Optional[CITypeDefinition]:
        """Update the mutable parts of a CI type. The name never changes.

        Returns the updated definition, or None if type_id was not found.
        """
        values: dict = {"updated_by": updated_by, "updated_at": _now_iso()}
        if description is not None:
            values["description"] = description
        if required_attributes is not None:
            values["required_attributes"] = _definitions_to_json(required_attributes)
        if optional_attributes is not None:
            values["optional_attributes"] = _definitions_to_json(optional_attributes)
        with self.engine.begin() as conn:
            result = conn.execute(_ci_types.update().where(_ci_types.c.id == type_id).values(**values))
            if result.rowcount == 0:
                return None
            row = conn.execute(_ci_types.select().where(_ci_types.c.id == type_id)).fetchone()
        return _row_to_ci_type(row)

    def delete_ci_type(self, type_id: str) -> tuple[str, Optional[CITypeDefinition]]:
        """Delete a CI type unless any CI still uses it.

        Returns (outcome, definition) where outcome is DELETED, REFERENCED or
        MISSING and definition is the row as it was (None when MISSING).
        """
        with self.engine.begin() as conn:
            row = conn.execute(_ci_types.select().where(_ci_types.c.id == type_id)).fetchone()
            if row is None:
                return MISSING, None
            in_use = select(_cis.c.id).where(_cis.c.ci_type == row.name).exists()
            result = conn.execute(_ci_types.delete().where(_ci_types.c.id == type_id).where(~in_use))
        definition = _row_to_ci_type(row)
        return (DELETED if result.rowcount > 0 else REFERENCED), definition

    def count_ci_types(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_ci_types)).scalar_one()

    # ------------------------------------------------------------------
    # Configuration items
    # ------------------------------------------------------------------

    def create_ci(self, ci: ConfigurationItem) -> tuple[ConfigurationItem, OutboxEntry]:
        """Insert a CI and its graph outbox row in one transaction.

        Raises ConflictError if (name, ci_type) already exists or the CI type
        disappeared concurrently.
        """
        now = _now_iso()
        created = replace(
            ci,
            id=_new_id(),
            tags=_normalise_tags(ci.tags),
            created_at=now,
            updated_at=now,
            updated_by=None,
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _cis.insert().values(
                        id=created.id,
                        name=created.name,
                        ci_type=created.ci_type,
                        attributes=json.dumps(created.attributes),
                        tags=json.dumps(created.tags),
                        created_by=created.created_by,
                        created_at=now,
                        updated_at=now,
                    )
                )
                entry = self._enqueue(conn, "upsert_ci", created.id, now)
        except IntegrityError as exc:
            raise ConflictError(
                f"configuration item '{ci.name}' of type '{ci.ci_type}' already exists",
                {"name": ci.name, "ci_type": ci.ci_type},
            ) from exc
        return created, entry

    def get_ci(self, ci_id: str) -> Optional[ConfigurationItem]:
        """Fetch a single CI by id. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_cis.select().where(_cis.c.id == ci_id)).fetchone()
        return _row_to_ci(row) if row is not None else None

    def get_ci_by_name_and_type(self, name: str, ci_type: str) -> Optional[ConfigurationItem]:
        with self.engine.connect() as conn:
            row = conn.execute(_cis.select().where((_cis.c.name == name) & (_cis.c.ci_type == ci_type))).fetchone()
        return _row_to_ci(row) if row is not None else None

    def list_cis(self, filters: CIFilters) -> tuple[list[ConfigurationItem], Pagination]:
        """Return one page of CIs matching filters.

        search matches the name or the serialised attributes, case-insensitive.
        tags matches CIs carrying any of the given tags.
        """
        page, limit = clamp_page(filters.page, filters.limit)
        clauses = []
        if filters.ci_type:
            clauses.append(_cis.c.ci_type == filters.ci_type)
        if filters.search:
            clauses.append(
                or_(_contains_ci(_cis.c.name, filters.search), _contains_ci(_cis.c.attributes, filters.search))
            )
        if filters.tags:
            clauses.append(or_(*[_cis.c.tags.contains(json.dumps(tag), autoescape=True) for tag in filters.tags]))
        if filters.created_by:
            clauses.append(_cis.c.created_by == filters.created_by)

        sort_column = {
            "name": _cis.c.name,
            "ci_type": _cis.c.ci_type,
            "updated_at": _cis.c.updated_at,
        }.get(filters.sort, _cis.c.created_at)
        ordering = sort_column.asc() if filters.order == "asc" else sort_column.desc()

        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_cis).where(*clauses)).scalar_one()
            rows = conn.execute(
                _cis.select()
                .where(*clauses)
                .order_by(ordering, _cis.c.id)
                .limit(limit)
                .offset((page - 1) * limit)
            ).fetchall()
        return [_row_to_ci(r) for r in rows], build_pagination(page, limit, total)

    def list_cis_by_type(self, ci_type: str) -> list[ConfigurationItem]:
        """Return every CI of one type, ordered by name."""
        with self.engine.connect() as conn:
            rows = conn.execute(_cis.select().where(_cis.c.ci_type == ci_type).order_by(_cis.c.name)).fetchall()
        return [_row_to_ci(r) for r in rows]

    def list_all_cis(self) -> list[ConfigurationItem]:
        with self.engine.connect() as conn:
            rows = conn.execute(_cis.select().order_by(_cis.c.id)).fetchall()
        return [_row_to_ci(r) for r in rows]

    def update_ci(
        self,
        ci_id: str,
        updated_by: str,
        attributes: Optional[dict] = None,
        tags: Optional[list[str]] = None,
    ) -> Optional[tuple[ConfigurationItem, OutboxEntry]]:
        """Replace attributes and/or tags on a CI and enqueue a graph upsert.

        Returns (updated CI, outbox entry), or None if ci_id was not found.
        """
        now = _now_iso()
        values: dict = {"updated_by": updated_by, "updated_at": now}
        if attributes is not None:
            values["attributes"] = json.dumps(attributes)
        if tags is not None:
            values["tags"] = json.dumps(_normalise_tags(tags))
        with self.engine.begin() as conn:
            result = conn.execute(_cis.update().where(_cis.c.id == ci_id).values(**values))
            if result.rowcount == 0:
                return None
            entry = self._enqueue(conn, "upsert_ci", ci_id, now)
            row = conn.execute(_cis.select().where(_cis.c.id == ci_id)).fetchone()
        return _row_to_ci(row), entry

    def delete_ci(self, ci_id: str) -> tuple[str, Optional[OutboxEntry]]:
        """Delete a CI only if no relationship references it.

        One conditional DELETE decides the outcome, so a relationship created
        concurrently can never be left dangling. Returns (outcome, entry) where
        outcome is DELETED, REFERENCED or MISSING; entry is set only on DELETED.
        """
        now = _now_iso()
        referenced = (
            select(_relationships.c.id)
            .where(or_(_relationships.c.source_id == ci_id, _relationships.c.target_id == ci_id))
            .exists()
        )
        with self.engine.begin() as conn:
            result = conn.execute(_cis.delete().where(_cis.c.id == ci_id).where(~referenced))
            if result.rowcount > 0:
                return DELETED, self._enqueue(conn, "remove_ci", ci_id, now)
            exists = conn.execute(select(_cis.c.id).where(_cis.c.id == ci_id)).fetchone()
        return (REFERENCED if exists is not None else MISSING), None

    def count_cis(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_cis)).scalar_one()

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def create_relationship(self, rel: Relationship) -> tuple[Relationship, OutboxEntry]:
        """Insert a relationship and its graph outbox row in one transaction.

        Raises InvalidReferenceError if an endpoint vanished before the insert,
        ConflictError if the (source, target, type) triple already exists.
        """
        now = _now_iso()
        created = replace(rel, id=_new_id(), created_at=now, updated_at=now, updated_by=None)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _relationships.insert().values(
                        id=created.id,
                        source_id=created.source_id,
                        target_id=created.target_id,
                        relationship_type=created.relationship_type,
                        attributes=json.dumps(created.attributes),
                        created_by=created.created_by,
                        created_at=now,
                        updated_at=now,
                    )
                )
                entry = self._enqueue(conn, "upsert_relationship", created.id, now)
        except IntegrityError as exc:
            if rel.source_id == rel.target_id:
                raise InvalidReferenceError("cannot create self-referencing relationship") from exc
            if self.get_ci(rel.source_id) is None or self.get_ci(rel.target_id) is None:
                raise InvalidReferenceError("relationship endpoint no longer exists") from exc
            raise ConflictError(
                f"relationship '{rel.relationship_type}' between these CIs already exists",
                {"source_id": rel.source_id, "target_id": rel.target_id, "relationship_type": rel.relationship_type},
            ) from exc
        return created, entry

    def get_relationship(self, rel_id: str) -> Optional[Relationship]:
        with self.engine.connect() as conn:
            row = conn.execute(_relationships.select().where(_relationships.c.id == rel_id)).fetchone()
        return _row_to_relationship(row) if row is not None else None

    def list_relationships(self, filters: RelationshipFilters) -> tuple[list[Relationship], Pagination]:
        """Return one page of relationships, newest first."""
        page, limit = clamp_page(filters.page, filters.limit)
        clauses = []
        if filters.source_id:
            clauses.append(_relationships.c.source_id == filters.source_id)
        if filters.target_id:
            clauses.append(_relationships.c.target_id == filters.target_id)
        if filters.ci_id:
            clauses.append(
                or_(_relationships.c.source_id == filters.ci_id, _relationships.c.target_id == filters.ci_id)
            )
        if filters.relationship_type:
            clauses.append(_relationships.c.relationship_type == filters.relationship_type)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_relationships).where(*clauses)).scalar_one()
            rows = conn.execute(
                _relationships.select()
                .where(*clauses)
                .order_by(_relationships.c.created_at.desc(), _relationships.c.id)
                .limit(limit)
                .offset((page - 1) * limit)
            ).fetchall()
        return [_row_to_relationship(r) for r in rows], build_pagination(page, limit, total)

    def list_all_relationships(self) -> list[Relationship]:
        with self.engine.connect() as conn:
            rows = conn.execute(_relationships.select().order_by(_relationships.c.id)).fetchall()
        return [_row_to_relationship(r) for r in rows]

    def update_relationship(
        self, rel_id: str, attributes: dict, updated_by: str
    ) -> Optional[tuple[Relationship, OutboxEntry]]:
        """Replace a relationship's attributes. Type and endpoints are immutable.

        Returns (updated relationship, outbox entry), or None if not found.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _relationships.update()
                .where(_relationships.c.id == rel_id)
                .values(attributes=json.dumps(attributes), updated_by=updated_by, updated_at=now)
            )
            if result.rowcount == 0:
                return None
            entry = self._enqueue(conn, "upsert_relationship", rel_id, now)
            row = conn.execute(_relationships.select().where(_relationships.c.id == rel_id)).fetchone()
        return _row_to_relationship(row), entry

    def delete_relationship(self, rel_id: str) -> Optional[tuple[Relationship, OutboxEntry]]:
        """Delete a relationship. Returns (deleted row, outbox entry) or None if not found."""
        now = _now_iso()
        with self.engine.begin() as conn:
            row = conn.execute(_relationships.select().where(_relationships.c.id == rel_id)).fetchone()
            if row is None:
                return None
            conn.execute(_relationships.delete().where(_relationships.c.id == rel_id))
            entry = self._enqueue(conn, "remove_relationship", rel_id, now)
        return _row_to_relationship(row), entry

    def count_relationships(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_relationships)).scalar_one()

    # ------------------------------------------------------------------
    # Graph outbox
    # ------------------------------------------------------------------

    def _enqueue(self, conn, operation: str, entity_id: str, now: str) -> OutboxEntry:
        result = conn.execute(
            _outbox.insert().values(
                operation=operation,
                entity_id=entity_id,
                attempts=0,
                created_at=now,
                next_attempt_at=now,
            )
        )
        return OutboxEntry(
            id=result.inserted_primary_key[0],
            operation=operation,
            entity_id=entity_id,
            created_at=now,
            next_attempt_at=now,
        )

    def pending_outbox(self, limit: int = 100, due_before: Optional[str] = None) -> list[OutboxEntry]:
        """Return outbox rows whose next attempt is due, oldest first."""
        due_before = due_before or _now_iso()
        with self.engine.connect() as conn:
            rows = conn.execute(
                _outbox.select()
                .where(_outbox.c.next_attempt_at <= due_before)
                .order_by(_outbox.c.id)
                .limit(limit)
            ).fetchall()
        return [_row_to_outbox(r) for r in rows]

    def ack_outbox(self, entry_id: int) -> bool:
        """Remove an outbox row once its graph mirror has been applied."""
        with self.engine.begin() as conn:
            result = conn.execute(_outbox.delete().where(_outbox.c.id == entry_id))
        return result.rowcount > 0

    def record_outbox_failure(self, entry_id: int, attempts: int, error: str, next_attempt_at: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _outbox.update()
                .where(_outbox.c.id == entry_id)
                .values(attempts=attempts, last_error=error[:2000], next_attempt_at=next_attempt_at)
            )

    def count_outbox(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_outbox)).scalar_one()

    def clear_outbox(self, up_to_id: Optional[int] = None) -> int:
        """Delete outbox rows (all, or those with id <= up_to_id). Returns rows removed."""
        stmt = _outbox.delete()
        if up_to_id is not None:
            stmt = stmt.where(_outbox.c.id <= up_to_id)
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        return result.rowcount

    def max_outbox_id(self) -> Optional[int]:
        with self.engine.connect() as conn:
            return conn.execute(select(func.max(_outbox.c.id))).scalar_one()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_ci_type(row) -> CITypeDefinition:
    return CITypeDefinition(
        id=row.id,
        name=row.name,
        description=row.description or "",
        required_attributes=_definitions_from_json(row.required_attributes),
        optional_attributes=_definitions_from_json(row.optional_attributes),
        created_by=row.created_by,
        created_at=row.created_at,
        updated_by=row.updated_by,
        updated_at=row.updated_at,
    )


def _row_to_ci(row) -> ConfigurationItem:
    return ConfigurationItem(
        id=row.id,
        name=row.name,
        ci_type=row.ci_type,
        attributes=json.loads(row.attributes) if row.attributes else {},
        tags=json.loads(row.tags) if row.tags else [],
        created_by=row.created_by,
        created_at=row.created_at,
        updated_by=row.updated_by,
        updated_at=row.updated_at,
    )


def _row_to_relationship(row) -> Relationship:
    return Relationship(
        id=row.id,
        source_id=row.source_id,
        target_id=row.target_id,
        relationship_type=row.relationship_type,
        attributes=json.loads(row.attributes) if row.attributes else {},
        created_by=row.created_by,
        created_at=row.created_at,
        updated_by=row.updated_by,
        updated_at=row.updated_at,
    )


def _row_to_outbox(row) -> OutboxEntry:
    return OutboxEntry(
        id=row.id,
        operation=row.operation,
        entity_id=row.entity_id,
        attempts=row.attempts,
        created_at=row.created_at,
        next_attempt_at=row.next_attempt_at,
        last_error=row.last_error,
    )
