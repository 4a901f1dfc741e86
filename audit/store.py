"""
audit/store.py -- SQLAlchemy Core persistence for the audit trail.

Pattern: Repository + Data Mapper (same as cmdb/store.py). AuditStore is the
repository, _row_to_entry the mapper.

The trail is append-only: there is record() but no update method. Rows are
removed only by delete() (administrative purge of one entry) or by
delete_older_than() / cleanup() (age-based retention, 365 days by default).

Timestamps are ISO 8601 UTC strings, so lexical order is chronological order
and the first ten characters are the calendar day.

DB path: audit/lattice_audit.db unless AUDIT_DATABASE_URL / DATABASE_URL say
otherwise.

Layer rule: imports only cmdb/store.py helpers for pagination; no imports from
api/, graph/ or cache/.
"""

import json
import logging
import uuid
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, desc, event, func, or_, select
from sqlalchemy.engine import Engine

from audit.models import AUDIT_SORT_FIELDS, AuditFilters, AuditLogEntry, AuditStats
from cmdb.models import Pagination
from cmdb.store import build_pagination, clamp_page

logger = logging.getLogger("lattice.audit")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'lattice_audit.db'}"

DEFAULT_RETENTION_DAYS = 365
MAX_PAGE_SIZE = 100
MAX_EXPORT_ROWS = 10_000
_TOP_N = 10
_DAILY_WINDOW_DAYS = 30

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("entity_type", String(50), nullable=False, index=True),
    Column("entity_id", String(36), index=True),
    Column("action", String(20), nullable=False),
    Column("performed_by", String(64), nullable=False, index=True),
    Column("timestamp", String(32), nullable=False, index=True),
    Column("details", Text, nullable=False),  # JSON object
    Column("ip_address", String(45), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _day_start(day: str) -> str:
    """'2024-03-01' -> ISO timestamp at 00:00 UTC. Raises ValueError on a malformed date."""
    return datetime.combine(date.fromisoformat(day), datetime.min.time(), tzinfo=timezone.utc).isoformat()


class AuditStore:
    """Repository for AuditLogEntry rows.

    Usage:
        audit = AuditStore()
        audit.record(AuditLogEntry(entity_type="ci", entity_id=ci.id, action="create", performed_by="7"))
        entries, pagination = audit.list_entries(AuditFilters(entity_type="ci"))
        audit.cleanup(retention_days=365)
        audit.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append an entry. Assigns id and timestamp unless the caller supplied them."""
        stored = replace(entry, id=entry.id or str(uuid.uuid4()), timestamp=entry.timestamp or _now().isoformat())
        with self.engine.begin() as conn:
            conn.execute(
                _audit_logs.insert().values(
                    id=stored.id,
                    entity_type=stored.entity_type,
                    entity_id=stored.entity_id,
                    action=stored.action,
                    performed_by=stored.performed_by,
                    timestamp=stored.timestamp,
                    details=json.dumps(stored.details, default=str),
                    ip_address=stored.ip_address,
                    user_agent=stored.user_agent,
                )
            )
        return stored

    def delete(self, entry_id: str) -> bool:
        """Administrative purge of a single entry. Returns False if it did not exist."""
        with self.engine.begin() as conn:
            result = conn.execute(_audit_logs.delete().where(_audit_logs.c.id == entry_id))
        return result.rowcount > 0

    def delete_older_than(self, cutoff: datetime) -> int:
        """Remove entries stamped before cutoff. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_audit_logs.delete().where(_audit_logs.c.timestamp < cutoff.isoformat()))
        return result.rowcount

    def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Apply the retention period: drop entries older than retention_days."""
        if retention_days < 1:
            raise ValueError("retention_days must be at least 1")
        removed = self.delete_older_than(_now() - timedelta(days=retention_days))
        logger.info("Audit retention (%d days) removed %d entries", retention_days, removed)
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entry_id: str) -> Optional[AuditLogEntry]:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_logs.select().where(_audit_logs.c.id == entry_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def list_entries(self, filters: AuditFilters) -> tuple[list[AuditLogEntry], Pagination]:
        """Return one page of entries matching filters (limit at most 100)."""
        page, limit = clamp_page(filters.page, filters.limit, MAX_PAGE_SIZE)
        clauses = _filter_clauses(filters)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit_logs).where(*clauses)).scalar_one()
            rows = conn.execute(
                _audit_logs.select()
                .where(*clauses)
                .order_by(*_ordering(filters))
                .limit(limit)
                .offset((page - 1) * limit)
            ).fetchall()
        return [_row_to_entry(r) for r in rows], build_pagination(page, limit, total)

    def export_rows(self, filters: AuditFilters, max_rows: int = MAX_EXPORT_ROWS) -> list[AuditLogEntry]:
        """Entries matching filters in listing order, ignoring pagination, capped at max_rows."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select().where(*_filter_clauses(filters)).order_by(*_ordering(filters)).limit(max_rows)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def stats(self, filters: Optional[AuditFilters] = None) -> AuditStats:
        """Aggregate counts over entries matching filters.

        events_by_* hold the ten largest groups; daily_activity covers the last
        30 days; recent_activity is the ten newest entries.
        """
        clauses = _filter_clauses(filters or AuditFilters())
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit_logs).where(*clauses)).scalar_one()
            by_type = _top_counts(conn, _audit_logs.c.entity_type, clauses)
            by_action = _top_counts(conn, _audit_logs.c.action, clauses)
            by_user = _top_counts(conn, _audit_logs.c.performed_by, clauses)

            day = func.substr(_audit_logs.c.timestamp, 1, 10).label("day")
            since = (_now() - timedelta(days=_DAILY_WINDOW_DAYS)).isoformat()
            daily_rows = conn.execute(
                select(day, func.count().label("n"))
                .where(*clauses, _audit_logs.c.timestamp >= since)
                .group_by(day)
                .order_by(day)
            ).fetchall()

            recent_rows = conn.execute(
                _audit_logs.select().where(*clauses).order_by(_audit_logs.c.timestamp.desc()).limit(_TOP_N)
            ).fetchall()

        return AuditStats(
            total_events=total,
            events_by_type=by_type,
            events_by_action=by_action,
            events_by_user=by_user,
            daily_activity={r.day: r.n for r in daily_rows},
            recent_activity=[_row_to_entry(r) for r in recent_rows],
        )

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_audit_logs)).scalar_one()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Query builders
# ---------------------------------------------------------------------------


def _filter_clauses(filters: AuditFilters) -> list:
    clauses = []
    if filters.entity_type:
        clauses.append(_audit_logs.c.entity_type == filters.entity_type)
    if filters.entity_id:
        clauses.append(_audit_logs.c.entity_id == filters.entity_id)
    if filters.action:
        clauses.append(_audit_logs.c.action == filters.action)
    if filters.performed_by:
        clauses.append(_audit_logs.c.performed_by == filters.performed_by)
    if filters.start_date:
        clauses.append(_audit_logs.c.timestamp >= _day_start(filters.start_date))
    if filters.end_date:
        next_day = (date.fromisoformat(filters.end_date) + timedelta(days=1)).isoformat()
        clauses.append(_audit_logs.c.timestamp < _day_start(next_day))
    if filters.search:
        term = filters.search.lower()
        clauses.append(
            or_(
                *[
                    func.lower(col, type_=String).contains(term, autoescape=True)
                    for col in (_audit_logs.c.entity_type, _audit_logs.c.action, _audit_logs.c.details)
                ]
            )
        )
    return clauses


def _ordering(filters: AuditFilters) -> list:
    column = _audit_logs.c[filters.sort] if filters.sort in AUDIT_SORT_FIELDS else _audit_logs.c.timestamp
    primary = column.asc() if filters.order == "asc" else column.desc()
    return [primary, _audit_logs.c.id]


def _top_counts(conn, column, clauses: list) -> dict[str, int]:
    rows = conn.execute(
        select(column.label("key"), func.count().label("n"))
        .where(*clauses)
        .group_by(column)
        .order_by(desc("n"), column)
        .limit(_TOP_N)
    ).fetchall()
    return {r.key: r.n for r in rows}


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        action=row.action,
        performed_by=row.performed_by,
        timestamp=row.timestamp,
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
    )
