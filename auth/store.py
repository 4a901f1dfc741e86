"""
auth/store.py -- SQLAlchemy Core persistence layer for API users.

Pattern: Repository + Data Mapper (same as cmdb/store.py).
UserStore is the repository; _row_to_user is the mapper.
Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB path: auth/lattice_auth.db unless DATABASE_URL says otherwise. The users
table lives beside the CMDB tables when both share one database URL.

Layer rule: no imports from api/, core/, cmdb/, graph/, cache/, or audit/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, event, func, select
from sqlalchemy.engine import Engine

from auth.models import User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'lattice_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. Set per-connection; PRAGMAs are not inherited from the pool."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(username="ops-bot", role="user"))
        user = store.get_by_id(user_id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    role=user.role,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
        return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def count_users(self) -> int:
        """Number of registered users (active or not). Feeds the dashboard."""
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar_one()

    def close(self) -> None:
        """Dispose the SQLAlchemy engine connection pool."""
        self.engine.dispose()


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        role=row.role,
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )
