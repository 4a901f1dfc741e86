"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in cmdb/models.py -- dataclasses own domain shape; stores and routes do the work.

Layer rule: no imports from api/, cmdb/, graph/, cache/, or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass

ROLES = ("admin", "user")


@dataclass
class User:
    """An identity allowed to call the API.

    Users are created out of band (CLI `create-user`); there is no password
    or self-registration flow. The numeric id is what audit entries record as
    performed_by.
    """

    username: str
    role: str  # "admin" or "user"
    id: int | None = None
    created_at: str | None = None
    is_active: bool = True
