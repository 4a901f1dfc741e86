"""
audit/models.py -- Dataclasses for the audit trail.

An AuditLogEntry is written once per successful mutation and never updated.
Entries leave the store only through age-based retention cleanup or an
explicit administrative purge.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

AUDIT_ACTIONS = ("create", "update", "delete")

# Columns callers may sort audit listings by.
AUDIT_SORT_FIELDS = ("timestamp", "entity_type", "action", "performed_by", "ip_address")


@dataclass
class AuditLogEntry:
    entity_type: str  # "ci" | "ci_type" | "relationship"
    action: str  # "create" | "update" | "delete"
    performed_by: str
    entity_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    ip_address: str = ""
    user_agent: str = ""
    id: Optional[str] = None
    timestamp: str = ""  # ISO 8601, set by store on insert


@dataclass
class AuditFilters:
    """Listing filters. Dates are YYYY-MM-DD; end_date includes the whole day."""

    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    action: Optional[str] = None
    performed_by: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    search: Optional[str] = None
    sort: str = "timestamp"
    order: str = "desc"
    page: int = 1
    limit: int = 50


@dataclass
class AuditStats:
    total_events: int
    events_by_type: dict[str, int] = field(default_factory=dict)
    events_by_action: dict[str, int] = field(default_factory=dict)
    events_by_user: dict[str, int] = field(default_factory=dict)
    daily_activity: dict[str, int] = field(default_factory=dict)  # YYYY-MM-DD -> count
    recent_activity: list[AuditLogEntry] = field(default_factory=list)
