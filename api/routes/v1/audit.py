"""
api/routes/v1/audit.py -- Audit trail routes.

Routes:
  GET    /audit/logs              -- list entries (filters, sort, pagination; limit <= 100)
  GET    /audit/logs/{entry_id}   -- one entry
  DELETE /audit/logs/{entry_id}   -- administrative purge of one entry (admin only)
  GET    /audit/stats             -- aggregate counts (same filters as the list)
  GET    /audit/export            -- CSV download of matching entries (max 10,000 rows)
  POST   /audit/cleanup           -- apply the retention period (admin only)

The trail is append-only from the API's point of view: entries are written
by CMDBService on successful mutations and never edited here.

Dates in filters are YYYY-MM-DD; end_date covers the whole day.
"""

from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import limiter
from api.models import (
    AuditCleanupRequest,
    AuditCleanupResponse,
    AuditListResponse,
    AuditLogEntryResponse,
    AuditStatsResponse,
    ErrorDetail,
    PaginationModel,
    SortOrderEnum,
)
from audit.export import to_csv
from audit.models import AuditFilters
from audit.store import AuditStore
from auth.dependencies import get_current_user, require_admin

router = APIRouter(dependencies=[Depends(get_current_user)])


def _filters(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    performed_by: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = None,
    sort: str = "timestamp",
    order: SortOrderEnum = SortOrderEnum.desc,
    page: int = 1,
    limit: int = 50,
) -> AuditFilters:
    """Shared query parameters for list, stats and export."""
    return AuditFilters(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        performed_by=performed_by,
        start_date=start_date.isoformat() if start_date else None,
        end_date=end_date.isoformat() if end_date else None,
        search=search,
        sort=sort,
        order=order.value,
        page=page,
        limit=limit,
    )


@router.get("/audit/logs", response_model=AuditListResponse)
@limiter.limit("60/minute")
def list_audit_logs(request: Request, filters: AuditFilters = Depends(_filters)) -> AuditListResponse:
    audit: AuditStore = request.app.state.audit_store
    entries, pagination = audit.list_entries(filters)
    return AuditListResponse(
        items=[AuditLogEntryResponse.model_validate(e) for e in entries],
        pagination=PaginationModel.model_validate(pagination),
    )


@router.get("/audit/logs/{entry_id}", response_model=AuditLogEntryResponse)
@limiter.limit("60/minute")
def get_audit_log(request: Request, entry_id: str) -> AuditLogEntryResponse:
    audit: AuditStore = request.app.state.audit_store
    entry = audit.get(entry_id)
    if entry is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"audit entry {entry_id} not found").model_dump(),
        )
    return AuditLogEntryResponse.model_validate(entry)


@router.delete("/audit/logs/{entry_id}", status_code=204, dependencies=[Depends(require_admin)])
@limiter.limit("10/minute")
def delete_audit_log(request: Request, entry_id: str) -> Response:
    audit: AuditStore = request.app.state.audit_store
    if not audit.delete(entry_id):
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"audit entry {entry_id} not found").model_dump(),
        )
    return Response(status_code=204)


@router.get("/audit/stats", response_model=AuditStatsResponse)
@limiter.limit("30/minute")
def get_audit_stats(request: Request, filters: AuditFilters = Depends(_filters)) -> AuditStatsResponse:
    audit: AuditStore = request.app.state.audit_store
    return AuditStatsResponse.model_validate(audit.stats(filters))


@router.get("/audit/export")
@limiter.limit("5/minute")
def export_audit_logs(request: Request, filters: AuditFilters = Depends(_filters)) -> Response:
    """CSV download. Pagination parameters are ignored; sort and filters apply."""
    audit: AuditStore = request.app.state.audit_store
    body = to_csv(audit.export_rows(filters))
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="audit_logs_{stamp}.csv"'},
    )


@router.post("/audit/cleanup", response_model=AuditCleanupResponse, dependencies=[Depends(require_admin)])
@limiter.limit("5/minute")
def cleanup_audit_logs(request: Request, body: Optional[AuditCleanupRequest] = None) -> AuditCleanupResponse:
    """Delete entries older than retention_days (default AUDIT_RETENTION_DAYS)."""
    audit: AuditStore = request.app.state.audit_store
    days = (body.retention_days if body else None) or request.app.state.settings.audit_retention_days
    deleted = audit.cleanup(days)
    return AuditCleanupResponse(deleted=deleted, retention_days=days)
