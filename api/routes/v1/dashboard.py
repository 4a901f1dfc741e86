"""
api/routes/v1/dashboard.py -- Aggregated counts for the Lattice dashboard.

Returns a single payload suitable for driving dashboard widgets:
  - total CIs, CI types, relationships and users

The four counts run concurrently inside CMDBService; if any of them fails or
exceeds STORE_TIMEOUT_SECONDS the whole call fails with 500 rather than
returning partial numbers.

This is a read-only aggregate route -- no mutations here.
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import DashboardResponse
from auth.dependencies import get_current_user
from cmdb.service import CMDBService

# Router-level dependency enforces auth; the single handler does not repeat it.
router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("/dashboard", response_model=DashboardResponse)
@limiter.limit("60/minute")
def get_dashboard(request: Request) -> DashboardResponse:
    service: CMDBService = request.app.state.service
    return DashboardResponse.model_validate(service.get_dashboard_stats())
