"""
api/routes/v1/graph.py -- Graph visualisation and analytics routes.

Routes:
  GET /graph                       -- nodes + edges (?ci_types=a,b  ?search=  ?limit=)
  GET /analytics/cycles            -- dependency cycles (at most 50)
  GET /analytics/most-connected    -- CIs ranked by relationship count (?limit=)
  GET /analytics/ci-types/usage    -- CI count per type, largest first

All answers come from the in-process graph index, which mirrors the primary
store through the outbox. Read-only -- no mutations here.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import CIConnectivityModel, CyclesResponse, GraphDataResponse, TypeUsageModel
from auth.dependencies import get_current_user
from cmdb.service import CMDBService

router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("/graph", response_model=GraphDataResponse)
@limiter.limit("30/minute")
def get_graph_data(
    request: Request,
    ci_types: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 100,
) -> GraphDataResponse:
    """Return up to limit CIs (clamped to 1..500) and the edges among them."""
    service: CMDBService = request.app.state.service
    types = [t.strip() for t in (ci_types or "").split(",") if t.strip()]
    return GraphDataResponse.model_validate(service.get_graph_data(types or None, search, limit))


@router.get("/analytics/cycles", response_model=CyclesResponse)
@limiter.limit("10/minute")
def find_cycles(request: Request) -> CyclesResponse:
    service: CMDBService = request.app.state.service
    cycles = service.find_cycles()
    return CyclesResponse(cycles=cycles, count=len(cycles))


@router.get("/analytics/most-connected", response_model=list[CIConnectivityModel])
@limiter.limit("30/minute")
def get_most_connected(request: Request, limit: int = 10) -> list[CIConnectivityModel]:
    service: CMDBService = request.app.state.service
    return [CIConnectivityModel.model_validate(c) for c in service.get_most_connected_cis(limit)]


@router.get("/analytics/ci-types/usage", response_model=list[TypeUsageModel])
@limiter.limit("30/minute")
def get_ci_types_by_usage(request: Request) -> list[TypeUsageModel]:
    service: CMDBService = request.app.state.service
    return [TypeUsageModel.model_validate(u) for u in service.get_ci_types_by_usage()]
