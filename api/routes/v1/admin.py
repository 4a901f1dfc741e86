"""
api/routes/v1/admin.py -- Graph index maintenance (admin only).

Routes:
  POST /admin/graph/reconcile  -- rebuild the graph index from the primary store
  POST /admin/graph/drain      -- retry due outbox rows now instead of waiting
                                  for the background loop

Both run synchronously in the request thread and return a summary.
"""

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter
from api.models import DrainResponse, ReconcileResponse
from auth.dependencies import require_admin
from cmdb.service import CMDBService

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/admin/graph/reconcile", response_model=ReconcileResponse)
@limiter.limit("5/minute")
def reconcile_graph(request: Request) -> ReconcileResponse:
    service: CMDBService = request.app.state.service
    return ReconcileResponse.model_validate(service.reconcile_graph())


@router.post("/admin/graph/drain", response_model=DrainResponse)
@limiter.limit("10/minute")
def drain_graph_outbox(request: Request) -> DrainResponse:
    service: CMDBService = request.app.state.service
    return DrainResponse.model_validate(service.drain_graph_outbox())
