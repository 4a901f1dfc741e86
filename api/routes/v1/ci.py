"""
api/routes/v1/ci.py -- Configuration item routes for the Lattice REST API.

Routes (in registration order to avoid FastAPI path capture conflicts):
  POST   /ci                      -- create CI (validated against its CI type)
  GET    /ci                      -- list CIs (filters, sort, pagination)
  GET    /ci/{ci_id}              -- CI detail (read-through cache)
  PATCH  /ci/{ci_id}              -- replace attributes and/or tags
  DELETE /ci/{ci_id}              -- delete; 409 while relationships reference it
  GET    /ci/{ci_id}/relationships -- relationships touching the CI, both directions
  GET    /ci/{ci_id}/network      -- neighbourhood up to ?depth= hops (1-5)
  GET    /ci/{ci_id}/impact       -- upstream / downstream impact analysis

Every mutation goes through CMDBService so the graph index, cache and audit
trail stay consistent with the primary store. CMDBError subclasses raised by
the service are mapped to HTTP statuses in api/main.py.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    CICreate,
    CIListResponse,
    CINetworkResponse,
    CIResponse,
    CIUpdate,
    ImpactAnalysisResponse,
    PaginationModel,
    RelationshipEdgeModel,
    SortOrderEnum,
)
from auth.dependencies import get_current_user, get_principal
from cmdb.models import CIFilters, ConfigurationItem, Principal
from cmdb.service import CMDBService

router = APIRouter(dependencies=[Depends(get_current_user)])


def _split(value: Optional[str]) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


# ---------------------------------------------------------------------------
# POST /ci -- create a configuration item
# ---------------------------------------------------------------------------


@router.post("/ci", response_model=CIResponse, status_code=201)
@limiter.limit("30/minute")
def create_ci(
    request: Request,
    body: CICreate,
    actor: Principal = Depends(get_principal),
) -> CIResponse:
    """Register a CI. Attributes must satisfy the CI type's schema (422 lists every problem)."""
    service: CMDBService = request.app.state.service
    ci = service.create_ci(
        ConfigurationItem(name=body.name, ci_type=body.ci_type, attributes=body.attributes, tags=body.tags),
        actor,
    )
    return CIResponse.model_validate(ci)


# ---------------------------------------------------------------------------
# GET /ci -- list with filters
# ---------------------------------------------------------------------------


@router.get("/ci", response_model=CIListResponse)
@limiter.limit("60/minute")
def list_cis(
    request: Request,
    ci_type: Optional[str] = None,
    search: Optional[str] = None,
    tags: Optional[str] = None,
    created_by: Optional[str] = None,
    sort: str = "created_at",
    order: SortOrderEnum = SortOrderEnum.desc,
    page: int = 1,
    limit: int = 20,
) -> CIListResponse:
    """Return one page of CIs.

    Query params:
      ci_type    -- exact CI type name
      search     -- case-insensitive substring of the name or attribute values
      tags       -- comma-separated; a CI matches if it carries any of them
      created_by -- actor id
      sort       -- name | ci_type | created_at | updated_at
      page/limit -- limit is clamped to 1..500
    """
    service: CMDBService = request.app.state.service
    items, pagination = service.list_cis(
        CIFilters(
            ci_type=ci_type,
            search=search,
            tags=_split(tags),
            created_by=created_by,
            sort=sort,
            order=order.value,
            page=page,
            limit=limit,
        )
    )
    return CIListResponse(
        items=[CIResponse.model_validate(ci) for ci in items],
        pagination=PaginationModel.model_validate(pagination),
    )


# ---------------------------------------------------------------------------
# /ci/{ci_id}
# ---------------------------------------------------------------------------


@router.get("/ci/{ci_id}", response_model=CIResponse)
@limiter.limit("120/minute")
def get_ci(request: Request, ci_id: str) -> CIResponse:
    service: CMDBService = request.app.state.service
    return CIResponse.model_validate(service.get_ci(ci_id))


@router.patch("/ci/{ci_id}", response_model=CIResponse)
@limiter.limit("30/minute")
def update_ci(
    request: Request,
    ci_id: str,
    body: CIUpdate,
    actor: Principal = Depends(get_principal),
) -> CIResponse:
    """Replace attributes and/or tags. The full resulting attribute map is revalidated."""
    service: CMDBService = request.app.state.service
    ci = service.update_ci(ci_id, actor, attributes=body.attributes, tags=body.tags)
    return CIResponse.model_validate(ci)


@router.delete("/ci/{ci_id}", status_code=204)
@limiter.limit("30/minute")
def delete_ci(
    request: Request,
    ci_id: str,
    actor: Principal = Depends(get_principal),
) -> Response:
    service: CMDBService = request.app.state.service
    service.delete_ci(ci_id, actor)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# CI-scoped graph queries
# ---------------------------------------------------------------------------


@router.get("/ci/{ci_id}/relationships", response_model=list[RelationshipEdgeModel])
@limiter.limit("60/minute")
def get_ci_relationships(request: Request, ci_id: str) -> list[RelationshipEdgeModel]:
    service: CMDBService = request.app.state.service
    return [RelationshipEdgeModel.model_validate(e) for e in service.get_ci_relationships(ci_id)]


@router.get("/ci/{ci_id}/network", response_model=CINetworkResponse)
@limiter.limit("60/minute")
def get_ci_network(request: Request, ci_id: str, depth: int = 2) -> CINetworkResponse:
    """CIs within depth hops of ci_id in either direction, the CI itself included."""
    service: CMDBService = request.app.state.service
    return CINetworkResponse.model_validate(service.get_ci_network(ci_id, depth))


@router.get("/ci/{ci_id}/impact", response_model=ImpactAnalysisResponse)
@limiter.limit("60/minute")
def get_impact_analysis(request: Request, ci_id: str) -> ImpactAnalysisResponse:
    """downstream: CIs that depend on ci_id. upstream: CIs ci_id depends on."""
    service: CMDBService = request.app.state.service
    return ImpactAnalysisResponse.model_validate(service.get_impact_analysis(ci_id))
