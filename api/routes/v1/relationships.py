"""
api/routes/v1/relationships.py -- Relationship routes.

Routes:
  POST   /relationships            -- create a directed, typed edge between two CIs
  GET    /relationships            -- list (?source_id=, ?target_id=, ?ci_id=, ?relationship_type=)
  GET    /relationships/{rel_id}   -- relationship detail
  PATCH  /relationships/{rel_id}   -- replace attributes (type and endpoints are fixed)
  DELETE /relationships/{rel_id}   -- delete

Self-references and unknown endpoints are rejected with 400 (invalid_reference);
a duplicate (source, target, type) triple is a 409.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import (
    PaginationModel,
    RelationshipCreate,
    RelationshipListResponse,
    RelationshipResponse,
    RelationshipUpdate,
)
from auth.dependencies import get_current_user, get_principal
from cmdb.models import Principal, Relationship, RelationshipFilters
from cmdb.service import CMDBService

router = APIRouter(dependencies=[Depends(get_current_user)])


@router.post("/relationships", response_model=RelationshipResponse, status_code=201)
@limiter.limit("30/minute")
def create_relationship(
    request: Request,
    body: RelationshipCreate,
    actor: Principal = Depends(get_principal),
) -> RelationshipResponse:
    service: CMDBService = request.app.state.service
    rel = service.create_relationship(
        Relationship(
            source_id=body.source_id,
            target_id=body.target_id,
            relationship_type=body.relationship_type,
            attributes=body.attributes,
        ),
        actor,
    )
    return RelationshipResponse.model_validate(rel)


@router.get("/relationships", response_model=RelationshipListResponse)
@limiter.limit("60/minute")
def list_relationships(
    request: Request,
    source_id: Optional[str] = None,
    target_id: Optional[str] = None,
    ci_id: Optional[str] = None,
    relationship_type: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> RelationshipListResponse:
    """Newest first. ci_id matches either end of the relationship."""
    service: CMDBService = request.app.state.service
    items, pagination = service.list_relationships(
        RelationshipFilters(
            source_id=source_id,
            target_id=target_id,
            ci_id=ci_id,
            relationship_type=relationship_type,
            page=page,
            limit=limit,
        )
    )
    return RelationshipListResponse(
        items=[RelationshipResponse.model_validate(r) for r in items],
        pagination=PaginationModel.model_validate(pagination),
    )


@router.get("/relationships/{rel_id}", response_model=RelationshipResponse)
@limiter.limit("60/minute")
def get_relationship(request: Request, rel_id: str) -> RelationshipResponse:
    service: CMDBService = request.app.state.service
    return RelationshipResponse.model_validate(service.get_relationship(rel_id))


@router.patch("/relationships/{rel_id}", response_model=RelationshipResponse)
@limiter.limit("30/minute")
def update_relationship(
    request: Request,
    rel_id: str,
    body: RelationshipUpdate,
    actor: Principal = Depends(get_principal),
) -> RelationshipResponse:
    service: CMDBService = request.app.state.service
    return RelationshipResponse.model_validate(service.update_relationship(rel_id, body.attributes, actor))


@router.delete("/relationships/{rel_id}", status_code=204)
@limiter.limit("30/minute")
def delete_relationship(
    request: Request,
    rel_id: str,
    actor: Principal = Depends(get_principal),
) -> Response:
    service: CMDBService = request.app.state.service
    service.delete_relationship(rel_id, actor)
    return Response(status_code=204)
