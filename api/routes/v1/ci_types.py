"""
api/routes/v1/ci_types.py -- CI type (schema) routes.

Routes:
  POST   /ci-types             -- create a CI type
  GET    /ci-types             -- list CI types (?search=, pagination)
  GET    /ci-types/{type_id}   -- CI type detail
  PATCH  /ci-types/{type_id}   -- change description / attribute lists
  DELETE /ci-types/{type_id}   -- delete; 409 while any CI uses the type

A schema change that would leave an existing CI invalid is refused with 409;
the error detail lists the offending CI ids and their field errors.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter
from api.models import CITypeCreate, CITypeListResponse, CITypeResponse, CITypeUpdate, PaginationModel
from auth.dependencies import get_current_user, get_principal
from cmdb.models import CITypeFilters, Principal
from cmdb.service import CMDBService

router = APIRouter(dependencies=[Depends(get_current_user)])


@router.post("/ci-types", response_model=CITypeResponse, status_code=201)
@limiter.limit("30/minute")
def create_ci_type(
    request: Request,
    body: CITypeCreate,
    actor: Principal = Depends(get_principal),
) -> CITypeResponse:
    service: CMDBService = request.app.state.service
    return CITypeResponse.model_validate(service.create_ci_type(body.to_definition(), actor))


@router.get("/ci-types", response_model=CITypeListResponse)
@limiter.limit("60/minute")
def list_ci_types(
    request: Request,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> CITypeListResponse:
    service: CMDBService = request.app.state.service
    items, pagination = service.list_ci_types(CITypeFilters(search=search, page=page, limit=limit))
    return CITypeListResponse(
        items=[CITypeResponse.model_validate(t) for t in items],
        pagination=PaginationModel.model_validate(pagination),
    )


@router.get("/ci-types/{type_id}", response_model=CITypeResponse)
@limiter.limit("60/minute")
def get_ci_type(request: Request, type_id: str) -> CITypeResponse:
    service: CMDBService = request.app.state.service
    return CITypeResponse.model_validate(service.get_ci_type(type_id))


@router.patch("/ci-types/{type_id}", response_model=CITypeResponse)
@limiter.limit("10/minute")
def update_ci_type(
    request: Request,
    type_id: str,
    body: CITypeUpdate,
    actor: Principal = Depends(get_principal),
) -> CITypeResponse:
    service: CMDBService = request.app.state.service
    updated = service.update_ci_type(
        type_id,
        actor,
        description=body.description,
        required_attributes=body.required_definitions(),
        optional_attributes=body.optional_definitions(),
    )
    return CITypeResponse.model_validate(updated)


@router.delete("/ci-types/{type_id}", status_code=204)
@limiter.limit("10/minute")
def delete_ci_type(
    request: Request,
    type_id: str,
    actor: Principal = Depends(get_principal),
) -> Response:
    service: CMDBService = request.app.state.service
    service.delete_ci_type(type_id, actor)
    return Response(status_code=204)
