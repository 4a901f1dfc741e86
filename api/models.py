"""
API request and response models for the Lattice CMDB REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in cmdb/models.py,
graph/models.py and audit/models.py, which own the internal domain
representation. Route handlers map between the two: request models convert
themselves into domain objects, response models read domain dataclasses via
from_attributes.

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from cmdb.models import AttributeDefinition, AttributeValidation, CITypeDefinition

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class _Response(BaseModel):
    """Base for read-only response bodies built from domain dataclasses."""

    model_config = ConfigDict(frozen=True, from_attributes=True)


class SortOrderEnum(str, Enum):
    asc = "asc"
    desc = "desc"


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    detail carries the per-field problems for validation failures
    ([{"field", "message"}, ...]) and structured context for other errors.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    graph_nodes: int = 0
    graph_edges: int = 0
    pending_outbox: int = 0


class PaginationModel(_Response):
    page: int
    limit: int
    total: int
    total_pages: int


# ---------------------------------------------------------------------------
# CI types
# ---------------------------------------------------------------------------


class AttributeValidationModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min: Optional[int] = None
    max: Optional[int] = None
    enum: list[str] = Field(default_factory=list)
    format: Optional[str] = None


class AttributeDefinitionModel(BaseModel):
    """One attribute in a CI type schema.

    type and validation.format are checked by the definition validator rather
    than by an Enum here, so every problem in a schema is reported in one
    422 response with a field path.
    """

    model_config = ConfigDict(from_attributes=True)

    name: str = Field(max_length=100)
    type: str
    description: str = ""
    validation: Optional[AttributeValidationModel] = None

    def to_definition(self) -> AttributeDefinition:
        rules = self.validation
        return AttributeDefinition(
            name=self.name,
            type=self.type,
            description=self.description,
            validation=AttributeValidation(**rules.model_dump()) if rules is not None else None,
        )


def _definitions(models: Optional[list[AttributeDefinitionModel]]) -> Optional[list[AttributeDefinition]]:
    if models is None:
        return None
    return [m.to_definition() for m in models]


class CITypeCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=1000)
    required_attributes: list[AttributeDefinitionModel] = Field(default_factory=list)
    optional_attributes: list[AttributeDefinitionModel] = Field(default_factory=list)

    def to_definition(self) -> CITypeDefinition:
        return CITypeDefinition(
            name=self.name,
            description=self.description,
            required_attributes=_definitions(self.required_attributes),
            optional_attributes=_definitions(self.optional_attributes),
        )


class CITypeUpdate(BaseModel):
    """PATCH body. Omitted fields are left unchanged; the name cannot change."""

    description: Optional[str] = Field(default=None, max_length=1000)
    required_attributes: Optional[list[AttributeDefinitionModel]] = None
    optional_attributes: Optional[list[AttributeDefinitionModel]] = None

    def required_definitions(self) -> Optional[list[AttributeDefinition]]:
        return _definitions(self.required_attributes)

    def optional_definitions(self) -> Optional[list[AttributeDefinition]]:
        return _definitions(self.optional_attributes)


class CITypeResponse(_Response):
    id: str
    name: str
    description: str
    required_attributes: list[AttributeDefinitionModel]
    optional_attributes: list[AttributeDefinitionModel]
    created_by: str
    created_at: str
    updated_by: Optional[str] = None
    updated_at: str


class CITypeListResponse(_Response):
    items: list[CITypeResponse]
    pagination: PaginationModel


# ---------------------------------------------------------------------------
# Configuration items
# ---------------------------------------------------------------------------


class CICreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    ci_type: str = Field(min_length=1, max_length=100)
    attributes: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)


class CIUpdate(BaseModel):
    """PATCH body. attributes, when present, replaces the whole attribute map."""

    attributes: Optional[dict[str, Any]] = None
    tags: Optional[list[str]] = None


class CIResponse(_Response):
    id: str
    name: str
    ci_type: str
    attributes: dict[str, Any]
    tags: list[str]
    created_by: str
    created_at: str
    updated_by: Optional[str] = None
    updated_at: str


class CIListResponse(_Response):
    items: list[CIResponse]
    pagination: PaginationModel


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------


class RelationshipCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    source_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    relationship_type: str = Field(min_length=1, max_length=100)
    attributes: dict[str, Any] = Field(default_factory=dict)


class RelationshipUpdate(BaseModel):
    attributes: dict[str, Any]


class RelationshipResponse(_Response):
    id: str
    source_id: str
    target_id: str
    relationship_type: str
    attributes: dict[str, Any]
    created_by: str
    created_at: str
    updated_by: Optional[str] = None
    updated_at: str


class RelationshipListResponse(_Response):
    items: list[RelationshipResponse]
    pagination: PaginationModel


# ---------------------------------------------------------------------------
# Graph queries
# ---------------------------------------------------------------------------


class GraphNodeModel(_Response):
    id: str
    name: str
    ci_type: str
    attributes: dict[str, Any]
    tags: list[str]


class GraphEdgeModel(_Response):
    id: str
    source: str
    target: str
    relationship_type: str
    attributes: dict[str, Any]


class GraphDataResponse(_Response):
    nodes: list[GraphNodeModel]
    edges: list[GraphEdgeModel]


class CINetworkResponse(_Response):
    center: str
    nodes: list[GraphNodeModel]
    edges: list[GraphEdgeModel]


class RelationshipEdgeModel(_Response):
    id: str
    relationship_type: str
    direction: str
    related_ci: GraphNodeModel
    attributes: dict[str, Any]
    created_at: str
    created_by: str


class CIImpactModel(_Response):
    id: str
    name: str
    ci_type: str
    depth: int
    direction: str


class ImpactAnalysisResponse(_Response):
    ci_id: str
    downstream: list[CIImpactModel]
    upstream: list[CIImpactModel]


class CyclesResponse(_Response):
    cycles: list[list[str]]
    count: int


class CIConnectivityModel(_Response):
    id: str
    name: str
    ci_type: str
    connection_count: int


class TypeUsageModel(_Response):
    ci_type: str
    count: int


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class DashboardResponse(_Response):
    """Response for GET /api/v1/dashboard."""

    total_cis: int
    total_ci_types: int
    total_relationships: int
    total_users: int


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditLogEntryResponse(_Response):
    id: str
    entity_type: str
    entity_id: Optional[str] = None
    action: str
    performed_by: str
    timestamp: str
    details: dict[str, Any]
    ip_address: str
    user_agent: str


class AuditListResponse(_Response):
    items: list[AuditLogEntryResponse]
    pagination: PaginationModel


class AuditStatsResponse(_Response):
    total_events: int
    events_by_type: dict[str, int]
    events_by_action: dict[str, int]
    events_by_user: dict[str, int]
    daily_activity: dict[str, int]
    recent_activity: list[AuditLogEntryResponse]


class AuditCleanupRequest(BaseModel):
    retention_days: Optional[int] = Field(default=None, ge=1, le=3650)


class AuditCleanupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    deleted: int
    retention_days: int


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class ReconcileResponse(_Response):
    nodes: int
    edges: int
    cleared: int


class DrainResponse(_Response):
    applied: int
    failed: int
    divergent: list[str]
