"""
cmdb/models.py -- Domain dataclasses for the Lattice CMDB.

These are pure data containers. Validation rules live in cmdb/validation.py,
persistence in cmdb/store.py, and the cross-store write sequencing in
cmdb/service.py.

CI attributes are user-defined: their shape is described at runtime by a
CITypeDefinition, not by columns or dataclass fields. Attribute maps are kept
as plain JSON-compatible dicts and classified by cmdb/validation.classify().
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

# Declared attribute types a CI type may use.
ATTRIBUTE_TYPES = ("string", "integer", "boolean", "array", "object")

# Shallow syntactic string formats understood by the validator.
ATTRIBUTE_FORMATS = ("email", "url", "ipv4", "date", "datetime")


@dataclass
class AttributeValidation:
    """Optional constraints attached to an attribute definition.

    min_length / max_length bound string length, array item count, or object
    property count depending on the attribute type. min / max bound numbers.
    """

    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min: Optional[int] = None
    max: Optional[int] = None
    enum: list[str] = field(default_factory=list)
    format: Optional[str] = None  # "email" | "url" | "ipv4" | "date" | "datetime"


@dataclass
class AttributeDefinition:
    name: str
    type: str  # "string" | "integer" | "boolean" | "array" | "object"
    description: str = ""
    validation: Optional[AttributeValidation] = None


@dataclass
class CITypeDefinition:
    """A named schema for configuration items.

    name is the identity CIs refer to and never changes after creation.
    An attribute name appears at most once across both lists.
    """

    name: str
    description: str = ""
    required_attributes: list[AttributeDefinition] = field(default_factory=list)
    optional_attributes: list[AttributeDefinition] = field(default_factory=list)
    id: Optional[str] = None
    created_by: str = ""
    created_at: str = ""  # ISO 8601, set by store on insert
    updated_by: Optional[str] = None
    updated_at: str = ""


@dataclass
class ConfigurationItem:
    """A tracked asset whose attributes validate against its CI type.

    (name, ci_type) is unique. id is None before the record is written.
    """

    name: str
    ci_type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)  # kept sorted and unique
    id: Optional[str] = None
    created_by: str = ""
    created_at: str = ""
    updated_by: Optional[str] = None
    updated_at: str = ""


@dataclass
class Relationship:
    """A typed, directed edge between two distinct CIs.

    relationship_type is fixed at creation; updates only touch attributes.
    """

    source_id: str
    target_id: str
    relationship_type: str
    attributes: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    created_by: str = ""
    created_at: str = ""
    updated_by: Optional[str] = None
    updated_at: str = ""


@dataclass
class FieldError:
    """One validation problem on one attribute."""

    field: str
    message: str


@dataclass
class Principal:
    """The authenticated actor behind a mutation, plus request origin for audit."""

    id: str
    ip_address: str = ""
    user_agent: str = ""


@dataclass
class OutboxEntry:
    """A pending graph mirror operation recorded with the primary write."""

    operation: str  # "upsert_ci" | "remove_ci" | "upsert_relationship" | "remove_relationship"
    entity_id: str
    id: Optional[int] = None
    attempts: int = 0
    created_at: str = ""
    next_attempt_at: str = ""
    last_error: Optional[str] = None


@dataclass
class Pagination:
    page: int
    limit: int
    total: int
    total_pages: int


@dataclass
class CIFilters:
    ci_type: Optional[str] = None
    search: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    created_by: Optional[str] = None
    sort: str = "created_at"  # "name" | "ci_type" | "updated_at" | "created_at"
    order: str = "desc"
    page: int = 1
    limit: int = 20


@dataclass
class CITypeFilters:
    search: Optional[str] = None
    page: int = 1
    limit: int = 20


@dataclass
class RelationshipFilters:
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    ci_id: Optional[str] = None  # either end
    relationship_type: Optional[str] = None
    page: int = 1
    limit: int = 20


@dataclass
class DashboardStats:
    total_cis: int
    total_ci_types: int
    total_relationships: int
    total_users: int


# ---------------------------------------------------------------------------
# Cache serialisation
# ---------------------------------------------------------------------------


def ci_to_dict(ci: ConfigurationItem) -> dict:
    return asdict(ci)


def ci_from_dict(data: dict) -> ConfigurationItem:
    return ConfigurationItem(
        id=data.get("id"),
        name=data["name"],
        ci_type=data["ci_type"],
        attributes=data.get("attributes") or {},
        tags=list(data.get("tags") or []),
        created_by=data.get("created_by", ""),
        created_at=data.get("created_at", ""),
        updated_by=data.get("updated_by"),
        updated_at=data.get("updated_at", ""),
    )
