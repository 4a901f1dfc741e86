"""
cmdb/errors.py -- Typed outcomes raised by the CMDB store and service.

Each class carries a stable machine-readable code. api/main.py maps these to
HTTP statuses and the shared ErrorResponse envelope; the CLI prints them.

NotFound, ValidationFailed, Conflict and InvalidReference are expected,
caller-recoverable outcomes and are never logged as system errors.
"""

from typing import Optional

from cmdb.models import FieldError


class CMDBError(Exception):
    code = "cmdb_error"

    def __init__(self, message: str, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(CMDBError):
    code = "not_found"


class ValidationFailedError(CMDBError):
    """Raised with every field problem found, not just the first."""

    code = "validation_failed"

    def __init__(self, errors: list[FieldError], message: str = "Attribute validation failed.") -> None:
        super().__init__(message)
        self.errors = list(errors)


class ConflictError(CMDBError):
    code = "conflict"


class InvalidReferenceError(CMDBError):
    code = "invalid_reference"


class InternalError(CMDBError):
    code = "internal_error"
