"""
cmdb/validation.py -- Schema validation for user-defined CI attributes.

A CI type declares which attributes its CIs must or may carry, the type of
each, and optional constraints. validate() checks an attribute map against
that declaration and returns every problem found as a FieldError list; an
empty list means the map is valid. It never raises for bad data, only for a
definition that declares a type this module does not know (a programming
error, because definitions are checked by validate_definition() on write).

Values are first classified into a closed set of kinds (classify()), and all
checks dispatch on the kind. JSON numbers arrive as int or float; a declared
"integer" accepts any finite number and bounds compare int(value), so 7.9
is treated as 7.

Format checks are deliberately shallow syntactic approximations:
  email    -- 4..253 chars, contains "@", not first or last
  url      -- starts with http:// or https://
  ipv4     -- four dot-separated groups of 1-3 ASCII digits (no range check)
  date     -- 10 chars, "-" at offsets 4 and 7
  datetime -- 19+ chars, "-" at 4 and 7, "T" at 10, ":" at 13 and 16

Pure module: no I/O, no logging, no imports from store or service layers.
"""

import math
import re
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Optional

from cmdb.models import (
    ATTRIBUTE_FORMATS,
    ATTRIBUTE_TYPES,
    AttributeDefinition,
    AttributeValidation,
    CITypeDefinition,
    FieldError,
)

MISSING_MESSAGE = "required field is missing"
UNKNOWN_MESSAGE = "unknown attribute for this CI type"


class AttributeKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    NULL = "null"
    OTHER = "other"


def classify(value: Any) -> AttributeKind:
    """Return the kind of a JSON-compatible attribute value.

    bool is checked before int because bool subclasses int in Python.
    NaN and infinities cannot come from JSON and are classified OTHER.
    """
    if value is None:
        return AttributeKind.NULL
    if isinstance(value, bool):
        return AttributeKind.BOOLEAN
    if isinstance(value, str):
        return AttributeKind.STRING
    if isinstance(value, int):
        return AttributeKind.NUMBER
    if isinstance(value, float):
        return AttributeKind.NUMBER if math.isfinite(value) else AttributeKind.OTHER
    if isinstance(value, (list, tuple)):
        return AttributeKind.ARRAY
    if isinstance(value, dict):
        return AttributeKind.OBJECT
    return AttributeKind.OTHER


# Declared type -> (accepted kind, message on mismatch)
_TYPE_RULES: dict[str, tuple[AttributeKind, str]] = {
    "string": (AttributeKind.STRING, "must be a string"),
    "integer": (AttributeKind.NUMBER, "must be an integer"),
    "boolean": (AttributeKind.BOOLEAN, "must be a boolean"),
    "array": (AttributeKind.ARRAY, "must be an array"),
    "object": (AttributeKind.OBJECT, "must be an object"),
}

# ---------------------------------------------------------------------------
# Format checks
# ---------------------------------------------------------------------------


def _is_email(value: str) -> bool:
    return 3 < len(value) < 254 and "@" in value and not value.startswith("@") and not value.endswith("@")


def _is_url(value: str) -> bool:
    return len(value) > 7 and value.startswith(("http://", "https://"))


def _is_ipv4(value: str) -> bool:
    parts = value.split(".")
    if len(parts) != 4:
        return False
    return all(1 <= len(part) <= 3 and all("0" <= ch <= "9" for ch in part) for part in parts)


def _is_date(value: str) -> bool:
    return len(value) == 10 and value[4] == "-" and value[7] == "-"


def _is_datetime(value: str) -> bool:
    if len(value) < 19:
        return False
    return value[4] == "-" and value[7] == "-" and value[10] == "T" and value[13] == ":" and value[16] == ":"


_FORMATS: dict[str, tuple[Callable[[str], bool], str]] = {
    "email": (_is_email, "must be a valid email address"),
    "url": (_is_url, "must be a valid URL"),
    "ipv4": (_is_ipv4, "must be a valid IPv4 address"),
    "date": (_is_date, "must be a valid date (YYYY-MM-DD)"),
    "datetime": (_is_datetime, "must be a valid datetime (ISO 8601)"),
}


@lru_cache(maxsize=256)
def _compile(pattern: str) -> Optional[re.Pattern]:
    try:
        return re.compile(pattern)
    except re.error:
        return None


def _matches(pattern: str, value: str) -> bool:
    compiled = _compile(pattern)
    return compiled is not None and compiled.search(value) is not None


# ---------------------------------------------------------------------------
# Per-kind constraint checks
# ---------------------------------------------------------------------------


def _check_string(name: str, value: str, rules: AttributeValidation) -> list[FieldError]:
    errors: list[FieldError] = []
    if rules.min_length is not None and len(value) < rules.min_length:
        errors.append(FieldError(name, f"minimum length is {rules.min_length}"))
    if rules.max_length is not None and len(value) > rules.max_length:
        errors.append(FieldError(name, f"maximum length is {rules.max_length}"))
    if rules.pattern and not _matches(rules.pattern, value):
        errors.append(FieldError(name, f"must match pattern: {rules.pattern}"))
    if rules.format and rules.format in _FORMATS:
        check, message = _FORMATS[rules.format]
        if not check(value):
            errors.append(FieldError(name, message))
    if rules.enum and value not in rules.enum:
        errors.append(FieldError(name, _enum_message(rules.enum)))
    return errors


def _check_number(name: str, value: float, rules: AttributeValidation) -> list[FieldError]:
    errors: list[FieldError] = []
    number = int(value)
    if rules.min is not None and number < rules.min:
        errors.append(FieldError(name, f"minimum value is {rules.min}"))
    if rules.max is not None and number > rules.max:
        errors.append(FieldError(name, f"maximum value is {rules.max}"))
    return errors


def _check_array(name: str, value: list, rules: AttributeValidation) -> list[FieldError]:
    errors: list[FieldError] = []
    if rules.min_length is not None and len(value) < rules.min_length:
        errors.append(FieldError(name, f"array must have at least {rules.min_length} items"))
    if rules.max_length is not None and len(value) > rules.max_length:
        errors.append(FieldError(name, f"array must have at most {rules.max_length} items"))
    if rules.enum:
        for index, item in enumerate(value):
            if isinstance(item, str) and item not in rules.enum:
                errors.append(FieldError(f"{name}[{index}]", _enum_message(rules.enum)))
    return errors


def _check_object(name: str, value: dict, rules: AttributeValidation) -> list[FieldError]:
    errors: list[FieldError] = []
    if rules.min_length is not None and len(value) < rules.min_length:
        errors.append(FieldError(name, f"object must have at least {rules.min_length} properties"))
    if rules.max_length is not None and len(value) > rules.max_length:
        errors.append(FieldError(name, f"object must have at most {rules.max_length} properties"))
    return errors


def _check_nothing(name: str, value: Any, rules: AttributeValidation) -> list[FieldError]:
    return []


_KIND_CHECKS: dict[AttributeKind, Callable[[str, Any, AttributeValidation], list[FieldError]]] = {
    AttributeKind.STRING: _check_string,
    AttributeKind.NUMBER: _check_number,
    AttributeKind.ARRAY: _check_array,
    AttributeKind.OBJECT: _check_object,
    AttributeKind.BOOLEAN: _check_nothing,
}


def _enum_message(allowed: list[str]) -> str:
    return f"value must be one of: {', '.join(allowed)}"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_value(definition: AttributeDefinition, value: Any) -> list[FieldError]:
    """Validate one non-null value against its attribute definition.

    A type mismatch is reported alone; constraint checks only run on values of
    the declared type.
    """
    rule = _TYPE_RULES.get(definition.type)
    if rule is None:
        raise ValueError(f"attribute {definition.name!r} declares unsupported type {definition.type!r}")
    expected, message = rule
    kind = classify(value)
    if kind is not expected:
        return [FieldError(definition.name, message)]
    if definition.validation is None:
        return []
    return _KIND_CHECKS[kind](definition.name, value, definition.validation)


def validate(schema: CITypeDefinition, attributes: dict[str, Any]) -> list[FieldError]:
    """Return every problem with attributes under schema, in a stable order.

    Order: required attributes (declaration order), then present optional
    attributes, then unknown keys in the order they appear in attributes.
    A null value counts as absent.
    """
    errors: list[FieldError] = []
    known: set[str] = set()

    for definition in schema.required_attributes:
        known.add(definition.name)
        value = attributes.get(definition.name)
        if value is None:
            errors.append(FieldError(definition.name, MISSING_MESSAGE))
            continue
        errors.extend(validate_value(definition, value))

    for definition in schema.optional_attributes:
        known.add(definition.name)
        value = attributes.get(definition.name)
        if value is None:
            continue
        errors.extend(validate_value(definition, value))

    for key in attributes:
        if key not in known:
            errors.append(FieldError(key, UNKNOWN_MESSAGE))

    return errors


def validate_definition(
    required: list[AttributeDefinition],
    optional: list[AttributeDefinition],
) -> list[FieldError]:
    """Check a CI type's attribute lists before they are stored.

    Rejects empty, padded or duplicate names, names present in both lists, unknown
    types or formats, patterns that do not compile, negative lengths and
    inverted bounds.
    """
    errors: list[FieldError] = []
    required_names: set[str] = set()
    optional_names: set[str] = set()

    for group, definitions, seen in (
        ("required", required, required_names),
        ("optional", optional, optional_names),
    ):
        field_prefix = f"{group}_attributes"
        for index, definition in enumerate(definitions):
            name = definition.name.strip()
            if not name:
                errors.append(FieldError(f"{field_prefix}[{index}].name", "attribute name must not be empty"))
                continue
            if name != definition.name:
                errors.append(
                    FieldError(f"{field_prefix}[{index}].name", "attribute name must not have surrounding whitespace")
                )
                continue
            if name in seen:
                errors.append(FieldError(field_prefix, f"duplicate {group} attribute name: {name}"))
            seen.add(name)
            errors.extend(_check_definition(f"{field_prefix}.{name}", definition))

    for name in sorted(required_names & optional_names):
        errors.append(FieldError("optional_attributes", f"attribute '{name}' exists in both required and optional"))

    return errors


def _check_definition(path: str, definition: AttributeDefinition) -> list[FieldError]:
    errors: list[FieldError] = []
    if definition.type not in ATTRIBUTE_TYPES:
        errors.append(FieldError(f"{path}.type", f"unsupported attribute type: {definition.type}"))
    rules = definition.validation
    if rules is None:
        return errors
    if rules.format and rules.format not in ATTRIBUTE_FORMATS:
        errors.append(FieldError(f"{path}.format", f"unsupported format: {rules.format}"))
    if rules.pattern and _compile(rules.pattern) is None:
        errors.append(FieldError(f"{path}.pattern", f"invalid pattern: {rules.pattern}"))
    for label, bound in (("min_length", rules.min_length), ("max_length", rules.max_length)):
        if bound is not None and bound < 0:
            errors.append(FieldError(f"{path}.{label}", f"{label} must not be negative"))
    if rules.min_length is not None and rules.max_length is not None and rules.min_length > rules.max_length:
        errors.append(FieldError(f"{path}.min_length", "min_length must not exceed max_length"))
    if rules.min is not None and rules.max is not None and rules.min > rules.max:
        errors.append(FieldError(f"{path}.min", "min must not exceed max"))
    return errors
