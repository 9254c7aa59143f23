"""
Custom field and custom entity definitions — blueprint-driven extensibility.

Custom fields extend a built-in entity type; custom entities are whole new
collections described only by their field list. Values for both live in the
owning record's ``custom_data`` map.
"""

from __future__ import annotations

from datetime import date, time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class CustomFieldType(str, Enum):
    """Input types a custom field can declare."""

    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    CURRENCY = "currency"
    SELECT = "select"
    DATE = "date"
    TIME = "time"
    CHECKBOX = "checkbox"
    BOOLEAN = "boolean"
    EMAIL = "email"
    TEL = "tel"
    SIGNATURE = "signature"
    FILE = "file"
    BARCODE = "barcode"


class CustomFieldDefinition(BaseModel):
    """One field in a custom-field list or custom-entity blueprint."""

    id: str = Field(description="Key used in custom_data")
    label: str = ""
    type: CustomFieldType = CustomFieldType.TEXT
    required: bool = False
    options: list[str] | None = Field(default=None, description="Allowed values for select fields")
    default_value: Any = None
    placeholder: str | None = None
    help_text: str | None = None


class CustomEntityDefinition(BaseModel):
    """A blueprint-declared entity type (e.g. "properties", "installations")."""

    id: str = Field(description="Collection name used as the entity type tag")
    name: str = ""
    name_plural: str = ""
    icon: str = ""
    fields: list[CustomFieldDefinition] = Field(default_factory=list)
    relation_to: list[str] = Field(default_factory=list)
    has_timeline: bool = False
    has_documents: bool = False

    @property
    def required_fields(self) -> list[str]:
        return [f.id for f in self.fields if f.required]

    @property
    def field_ids(self) -> set[str]:
        return {f.id for f in self.fields}


def is_empty_value(value: Any) -> bool:
    """A required value is missing when None, an empty string, or an empty list."""
    if value is None:
        return True
    if isinstance(value, str) and value == "":
        return True
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return True
    return False


def check_custom_value(definition: CustomFieldDefinition, value: Any) -> str | None:
    """Return an error message when ``value`` does not fit the field type."""
    if is_empty_value(value):
        return None

    kind = definition.type
    if kind in (CustomFieldType.NUMBER, CustomFieldType.CURRENCY):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return "must be a number"
    elif kind in (CustomFieldType.CHECKBOX, CustomFieldType.BOOLEAN):
        if not isinstance(value, bool):
            return "must be true or false"
    elif kind == CustomFieldType.SELECT:
        allowed = definition.options or []
        if value not in allowed:
            return f"must be one of: {', '.join(allowed)}"
    elif kind == CustomFieldType.DATE:
        if isinstance(value, date):
            return None
        try:
            date.fromisoformat(str(value))
        except ValueError:
            return "must be an ISO date"
    elif kind == CustomFieldType.TIME:
        if isinstance(value, time):
            return None
        try:
            time.fromisoformat(str(value))
        except ValueError:
            return "must be an ISO time"
    elif kind == CustomFieldType.EMAIL:
        if not isinstance(value, str) or "@" not in value:
            return "must be an email address"
    return None


def validate_custom_data(
    definitions: list[CustomFieldDefinition],
    values: dict[str, Any],
) -> tuple[list[str], dict[str, str]]:
    """Check ``values`` against ``definitions``.

    Returns:
        (missing required field ids, {field id: problem} for malformed values)
    """
    missing: list[str] = []
    invalid: dict[str, str] = {}
    for definition in definitions:
        value = values.get(definition.id)
        if definition.required and is_empty_value(value):
            missing.append(definition.id)
            continue
        problem = check_custom_value(definition, value)
        if problem:
            invalid[definition.id] = problem
    return missing, invalid


def apply_custom_defaults(
    definitions: list[CustomFieldDefinition],
    values: dict[str, Any],
) -> dict[str, Any]:
    """Fill unset values from each definition's default."""
    result = dict(values)
    for definition in definitions:
        if definition.default_value is not None and is_empty_value(result.get(definition.id)):
            result[definition.id] = definition.default_value
    return result
