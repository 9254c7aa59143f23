"""
Errors raised by the entity store and reconciliation engine, plus the
non-fatal integrity diagnostics that are collected rather than raised.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def humanize_field(name: str) -> str:
    """``expectedCloseDate`` / ``expected_close_date`` -> ``Expected Close Date``."""
    spaced = _CAMEL_BOUNDARY.sub(r" \1", name).replace("_", " ").strip()
    return " ".join(word[:1].upper() + word[1:] for word in spaced.split())


class CRMCoreError(Exception):
    """Base class for all crmcore errors."""


class ValidationError(CRMCoreError):
    """Required fields are missing or values are malformed. Fix the input and retry."""

    def __init__(
        self,
        entity_type: str,
        missing_fields: list[str] | None = None,
        invalid_fields: dict[str, str] | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.missing_fields = list(missing_fields or [])
        self.invalid_fields = dict(invalid_fields or {})
        parts = []
        if self.missing_fields:
            parts.append(f"missing required fields: {', '.join(self.missing_fields)}")
        if self.invalid_fields:
            parts.append(
                "invalid fields: "
                + ", ".join(f"{k} ({v})" for k, v in self.invalid_fields.items())
            )
        super().__init__(f"{entity_type}: " + "; ".join(parts or ["validation failed"]))

    def user_message(self) -> str:
        """Message suitable for showing to the person filling in the form."""
        lines = []
        if self.missing_fields:
            names = ", ".join(humanize_field(f) for f in self.missing_fields)
            lines.append(f"Please fill in the following required fields: {names}")
        for name, problem in self.invalid_fields.items():
            lines.append(f"{humanize_field(name)} {problem}")
        return "\n".join(lines)


class NotFound(CRMCoreError):
    """The referenced record does not exist in the target collection."""

    def __init__(self, entity_type: str, record_id: str | None = None) -> None:
        self.entity_type = entity_type
        self.record_id = record_id
        if record_id is None:
            super().__init__(f"Unknown collection: {entity_type}")
        else:
            super().__init__(f"{entity_type}/{record_id} not found")


class UnknownEntityType(NotFound):
    """The entity type is neither built in nor a registered custom entity."""

    def __init__(self, entity_type: str) -> None:
        super().__init__(entity_type)


class InvalidMatch(CRMCoreError):
    """A match target is missing or already held by another transaction."""


class InvalidTransition(CRMCoreError):
    """The requested reconciliation action is not allowed from the current status."""

    def __init__(self, transaction_id: str, status: str, action: str) -> None:
        self.transaction_id = transaction_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} transaction {transaction_id} while it is {status}")


@dataclass(frozen=True)
class RelationIntegrityWarning:
    """A dangling or mis-typed ``related_to_type``/``related_to_id`` pair."""

    entity_type: str
    record_id: str
    related_to_type: str
    related_to_id: str
    reason: str  # unknown_type, missing_parent

    def __str__(self) -> str:
        return (
            f"{self.entity_type}/{self.record_id} -> "
            f"{self.related_to_type}/{self.related_to_id}: {self.reason}"
        )


@dataclass(frozen=True)
class SelectorInconsistency:
    """A derived view disagreed with a raw scan of the same predicate."""

    selector: str
    entity_type: str
    record_id: str
    child_collection: str
    expected_ids: tuple[str, ...] = ()
    actual_ids: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)
