"""
Audit Trail — change history for every record the store commits.

Provides:
- Full change history per record
- Data versioning (one snapshot per create/update)
- Reconciliation decisions (match, ignore, unmatch) with the acting user
- A SHA-256 checksum chain so edits to past entries are detectable
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AuditAction(str, Enum):
    """Types of auditable actions."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MATCH = "match"
    IGNORE = "ignore"
    UNMATCH = "unmatch"
    PAYMENT = "payment"
    CONVERT = "convert"


@dataclass
class AuditEntry:
    """An immutable audit log entry."""

    id: str
    timestamp: datetime

    # Who
    user_id: str

    # What
    action: AuditAction
    entity_type: str
    entity_id: str

    # Changes
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    changed_fields: list[str] = field(default_factory=list)

    # Context
    reason: str | None = None

    # Integrity
    checksum: str = ""
    previous_checksum: str | None = None  # Chain to previous entry

    def __post_init__(self) -> None:
        if not self.checksum:
            self.checksum = self._calculate_checksum()

    def _calculate_checksum(self) -> str:
        """Calculate SHA-256 checksum of entry."""
        data = json.dumps({
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "action": self.action.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "reason": self.reason,
            "previous_checksum": self.previous_checksum,
        }, sort_keys=True, default=str)

        return hashlib.sha256(data.encode()).hexdigest()

    def verify_integrity(self) -> bool:
        """Verify entry has not been tampered with."""
        return self.checksum == self._calculate_checksum()


@dataclass
class DataVersion:
    """A versioned snapshot of a record."""

    entity_type: str
    entity_id: str
    version: int
    data: dict[str, Any]
    timestamp: datetime
    created_by: str
    audit_entry_id: str | None = None


class AuditTrail:
    """Append-only change log.

    Usage::

        audit = AuditTrail()
        audit.log(
            user_id="u1",
            action=AuditAction.UPDATE,
            entity_type="deals",
            entity_id="d-42",
            old_values={"amount": 100.0},
            new_values={"amount": 150.0},
        )
        history = audit.get_entity_history("deals", "d-42")
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._versions: dict[str, list[DataVersion]] = {}  # "type:id" -> versions
        self._last_checksum: str | None = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[AuditEntry]:
        return list(self._entries)

    def log(
        self,
        user_id: str,
        action: AuditAction,
        entity_type: str,
        entity_id: str,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> AuditEntry:
        """Log an auditable action.

        Args:
            user_id: ID of user performing action.
            action: Type of action.
            entity_type: Collection of the affected record.
            entity_id: ID of the record.
            old_values: Previous values (for updates and deletes).
            new_values: New values.
            reason: Free-form note, e.g. reconciliation notes.

        Returns:
            The created audit entry.
        """
        changed_fields: list[str] = []
        if old_values is not None and new_values is not None:
            all_keys = set(old_values) | set(new_values)
            changed_fields = sorted(
                k for k in all_keys if old_values.get(k) != new_values.get(k)
            )

        with self._lock:
            entry = AuditEntry(
                id=f"audit_{uuid.uuid4().hex}",
                timestamp=datetime.now(timezone.utc),
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                old_values=old_values,
                new_values=new_values,
                changed_fields=changed_fields,
                reason=reason,
                previous_checksum=self._last_checksum,
            )

            self._entries.append(entry)
            self._last_checksum = entry.checksum

            if action != AuditAction.DELETE and new_values:
                self._store_version(entry, new_values)

        return entry

    def _store_version(self, entry: AuditEntry, data: dict[str, Any]) -> DataVersion:
        key = f"{entry.entity_type}:{entry.entity_id}"
        versions = self._versions.setdefault(key, [])
        version = DataVersion(
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            version=len(versions) + 1,
            data=dict(data),
            timestamp=entry.timestamp,
            created_by=entry.user_id,
            audit_entry_id=entry.id,
        )
        versions.append(version)
        return version

    def get_entity_history(self, entity_type: str, entity_id: str) -> list[AuditEntry]:
        """Get complete audit history for a record."""
        return [
            e for e in self._entries
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def get_entity_versions(self, entity_type: str, entity_id: str) -> list[DataVersion]:
        """Get all versions of a record."""
        return list(self._versions.get(f"{entity_type}:{entity_id}", []))

    def get_version(self, entity_type: str, entity_id: str, version: int) -> DataVersion | None:
        for v in self.get_entity_versions(entity_type, entity_id):
            if v.version == version:
                return v
        return None

    def get_user_activity(self, user_id: str) -> list[AuditEntry]:
        return [e for e in self._entries if e.user_id == user_id]

    def search_entries(
        self,
        action: AuditAction | None = None,
        entity_type: str | None = None,
        user_id: str | None = None,
    ) -> list[AuditEntry]:
        """Search audit entries with filters."""
        entries = self._entries.copy()

        if action:
            entries = [e for e in entries if e.action == action]
        if entity_type:
            entries = [e for e in entries if e.entity_type == entity_type]
        if user_id:
            entries = [e for e in entries if e.user_id == user_id]

        return entries

    def verify_chain(self) -> tuple[bool, list[str]]:
        """Verify the audit log chain integrity.

        Returns:
            Tuple of (is_valid, list of error messages).
        """
        errors = []

        if not self._entries:
            return True, []

        if self._entries[0].previous_checksum is not None:
            errors.append("Entry 0: unexpected previous checksum")

        for i, entry in enumerate(self._entries):
            if not entry.verify_integrity():
                errors.append(f"Entry {i}: checksum mismatch (possible tampering)")

            if i > 0 and entry.previous_checksum != self._entries[i - 1].checksum:
                errors.append(f"Entry {i}: chain broken (previous checksum mismatch)")

        return len(errors) == 0, errors

    def export(self) -> dict[str, Any]:
        """Export all entries as JSON-ready data."""
        return {
            "export_timestamp": datetime.now(timezone.utc).isoformat(),
            "total_entries": len(self._entries),
            "entries": [
                {
                    "id": e.id,
                    "timestamp": e.timestamp.isoformat(),
                    "user_id": e.user_id,
                    "action": e.action.value,
                    "entity_type": e.entity_type,
                    "entity_id": e.entity_id,
                    "changed_fields": e.changed_fields,
                    "reason": e.reason,
                    "checksum": e.checksum,
                }
                for e in self._entries
            ],
        }
