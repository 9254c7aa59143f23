"""
Entity Store — owns every typed record and the rules for writing them.

All writes go through :meth:`EntityStore.upsert_record` and
:meth:`EntityStore.delete_record`. The store assigns identity and
timestamps, enforces required fields and custom-field types, derives
document totals and numbers, normalises polymorphic relation tags, keeps a
secondary index of child records per parent, and appends every committed
change to the audit trail.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Iterator

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from crmcore.analyzers.audit_trail import AuditAction, AuditTrail
from crmcore.config import CRMCoreConfig
from crmcore.exceptions import (
    NotFound,
    RelationIntegrityWarning,
    UnknownEntityType,
    ValidationError,
)
from crmcore.models.customization import (
    CustomEntityDefinition,
    CustomFieldDefinition,
    apply_custom_defaults,
    is_empty_value,
    validate_custom_data,
)
from crmcore.models.financial import calculate_line_item_totals, normalize_line_items, round_money
from crmcore.models.records import (
    SYSTEM_ACTOR,
    Communication,
    CustomRecord,
    EntityType,
    Record,
    Reference,
    User,
    match_entity_type,
)
from crmcore.models.schemas import TOTALED_ENTITY_TYPES, schema_for
from crmcore.store.interactions import (
    adjusted_score,
    build_follow_up_task,
    needs_follow_up,
    score_delta,
)
from crmcore.store.numbering import NUMBER_FIELDS, AllocatedNumber, DocumentNumbering
from crmcore.store.permissions import AccessPolicy, default_access_policy

logger = logging.getLogger("crmcore.store")

_IMMUTABLE_FIELDS = ("id", "created_at", "created_by")
_ONE_TICK = timedelta(microseconds=1)
_TOTALED = frozenset(t.value for t in TOTALED_ENTITY_TYPES)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _creation_order(record: Record) -> tuple[datetime, str]:
    return (record.created_at, record.id)


class EntityStore:
    """In-memory record store with generic CRUD and referential rules.

    Usage::

        store = EntityStore(CRMCoreConfig.load("crmcore.yaml"))
        lead = store.upsert_record("leads", {"name": "Ada", "email": "a@x.io",
                                             "company": "Acme", "phone": "555"})
        store.upsert_record("communications", {"related_to_type": "Leads",
                                                "related_to_id": lead.id})
        store.get_communications_for_entity("leads", lead.id)
    """

    def __init__(
        self,
        config: CRMCoreConfig | None = None,
        *,
        audit_trail: AuditTrail | None = None,
        access_policy: AccessPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        acting_user: User | str | None = None,
    ) -> None:
        self.config = config or CRMCoreConfig()
        self.audit_trail = audit_trail if audit_trail is not None else AuditTrail()
        self.access_policy: AccessPolicy = access_policy or default_access_policy
        self.acting_user = acting_user
        self.numbering = DocumentNumbering(self.config.numbering)
        self.integrity_warnings: list[RelationIntegrityWarning] = []

        self.clock = clock or _utcnow
        self._last_timestamp: datetime | None = None
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, Record]] = {t.value: {} for t in EntityType}
        self._custom_entities: dict[str, CustomEntityDefinition] = {}
        # (parent type tag, parent id) -> child collection -> child ids
        self._related_index: dict[tuple[str, str], dict[str, set[str]]] = {}

        for definition in self.config.custom_entities:
            self.register_custom_entity(definition)

    # ------------------------------------------------------------------
    # Entity types
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[EntityStore]:
        """Hold the store lock across a read-check-write sequence."""
        with self._lock:
            yield self

    def register_custom_entity(self, definition: CustomEntityDefinition) -> None:
        """Declare a new collection whose values live in ``custom_data``."""
        if match_entity_type(definition.id) is not None:
            raise ValueError(f"Custom entity id {definition.id!r} collides with a built-in collection")
        with self._lock:
            self._custom_entities[definition.id] = definition
            self._collections.setdefault(definition.id, {})
        logger.info("Registered custom entity %s (%d fields)", definition.id, len(definition.fields))

    def custom_entity(self, entity_type: str) -> CustomEntityDefinition | None:
        kind = self.canonical_type(entity_type)
        return self._custom_entities.get(kind) if kind else None

    def canonical_type(self, tag: str | EntityType | None) -> str | None:
        """Collection name for ``tag`` (case-insensitive), or None when unknown."""
        if tag is None:
            return None
        matched = match_entity_type(tag)
        if matched is not None:
            return matched.value
        raw = tag.value if isinstance(tag, Enum) else str(tag)
        if raw in self._custom_entities:
            return raw
        folded = raw.lower()
        for custom_id in self._custom_entities:
            if custom_id.lower() == folded:
                return custom_id
        return None

    def resolve_entity_type(self, entity_type: str | EntityType) -> str:
        kind = self.canonical_type(entity_type)
        if kind is None:
            raise UnknownEntityType(str(getattr(entity_type, "value", entity_type)))
        return kind

    def relation_tag(self, tag: str) -> str:
        """Index key for a relation type tag, case-folded so it survives later registrations."""
        return (self.canonical_type(tag) or str(tag)).lower()

    def collection_names(self) -> list[str]:
        return list(self._collections)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find_record(self, entity_type: str | EntityType, record_id: str | None) -> Record | None:
        kind = self.resolve_entity_type(entity_type)
        if record_id is None:
            return None
        with self._lock:
            return self._collections[kind].get(record_id)

    def get_record(self, entity_type: str | EntityType, record_id: str) -> Record:
        record = self.find_record(entity_type, record_id)
        if record is None:
            raise NotFound(self.resolve_entity_type(entity_type), record_id)
        return record

    def resolve_reference(self, reference: Reference | None) -> Record | None:
        """Look up the target of a polymorphic relation; None when dangling."""
        if reference is None:
            return None
        kind = self.canonical_type(reference.kind)
        if kind is None:
            return None
        with self._lock:
            return self._collections[kind].get(reference.id)

    def list_records(
        self,
        entity_type: str | EntityType,
        visible_to: User | str | None = None,
    ) -> list[Record]:
        """Records of a collection in insertion order, optionally filtered by visibility."""
        kind = self.resolve_entity_type(entity_type)
        with self._lock:
            records = list(self._collections[kind].values())
            if visible_to is None:
                return records
            user = self._resolve_user(visible_to)
            return [r for r in records if self.access_policy(r, user, self)]

    def count(self, entity_type: str | EntityType) -> int:
        kind = self.resolve_entity_type(entity_type)
        with self._lock:
            return len(self._collections[kind])

    def can_access_record(self, record: Record, user: User | str | None = None) -> bool:
        """Ask the access policy whether ``user`` (default: the acting user) may see ``record``."""
        with self._lock:
            resolved = self._resolve_user(user if user is not None else self.acting_user)
            return bool(self.access_policy(record, resolved, self))

    def related_matches(self, record: Record, entity_type: str, record_id: str) -> bool:
        """Raw relation predicate: same parent id and same type tag, ignoring case."""
        reference = record.reference
        if reference is None or reference.id != record_id:
            return False
        return self.relation_tag(reference.kind) == self.relation_tag(entity_type)

    def get_related_records(
        self,
        entity_type: str | EntityType,
        record_id: str,
        child_collections: Iterable[str] | None = None,
    ) -> dict[str, list[Record]]:
        """Child records pointing at ``(entity_type, record_id)``, per child collection.

        Served from the relation index; each list is in creation order.
        """
        parent_tag = self.relation_tag(getattr(entity_type, "value", entity_type))
        children = list(child_collections or self.config.audit.child_collections)
        with self._lock:
            bucket = self._related_index.get((parent_tag, record_id), {})
            result: dict[str, list[Record]] = {}
            for child in children:
                kind = self.resolve_entity_type(child)
                collection = self._collections[kind]
                records = [collection[i] for i in bucket.get(kind, ()) if i in collection]
                result[kind] = sorted(records, key=_creation_order)
            return result

    def get_communications_for_entity(
        self,
        entity_type: str | EntityType,
        record_id: str,
    ) -> list[Record]:
        comms = EntityType.COMMUNICATIONS.value
        return self.get_related_records(entity_type, record_id, [comms])[comms]

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        """JSON-ready copy of every collection."""
        with self._lock:
            return {
                kind: [r.to_dict() for r in records.values()]
                for kind, records in self._collections.items()
            }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_record(
        self,
        entity_type: str | EntityType,
        data: dict[str, Any] | BaseModel,
        *,
        actor: User | str | None = None,
        defaults: dict[str, Any] | None = None,
        audit_action: AuditAction | None = None,
        reason: str | None = None,
    ) -> Record:
        """Create (no ``id``) or shallow-merge update (``id`` present) a record.

        Raises:
            UnknownEntityType: ``entity_type`` is neither built in nor registered.
            NotFound: ``data["id"]`` does not exist in the collection.
            ValidationError: required fields are empty or values are malformed.
        """
        kind = self.resolve_entity_type(entity_type)
        payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        actor_id = self.actor_id(actor)

        with self._lock:
            collection = self._collections[kind]
            record_id = payload.get("id")
            existing = None
            if record_id:
                existing = collection.get(record_id)
                if existing is None:
                    raise NotFound(kind, record_id)

            now = self._now(existing)
            allocated = None
            if existing is not None:
                merged = {**existing.model_dump(), **payload}
                for name in _IMMUTABLE_FIELDS:
                    merged[name] = getattr(existing, name)
                merged["updated_at"] = now
            else:
                merged = {**(defaults or {}), **payload}
                merged["id"] = str(uuid.uuid4())
                merged["created_at"] = now
                merged["updated_at"] = now
                merged["created_by"] = actor_id
                if not merged.get("owner_id") and kind in self.config.access.default_assignments:
                    merged["owner_id"] = self.config.access.default_assignments[kind]
                allocated = self._assign_number(kind, merged, now)

            self._lift_custom_values(kind, merged)
            field_definitions = self._custom_field_definitions(kind)
            if existing is None:
                merged["custom_data"] = apply_custom_defaults(
                    field_definitions, merged.get("custom_data") or {}
                )

            warnings = self._normalize_relation(kind, merged, existing)
            self._validate_required(kind, merged, field_definitions)
            record = self._build(kind, merged)

            collection[record.id] = record
            self._reindex(kind, existing, record)
            if allocated is not None:
                self.numbering.commit(allocated)
            elif kind in NUMBER_FIELDS:
                self.numbering.observe(kind, merged.get(NUMBER_FIELDS[kind]))

            action = audit_action or (AuditAction.UPDATE if existing else AuditAction.CREATE)
            self._audit(action, kind, existing, record, actor_id, reason)
            for warning in warnings:
                self._warn(warning)

            logger.debug("%s %s/%s", action.value, kind, record.id)

            if existing is None and kind == EntityType.COMMUNICATIONS.value:
                self._apply_interaction_rules(record, actor_id)

            return record

    def delete_record(
        self,
        entity_type: str | EntityType,
        record_id: str,
        *,
        actor: User | str | None = None,
    ) -> None:
        """Remove one record. Children are not cascaded; they become orphans."""
        kind = self.resolve_entity_type(entity_type)
        with self._lock:
            existing = self._collections[kind].pop(record_id, None)
            if existing is None:
                raise NotFound(kind, record_id)
            self._reindex(kind, existing, None)
            self._audit(AuditAction.DELETE, kind, existing, None, self.actor_id(actor), None)
        logger.debug("delete %s/%s", kind, record_id)

    def load_records(
        self,
        entity_type: str | EntityType,
        rows: Iterable[dict[str, Any] | Record],
    ) -> int:
        """Bulk-load stored rows, keeping their identity and timestamps.

        Required-field rules, numbering and relation rewriting are skipped so
        persisted data comes back exactly as it was saved. Loaded document
        numbers still advance their series past the highest one seen.
        """
        kind = self.resolve_entity_type(entity_type)
        loaded = 0
        with self._lock:
            collection = self._collections[kind]
            for row in rows:
                payload = row.model_dump() if isinstance(row, BaseModel) else dict(row)
                if not payload.get("id"):
                    raise ValidationError(kind, missing_fields=["id"])
                now = self.clock()
                payload.setdefault("created_at", now)
                payload.setdefault("updated_at", payload["created_at"])
                record = self._build(kind, payload, derive_totals=False)
                record = record.model_copy(
                    update={
                        "created_at": _ensure_aware(record.created_at),
                        "updated_at": _ensure_aware(record.updated_at),
                    }
                )
                existing = collection.get(record.id)
                collection[record.id] = record
                self._reindex(kind, existing, record)
                if kind in NUMBER_FIELDS:
                    self.numbering.observe(kind, getattr(record, NUMBER_FIELDS[kind], None))
                loaded += 1
        logger.info("Loaded %d %s records", loaded, kind)
        return loaded

    def clear(self) -> None:
        with self._lock:
            for records in self._collections.values():
                records.clear()
            self._related_index.clear()
            self.integrity_warnings.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _now(self, existing: Record | None = None) -> datetime:
        """Current time, strictly after the last issued timestamp and ``existing.updated_at``."""
        now = _ensure_aware(self.clock())
        floor = self._last_timestamp
        if existing is not None and (floor is None or existing.updated_at > floor):
            floor = existing.updated_at
        if floor is not None and now <= floor:
            now = floor + _ONE_TICK
        self._last_timestamp = now
        return now

    def actor_id(self, actor: User | str | None) -> str:
        candidate = actor if actor is not None else self.acting_user
        if isinstance(candidate, User):
            return candidate.id
        return candidate or SYSTEM_ACTOR

    def _resolve_user(self, user: User | str | None) -> User | None:
        if user is None or isinstance(user, User):
            return user
        found = self._collections[EntityType.USERS.value].get(user)
        return found if isinstance(found, User) else None

    def _custom_field_definitions(self, kind: str) -> list[CustomFieldDefinition]:
        definition = self._custom_entities.get(kind)
        if definition is not None:
            return list(definition.fields)
        return list(self.config.custom_fields.get(kind, []))

    def _lift_custom_values(self, kind: str, merged: dict[str, Any]) -> None:
        """Move top-level values of custom-entity fields into ``custom_data``."""
        merged["custom_data"] = dict(merged.get("custom_data") or {})
        definition = self._custom_entities.get(kind)
        if definition is None:
            return
        for field_id in definition.field_ids:
            if field_id in merged and field_id not in Record.model_fields:
                merged["custom_data"][field_id] = merged.pop(field_id)

    def _assign_number(
        self, kind: str, merged: dict[str, Any], now: datetime
    ) -> AllocatedNumber | None:
        allocated = self.numbering.allocate(kind, len(self._collections[kind]), now.date())
        if allocated is None:
            return None
        if merged.get(allocated.field):
            return None
        merged[allocated.field] = allocated.value
        if kind == EntityType.INVOICES.value and not merged.get("invoice_date"):
            merged["invoice_date"] = merged.get("issue_date") or now.date()
        return allocated

    def _normalize_relation(
        self,
        kind: str,
        merged: dict[str, Any],
        existing: Record | None,
    ) -> list[RelationIntegrityWarning]:
        tag = merged.get("related_to_type")
        target = merged.get("related_to_id")
        if not tag:
            return []

        canonical = self.canonical_type(tag)
        if canonical is not None:
            merged["related_to_type"] = canonical

        if existing is not None and existing.reference == Reference(
            kind=merged["related_to_type"], id=str(target or "")
        ):
            return []
        if not target:
            return []

        if canonical is None:
            reason = "unknown_type"
        elif str(target) not in self._collections[canonical]:
            reason = "missing_parent"
        else:
            return []
        return [
            RelationIntegrityWarning(
                entity_type=kind,
                record_id=merged["id"],
                related_to_type=str(tag),
                related_to_id=str(target),
                reason=reason,
            )
        ]

    def _validate_required(
        self,
        kind: str,
        merged: dict[str, Any],
        field_definitions: list[CustomFieldDefinition],
    ) -> None:
        missing = [
            name for name in self.config.validation.required_for(kind)
            if is_empty_value(merged.get(name))
        ]
        custom_missing, invalid = validate_custom_data(field_definitions, merged["custom_data"])
        missing.extend(name for name in custom_missing if name not in missing)
        if missing or invalid:
            raise ValidationError(kind, missing_fields=missing, invalid_fields=invalid)

    def _build(self, kind: str, merged: dict[str, Any], *, derive_totals: bool = True) -> Record:
        schema = CustomRecord if kind in self._custom_entities else schema_for(EntityType(kind))
        try:
            if derive_totals and kind in _TOTALED:
                self._derive_totals(kind, merged)
            return schema.model_validate(merged)
        except SchemaError as exc:
            raise self._schema_error(kind, exc) from exc

    @staticmethod
    def _derive_totals(kind: str, merged: dict[str, Any]) -> None:
        items = normalize_line_items(merged.get("line_items") or [])
        totals = calculate_line_item_totals(items)
        merged["line_items"] = items
        merged["subtotal"] = totals.subtotal
        merged["tax_total"] = totals.tax_total
        merged["total"] = totals.total
        if kind == EntityType.INVOICES.value:
            merged["balance_due"] = round_money(totals.total - float(merged.get("amount_paid") or 0))

    @staticmethod
    def _schema_error(kind: str, exc: SchemaError) -> ValidationError:
        missing: list[str] = []
        invalid: dict[str, str] = {}
        for error in exc.errors():
            name = ".".join(str(part) for part in error["loc"]) or "record"
            if error["type"] == "missing":
                missing.append(name)
            else:
                invalid[name] = error["msg"]
        return ValidationError(kind, missing_fields=missing, invalid_fields=invalid)

    def _relation_key(self, record: Record | None) -> tuple[str, str] | None:
        if record is None:
            return None
        reference = record.reference
        if reference is None:
            return None
        return (self.relation_tag(reference.kind), reference.id)

    def _reindex(self, kind: str, old: Record | None, new: Record | None) -> None:
        old_key = self._relation_key(old)
        new_key = self._relation_key(new)
        if old is not None and new is not None and old_key == new_key:
            return
        if old_key is not None and old is not None:
            bucket = self._related_index.get(old_key, {}).get(kind)
            if bucket is not None:
                bucket.discard(old.id)
        if new_key is not None and new is not None:
            self._related_index.setdefault(new_key, {}).setdefault(kind, set()).add(new.id)

    def _audit(
        self,
        action: AuditAction,
        kind: str,
        old: Record | None,
        new: Record | None,
        actor_id: str,
        reason: str | None,
    ) -> None:
        if not self.config.audit.enabled:
            return
        record = new or old
        self.audit_trail.log(
            user_id=actor_id,
            action=action,
            entity_type=kind,
            entity_id=record.id if record else "",
            old_values=old.to_dict() if old else None,
            new_values=new.to_dict() if new else None,
            reason=reason,
        )

    def _warn(self, warning: RelationIntegrityWarning) -> None:
        self.integrity_warnings.append(warning)
        logger.warning("Relation integrity: %s", warning)

    def _apply_interaction_rules(self, record: Record, actor_id: str) -> None:
        rules = self.config.interaction_rules
        if not rules.enabled or not isinstance(record, Communication):
            return

        if record.related_to_type == EntityType.LEADS.value and record.related_to_id:
            lead = self._collections[EntityType.LEADS.value].get(record.related_to_id)
            delta = score_delta(rules, record.outcome)
            if lead is not None and delta:
                new_score = adjusted_score(int(getattr(lead, "score", 0) or 0), delta)
                updated = lead.model_copy(update={"score": new_score, "updated_at": self._now(lead)})
                self._collections[EntityType.LEADS.value][lead.id] = updated
                self._audit(
                    AuditAction.UPDATE,
                    EntityType.LEADS.value,
                    lead,
                    updated,
                    SYSTEM_ACTOR,
                    f"interaction outcome {record.outcome}",
                )
                logger.info("Lead %s score %+d -> %d", lead.id, delta, new_score)

        if needs_follow_up(rules, record):
            task = build_follow_up_task(rules, record, actor_id, self.clock())
            try:
                self.upsert_record(EntityType.TASKS.value, task, actor=SYSTEM_ACTOR)
            except ValidationError as exc:
                logger.warning("Follow-up task for communication %s not created: %s", record.id, exc)

