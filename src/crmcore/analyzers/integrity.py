"""
Integrity Auditor — structural and relational health checks over the store.

Checks:
- Settings dictionaries and organisation name are populated
- Polymorphic relations use the canonical key and type tag, and resolve
- The related-records index agrees with a raw scan (selector consistency)
- Tab coverage and persona-filter visibility for a sample of parents
- Seed sanity (enough users, some leads)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from crmcore.config import CRMCoreConfig
from crmcore.exceptions import SelectorInconsistency
from crmcore.models.records import EntityType, Record, User
from crmcore.models.report import (
    AuditFailure,
    CollectionVisibility,
    FailureCode,
    IntegrityReport,
    IntegritySummary,
    OrphanReference,
    PersonaFilterImpact,
    RelationshipHealth,
    SeedIntegrity,
    SelectorDiscrepancy,
    SettingsCheck,
    SettingsHealth,
    TabCoverage,
)

if TYPE_CHECKING:
    from crmcore.store.entity_store import EntityStore

logger = logging.getLogger("crmcore.analyzers.integrity")

_SELECTOR_PARENTS = (EntityType.LEADS.value, EntityType.ACCOUNTS.value)
_TAB_PARENTS = (EntityType.LEADS.value, EntityType.ACCOUNTS.value, EntityType.DEALS.value)
_PERSONA_COLLECTIONS = (
    EntityType.LEADS.value,
    EntityType.DEALS.value,
    EntityType.ACCOUNTS.value,
    EntityType.TICKETS.value,
)
_TABS = {
    "COMMS": EntityType.COMMUNICATIONS.value,
    "TASKS": EntityType.TASKS.value,
    "DOCS": EntityType.DOCUMENTS.value,
}


class _CheckCounter:
    """Counts each check once, however many failures it produced."""

    def __init__(self) -> None:
        self.total = 0
        self.failed = 0

    def record(self, ok: bool) -> None:
        self.total += 1
        if not ok:
            self.failed += 1


class IntegrityAuditor:
    """
    Audit an entity store and produce an :class:`IntegrityReport`.

    Example usage:
        report = IntegrityAuditor(store).run(user=current_user)
        print(report.summary.integrity_score)
        for failure in report.failures:
            print(failure.failure_code, failure.record_id)
    """

    def __init__(self, store: EntityStore, config: CRMCoreConfig | None = None) -> None:
        self.store = store
        self.config = config or store.config
        self.inconsistencies: list[SelectorInconsistency] = []

    def run(self, user: User | str | None = None) -> IntegrityReport:
        """Run every check against the current committed state."""
        failures: list[AuditFailure] = []
        checks = _CheckCounter()
        self.inconsistencies = []

        with self.store.transaction():
            collections = {name: self.store.count(name) for name in self.store.collection_names()}
            settings = self._check_settings(failures, checks)
            relationships = self._check_relationships(failures, checks)
            discrepancies = self._check_selectors(failures, checks)
            tab_coverage = self._tab_coverage()
            persona = self._persona_filters(user)
            seed = self._seed_integrity()

        passed = checks.total - checks.failed
        score = 100 if checks.total == 0 else round(passed / checks.total * 100)
        report = IntegrityReport(
            summary=IntegritySummary(
                total_checks=checks.total,
                passed=passed,
                failed=checks.failed,
                integrity_score=score,
            ),
            collections=collections,
            settings=settings,
            relationships=relationships,
            selector_discrepancies=discrepancies,
            tab_coverage=tab_coverage,
            persona_filters=persona,
            seed_integrity=seed,
            failures=failures,
        )
        logger.info(
            "Integrity audit: %d/%d checks passed, %d failures",
            passed, checks.total, len(failures),
        )
        return report

    # ------------------------------------------------------------------

    def _check_settings(self, failures: list[AuditFailure], checks: _CheckCounter) -> SettingsHealth:
        dictionaries = self.config.dictionaries
        result: dict[str, SettingsCheck] = {}

        for key, values in dictionaries.required_dictionaries().items():
            ok = bool(values)
            checks.record(ok)
            result[key] = SettingsCheck(
                ok=ok, issues=[] if ok else [f"Dictionary '{key}' is empty or undefined."]
            )
            if not ok:
                failures.append(AuditFailure(
                    failure_code=FailureCode.SETTINGS_WIPE,
                    entity_type="settings",
                    record_id=key,
                    expected="Populated dictionary",
                    actual="Empty or undefined",
                    likely_cause="Settings were overwritten with an incomplete payload.",
                    where_to_look="crmcore config file / dictionaries section",
                ))

        branding_ok = bool(dictionaries.organization_name)
        checks.record(branding_ok)
        result["branding"] = SettingsCheck(
            ok=branding_ok, issues=[] if branding_ok else ["Organization name is missing."]
        )
        if not branding_ok:
            failures.append(AuditFailure(
                failure_code=FailureCode.SETTINGS_WIPE,
                entity_type="settings",
                record_id="branding",
                expected="Defined organization name",
                actual="Undefined",
                likely_cause="Organization name missing from the settings used at start-up.",
                where_to_look="crmcore config file / dictionaries.organization_name",
            ))

        healthy = all(check.ok for check in result.values())
        return SettingsHealth(health="healthy" if healthy else "unhealthy", checks=result)

    def _check_relationships(
        self,
        failures: list[AuditFailure],
        checks: _CheckCounter,
    ) -> RelationshipHealth:
        health = RelationshipHealth()
        for child in self.config.audit.child_collections:
            kind = self.store.resolve_entity_type(child)
            for record in self.store.list_records(kind):
                found = self._check_relation(record, kind, health)
                if found is None:
                    continue
                failures.extend(found)
                checks.record(not found)
        health.orphan_count = len(health.orphans)
        return health

    def _check_relation(
        self,
        record: Record,
        child_type: str,
        health: RelationshipHealth,
    ) -> list[AuditFailure] | None:
        """Failures for one child record, or None when it carries no relation."""
        tag = getattr(record, "related_to_type", None)
        target = getattr(record, "related_to_id", None)
        legacy = getattr(record, "related_entity_id", None)

        if not target and legacy:
            return [AuditFailure(
                failure_code=FailureCode.RELATION_KEY_MISMATCH,
                entity_type=child_type,
                record_id=record.id,
                expected="related_to_id",
                actual="related_entity_id",
                likely_cause="Legacy key name used when the record was written.",
                where_to_look="importer or connector that produced the row",
            )]
        if not tag or not target:
            return None

        found: list[AuditFailure] = []
        canonical = self.store.canonical_type(tag)

        if canonical is not None and canonical != tag:
            health.casing_issues.append(f"{child_type}/{record.id}: {tag!r} should be {canonical!r}")
            found.append(AuditFailure(
                failure_code=FailureCode.RELATION_CASING_MISMATCH,
                entity_type=child_type,
                record_id=record.id,
                expected=canonical,
                actual=tag,
                likely_cause="Type tag stored in a non-canonical case.",
                where_to_look="rows loaded without going through upsert_record",
            ))

        if canonical is None or self.store.find_record(canonical, target) is None:
            health.orphans.append(OrphanReference(
                parent_type=str(tag), parent_id=str(target), child_id=record.id, child_type=child_type,
            ))
            found.append(AuditFailure(
                failure_code=FailureCode.ORPHAN_REFERENCE,
                entity_type=child_type,
                record_id=record.id,
                expected=f"Existing parent {tag}/{target}",
                actual="Unknown collection" if canonical is None else "Not found in collection",
                likely_cause="Parent deleted (deletes do not cascade) or seeded out of order.",
                where_to_look="EntityStore.delete_record callers / seed order",
            ))
        return found

    def _check_selectors(
        self,
        failures: list[AuditFailure],
        checks: _CheckCounter,
    ) -> list[SelectorDiscrepancy]:
        discrepancies: list[SelectorDiscrepancy] = []
        for parent_type, parent in self._sample(_SELECTOR_PARENTS):
            for child in self.config.audit.child_collections:
                kind = self.store.resolve_entity_type(child)
                raw = [
                    r.id for r in self.store.list_records(kind)
                    if self.store.related_matches(r, parent_type, parent.id)
                ]
                derived = [
                    r.id for r in self.store.get_related_records(parent_type, parent.id, [kind])[kind]
                ]
                ok = sorted(raw) == sorted(derived)
                checks.record(ok)
                if ok:
                    continue

                inconsistency = SelectorInconsistency(
                    selector="get_related_records",
                    entity_type=parent_type,
                    record_id=parent.id,
                    child_collection=kind,
                    expected_ids=tuple(raw),
                    actual_ids=tuple(derived),
                )
                self.inconsistencies.append(inconsistency)
                logger.warning("Selector inconsistency: %s", inconsistency)
                discrepancies.append(SelectorDiscrepancy(
                    name=inconsistency.selector,
                    id=parent.id,
                    child_collection=kind,
                    expected=len(raw),
                    actual=len(derived),
                    missing_ids=sorted(set(raw) - set(derived)),
                    unexpected_ids=sorted(set(derived) - set(raw)),
                ))
                failures.append(AuditFailure(
                    failure_code=FailureCode.SELECTOR_BYPASS,
                    entity_type=kind,
                    record_id=parent.id,
                    expected=f"{len(raw)} records",
                    actual=f"{len(derived)} records",
                    likely_cause="Related-record index out of step with the collection.",
                    where_to_look="EntityStore._reindex / get_related_records",
                ))
        return discrepancies

    def _sample(self, parent_types: tuple[str, ...]) -> list[tuple[str, Record]]:
        pool = [
            (parent_type, record)
            for parent_type in parent_types
            for record in self.store.list_records(parent_type)
        ]
        return pool[: self.config.audit.selector_sample_size]

    def _tab_coverage(self) -> dict[str, list[TabCoverage]]:
        size = self.config.audit.selector_sample_size
        coverage: dict[str, list[TabCoverage]] = {}
        tickets = self.store.list_records(EntityType.TICKETS)

        for parent_type in _TAB_PARENTS:
            entries = []
            for parent in self.store.list_records(parent_type)[:size]:
                related = self.store.get_related_records(parent_type, parent.id, list(_TABS.values()))
                tabs = {tab: len(related[kind]) for tab, kind in _TABS.items()}
                tabs["TICKETS"] = sum(
                    1 for t in tickets
                    if getattr(t, "account_id", None) == parent.id
                    or self.store.related_matches(t, parent_type, parent.id)
                )
                entries.append(TabCoverage(id=parent.id, name=_display_name(parent), tabs=tabs))
            coverage[parent_type] = entries
        return coverage

    def _persona_filters(self, user: User | str | None) -> PersonaFilterImpact:
        subject = user if user is not None else self.store.acting_user
        resolved = subject if isinstance(subject, User) else (
            self.store.find_record(EntityType.USERS, subject) if subject else None
        )

        impact: dict[str, CollectionVisibility] = {}
        total_hidden = 0
        for kind in _PERSONA_COLLECTIONS:
            records = self.store.list_records(kind)
            visible = sum(1 for r in records if self.store.can_access_record(r, subject))
            hidden = len(records) - visible
            total_hidden += hidden
            impact[kind] = CollectionVisibility(total=len(records), visible=visible, hidden=hidden)

        role = getattr(resolved, "role", None)
        return PersonaFilterImpact(
            total_hidden=total_hidden,
            active_user=getattr(resolved, "name", None) or (subject if isinstance(subject, str) else ""),
            active_role=getattr(role, "value", role) or "unknown",
            impact_by_collection=impact,
        )

    def _seed_integrity(self) -> SeedIntegrity:
        issues = []
        if self.store.count(EntityType.USERS) < self.config.audit.min_seed_users:
            issues.append("User count suspiciously low for a seeded environment.")
        if self.store.count(EntityType.LEADS) == 0:
            issues.append("Missing leads in bootstrap state.")
        return SeedIntegrity(status="pristine" if not issues else "modified", issues=issues)


def _display_name(record: Record) -> str:
    data: dict[str, Any] = record.model_dump()
    return str(data.get("name") or data.get("company") or record.id)
