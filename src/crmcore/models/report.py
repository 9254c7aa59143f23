"""
Integrity report model — structural and relational health of the record store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class FailureCode(str, Enum):
    """Defect classes the integrity audit can detect."""

    SELECTOR_BYPASS = "SELECTOR_BYPASS"
    RELATION_KEY_MISMATCH = "RELATION_KEY_MISMATCH"
    RELATION_CASING_MISMATCH = "RELATION_CASING_MISMATCH"
    SETTINGS_WIPE = "SETTINGS_WIPE"
    ORPHAN_REFERENCE = "ORPHAN_REFERENCE"


class AuditFailure(BaseModel):
    """A single failed check, with a pointer to where the defect usually comes from."""

    failure_code: FailureCode
    entity_type: str
    record_id: str
    expected: Any = None
    actual: Any = None
    likely_cause: str = ""
    where_to_look: str = ""


class IntegritySummary(BaseModel):
    total_checks: int = 0
    passed: int = 0
    failed: int = 0
    integrity_score: int = Field(default=100, ge=0, le=100)


class SettingsCheck(BaseModel):
    ok: bool = True
    issues: list[str] = Field(default_factory=list)


class SettingsHealth(BaseModel):
    health: str = "healthy"  # healthy, unhealthy
    checks: dict[str, SettingsCheck] = Field(default_factory=dict)


class OrphanReference(BaseModel):
    parent_type: str
    parent_id: str
    child_id: str
    child_type: str


class RelationshipHealth(BaseModel):
    orphan_count: int = 0
    orphans: list[OrphanReference] = Field(default_factory=list)
    casing_issues: list[str] = Field(default_factory=list)


class SelectorDiscrepancy(BaseModel):
    name: str
    id: str
    child_collection: str
    expected: int
    actual: int
    missing_ids: list[str] = Field(default_factory=list)
    unexpected_ids: list[str] = Field(default_factory=list)


class TabCoverage(BaseModel):
    id: str
    name: str
    tabs: dict[str, int] = Field(default_factory=dict)


class CollectionVisibility(BaseModel):
    total: int = 0
    visible: int = 0
    hidden: int = 0


class PersonaFilterImpact(BaseModel):
    total_hidden: int = 0
    active_user: str = ""
    active_role: str = "unknown"
    impact_by_collection: dict[str, CollectionVisibility] = Field(default_factory=dict)


class SeedIntegrity(BaseModel):
    status: str = "pristine"  # pristine, modified
    issues: list[str] = Field(default_factory=list)


class IntegrityReport(BaseModel):
    """Complete integrity audit of an entity store.

    Can be exported to Markdown or JSON.
    """

    summary: IntegritySummary = Field(default_factory=IntegritySummary)
    collections: dict[str, int] = Field(default_factory=dict)
    settings: SettingsHealth = Field(default_factory=SettingsHealth)
    relationships: RelationshipHealth = Field(default_factory=RelationshipHealth)
    selector_discrepancies: list[SelectorDiscrepancy] = Field(default_factory=list)
    tab_coverage: dict[str, list[TabCoverage]] = Field(default_factory=dict)
    persona_filters: PersonaFilterImpact = Field(default_factory=PersonaFilterImpact)
    seed_integrity: SeedIntegrity = Field(default_factory=SeedIntegrity)
    failures: list[AuditFailure] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_healthy(self) -> bool:
        return not self.failures

    def failures_by_code(self, code: FailureCode) -> list[AuditFailure]:
        return [f for f in self.failures if f.failure_code == code]

    def to_markdown(self) -> str:
        """Export report as Markdown."""
        from crmcore.exporters.markdown import render_markdown

        return render_markdown(self)

    def to_json(self) -> str:
        """Export report as JSON."""
        return self.model_dump_json(indent=2)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()
