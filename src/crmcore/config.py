"""
crmcore configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from crmcore.models.customization import CustomEntityDefinition, CustomFieldDefinition

DEFAULT_REQUIRED_FIELDS: dict[str, list[str]] = {
    "leads": ["name", "email", "company", "phone"],
    "deals": ["name", "amount", "stage", "expected_close_date"],
    "accounts": ["name", "industry"],
    "contacts": ["name", "email", "account_id"],
    "invoices": ["account_id", "issue_date", "due_date", "line_items"],
    "quotes": ["deal_id", "account_id", "line_items"],
    "jobs": ["subject", "account_id", "job_type", "status"],
    "tickets": ["subject", "description", "priority", "assignee_id"],
}


class ValidationPolicy(BaseModel):
    """Per-collection required-field lists enforced on every upsert."""

    required_fields: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_REQUIRED_FIELDS.items()}
    )

    def required_for(self, entity_type: str) -> list[str]:
        return list(self.required_fields.get(entity_type, []))


class ReconciliationConfig(BaseModel):
    """Bank-feed matching tolerances."""

    amount_tolerance: float = Field(
        default=0.02, ge=0.0, le=1.0, description="Fractional amount difference allowed for amber"
    )
    date_window_days: int = Field(default=30, ge=0, description="Max days between txn and candidate")
    exact_amount_epsilon: float = Field(default=0.005, ge=0.0, description="Green match tolerance")
    max_suggestions: int = Field(default=5, ge=1)
    eligible_invoice_statuses: list[str] = Field(default_factory=lambda: ["Sent", "Overdue"])
    excluded_expense_statuses: list[str] = Field(default_factory=list)


class NumberingConfig(BaseModel):
    """Document number series. ``*_next`` is the number handed to the next create."""

    invoice_prefix: str = "INV-"
    invoice_next: int = Field(default=1001, ge=1)
    quote_prefix: str = "QT-"
    quote_next: int = Field(default=1001, ge=1)
    po_prefix: str = "PO-"
    po_next: int = Field(default=1001, ge=1)
    job_prefix: str = "JOB"
    ticket_prefix: str = "TKT"


class DictionaryConfig(BaseModel):
    """Organisation settings the integrity audit expects to be populated."""

    organization_name: str = "My Company"
    lead_statuses: list[str] = Field(
        default_factory=lambda: ["New", "Contacted", "Qualified", "Nurturing", "Lost"]
    )
    lead_sources: list[str] = Field(
        default_factory=lambda: ["Website", "Referral", "Google Ads", "Cold Call", "Event"]
    )
    deal_stages: list[str] = Field(
        default_factory=lambda: ["Discovery", "Proposal", "Negotiation", "Closed Won", "Closed Lost"]
    )
    ticket_statuses: list[str] = Field(
        default_factory=lambda: ["Open", "In Progress", "Waiting", "Resolved", "Closed"]
    )
    task_statuses: list[str] = Field(default_factory=lambda: ["Pending", "In Progress", "Completed"])
    industries: list[str] = Field(
        default_factory=lambda: ["Technology", "Construction", "Retail", "Healthcare", "Finance"]
    )

    def required_dictionaries(self) -> dict[str, list[str]]:
        return {
            "lead_statuses": self.lead_statuses,
            "lead_sources": self.lead_sources,
            "deal_stages": self.deal_stages,
            "ticket_statuses": self.ticket_statuses,
            "task_statuses": self.task_statuses,
            "industries": self.industries,
        }


class AccessConfig(BaseModel):
    """Record visibility and role permissions."""

    default_assignments: dict[str, str] = Field(
        default_factory=dict, description="Collection -> user id assigned as owner on create"
    )
    permissions: dict[str, dict[str, dict[str, bool]]] = Field(
        default_factory=dict, description="role -> domain -> action -> allowed"
    )
    team_visibility: bool = Field(default=True, description="Managers see records owned by their team")


class AuditConfig(BaseModel):
    """Change history and integrity audit settings."""

    enabled: bool = Field(default=True, description="Record every mutation in the audit trail")
    child_collections: list[str] = Field(
        default_factory=lambda: ["communications", "tasks", "documents", "tickets"]
    )
    selector_sample_size: int = Field(default=5, ge=0)
    min_seed_users: int = Field(default=3, ge=0)


class InteractionRules(BaseModel):
    """Side effects of logging a communication."""

    enabled: bool = True
    score_deltas: dict[str, int] = Field(
        default_factory=lambda: {
            "meeting-booked": 15,
            "answered": 5,
            "voicemail": 1,
            "no-answer": -2,
            "converted": 50,
        }
    )
    follow_up_outcomes: list[str] = Field(default_factory=lambda: ["meeting-booked", "answered"])
    follow_up_days: int = Field(default=1, ge=0)


class ConnectorConfig(BaseModel):
    """Configuration for a single data connector."""

    type: str = Field(description="Connector type: sql, bank_csv")
    enabled: bool = True
    credentials: dict[str, Any] = Field(default_factory=dict)
    options: dict[str, Any] = Field(default_factory=dict)


class CRMCoreConfig(BaseModel):
    """Root configuration for crmcore."""

    org_id: str = Field(default="default", description="Tenant id written to every persisted row")
    validation: ValidationPolicy = Field(default_factory=ValidationPolicy)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    numbering: NumberingConfig = Field(default_factory=NumberingConfig)
    dictionaries: DictionaryConfig = Field(default_factory=DictionaryConfig)
    access: AccessConfig = Field(default_factory=AccessConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    interaction_rules: InteractionRules = Field(default_factory=InteractionRules)
    custom_fields: dict[str, list[CustomFieldDefinition]] = Field(
        default_factory=dict, description="Collection -> extra fields stored in custom_data"
    )
    custom_entities: list[CustomEntityDefinition] = Field(default_factory=list)
    connectors: list[ConnectorConfig] = Field(default_factory=list)

    database_url: str | None = Field(default=None, description="SQLAlchemy URL for the sql connector")
    log_level: str = Field(default="WARNING")

    @classmethod
    def load(cls, config_path: str | None = None, **overrides: Any) -> CRMCoreConfig:
        """Load configuration from file, env vars, and overrides.

        Priority: overrides > env vars > config file > defaults.
        """
        data: dict[str, Any] = {}

        # 1. Load from YAML file if provided
        if config_path:
            path = Path(config_path)
            if path.exists():
                with open(path) as f:
                    data = yaml.safe_load(f) or {}

        # 2. Override from environment variables
        env_db = os.environ.get("CRMCORE_DATABASE_URL")
        env_org = os.environ.get("CRMCORE_ORG_ID")
        env_level = os.environ.get("CRMCORE_LOG_LEVEL")
        env_tolerance = os.environ.get("CRMCORE_AMOUNT_TOLERANCE")

        if env_db:
            data["database_url"] = env_db
        if env_org:
            data["org_id"] = env_org
        if env_level:
            data["log_level"] = env_level.upper()
        if env_tolerance:
            reconciliation = data.get("reconciliation") or {}
            reconciliation["amount_tolerance"] = float(env_tolerance)
            data["reconciliation"] = reconciliation

        # 3. Apply keyword overrides
        data.update(overrides)

        return cls.model_validate(data)
