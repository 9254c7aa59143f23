"""
crmcore — Main orchestrator.

The CRMCore class is the top-level entry point that wires configuration,
the entity store, the reconciliation engine, the integrity auditor and
the persistence connectors together.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from crmcore.analyzers.billing import AccountRevenueStats, BillingService, PaymentResult
from crmcore.analyzers.integrity import IntegrityAuditor
from crmcore.analyzers.reconciliation import (
    BankFeedSummary,
    ReconcileAction,
    ReconciliationEngine,
    ReconciliationSuggestion,
)
from crmcore.config import CRMCoreConfig
from crmcore.connectors.base import BaseConnector
from crmcore.connectors.csv_connector import BankFeedCSVConnector
from crmcore.connectors.registry import ConnectorRegistry
from crmcore.models.financial import BankTransaction, Invoice, PaymentMethod
from crmcore.models.records import EntityType, Record, User
from crmcore.models.report import IntegrityReport
from crmcore.store.entity_store import EntityStore

logger = logging.getLogger("crmcore")


@dataclass
class CRMCore:
    """Top-level orchestrator for crmcore.

    Usage::

        from crmcore import CRMCore

        crm = CRMCore.from_config("crmcore.yaml")
        await crm.load()
        crm.upsert_record("leads", {...})
        report = crm.audit()
        await crm.save()

    CRMCore coordinates:
    - **Store**: typed records, referential rules and the audit trail.
    - **Reconciliation**: bank-feed matching against invoices and expenses.
    - **Billing**: invoice payments, account revenue and quote conversion.
    - **Integrity audit**: structural and relational health checks.
    - **Connectors**: SQL persistence and bank statement imports.
    """

    config: CRMCoreConfig
    store: EntityStore | None = None
    connector_registry: ConnectorRegistry = field(default_factory=ConnectorRegistry)
    _engine: ReconciliationEngine | None = field(default=None, init=False, repr=False)
    _billing: BillingService | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_config(cls, config_path: str | None = None, **overrides: Any) -> CRMCore:
        """Create a CRMCore instance from a config file or keyword arguments."""
        config = CRMCoreConfig.load(config_path, **overrides)
        instance = cls(config=config)
        instance._setup()
        return instance

    def _setup(self) -> None:
        """Initialize the store, engine and connectors."""
        if self.store is None:
            self.store = EntityStore(self.config)
        self.connector_registry = ConnectorRegistry()
        self.connector_registry.auto_discover(self.config)
        self._engine = ReconciliationEngine(self.store, self.config.reconciliation)
        self._billing = BillingService(self.store)
        logger.info(
            "crmcore initialized with %d connectors",
            len(self.connector_registry),
        )

    @property
    def engine(self) -> ReconciliationEngine:
        if self._engine is None:
            self._setup()
        assert self._engine is not None
        return self._engine

    @property
    def billing(self) -> BillingService:
        if self._billing is None:
            self._setup()
        assert self._billing is not None
        return self._billing

    @property
    def entity_store(self) -> EntityStore:
        if self.store is None:
            self._setup()
        assert self.store is not None
        return self.store

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persistence(self) -> BaseConnector | None:
        return self.connector_registry.get("sql")

    async def load(self) -> int:
        """Replace the in-memory state with what the SQL connector holds.

        Returns the number of records loaded, 0 when no database is configured.
        """
        connector = self._persistence()
        if connector is None:
            logger.info("No database configured; starting with an empty store")
            return 0
        self.entity_store.clear()
        return await connector.pull(self.entity_store)

    async def save(self) -> int:
        """Write the full store snapshot through the SQL connector."""
        connector = self._persistence()
        if connector is None:
            logger.warning("No database configured; nothing saved")
            return 0
        return await connector.push(self.entity_store)

    def load_sync(self) -> int:
        """Synchronous wrapper around :meth:`load`."""
        return asyncio.run(self.load())

    def save_sync(self) -> int:
        """Synchronous wrapper around :meth:`save`."""
        return asyncio.run(self.save())

    async def import_bank_feed(self, file_path: str, **options: Any) -> int:
        """Import a bank statement CSV into the bank feed."""
        connector = BankFeedCSVConnector(file_path=file_path, **options)
        return await connector.pull(self.entity_store)

    # ------------------------------------------------------------------
    # Store and engine pass-throughs
    # ------------------------------------------------------------------

    def upsert_record(
        self,
        entity_type: str | EntityType,
        data: dict[str, Any],
        *,
        actor: User | str | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> Record:
        return self.entity_store.upsert_record(entity_type, data, actor=actor, defaults=defaults)

    def delete_record(
        self,
        entity_type: str | EntityType,
        record_id: str,
        *,
        actor: User | str | None = None,
    ) -> None:
        self.entity_store.delete_record(entity_type, record_id, actor=actor)

    def get_related_records(
        self,
        entity_type: str | EntityType,
        record_id: str,
        child_collections: list[str] | None = None,
    ) -> dict[str, list[Record]]:
        return self.entity_store.get_related_records(entity_type, record_id, child_collections)

    def suggestions(self, transaction_id: str) -> list[ReconciliationSuggestion]:
        return self.engine.get_reconciliation_suggestions(transaction_id)

    def reconcile(
        self,
        transaction_id: str,
        action: ReconcileAction | str,
        payload: dict[str, Any] | None = None,
        *,
        actor: User | str | None = None,
    ) -> BankTransaction:
        return self.engine.reconcile_transaction(transaction_id, action, payload, actor=actor)

    def summary(self) -> BankFeedSummary:
        return self.engine.summary()

    def record_payment(
        self,
        invoice_id: str,
        amount: float,
        method: PaymentMethod | str,
        *,
        reference: str | None = None,
        note: str | None = None,
        actor: User | str | None = None,
    ) -> PaymentResult:
        return self.billing.record_payment(
            invoice_id, amount, method, reference=reference, note=note, actor=actor
        )

    def account_revenue_stats(
        self, account_id: str, visible_to: User | str | None = None
    ) -> AccountRevenueStats:
        return self.billing.account_revenue_stats(account_id, visible_to)

    def convert_quote_to_invoice(self, quote_id: str, *, actor: User | str | None = None) -> Invoice:
        return self.billing.convert_quote_to_invoice(quote_id, actor=actor)

    def audit(self, user: User | str | None = None) -> IntegrityReport:
        """Run the integrity audit against the current store state."""
        report = IntegrityAuditor(self.entity_store, self.config).run(user=user)
        logger.info(
            "Audit complete: score %d/100, %d failures",
            report.summary.integrity_score,
            len(report.failures),
        )
        return report
