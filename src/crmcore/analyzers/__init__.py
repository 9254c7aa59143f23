"""
crmcore analyzers — reconciliation, billing, integrity audit and change history.

These are pure rule-based engines that read (and, for reconciliation and
billing, write) through the entity store.
"""

from crmcore.analyzers.audit_trail import AuditAction, AuditEntry, AuditTrail, DataVersion
from crmcore.analyzers.billing import AccountRevenueStats, BillingService, PaymentResult
from crmcore.analyzers.integrity import IntegrityAuditor
from crmcore.analyzers.reconciliation import (
    BankFeedSummary,
    ReconcileAction,
    ReconciliationEngine,
    ReconciliationSuggestion,
)

__all__ = [
    "AccountRevenueStats",
    "AuditAction",
    "AuditEntry",
    "AuditTrail",
    "DataVersion",
    "BankFeedSummary",
    "BillingService",
    "IntegrityAuditor",
    "PaymentResult",
    "ReconcileAction",
    "ReconciliationEngine",
    "ReconciliationSuggestion",
]
