"""
Entity type -> schema map.
"""

from __future__ import annotations

from crmcore.models.financial import BankTransaction, Expense, Invoice, Quote, Subscription
from crmcore.models.records import (
    Account,
    Campaign,
    Communication,
    Contact,
    Deal,
    Document,
    EntityType,
    Equipment,
    GenericRecord,
    Job,
    Lead,
    Product,
    PurchaseOrder,
    Record,
    Service,
    Task,
    Ticket,
    User,
)

ENTITY_SCHEMAS: dict[EntityType, type[Record]] = {
    EntityType.USERS: User,
    EntityType.LEADS: Lead,
    EntityType.DEALS: Deal,
    EntityType.ACCOUNTS: Account,
    EntityType.CONTACTS: Contact,
    EntityType.TASKS: Task,
    EntityType.TICKETS: Ticket,
    EntityType.CAMPAIGNS: Campaign,
    EntityType.COMMUNICATIONS: Communication,
    EntityType.DOCUMENTS: Document,
    EntityType.JOBS: Job,
    EntityType.EQUIPMENT: Equipment,
    EntityType.PRODUCTS: Product,
    EntityType.SERVICES: Service,
    EntityType.PURCHASE_ORDERS: PurchaseOrder,
    EntityType.INVOICES: Invoice,
    EntityType.QUOTES: Quote,
    EntityType.SUBSCRIPTIONS: Subscription,
    EntityType.EXPENSES: Expense,
    EntityType.BANK_TRANSACTIONS: BankTransaction,
}

# Collections whose records carry line items and derived totals.
TOTALED_ENTITY_TYPES: frozenset[EntityType] = frozenset({EntityType.INVOICES, EntityType.QUOTES})


def schema_for(entity_type: EntityType) -> type[Record]:
    return ENTITY_SCHEMAS.get(entity_type, GenericRecord)
