"""
Record models — the base record shape, entity types, and CRM schemas.

Every business record extends :class:`Record`. Records are immutable: the
entity store builds a new instance on every write. Unknown fields are kept
(``extra="allow"``) so partially-modelled collections survive round-trips.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

SYSTEM_ACTOR = "System"


class EntityType(str, Enum):
    """Built-in collections. Values are the collection names used as type tags."""

    LEADS = "leads"
    DEALS = "deals"
    ACCOUNTS = "accounts"
    CONTACTS = "contacts"
    TASKS = "tasks"
    TICKETS = "tickets"
    CAMPAIGNS = "campaigns"
    USERS = "users"
    CALENDAR_EVENTS = "calendarEvents"
    INVOICES = "invoices"
    QUOTES = "quotes"
    PRODUCTS = "products"
    SERVICES = "services"
    SUBSCRIPTIONS = "subscriptions"
    DOCUMENTS = "documents"
    COMMUNICATIONS = "communications"
    CONVERSATIONS = "conversations"
    CHAT_MESSAGES = "chatMessages"
    CREWS = "crews"
    JOBS = "jobs"
    ZONES = "zones"
    EQUIPMENT = "equipment"
    INVENTORY_ITEMS = "inventoryItems"
    PURCHASE_ORDERS = "purchaseOrders"
    BANK_TRANSACTIONS = "bankTransactions"
    EXPENSES = "expenses"
    REVIEWS = "reviews"
    REFERRAL_REWARDS = "referralRewards"
    INBOUND_FORMS = "inboundForms"
    CHAT_WIDGETS = "chatWidgets"
    CALCULATORS = "calculators"
    AUTOMATION_WORKFLOWS = "automationWorkflows"
    WEBHOOKS = "webhooks"
    INDUSTRY_TEMPLATES = "industryTemplates"
    CURRENCIES = "currencies"
    PAYMENTS = "payments"
    WAREHOUSES = "warehouses"
    ROLES = "roles"
    TACTICAL_QUEUE = "tacticalQueue"
    WAREHOUSE_LOCATIONS = "warehouseLocations"
    DISPATCH_ALERTS = "dispatchAlerts"
    RFQS = "rfqs"
    SUPPLIER_QUOTES = "supplierQuotes"
    EMAIL_TEMPLATES = "emailTemplates"
    SMS_TEMPLATES = "smsTemplates"
    KB_CATEGORIES = "kbCategories"
    KB_ARTICLES = "kbArticles"


_ENTITY_TYPES_BY_FOLDED_NAME: dict[str, EntityType] = {t.value.lower(): t for t in EntityType}


def match_entity_type(tag: str | None) -> EntityType | None:
    """Resolve a type tag case-insensitively (``"Leads"`` -> ``EntityType.LEADS``)."""
    if not tag:
        return None
    if isinstance(tag, EntityType):
        return tag
    return _ENTITY_TYPES_BY_FOLDED_NAME.get(str(tag).lower())


class Role(str, Enum):
    """Operational domain of a user; drives record visibility."""

    ADMIN = "admin"
    MANAGER = "manager"
    AGENT = "agent"
    TECHNICIAN = "technician"


class Reference(BaseModel):
    """A weak ``(kind, id)`` pointer to a record in any collection."""

    model_config = ConfigDict(frozen=True)

    kind: str
    id: str


class Record(BaseModel):
    """Base shape shared by every business record."""

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str
    created_at: datetime
    updated_at: datetime
    created_by: str = SYSTEM_ACTOR
    owner_id: str | None = None
    custom_data: dict[str, Any] = Field(default_factory=dict)

    @property
    def reference(self) -> Reference | None:
        """The polymorphic relation this record carries, if any."""
        kind = getattr(self, "related_to_type", None)
        target = getattr(self, "related_to_id", None)
        if not kind or not target:
            return None
        return Reference(kind=str(kind), id=str(target))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class GenericRecord(Record):
    """Collections without a dedicated schema."""


class CustomRecord(Record):
    """A record of a blueprint-declared custom entity; values live in custom_data."""


class RelatedRecord(Record):
    """A record that may point at a parent in any collection."""

    related_to_type: str | None = None
    related_to_id: str | None = None


class User(Record):
    name: str = ""
    email: str = ""
    phone: str | None = None
    role: Role = Role.AGENT
    avatar: str = ""
    manager_id: str | None = None
    team: str | None = None


class Lead(Record):
    name: str = ""
    company: str = ""
    email: str = ""
    phone: str = ""
    status: str = "New"
    source: str | None = None
    score: int = Field(default=0, ge=0, le=100)
    estimated_value: float = 0.0
    assignee_id: str | None = None
    notes: str | None = None


class Deal(Record):
    name: str = ""
    account_id: str | None = None
    contact_id: str | None = None
    lead_id: str | None = None
    amount: float = 0.0
    stage: str = ""
    probability: float = 0.0
    expected_close_date: date | None = None
    assignee_id: str | None = None


class Account(Record):
    name: str = ""
    industry: str = ""
    website: str | None = None
    email: str | None = None
    phone: str | None = None
    tier: str | None = None
    account_type: str | None = None
    status: str = "Active"


class Contact(Record):
    name: str = ""
    email: str = ""
    phone: str | None = None
    account_id: str | None = None
    title: str | None = None


class Task(RelatedRecord):
    title: str = ""
    description: str = ""
    assignee_id: str | None = None
    due_date: str | None = None
    status: str = "Pending"
    priority: str = "Medium"


class Ticket(RelatedRecord):
    ticket_number: str = ""
    subject: str = ""
    description: str = ""
    priority: str = "Medium"
    status: str = "Open"
    category: str | None = None
    assignee_id: str | None = None
    account_id: str | None = None


class Campaign(Record):
    name: str = ""
    type: str = ""
    status: str = "Planning"
    budget: float = 0.0
    spent: float = 0.0
    start_date: str | None = None
    end_date: str | None = None


class Communication(RelatedRecord):
    type: str = "Note"
    subject: str = ""
    content: str = ""
    direction: str = "Outbound"
    outcome: str | None = None
    contact_id: str | None = None
    next_step: str | None = None
    next_follow_up_date: str | None = None
    duration: int | None = None


class Document(RelatedRecord):
    title: str = ""
    file_type: str | None = None
    url: str | None = None


class Job(Record):
    job_number: str = ""
    subject: str = ""
    account_id: str | None = None
    job_type: str = ""
    status: str = ""
    crew_id: str | None = None
    zone_id: str | None = None
    scheduled_date: str | None = None


class Equipment(Record):
    name: str = ""
    type: str = ""
    status: str = "Operational"
    serial_number: str | None = None
    location: str | None = None
    assigned_to: str | None = None


class Product(Record):
    name: str = ""
    sku: str = ""
    unit_price: float = 0.0
    tax_rate: float = 0.0
    is_active: bool = True


class Service(Record):
    name: str = ""
    code: str = ""
    unit_price: float = 0.0
    tax_rate: float = 0.0
    is_active: bool = True


class PurchaseOrder(Record):
    po_number: str = ""
    supplier_id: str | None = None
    account_id: str | None = None
    status: str = "Draft"
    items: list[dict[str, Any]] = Field(default_factory=list)
    total: float = 0.0
    linked_job_id: str | None = None
