"""
Financial record models — invoices, quotes, subscriptions, expenses and bank transactions.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, Field

from crmcore.models.records import Record

_CENT = Decimal("0.01")


class InvoiceStatus(str, Enum):
    DRAFT = "Draft"
    SENT = "Sent"
    PAID = "Paid"
    OVERDUE = "Overdue"
    CANCELLED = "Cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"


class BankTransactionType(str, Enum):
    """Direction of money on the bank statement."""

    CREDIT = "Credit"  # money in
    DEBIT = "Debit"  # money out


class ReconciliationStatus(str, Enum):
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    IGNORED = "ignored"


class MatchConfidence(str, Enum):
    NONE = "none"
    AMBER = "amber"
    GREEN = "green"


class MatchTargetType(str, Enum):
    INVOICES = "invoices"
    EXPENSES = "expenses"
    OTHER = "other"


class LineItem(BaseModel):
    """One priced entry on an invoice, quote, or subscription."""

    item_type: str = "product"  # product, service
    item_id: str = ""
    description: str = ""
    qty: float = 1.0
    unit_price: float = 0.0
    tax_rate: float = Field(default=0.0, description="Percentage, e.g. 10 for 10%")
    line_total: float = 0.0


@dataclass(frozen=True)
class LineItemTotals:
    subtotal: float
    tax_total: float
    total: float


def _to_decimal(value: Any) -> Decimal:
    return Decimal(str(value or 0))


def round_money(value: Any) -> float:
    """Round half-up to cents."""
    return float(_to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP))


def calculate_line_item_totals(line_items: Iterable[LineItem | dict[str, Any]]) -> LineItemTotals:
    """Derive document totals from line items.

    Each component is summed unrounded and rounded once; ``total`` is the sum
    of the two rounded components, so ``total == round(subtotal + tax_total, 2)``.
    """
    subtotal = Decimal("0")
    tax_total = Decimal("0")
    for raw in line_items:
        item = raw if isinstance(raw, LineItem) else LineItem.model_validate(raw)
        net = _to_decimal(item.qty) * _to_decimal(item.unit_price)
        subtotal += net
        tax_total += net * _to_decimal(item.tax_rate) / Decimal(100)

    subtotal = subtotal.quantize(_CENT, rounding=ROUND_HALF_UP)
    tax_total = tax_total.quantize(_CENT, rounding=ROUND_HALF_UP)
    return LineItemTotals(
        subtotal=float(subtotal),
        tax_total=float(tax_total),
        total=float((subtotal + tax_total).quantize(_CENT, rounding=ROUND_HALF_UP)),
    )


def normalize_line_items(line_items: Iterable[LineItem | dict[str, Any]]) -> list[LineItem]:
    """Validate line items and recompute each ``line_total = qty * unit_price``."""
    normalized = []
    for raw in line_items:
        item = raw if isinstance(raw, LineItem) else LineItem.model_validate(raw)
        line_total = round_money(_to_decimal(item.qty) * _to_decimal(item.unit_price))
        normalized.append(item.model_copy(update={"line_total": line_total}))
    return normalized


class InvoiceCredit(BaseModel):
    """A payment applied against an invoice."""

    amount: float
    reason: str = ""
    applied_at: datetime | None = None


class Invoice(Record):
    invoice_number: str = ""
    account_id: str | None = None
    deal_id: str | None = None
    quote_id: str | None = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    issue_date: date | None = None
    invoice_date: date | None = None
    due_date: date | None = None
    paid_at: datetime | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    subtotal: float = 0.0
    tax_total: float = 0.0
    total: float = 0.0
    amount_paid: float = 0.0
    balance_due: float = 0.0
    credits: list[InvoiceCredit] = Field(default_factory=list)
    notes: str | None = None
    terms: str | None = None


class Quote(Record):
    quote_number: str = ""
    deal_id: str | None = None
    account_id: str | None = None
    status: str = "Draft"
    issue_date: date | None = None
    expiry_date: date | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    subtotal: float = 0.0
    tax_total: float = 0.0
    total: float = 0.0
    version: int = 1
    notes: str | None = None


class Subscription(Record):
    account_id: str | None = None
    name: str = ""
    status: str = "Active"
    billing_cycle: str = "monthly"
    start_date: date | None = None
    next_bill_date: date | None = None
    end_date: date | None = None
    items: list[LineItem] = Field(default_factory=list)
    auto_generate_invoice: bool = False
    last_invoice_id: str | None = None


class Expense(Record):
    vendor: str = ""
    amount: float = 0.0
    category: str = "Other"
    date: date
    status: str = "Pending"  # Paid, Pending
    receipt_url: str | None = None
    approved_by: str | None = None
    notes: str | None = None


class BankTransaction(Record):
    """A line imported from the bank feed, awaiting reconciliation."""

    date: date
    description: str = ""
    amount: float
    type: BankTransactionType
    status: ReconciliationStatus = ReconciliationStatus.UNMATCHED
    match_confidence: MatchConfidence = MatchConfidence.NONE
    matched_to_id: str | None = None
    matched_to_type: MatchTargetType | None = None
    reconciled: bool = False
    reconciled_at: datetime | None = None
    reconciled_by: str | None = None
    bank_reference: str | None = None
    notes: str | None = None

    @property
    def is_credit(self) -> bool:
        return self.type == BankTransactionType.CREDIT

    @property
    def is_debit(self) -> bool:
        return self.type == BankTransactionType.DEBIT
