"""
Billing — payments against invoices, per-account revenue and quote conversion.

Payments are kept as a list of credits on the invoice; ``amount_paid`` is
always their sum and ``balance_due`` follows from the store's totals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from crmcore.analyzers.audit_trail import AuditAction
from crmcore.exceptions import NotFound, ValidationError
from crmcore.models.financial import (
    Invoice,
    InvoiceCredit,
    InvoiceStatus,
    PaymentMethod,
    PaymentStatus,
    Quote,
    round_money,
)
from crmcore.models.records import EntityType, User

if TYPE_CHECKING:
    from crmcore.store.entity_store import EntityStore

logger = logging.getLogger("crmcore.analyzers.billing")

_INVOICES = EntityType.INVOICES.value
_QUOTES = EntityType.QUOTES.value

QUOTE_ACCEPTED = "Accepted"


@dataclass(frozen=True)
class PaymentResult:
    invoice: Invoice
    remaining_balance: float


@dataclass
class AccountRevenueStats:
    """Billing totals for one account."""

    lifetime_billed: float = 0.0
    outstanding: float = 0.0
    overdue_count: int = 0


class BillingService:
    """
    Record payments, summarise account revenue and turn quotes into invoices.

    Example usage:
        billing = BillingService(store)
        billing.record_payment(invoice.id, 250, "bank_transfer", reference="R-100")
        billing.account_revenue_stats(account.id).outstanding
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

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
        """Apply a payment and settle the invoice once nothing is left to pay.

        Raises:
            NotFound: the invoice does not exist.
            ValidationError: the amount is not positive, the method is unknown
                or the invoice is cancelled.
        """
        invalid: dict[str, str] = {}
        if amount is None or amount <= 0:
            invalid["amount"] = "must be greater than zero"
        try:
            method = PaymentMethod(getattr(method, "value", method))
        except ValueError:
            invalid["method"] = f"must be one of {', '.join(m.value for m in PaymentMethod)}"
        if invalid:
            raise ValidationError(_INVOICES, invalid_fields=invalid)

        with self.store.transaction():
            invoice = self._get(_INVOICES, invoice_id)
            assert isinstance(invoice, Invoice)
            if invoice.status == InvoiceStatus.CANCELLED:
                raise ValidationError(_INVOICES, invalid_fields={"status": "is Cancelled"})

            now = self.store.clock()
            reason = f"Payment via {method.value}"
            if reference:
                reason += f" (Ref: {reference})"
            if note:
                reason += f" - {note}"
            credit = InvoiceCredit(amount=round_money(amount), reason=reason, applied_at=now)
            credits = [*invoice.credits, credit]
            total_paid = round_money(sum(c.amount for c in credits))
            remaining = max(0.0, round_money(invoice.total - total_paid))

            changes = {
                "id": invoice.id,
                "credits": [c.model_dump() for c in credits],
                "amount_paid": total_paid,
            }
            if remaining <= 0:
                changes.update(payment_status=PaymentStatus.PAID, status=InvoiceStatus.PAID, paid_at=now)
            else:
                changes["payment_status"] = PaymentStatus.PARTIALLY_PAID
            updated = self.store.upsert_record(
                _INVOICES, changes, actor=actor, audit_action=AuditAction.PAYMENT, reason=reason
            )

        logger.info(
            "Payment of %.2f recorded on %s; %.2f remaining",
            amount, updated.invoice_number or updated.id, remaining,
        )
        return PaymentResult(invoice=updated, remaining_balance=remaining)

    def account_revenue_stats(
        self,
        account_id: str,
        visible_to: User | str | None = None,
    ) -> AccountRevenueStats:
        """Billed, still-owed and overdue figures over the invoices ``visible_to`` may see."""
        stats = AccountRevenueStats()
        billed = outstanding = 0.0
        for invoice in self.store.list_records(_INVOICES, visible_to=visible_to):
            if getattr(invoice, "account_id", None) != account_id:
                continue
            billed += invoice.total
            if invoice.payment_status != PaymentStatus.PAID:
                outstanding += invoice.balance_due
            if invoice.status == InvoiceStatus.OVERDUE:
                stats.overdue_count += 1
        stats.lifetime_billed = round_money(billed)
        stats.outstanding = round_money(outstanding)
        return stats

    def convert_quote_to_invoice(
        self,
        quote_id: str,
        *,
        actor: User | str | None = None,
        due_days: int = 30,
    ) -> Invoice:
        """Create a draft invoice from a quote and mark the quote accepted.

        Raises:
            NotFound: the quote does not exist.
            ValidationError: the quote was already converted, or the new
                invoice fails the required-field rules.
        """
        with self.store.transaction():
            quote = self._get(_QUOTES, quote_id)
            assert isinstance(quote, Quote)
            for invoice in self.store.list_records(_INVOICES):
                if getattr(invoice, "quote_id", None) == quote.id:
                    converted = invoice.invoice_number or invoice.id
                    raise ValidationError(_QUOTES, invalid_fields={"id": f"already converted to {converted}"})

            today = self.store.clock().date()
            invoice = self.store.upsert_record(
                _INVOICES,
                {
                    "account_id": quote.account_id,
                    "deal_id": quote.deal_id,
                    "quote_id": quote.id,
                    "status": InvoiceStatus.DRAFT,
                    "payment_status": PaymentStatus.UNPAID,
                    "issue_date": today,
                    "invoice_date": today,
                    "due_date": today + timedelta(days=due_days),
                    "line_items": [item.model_dump() for item in quote.line_items],
                },
                actor=actor,
            )
            assert isinstance(invoice, Invoice)
            self.store.upsert_record(
                _QUOTES,
                {"id": quote.id, "status": QUOTE_ACCEPTED},
                actor=actor,
                audit_action=AuditAction.CONVERT,
                reason=f"Converted to invoice {invoice.invoice_number}",
            )

        logger.info(
            "Quote %s converted to invoice %s", quote.quote_number or quote.id, invoice.invoice_number
        )
        return invoice

    def _get(self, entity_type: str, record_id: str):
        record = self.store.find_record(entity_type, record_id)
        if record is None:
            raise NotFound(entity_type, record_id)
        return record
