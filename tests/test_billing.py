"""Tests for invoice payments, account revenue and quote conversion."""

from datetime import datetime, timedelta, timezone

import pytest

from crmcore.analyzers.audit_trail import AuditAction
from crmcore.analyzers.billing import BillingService
from crmcore.analyzers.reconciliation import ReconciliationEngine
from crmcore.config import CRMCoreConfig
from crmcore.exceptions import NotFound, ValidationError
from crmcore.models.financial import InvoiceStatus, PaymentStatus
from crmcore.store.entity_store import EntityStore

FIXED = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def billing(store: EntityStore) -> BillingService:
    return BillingService(store)


@pytest.fixture
def quote(store: EntityStore, account):
    return store.upsert_record("quotes", {
        "deal_id": "d1",
        "account_id": account.id,
        "line_items": [{"description": "Seats", "qty": 2, "unit_price": 50, "tax_rate": 10}],
    })


class TestRecordPayment:
    def test_partial_payment(self, billing, make_invoice) -> None:
        invoice = make_invoice(1000)
        result = billing.record_payment(invoice.id, 400, "bank_transfer", reference="R-100")

        assert result.remaining_balance == 600.0
        paid = result.invoice
        assert paid.payment_status == PaymentStatus.PARTIALLY_PAID
        assert paid.status == InvoiceStatus.SENT
        assert paid.amount_paid == 400.0
        assert paid.balance_due == 600.0
        assert paid.paid_at is None
        assert [c.reason for c in paid.credits] == ["Payment via bank_transfer (Ref: R-100)"]

    def test_final_payment_settles_invoice(self, config: CRMCoreConfig, account) -> None:
        store = EntityStore(config, clock=lambda: FIXED)
        billing = BillingService(store)
        invoice = store.upsert_record("invoices", {
            "account_id": account.id,
            "issue_date": FIXED.date(),
            "due_date": FIXED.date(),
            "line_items": [{"qty": 1, "unit_price": 250}],
            "status": "Sent",
        })
        billing.record_payment(invoice.id, 100, "card")
        result = billing.record_payment(invoice.id, 150, "check", reference="881", note="final", actor="u1")

        settled = result.invoice
        assert result.remaining_balance == 0.0
        assert settled.status == InvoiceStatus.PAID
        assert settled.payment_status == PaymentStatus.PAID
        assert settled.paid_at == FIXED
        assert settled.amount_paid == 250.0
        assert settled.balance_due == 0.0
        assert len(settled.credits) == 2
        assert settled.credits[1].reason == "Payment via check (Ref: 881) - final"

        last = store.audit_trail.get_entity_history("invoices", invoice.id)[-1]
        assert last.action == AuditAction.PAYMENT
        assert last.user_id == "u1"
        assert last.reason == "Payment via check (Ref: 881) - final"

    def test_overpayment_leaves_nothing_remaining(self, billing, make_invoice) -> None:
        invoice = make_invoice(80)
        result = billing.record_payment(invoice.id, 100, "cash")
        assert result.remaining_balance == 0.0
        assert result.invoice.payment_status == PaymentStatus.PAID

    def test_settled_invoice_leaves_reconciliation_pool(
        self, store, billing, make_invoice, make_transaction
    ) -> None:
        invoice = make_invoice(500)
        txn = make_transaction(500)
        engine = ReconciliationEngine(store)
        assert [s.id for s in engine.get_reconciliation_suggestions(txn.id)] == [invoice.id]

        billing.record_payment(invoice.id, 500, "cash")
        assert engine.get_reconciliation_suggestions(txn.id) == []

    @pytest.mark.parametrize("amount, method, field", [
        (0, "cash", "amount"),
        (-5, "cash", "amount"),
        (10, "barter", "method"),
    ])
    def test_rejects_bad_input(self, billing, make_invoice, amount, method, field) -> None:
        invoice = make_invoice(100)
        with pytest.raises(ValidationError) as exc:
            billing.record_payment(invoice.id, amount, method)
        assert field in exc.value.invalid_fields

    def test_cancelled_invoice(self, billing, make_invoice) -> None:
        invoice = make_invoice(100, status="Cancelled")
        with pytest.raises(ValidationError):
            billing.record_payment(invoice.id, 100, "cash")

    def test_unknown_invoice(self, billing) -> None:
        with pytest.raises(NotFound):
            billing.record_payment("missing", 10, "cash")


class TestAccountRevenueStats:
    def test_totals(self, store, billing, account, make_invoice) -> None:
        partly = make_invoice(1000)
        billing.record_payment(partly.id, 400, "card")
        make_invoice(500, status="Overdue")
        settled = make_invoice(300)
        billing.record_payment(settled.id, 300, "cash")
        make_invoice(999, account_id="other")

        stats = billing.account_revenue_stats(account.id)
        assert stats.lifetime_billed == 1800.0
        assert stats.outstanding == 1100.0
        assert stats.overdue_count == 1

    def test_visibility(self, store, billing, account, make_invoice) -> None:
        agent = store.upsert_record("users", {"name": "Agent", "role": "agent"})
        make_invoice(100, owner_id=agent.id)
        make_invoice(200, owner_id="someone-else")

        assert billing.account_revenue_stats(account.id, visible_to=agent.id).lifetime_billed == 100.0
        assert billing.account_revenue_stats(account.id).lifetime_billed == 300.0

    def test_account_without_invoices(self, billing) -> None:
        stats = billing.account_revenue_stats("nobody")
        assert (stats.lifetime_billed, stats.outstanding, stats.overdue_count) == (0.0, 0.0, 0)


class TestConvertQuote:
    def test_creates_draft_invoice(self, store, billing, quote) -> None:
        invoice = billing.convert_quote_to_invoice(quote.id, actor="u1")

        assert invoice.invoice_number == "INV-1001"
        assert invoice.quote_id == quote.id
        assert invoice.deal_id == "d1"
        assert invoice.account_id == quote.account_id
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.payment_status == PaymentStatus.UNPAID
        assert invoice.total == quote.total == 110.0
        assert invoice.due_date == invoice.issue_date + timedelta(days=30)
        assert invoice.created_by == "u1"

        accepted = store.get_record("quotes", quote.id)
        assert accepted.status == "Accepted"
        last = store.audit_trail.get_entity_history("quotes", quote.id)[-1]
        assert last.action == AuditAction.CONVERT
        assert last.reason == "Converted to invoice INV-1001"

    def test_converts_once(self, store, billing, quote) -> None:
        billing.convert_quote_to_invoice(quote.id)
        with pytest.raises(ValidationError):
            billing.convert_quote_to_invoice(quote.id)
        assert store.count("invoices") == 1

    def test_unknown_quote(self, billing) -> None:
        with pytest.raises(NotFound):
            billing.convert_quote_to_invoice("missing")
