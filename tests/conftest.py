"""Shared fixtures."""

from datetime import date
from typing import Any, Callable

import pytest

from crmcore.config import CRMCoreConfig
from crmcore.models.records import Record
from crmcore.store.entity_store import EntityStore

LEAD_DATA = {
    "name": "Ada Lovelace",
    "email": "ada@example.com",
    "company": "Analytical Engines Ltd",
    "phone": "555-0100",
}


@pytest.fixture
def config() -> CRMCoreConfig:
    return CRMCoreConfig()


@pytest.fixture
def store(config: CRMCoreConfig) -> EntityStore:
    return EntityStore(config)


@pytest.fixture
def lead(store: EntityStore) -> Record:
    return store.upsert_record("leads", LEAD_DATA)


@pytest.fixture
def account(store: EntityStore) -> Record:
    return store.upsert_record("accounts", {"name": "Acme Corp", "industry": "Retail"})


@pytest.fixture
def make_invoice(store: EntityStore, account: Record) -> Callable[..., Record]:
    def _make(amount: float, **fields: Any) -> Record:
        data = {
            "account_id": account.id,
            "issue_date": date(2025, 1, 1),
            "due_date": date(2025, 1, 31),
            "line_items": [{"description": "Services", "qty": 1, "unit_price": amount}],
            "status": "Sent",
        }
        data.update(fields)
        return store.upsert_record("invoices", data)

    return _make


@pytest.fixture
def make_expense(store: EntityStore) -> Callable[..., Record]:
    def _make(amount: float, **fields: Any) -> Record:
        data = {
            "vendor": "Staples",
            "category": "Supplies",
            "amount": amount,
            "date": date(2025, 1, 10),
        }
        data.update(fields)
        return store.upsert_record("expenses", data)

    return _make


@pytest.fixture
def make_transaction(store: EntityStore) -> Callable[..., Record]:
    def _make(amount: float, type: str = "Credit", **fields: Any) -> Record:
        data = {
            "date": date(2025, 1, 15),
            "description": "Bank line",
            "amount": amount,
            "type": type,
        }
        data.update(fields)
        return store.upsert_record("bankTransactions", data)

    return _make
