"""
Bank Feed CSV Connector — import bank statement exports as bank transactions.

Supports any CSV with date and amount columns (or separate credit/debit
columns). Direction comes from a type column when present, otherwise from
the sign of the amount. Rows whose bank reference is already in the store
are skipped, and new rows are pre-scored with their best match confidence.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pandas as pd

from crmcore.analyzers.reconciliation import ReconciliationEngine
from crmcore.connectors.base import BaseConnector
from crmcore.models.financial import BankTransactionType
from crmcore.models.records import EntityType

if TYPE_CHECKING:
    from crmcore.store.entity_store import EntityStore

logger = logging.getLogger("crmcore.connectors.csv")

# Common column name mappings
_COLUMN_ALIASES: dict[str, list[str]] = {
    "date": ["date", "transaction_date", "txn_date", "posted_date", "posting_date", "value_date"],
    "amount": ["amount", "value", "net_amount", "transaction_amount", "sum"],
    "credit": ["credit", "credit_amount", "money_in", "deposit", "paid_in"],
    "debit": ["debit", "debit_amount", "money_out", "withdrawal", "paid_out"],
    "description": ["description", "memo", "narrative", "details", "payee", "particulars"],
    "type": ["type", "transaction_type", "dr_cr", "direction", "cr_dr"],
    "reference": ["reference", "bank_reference", "ref", "transaction_id", "fitid"],
}

_CREDIT_WORDS = {"credit", "cr", "c", "deposit", "in"}
_DEBIT_WORDS = {"debit", "dr", "d", "withdrawal", "out", "payment"}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, float) and pd.isna(value)) or str(value).strip() == ""


class BankFeedCSVConnector(BaseConnector):
    """Import bank statement CSVs into ``bankTransactions``.

    Usage::

        connector = BankFeedCSVConnector(file_path="statement.csv")
        imported = await connector.pull(store)
    """

    name = "bank_csv"
    description = "Import bank statement CSV exports"

    def __init__(
        self,
        credentials: dict[str, Any] | None = None,
        file_path: str | None = None,
        **options: Any,
    ) -> None:
        super().__init__(credentials, **options)
        # file_path can come from: direct param, options, or credentials
        creds = credentials or {}
        self.file_path = (
            file_path
            or options.get("file_path")
            or creds.get("file_path", "")
        )
        self.encoding = options.get("encoding", "utf-8")
        self.delimiter = options.get("delimiter", ",")
        self.actor = options.get("actor", "bank_feed")

    async def pull(self, store: EntityStore) -> int:
        """Read the CSV, add unseen rows to the store and pre-score them."""
        path = Path(self.file_path)
        if not path.exists():
            raise FileNotFoundError(f"CSV file not found: {self.file_path}")

        df = pd.read_csv(path, encoding=self.encoding, delimiter=self.delimiter)
        df.columns = df.columns.str.strip().str.lower()

        col_map = self._detect_columns(df)
        payloads = self._parse_transactions(df, col_map)

        created_ids: list[str] = []
        with store.transaction():
            seen = {
                getattr(t, "bank_reference", None)
                for t in store.list_records(EntityType.BANK_TRANSACTIONS)
            }
            seen.discard(None)
            for payload in payloads:
                reference = payload.get("bank_reference")
                if reference and reference in seen:
                    logger.debug("Skipping duplicate bank reference %s", reference)
                    continue
                record = store.upsert_record(
                    EntityType.BANK_TRANSACTIONS, payload, actor=self.actor
                )
                created_ids.append(record.id)
                if reference:
                    seen.add(reference)

            if created_ids:
                ReconciliationEngine(store).refresh_confidence(created_ids)

        logger.info(
            "Imported %d of %d transactions from %s", len(created_ids), len(payloads), path.name
        )
        return len(created_ids)

    async def validate_credentials(self) -> bool:
        """Check if the CSV file exists and is readable."""
        path = Path(self.file_path)
        return path.exists() and path.is_file()

    def _detect_columns(self, df: pd.DataFrame) -> dict[str, str]:
        """Auto-detect column mappings from the DataFrame."""
        col_map: dict[str, str] = {}
        df_cols = set(df.columns)

        for field, aliases in _COLUMN_ALIASES.items():
            for alias in aliases:
                if alias in df_cols:
                    col_map[field] = alias
                    break

        return col_map

    def _parse_transactions(
        self, df: pd.DataFrame, col_map: dict[str, str]
    ) -> list[dict[str, Any]]:
        """Convert DataFrame rows to bank transaction payloads."""
        payloads: list[dict[str, Any]] = []

        date_col = col_map.get("date")
        has_amount = "amount" in col_map or "credit" in col_map or "debit" in col_map
        if not date_col or not has_amount:
            logger.warning("Bank CSV missing required columns (date, amount or credit/debit)")
            return payloads

        for index, row in df.iterrows():
            try:
                txn_date = self._parse_date(row[date_col])
                signed = self._signed_amount(row, col_map)
            except (ValueError, TypeError) as e:
                logger.warning("Skipping row %s: %s", index, e)
                continue
            if txn_date is None or signed is None:
                logger.warning("Skipping row %s: missing date or amount", index)
                continue

            desc_col = col_map.get("description")
            ref_col = col_map.get("reference")
            reference = row[ref_col] if ref_col else None
            payloads.append({
                "date": txn_date,
                "description": "" if not desc_col or _is_blank(row[desc_col]) else str(row[desc_col]),
                "amount": abs(signed),
                "type": self._direction(row, col_map, signed),
                "bank_reference": None if _is_blank(reference) else str(reference),
            })

        return payloads

    @staticmethod
    def _parse_date(raw: Any) -> date | None:
        if _is_blank(raw):
            return None
        if isinstance(raw, datetime):
            return raw.date()
        if isinstance(raw, date):
            return raw
        return pd.to_datetime(str(raw)).date()

    @staticmethod
    def _signed_amount(row: pd.Series, col_map: dict[str, str]) -> float | None:
        amount_col = col_map.get("amount")
        if amount_col and not _is_blank(row[amount_col]):
            return float(str(row[amount_col]).replace(",", ""))

        credit_col = col_map.get("credit")
        debit_col = col_map.get("debit")
        credit = row[credit_col] if credit_col else None
        debit = row[debit_col] if debit_col else None
        if not _is_blank(credit):
            return abs(float(str(credit).replace(",", "")))
        if not _is_blank(debit):
            return -abs(float(str(debit).replace(",", "")))
        return None

    @staticmethod
    def _direction(row: pd.Series, col_map: dict[str, str], signed: float) -> BankTransactionType:
        type_col = col_map.get("type")
        if type_col and not _is_blank(row[type_col]):
            word = str(row[type_col]).strip().lower()
            if word in _CREDIT_WORDS:
                return BankTransactionType.CREDIT
            if word in _DEBIT_WORDS:
                return BankTransactionType.DEBIT
        return BankTransactionType.DEBIT if signed < 0 else BankTransactionType.CREDIT
