"""
Bank Reconciliation — match bank-feed transactions with invoices and expenses.

Credits are matched against invoices (payments received), debits against
expenses (payments made). Each candidate gets a coarse confidence:

- green: the amounts agree exactly
- amber: the amounts agree within a tolerance band and the dates are close

A transaction moves between ``unmatched``, ``matched`` and ``ignored``;
``unmatched`` is the hub, so a matched transaction must be unmatched before
it can be ignored. An invoice or expense can be held by at most one matched
transaction at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from crmcore.analyzers.audit_trail import AuditAction
from crmcore.config import ReconciliationConfig
from crmcore.exceptions import InvalidMatch, InvalidTransition, NotFound
from crmcore.models.financial import (
    BankTransaction,
    MatchConfidence,
    MatchTargetType,
    PaymentStatus,
    ReconciliationStatus,
    round_money,
)
from crmcore.models.records import EntityType, Record, User

if TYPE_CHECKING:
    from crmcore.store.entity_store import EntityStore

logger = logging.getLogger("crmcore.analyzers.reconciliation")

_BANK_TRANSACTIONS = EntityType.BANK_TRANSACTIONS.value

_CONFIDENCE_RANK = {
    MatchConfidence.GREEN: 0,
    MatchConfidence.AMBER: 1,
    MatchConfidence.NONE: 2,
}


class ReconcileAction(str, Enum):
    MATCH = "match"
    IGNORE = "ignore"
    UNMATCH = "unmatch"


@dataclass(frozen=True)
class ReconciliationSuggestion:
    """A candidate invoice or expense for one bank transaction."""

    id: str
    type: MatchTargetType
    description: str
    amount: float
    confidence: MatchConfidence
    amount_distance: float = 0.0
    date_distance: int = 0

    @property
    def label(self) -> str:
        return "Exact Match" if self.confidence == MatchConfidence.GREEN else "Possible Match"

    @property
    def sort_key(self) -> tuple[int, float, int, str]:
        return (_CONFIDENCE_RANK[self.confidence], self.amount_distance, self.date_distance, self.id)


@dataclass
class BankFeedSummary:
    """Live aggregates over the bank feed."""

    total: int = 0
    unmatched: int = 0
    matched: int = 0
    ignored: int = 0
    total_inflows: float = 0.0
    total_outflows: float = 0.0
    net_flow: float = 0.0
    unmatched_amount: float = 0.0

    @property
    def reconciliation_rate(self) -> float:
        """Share of transactions no longer waiting for a decision."""
        if self.total == 0:
            return 0.0
        return (self.matched + self.ignored) / self.total


def parse_date(value: Any) -> date | None:
    """Date from a date, datetime or ISO string; None when absent or unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError:
        return None


class ReconciliationEngine:
    """
    Propose and commit matches for bank-feed transactions.

    Every write goes through the entity store inside ``store.transaction()``,
    so two callers racing to match the same invoice are serialised and the
    loser gets :class:`InvalidMatch`.

    Example usage:
        engine = ReconciliationEngine(store)
        for s in engine.get_reconciliation_suggestions(txn.id):
            print(s.label, s.description, s.amount)
        engine.reconcile_transaction(
            txn.id, "match", {"matched_to_id": inv.id, "matched_to_type": "invoices"}
        )
    """

    def __init__(self, store: EntityStore, config: ReconciliationConfig | None = None) -> None:
        self.store = store
        self.config = config or store.config.reconciliation

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def get_reconciliation_suggestions(self, transaction_id: str) -> list[ReconciliationSuggestion]:
        """Ranked match candidates for an unmatched transaction.

        Returns an empty list when the transaction is already matched or
        ignored, or when nothing is close enough.

        Raises:
            NotFound: the transaction does not exist.
        """
        with self.store.transaction():
            txn = self._get_transaction(transaction_id)
            if txn.status != ReconciliationStatus.UNMATCHED:
                return []
            return self._rank_candidates(txn)

    def _rank_candidates(self, txn: BankTransaction) -> list[ReconciliationSuggestion]:
        held = self._held_targets(exclude=txn.id)
        if txn.is_credit:
            target_type = MatchTargetType.INVOICES
            pool = [
                r for r in self.store.list_records(EntityType.INVOICES)
                if self._invoice_eligible(r)
            ]
        else:
            target_type = MatchTargetType.EXPENSES
            pool = [
                r for r in self.store.list_records(EntityType.EXPENSES)
                if self._expense_eligible(r)
            ]

        suggestions = []
        for candidate in pool:
            if (target_type, candidate.id) in held:
                continue
            suggestion = self._score(txn, candidate, target_type)
            if suggestion is not None:
                suggestions.append(suggestion)

        suggestions.sort(key=lambda s: s.sort_key)
        return suggestions[: self.config.max_suggestions]

    def _score(
        self,
        txn: BankTransaction,
        candidate: Record,
        target_type: MatchTargetType,
    ) -> ReconciliationSuggestion | None:
        txn_amount = abs(txn.amount)
        if target_type == MatchTargetType.INVOICES:
            amount = abs(float(getattr(candidate, "total", 0.0) or 0.0))
            days = self._invoice_date_distance(txn.date, candidate)
            description = self._describe_invoice(candidate)
        else:
            amount = abs(float(getattr(candidate, "amount", 0.0) or 0.0))
            days = self._date_distance(txn.date, parse_date(getattr(candidate, "date", None)))
            description = self._describe_expense(candidate)

        distance = round_money(abs(amount - txn_amount))
        if distance <= self.config.exact_amount_epsilon:
            confidence = MatchConfidence.GREEN
        elif (
            distance <= round_money(txn_amount * self.config.amount_tolerance)
            and days <= self.config.date_window_days
        ):
            confidence = MatchConfidence.AMBER
        else:
            return None

        return ReconciliationSuggestion(
            id=candidate.id,
            type=target_type,
            description=description,
            amount=amount,
            confidence=confidence,
            amount_distance=distance,
            date_distance=days,
        )

    def _invoice_eligible(self, invoice: Record) -> bool:
        status = getattr(invoice, "status", None)
        status = status.value if isinstance(status, Enum) else status
        if status not in self.config.eligible_invoice_statuses:
            return False
        return getattr(invoice, "payment_status", None) != PaymentStatus.PAID

    def _expense_eligible(self, expense: Record) -> bool:
        return getattr(expense, "status", None) not in self.config.excluded_expense_statuses

    @staticmethod
    def _date_distance(txn_date: date, other: date | None) -> int:
        """Days between two dates; a missing date counts as in-window."""
        if other is None:
            return 0
        return abs((txn_date - other).days)

    def _invoice_date_distance(self, txn_date: date, invoice: Record) -> int:
        issued = parse_date(getattr(invoice, "issue_date", None) or getattr(invoice, "invoice_date", None))
        due = parse_date(getattr(invoice, "due_date", None))
        if issued and due and issued <= txn_date <= due:
            return 0
        known = [d for d in (issued, due) if d is not None]
        if not known:
            return 0
        return min(self._date_distance(txn_date, d) for d in known)

    def _describe_invoice(self, invoice: Record) -> str:
        account = self.store.find_record(EntityType.ACCOUNTS, getattr(invoice, "account_id", None))
        account_name = getattr(account, "name", None) or "Unknown"
        number = getattr(invoice, "invoice_number", "") or invoice.id
        return f"{number} - {account_name}"

    @staticmethod
    def _describe_expense(expense: Record) -> str:
        return f"{getattr(expense, 'vendor', '')} - {getattr(expense, 'category', '')}"

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def reconcile_transaction(
        self,
        transaction_id: str,
        action: ReconcileAction | str,
        payload: dict[str, Any] | None = None,
        *,
        actor: User | str | None = None,
    ) -> BankTransaction:
        """Apply ``match``, ``ignore`` or ``unmatch`` to a transaction.

        Repeating an action that is already in effect returns the stored
        transaction unchanged.

        Raises:
            NotFound: the transaction does not exist.
            InvalidMatch: the match target is missing or held by another transaction.
            InvalidTransition: the action is not allowed from the current status.
        """
        action = ReconcileAction(action)
        payload = payload or {}

        with self.store.transaction():
            txn = self._get_transaction(transaction_id)
            if action == ReconcileAction.MATCH:
                result = self._match(txn, payload, actor)
            elif action == ReconcileAction.IGNORE:
                result = self._ignore(txn, payload, actor)
            else:
                result = self._unmatch(txn, actor)

        if result is not txn:
            logger.info("Transaction %s: %s -> %s", txn.id, action.value, result.status.value)
        return result

    def _match(
        self,
        txn: BankTransaction,
        payload: dict[str, Any],
        actor: User | str | None,
    ) -> BankTransaction:
        target_id = payload.get("matched_to_id")
        raw_type = payload.get("matched_to_type")
        if not target_id or not raw_type:
            raise InvalidMatch("match requires matched_to_id and matched_to_type")
        try:
            target_type = MatchTargetType(getattr(raw_type, "value", raw_type))
        except ValueError as exc:
            raise InvalidMatch(f"Cannot match to {raw_type!r}") from exc

        if txn.status == ReconciliationStatus.MATCHED:
            if txn.matched_to_id == target_id and txn.matched_to_type == target_type:
                return txn
            raise InvalidTransition(txn.id, txn.status.value, "rematch")
        if txn.status == ReconciliationStatus.IGNORED:
            raise InvalidTransition(txn.id, txn.status.value, ReconcileAction.MATCH.value)

        if target_type != MatchTargetType.OTHER:
            if self.store.find_record(target_type.value, target_id) is None:
                raise InvalidMatch(f"{target_type.value}/{target_id} does not exist")
            holder = self._held_targets(exclude=txn.id).get((target_type, target_id))
            if holder is not None:
                raise InvalidMatch(
                    f"{target_type.value}/{target_id} is already matched to transaction {holder}"
                )

        changes: dict[str, Any] = {
            "id": txn.id,
            "status": ReconciliationStatus.MATCHED,
            "match_confidence": MatchConfidence.GREEN,
            "matched_to_id": target_id,
            "matched_to_type": target_type,
            "reconciled": True,
            "reconciled_at": self.store.clock(),
            "reconciled_by": self.store.actor_id(actor),
        }
        notes = payload.get("notes")
        if notes:
            changes["notes"] = notes
        return self._write(changes, actor, AuditAction.MATCH, notes)

    def _ignore(
        self,
        txn: BankTransaction,
        payload: dict[str, Any],
        actor: User | str | None,
    ) -> BankTransaction:
        if txn.status == ReconciliationStatus.IGNORED:
            return txn
        if txn.status == ReconciliationStatus.MATCHED:
            raise InvalidTransition(txn.id, txn.status.value, ReconcileAction.IGNORE.value)

        changes: dict[str, Any] = {
            "id": txn.id,
            "status": ReconciliationStatus.IGNORED,
            "match_confidence": MatchConfidence.NONE,
            "matched_to_id": None,
            "matched_to_type": None,
            "reconciled": False,
            "reconciled_at": self.store.clock(),
            "reconciled_by": self.store.actor_id(actor),
        }
        notes = payload.get("notes")
        if notes:
            changes["notes"] = notes
        return self._write(changes, actor, AuditAction.IGNORE, notes)

    def _unmatch(self, txn: BankTransaction, actor: User | str | None) -> BankTransaction:
        if txn.status == ReconciliationStatus.UNMATCHED:
            return txn

        suggestions = self._rank_candidates(txn)
        confidence = suggestions[0].confidence if suggestions else MatchConfidence.NONE
        changes: dict[str, Any] = {
            "id": txn.id,
            "status": ReconciliationStatus.UNMATCHED,
            "match_confidence": confidence,
            "matched_to_id": None,
            "matched_to_type": None,
            "reconciled": False,
            "reconciled_at": None,
            "reconciled_by": None,
        }
        return self._write(changes, actor, AuditAction.UNMATCH, None)

    def _write(
        self,
        changes: dict[str, Any],
        actor: User | str | None,
        audit_action: AuditAction,
        reason: str | None,
    ) -> BankTransaction:
        record = self.store.upsert_record(
            _BANK_TRANSACTIONS, changes, actor=actor, audit_action=audit_action, reason=reason
        )
        assert isinstance(record, BankTransaction)
        return record

    def _get_transaction(self, transaction_id: str) -> BankTransaction:
        record = self.store.find_record(_BANK_TRANSACTIONS, transaction_id)
        if record is None:
            raise NotFound(_BANK_TRANSACTIONS, transaction_id)
        assert isinstance(record, BankTransaction)
        return record

    def _held_targets(self, exclude: str | None = None) -> dict[tuple[MatchTargetType, str], str]:
        """(target type, target id) -> id of the matched transaction holding it."""
        held: dict[tuple[MatchTargetType, str], str] = {}
        for txn in self.store.list_records(_BANK_TRANSACTIONS):
            if txn.id == exclude or not isinstance(txn, BankTransaction):
                continue
            if txn.status == ReconciliationStatus.MATCHED and txn.matched_to_id and txn.matched_to_type:
                held[(txn.matched_to_type, txn.matched_to_id)] = txn.id
        return held

    # ------------------------------------------------------------------
    # Aggregates and batch operations
    # ------------------------------------------------------------------

    def summary(self) -> BankFeedSummary:
        """Counts and cash-flow totals, recomputed from the live collection."""
        result = BankFeedSummary()
        inflows = outflows = unmatched_amount = 0.0
        for txn in self.store.list_records(_BANK_TRANSACTIONS):
            if not isinstance(txn, BankTransaction):
                continue
            result.total += 1
            amount = abs(txn.amount)
            if txn.status == ReconciliationStatus.UNMATCHED:
                result.unmatched += 1
                unmatched_amount += amount
            elif txn.status == ReconciliationStatus.MATCHED:
                result.matched += 1
            else:
                result.ignored += 1
            if txn.is_credit:
                inflows += amount
            else:
                outflows += amount

        result.total_inflows = round_money(inflows)
        result.total_outflows = round_money(outflows)
        result.net_flow = round_money(inflows - outflows)
        result.unmatched_amount = round_money(unmatched_amount)
        return result

    def refresh_confidence(self, transaction_ids: list[str] | None = None) -> list[BankTransaction]:
        """Pre-score unmatched transactions with their best suggestion confidence.

        Returns the transactions whose confidence changed.
        """
        changed = []
        with self.store.transaction():
            if transaction_ids is None:
                targets = self.store.list_records(_BANK_TRANSACTIONS)
            else:
                targets = [self._get_transaction(i) for i in transaction_ids]

            for txn in targets:
                if not isinstance(txn, BankTransaction) or txn.status != ReconciliationStatus.UNMATCHED:
                    continue
                suggestions = self._rank_candidates(txn)
                best = suggestions[0].confidence if suggestions else MatchConfidence.NONE
                if best != txn.match_confidence:
                    changed.append(
                        self.store.upsert_record(
                            _BANK_TRANSACTIONS, {"id": txn.id, "match_confidence": best}
                        )
                    )
        logger.info("Refreshed match confidence on %d transactions", len(changed))
        return changed

    def auto_reconcile(
        self,
        actor: User | str | None = None,
    ) -> tuple[list[BankTransaction], list[BankTransaction]]:
        """
        Match every unmatched transaction that has exactly one green suggestion.

        Returns:
            Tuple of (matched transactions, transactions that need review).
        """
        matched: list[BankTransaction] = []
        needs_review: list[BankTransaction] = []

        with self.store.transaction():
            for txn in self.store.list_records(_BANK_TRANSACTIONS):
                if not isinstance(txn, BankTransaction) or txn.status != ReconciliationStatus.UNMATCHED:
                    continue
                suggestions = self._rank_candidates(txn)
                green = [s for s in suggestions if s.confidence == MatchConfidence.GREEN]
                if len(green) != 1:
                    needs_review.append(txn)
                    continue
                best = green[0]
                result = self.reconcile_transaction(
                    txn.id,
                    ReconcileAction.MATCH,
                    {"matched_to_id": best.id, "matched_to_type": best.type},
                    actor=actor,
                )
                matched.append(result)

        logger.info("Auto-reconciled %d transactions, %d need review", len(matched), len(needs_review))
        return matched, needs_review


__all__ = [
    "BankFeedSummary",
    "ReconcileAction",
    "ReconciliationEngine",
    "ReconciliationSuggestion",
    "parse_date",
]
