"""
Example: Import a bank statement and reconcile it against open invoices.

Run (in-memory, nothing persisted):
    python examples/bank_feed/run_reconciliation.py

Run (auto-match every unambiguous exact match):
    python examples/bank_feed/run_reconciliation.py --auto

Or via CLI:
    crmcore import-bank examples/bank_feed/statement.csv --db sqlite:///crm.db
    crmcore bank-feed --db sqlite:///crm.db
"""

import asyncio
import sys
from datetime import date
from pathlib import Path

from crmcore import CRMCore

# Get the directory where this script lives
SCRIPT_DIR = Path(__file__).parent.resolve()
CSV_PATH = SCRIPT_DIR / "statement.csv"


def _seed(crm: CRMCore) -> None:
    acme = crm.upsert_record("accounts", {"name": "Acme Corp", "industry": "Manufacturing"})
    globex = crm.upsert_record("accounts", {"name": "Globex", "industry": "Logistics"})
    crm.upsert_record("invoices", {
        "account_id": acme.id,
        "issue_date": date(2025, 1, 2),
        "due_date": date(2025, 2, 1),
        "line_items": [{"description": "Implementation", "qty": 1, "unit_price": 2400}],
        "status": "Sent",
    })
    # 1.2k with a small bank charge deducted on receipt
    crm.upsert_record("invoices", {
        "account_id": globex.id,
        "issue_date": date(2025, 1, 5),
        "due_date": date(2025, 2, 4),
        "line_items": [{"description": "Support retainer", "qty": 1, "unit_price": 1200}],
        "status": "Sent",
    })
    crm.upsert_record("expenses", {
        "vendor": "Staples",
        "category": "Supplies",
        "amount": 129.99,
        "date": date(2025, 1, 14),
    })


async def main() -> None:
    auto = "--auto" in sys.argv

    crm = CRMCore.from_config(None, org_id="demo")
    _seed(crm)

    imported = await crm.import_bank_feed(str(CSV_PATH))
    print(f"Imported {imported} bank transactions from {CSV_PATH.name}")
    print("=" * 60)

    if auto:
        matched, needs_review = crm.engine.auto_reconcile(actor="example")
        print(f"Auto-matched {len(matched)}, {len(needs_review)} need review")
        print()

    for txn in crm.entity_store.list_records("bankTransactions"):
        print(f"{txn.date}  {txn.description:32} {txn.type.value:6} ${txn.amount:>10,.2f}  {txn.status.value}")
        for s in crm.suggestions(txn.id):
            print(f"    -> {s.label:14} {s.description}  (${s.amount:,.2f})")

    summary = crm.summary()
    print()
    print(f"Reconciliation rate: {summary.reconciliation_rate:.0%}")
    print(f"Unmatched amount:    ${summary.unmatched_amount:,.2f}")

    report = crm.audit()
    Path("crmcore_reports").mkdir(exist_ok=True)
    Path("crmcore_reports/integrity.md").write_text(report.to_markdown())
    print("\nIntegrity report saved to crmcore_reports/integrity.md")


if __name__ == "__main__":
    asyncio.run(main())
