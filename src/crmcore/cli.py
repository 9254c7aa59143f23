"""
crmcore CLI — command-line interface.

Usage:
    crmcore audit --config crmcore.yaml --format json -o report.json
    crmcore import-bank statement.csv --db sqlite:///crm.db
    crmcore suggest <transaction-id> --db sqlite:///crm.db
    crmcore reconcile <transaction-id> match --target-id <invoice-id> --target-type invoices
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from crmcore import __version__

app = typer.Typer(
    name="crmcore",
    help="crmcore — entity store, bank reconciliation and integrity audit",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_CONFIDENCE_COLORS = {"green": "green", "amber": "yellow", "none": "dim"}


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold]crmcore[/bold] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """crmcore — records, reconciliation and integrity checks for your CRM."""


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def _open(config: str, database_url: str | None):  # noqa: ANN202
    """Build a CRMCore from config and load any persisted state."""
    from crmcore.core import CRMCore

    overrides = {"database_url": database_url} if database_url else {}
    config_path = config if Path(config).exists() else None
    crm = CRMCore.from_config(config_path, **overrides)
    _configure_logging(crm.config.log_level)
    if crm.config.database_url:
        with console.status("[bold green]Loading records...[/bold green]"):
            crm.load_sync()
    return crm


def _fail(exc: Exception) -> None:
    from crmcore.exceptions import ValidationError

    message = exc.user_message() if isinstance(exc, ValidationError) else str(exc)
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


_CONFIG_OPTION = typer.Option("crmcore.yaml", "--config", "-c", help="Path to config file")
_DB_OPTION = typer.Option(None, "--db", help="SQLAlchemy database URL (overrides config)")


@app.command()
def audit(
    config: str = _CONFIG_OPTION,
    db: str = _DB_OPTION,
    user: str = typer.Option(None, "--user", "-u", help="User id for persona-filter checks"),
    fmt: str = typer.Option("markdown", "--format", "-f", help="Report format: markdown or json"),
    output: str = typer.Option(None, "--output", "-o", help="Write the report to this file"),
) -> None:
    """Run the integrity audit over the stored records."""
    if fmt not in ("markdown", "json"):
        console.print(f"[red]Error:[/red] unknown format {fmt!r} (use markdown or json)")
        raise typer.Exit(1)

    console.print(Panel.fit(
        "[bold blue]crmcore[/bold blue] — Integrity Audit",
        subtitle=f"v{__version__}",
    ))
    crm = _open(config, db)
    with console.status("[bold green]Running audit...[/bold green]"):
        report = crm.audit(user=user)

    _display_report(report)
    if output:
        content = report.to_json() if fmt == "json" else report.to_markdown()
        Path(output).write_text(content)
        console.print(f"[green]✓[/green] Report saved to [bold]{output}[/bold]")
    if not report.is_healthy:
        raise typer.Exit(2)


@app.command("bank-feed")
def bank_feed(
    config: str = _CONFIG_OPTION,
    db: str = _DB_OPTION,
) -> None:
    """Show bank feed totals and the transactions waiting for a decision."""
    from crmcore.models.records import EntityType

    crm = _open(config, db)
    summary = crm.summary()

    table = Table(title="Bank Feed", show_lines=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Transactions", str(summary.total))
    table.add_row("Unmatched", str(summary.unmatched))
    table.add_row("Matched", str(summary.matched))
    table.add_row("Ignored", str(summary.ignored))
    table.add_row("Total Inflows", f"${summary.total_inflows:,.2f}")
    table.add_row("Total Outflows", f"${summary.total_outflows:,.2f}")
    table.add_row("Net Flow", f"${summary.net_flow:,.2f}")
    table.add_row("Unmatched Amount", f"${summary.unmatched_amount:,.2f}")
    table.add_row("Reconciliation Rate", f"{summary.reconciliation_rate:.0%}")
    console.print(table)

    pending = [
        t for t in crm.entity_store.list_records(EntityType.BANK_TRANSACTIONS)
        if t.status.value == "unmatched"
    ]
    if pending:
        console.print()
        txns = Table(title="Unmatched Transactions")
        txns.add_column("ID", style="dim")
        txns.add_column("Date")
        txns.add_column("Description")
        txns.add_column("Type")
        txns.add_column("Amount", justify="right")
        txns.add_column("Confidence")
        for txn in pending:
            confidence = txn.match_confidence.value
            color = _CONFIDENCE_COLORS.get(confidence, "white")
            txns.add_row(
                txn.id,
                txn.date.isoformat(),
                txn.description,
                txn.type.value,
                f"${txn.amount:,.2f}",
                f"[{color}]{confidence}[/{color}]",
            )
        console.print(txns)


@app.command()
def suggest(
    transaction_id: str = typer.Argument(..., help="Bank transaction id"),
    config: str = _CONFIG_OPTION,
    db: str = _DB_OPTION,
) -> None:
    """List match candidates for one bank transaction."""
    from crmcore.exceptions import CRMCoreError

    crm = _open(config, db)
    try:
        suggestions = crm.suggestions(transaction_id)
    except CRMCoreError as e:
        _fail(e)
        return

    if not suggestions:
        console.print("[dim]No suggestions for this transaction.[/dim]")
        return

    table = Table(title=f"Suggestions for {transaction_id}")
    table.add_column("#", justify="right")
    table.add_column("Match")
    table.add_column("Type")
    table.add_column("ID", style="dim")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    for i, s in enumerate(suggestions, 1):
        color = _CONFIDENCE_COLORS.get(s.confidence.value, "white")
        table.add_row(
            str(i),
            f"[{color}]{s.label}[/{color}]",
            s.type.value,
            s.id,
            s.description,
            f"${s.amount:,.2f}",
        )
    console.print(table)


@app.command()
def reconcile(
    transaction_id: str = typer.Argument(..., help="Bank transaction id"),
    action: str = typer.Argument(..., help="match, ignore or unmatch"),
    target_id: str = typer.Option(None, "--target-id", help="Invoice or expense id to match"),
    target_type: str = typer.Option(None, "--target-type", help="invoices, expenses or other"),
    notes: str = typer.Option(None, "--notes", help="Reason recorded in the audit trail"),
    actor: str = typer.Option(None, "--actor", help="User id performing the action"),
    config: str = _CONFIG_OPTION,
    db: str = _DB_OPTION,
) -> None:
    """Match, ignore or unmatch a bank transaction."""
    from crmcore.analyzers.reconciliation import ReconcileAction
    from crmcore.exceptions import CRMCoreError

    if action not in {a.value for a in ReconcileAction}:
        console.print(f"[red]Error:[/red] unknown action {action!r} (use match, ignore or unmatch)")
        raise typer.Exit(1)

    crm = _open(config, db)
    payload = {"matched_to_id": target_id, "matched_to_type": target_type, "notes": notes}
    try:
        txn = crm.reconcile(transaction_id, action, payload, actor=actor)
    except CRMCoreError as e:
        _fail(e)
        return

    crm.save_sync()
    console.print(f"[green]✓[/green] Transaction [bold]{txn.id}[/bold] is now {txn.status.value}")


@app.command("import-bank")
def import_bank(
    csv: str = typer.Argument(..., help="Bank statement CSV"),
    config: str = _CONFIG_OPTION,
    db: str = _DB_OPTION,
    delimiter: str = typer.Option(",", "--delimiter", help="CSV delimiter"),
) -> None:
    """Import a bank statement CSV into the bank feed."""
    crm = _open(config, db)
    if not Path(csv).exists():
        console.print(f"[red]Error:[/red] CSV file not found: {csv}")
        raise typer.Exit(1)

    with console.status("[bold green]Importing...[/bold green]"):
        imported = asyncio.run(crm.import_bank_feed(csv, delimiter=delimiter))
    crm.save_sync()
    console.print(f"[green]✓[/green] Imported [bold]{imported}[/bold] transactions")


@app.command()
def connectors() -> None:
    """List all available connectors."""
    from crmcore.connectors.registry import ConnectorRegistry

    table = Table(title="Available Connectors")
    table.add_column("Type", style="bold cyan")
    table.add_column("Module")
    table.add_column("Status")

    for name, path in ConnectorRegistry.builtin_types().items():
        module = path.rsplit(".", 1)[0]
        try:
            __import__(module)
            status = "✅ Available"
        except ImportError:
            status = "📦 Needs install"
        table.add_row(name, path, status)

    console.print(table)


def _display_report(report) -> None:  # noqa: ANN001
    """Display report summary in the terminal."""
    console.print()

    table = Table(title="Integrity Summary", show_lines=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Total Checks", str(report.summary.total_checks))
    table.add_row("Passed", str(report.summary.passed))
    table.add_row("Failed", str(report.summary.failed))
    table.add_row("Integrity Score", f"{report.summary.integrity_score}/100")
    table.add_row("Settings", report.settings.health)
    table.add_row("Orphans", str(report.relationships.orphan_count))
    table.add_row("Seed", report.seed_integrity.status)
    console.print(table)
    console.print()

    if report.failures:
        console.print("[bold]Failures:[/bold]")
        for i, failure in enumerate(report.failures[:10], 1):
            console.print(
                f"  {i}. [red][{failure.failure_code.value}][/red] "
                f"{failure.entity_type}/{failure.record_id} — "
                f"expected {failure.expected}, got {failure.actual}"
            )
        if len(report.failures) > 10:
            console.print(f"  [dim]... and {len(report.failures) - 10} more[/dim]")
        console.print()


if __name__ == "__main__":
    app()
