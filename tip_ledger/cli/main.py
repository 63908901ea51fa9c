"""
CLI interface for the tip ledger.

Operator access to balances, ledger history, escrow, verification and
reconciliation.
"""

import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from tip_ledger.config.loader import default_config, load_ledger_config
from tip_ledger.core.amounts import format_minor_units
from tip_ledger.core.errors import LedgerError
from tip_ledger.core.events import TipLedger
from tip_ledger.core.verification import VerificationOutcome
from tip_ledger.demo.seed_demo_data import seed_demo_data
from tip_ledger.logging import setup_logging
from tip_ledger.storage.models import TransactionType

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to ledger YAML config")


def get_ledger(config_path: Optional[str] = None) -> TipLedger:
    """Load configuration, set up logging and open the ledger stores."""
    config = load_ledger_config(config_path) if config_path else default_config()
    setup_logging(config.logging.level, config.logging.json)
    return TipLedger.from_config(config)


def _money(ledger: TipLedger, amount: int) -> str:
    return format_minor_units(amount, ledger.config.currency.symbol)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Tip ledger CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Tip Ledger - Use --help to see available commands")


@app.command()
def init(config_path: Optional[str] = CONFIG_OPTION):
    """Create the ledger and verification databases."""
    try:
        ledger = get_ledger(config_path)
    except (OSError, ValueError) as e:
        _fail(f"initializing databases: {e}")
    storage = ledger.config.storage
    console.print(f"[green]✓[/] Ledger database ready: {storage.ledger_db}")
    console.print(f"[green]✓[/] Verification database ready: {storage.verification_db}")
    sys.exit(EXIT_CODE_PASS)


@app.command("seed-demo")
def seed_demo(config_path: Optional[str] = CONFIG_OPTION):
    """Insert demo accounts, content and transactions."""
    try:
        ledger = get_ledger(config_path)
        summary = seed_demo_data(ledger)
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))
    if not summary:
        console.print("[yellow]Demo data already present[/]")
    else:
        console.print(f"[green]✓[/] Demo data inserted ({summary['entries']} ledger entries)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balance(user_id: str, config_path: Optional[str] = CONFIG_OPTION):
    """Show a user's balances."""
    try:
        ledger = get_ledger(config_path)
        result = ledger.get_balance(user_id)
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))

    table = Table(title=f"Balances for {result.username} ({result.user_id})")
    table.add_column("Balance")
    table.add_column("Amount", justify="right")
    table.add_row("Spendable", _money(ledger, result.spendable))
    table.add_row("Tips placed (active)", _money(ledger, result.tip_aggregate))
    table.add_row("Escrow", _money(ledger, result.escrow))
    table.add_row("Bonus", _money(ledger, result.bonus))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    user_id: str,
    page: int = typer.Option(1, "--page", "-p", help="Page number, newest entries first"),
    page_size: int = typer.Option(50, "--page-size", help="Entries per page"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Show a user's ledger entries, newest first."""
    try:
        ledger = get_ledger(config_path)
        result = ledger.get_ledger_history(user_id, page, page_size)
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))

    if not result.entries:
        console.print(f"[dim]No ledger entries for {user_id} on page {page}.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Ledger history for {user_id} (page {page}, {result.total} entries)")
    table.add_column("Seq", justify="right")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Description")
    table.add_column("Created")
    for entry in result.entries:
        table.add_row(
            str(entry.sequence),
            entry.transaction_type.value,
            _money(ledger, entry.amount),
            f"{_money(ledger, entry.user_balance_pre)} → {_money(ledger, entry.user_balance_post)}",
            entry.description or "",
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
    if result.has_next:
        console.print(f"[dim]More entries: --page {page + 1}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command("content-history")
def content_history(
    content_id: str,
    page: int = typer.Option(1, "--page", "-p", help="Page number, newest entries first"),
    page_size: int = typer.Option(50, "--page-size", help="Entries per page"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Show the tips and refunds recorded against a content item."""
    try:
        ledger = get_ledger(config_path)
        result = ledger.get_content_history(content_id, page, page_size)
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))

    if not result.entries:
        console.print(f"[dim]No ledger entries for {content_id} on page {page}.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Ledger history for {content_id} (page {page}, {result.total} entries)")
    table.add_column("Seq", justify="right")
    table.add_column("Type")
    table.add_column("Actor")
    table.add_column("Amount", justify="right")
    table.add_column("Content total", justify="right")
    table.add_column("Created")
    for entry in result.entries:
        table.add_row(
            str(entry.sequence),
            entry.transaction_type.value,
            entry.username or entry.actor_id,
            _money(ledger, entry.amount),
            _money(ledger, entry.content_aggregate_post or 0),
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
    if result.has_next:
        console.print(f"[dim]More entries: --page {page + 1}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def escrow(user_id: str, config_path: Optional[str] = CONFIG_OPTION):
    """Show a user's escrow balance and allocation history."""
    try:
        ledger = get_ledger(config_path)
        info = ledger.get_escrow_info(user_id)
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))

    console.print(f"\n[bold]Escrow for {user_id}[/bold]")
    console.print(f"Balance: {_money(ledger, info.balance)}")
    console.print(f"Paid out: {_money(ledger, info.claimed_total)}")
    console.print(f"Outstanding: {_money(ledger, info.outstanding_total)}")

    if info.history:
        table = Table()
        table.add_column("Allocated")
        table.add_column("Content")
        table.add_column("Amount", justify="right")
        table.add_column("Claimed", justify="right")
        table.add_column("Status")
        for item in info.history:
            table.add_row(
                item.allocated_at.strftime("%Y-%m-%d %H:%M:%S"),
                item.content_id,
                _money(ledger, item.amount),
                _money(ledger, item.claimed_amount),
                item.status.value,
            )
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def verify(
    transaction_type: Optional[str] = typer.Option(
        None, "--type", "-t", help="Only verify entries of this transaction type"
    ),
    page_size: Optional[int] = typer.Option(None, "--page-size", help="Entries per verification page"),
    enforced: bool = typer.Option(
        False, "--enforced", "-e", help="Exit with error code if any entry fails verification"
    ),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Re-derive every stored hash and report mismatches."""
    try:
        kind = TransactionType(transaction_type.upper()) if transaction_type else None
    except ValueError:
        _fail(f"unknown transaction type '{transaction_type}'")
    try:
        ledger = get_ledger(config_path)
        report = ledger.verification.verify_all(kind, page_size)
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))

    console.print("\n[bold]Verification Result[/bold]")
    console.print("-" * 40)
    console.print(f"Checked: {report.checked}")
    console.print(f"Verified: {report.verified}")
    console.print(f"Mismatches: {report.mismatches}")
    console.print(f"Missing verification records: {report.missing_records}")
    console.print(f"Errors: {report.errors}")

    for result in report.anomalies:
        console.print(f"[red]✗[/] {result.entry_id}: {result.outcome.value}")

    if enforced and (report.has_anomalies or report.errors):
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command("verify-entry")
def verify_entry(entry_id: str, config_path: Optional[str] = CONFIG_OPTION):
    """Verify a single ledger entry."""
    try:
        ledger = get_ledger(config_path)
        result = ledger.verification.verify_one(entry_id)
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))

    if result.outcome == VerificationOutcome.VERIFIED:
        console.print(f"[green]✓[/] {entry_id} verified")
        sys.exit(EXIT_CODE_PASS)
    if result.outcome == VerificationOutcome.MISSING_RECORD:
        console.print(f"[yellow]![/] {entry_id} has no verification record")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"[red]✗[/] {entry_id}: {result.outcome.value}")
    console.print(f"Original hash: {result.original_hash}")
    console.print(f"Current hash:  {result.current_hash}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def stats(config_path: Optional[str] = CONFIG_OPTION):
    """Show ledger, verification and escrow statistics."""
    try:
        ledger = get_ledger(config_path)
        ledger_stats = ledger.get_ledger_stats()
        verification_stats = ledger.get_verification_stats()
        escrow_stats = ledger.escrow.get_escrow_stats()
        global_total = ledger.ledger.global_aggregate()
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))

    console.print("\n[bold]Ledger Statistics[/bold]")
    console.print("-" * 40)
    console.print(f"Ledger entries: {ledger_stats.total_entries}")
    console.print(f"Entries in the last 24 hours: {ledger_stats.last_24_hours}")
    console.print(f"Total volume: {_money(ledger, ledger_stats.total_volume)}")
    if ledger_stats.total_entries:
        console.print(
            f"Sequence range: {ledger_stats.sequence_first}-{ledger_stats.sequence_last}"
            f" ({ledger_stats.sequence_span} assigned)"
        )
    console.print(f"Active tips (global aggregate): {_money(ledger, global_total)}")
    console.print(f"Unclaimed pending allocations: {_money(ledger, escrow_stats.unclaimed_total)}")
    console.print(f"Claimed pending allocations: {_money(ledger, escrow_stats.claimed_total)}")
    console.print(f"Users holding escrow: {escrow_stats.users_with_escrow}")
    console.print(f"Verification records: {verification_stats.total}")
    console.print(f"Total mismatches observed: {verification_stats.total_mismatch_count}")

    if ledger_stats.total_entries:
        table = Table(title="Entries by transaction type")
        table.add_column("Type")
        table.add_column("Entries", justify="right")
        table.add_column("Volume", justify="right")
        for name, counts in sorted(ledger_stats.by_type.items()):
            table.add_row(name, str(counts["count"]), _money(ledger, counts["volume"]))
        console.print(table)

    if verification_stats.by_type:
        table = Table(title="Verification by transaction type")
        table.add_column("Type")
        table.add_column("Records", justify="right")
        table.add_column("Verified", justify="right")
        table.add_column("Mismatch", justify="right")
        for name, counts in sorted(verification_stats.by_type.items()):
            table.add_row(name, str(counts["total"]), str(counts["verified"]), str(counts["mismatch"]))
        console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def anomalies(
    limit: int = typer.Option(100, "--limit", "-l", help="Maximum anomalies to show"),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """List entries whose hash no longer matches."""
    try:
        ledger = get_ledger(config_path)
        records = ledger.get_anomalies(limit)
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))

    if not records:
        console.print("[green]✓[/] No anomalies")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Verification anomalies")
    table.add_column("Entry")
    table.add_column("Type")
    table.add_column("Mismatches", justify="right")
    table.add_column("Last verified")
    for record in records:
        table.add_row(
            record.entry_id,
            record.transaction_type.value,
            str(record.mismatch_count),
            record.last_verified_at.strftime("%Y-%m-%d %H:%M:%S") if record.last_verified_at else "-",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(
    enforced: bool = typer.Option(
        False, "--enforced", "-e", help="Exit with error code if reconciliation finds anything"
    ),
    config_path: Optional[str] = CONFIG_OPTION,
):
    """Verify hashes and check cached balances against their sources."""
    try:
        ledger = get_ledger(config_path)
        report = ledger.reconcile()
    except (LedgerError, OSError, ValueError) as e:
        _fail(str(e))

    console.print("\n[bold]Reconciliation Result[/bold]")
    console.print("-" * 40)
    console.print(f"Entries checked: {report.entries_checked}")

    if report.clean:
        console.print("[green]✓[/] No findings")
        sys.exit(EXIT_CODE_PASS)

    table = Table()
    table.add_column("Kind")
    table.add_column("Subject")
    table.add_column("Stored", justify="right")
    table.add_column("Derived", justify="right")
    table.add_column("Detail")
    for finding in report.findings:
        table.add_row(
            finding.kind,
            finding.subject_id,
            "" if finding.stored is None else _money(ledger, finding.stored),
            "" if finding.derived is None else _money(ledger, finding.derived),
            finding.detail,
        )
    console.print(table)

    if enforced:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
