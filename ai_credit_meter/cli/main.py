"""
CLI interface for AI Credit Meter.

Operator commands for pricing previews and ledger inspection.
"""

import logging
import os
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_credit_meter.config.loader import default_config, load_metering_config
from ai_credit_meter.core.errors import MeteringError
from ai_credit_meter.core.pricing import price
from ai_credit_meter.storage.db import DEFAULT_DB_PATH
from ai_credit_meter.storage.grants import CREDIT_PACKAGES, PromoCodes, Referrals, grant_package
from ai_credit_meter.storage.ledger import CreditLedger, initialize_schema
from ai_credit_meter.storage.models import LedgerResult

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_ENV = "AI_CREDIT_METER_DB"


def _db_path() -> str:
    return os.environ.get(DB_ENV, DEFAULT_DB_PATH)


def _ledger() -> CreditLedger:
    return CreditLedger(_db_path())


def _parse_option(raw: str):
    """Split key=value, converting numeric and boolean values."""
    if "=" not in raw:
        raise typer.BadParameter(f"Options must look like key=value, got {raw!r}")
    key, value = raw.split("=", 1)
    if value.lower() in ("true", "false"):
        return key, value.lower() == "true"
    try:
        return key, int(value)
    except ValueError:
        pass
    try:
        return key, float(value)
    except ValueError:
        return key, value


def _report(result: LedgerResult, action: str) -> None:
    if result.success:
        console.print(f"[green]✓[/] {action}. New balance: {result.new_balance}")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[red]{result.error.code}:[/] {result.error.message}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show ledger log output"),
):
    """AI Credit Meter CLI."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Meter - Use --help to see available commands")


@app.command()
def init():
    """Initialize the ledger database."""
    try:
        initialize_schema(_db_path())
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("open-account")
def open_account(
    account_id: str,
    initial_balance: int = typer.Option(0, "--initial-balance", "-i", help="Starting credits"),
):
    """Open an account with an optional starting balance."""
    try:
        account = _ledger().open_account(account_id, initial_balance)
    except MeteringError as e:
        console.print(f"[red]{e.code}:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Account {account.id} balance: {account.balance}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def balance(account_id: str):
    """Show the credit balance of an account."""
    console.print(f"{account_id}: {_ledger().get_balance(account_id)} credits")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def estimate(
    kind: str,
    units: float,
    option: Optional[List[str]] = typer.Option(
        None,
        "--option",
        "-o",
        help="Operation option as key=value (repeatable)",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to metering config YAML file",
    ),
):
    """
    Preview the credit cost of an operation.

    Units are words for translate/summarize, seconds for transcribe and
    characters for tts. Image and video are priced on their options.
    """
    options = dict(_parse_option(raw) for raw in option or [])
    try:
        metering = load_metering_config(config) if config else default_config()
    except Exception as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    try:
        quote = price(kind, units, options, metering.pricing)
    except MeteringError as e:
        console.print(f"[red]{e.code}:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Estimate: {quote.kind}")
    table.add_column("Base credits", justify="right")
    table.add_column("Service fee", justify="right")
    table.add_column("Total credits", justify="right")
    table.add_row(str(quote.base_credits), f"{quote.service_fee:g}", str(quote.total_credits))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def grant(
    account_id: str,
    package_id: str = typer.Argument(..., help=f"One of: {', '.join(CREDIT_PACKAGES)}"),
    reference: str = typer.Option(..., "--reference", "-r", help="Payment reference (idempotency key)"),
):
    """Credit a purchased package to an account."""
    _report(grant_package(_ledger(), account_id, package_id, reference), f"Granted {package_id}")


@app.command()
def redeem(account_id: str, code: str):
    """Redeem a promo code for bonus credits."""
    _report(PromoCodes(_ledger()).redeem(code, account_id), f"Redeemed {code.upper()}")


@app.command("create-promo")
def create_promo(
    code: str,
    credits: int,
    max_uses: Optional[int] = typer.Option(None, "--max-uses", help="Total redemptions allowed"),
):
    """Create a promo code worth a number of credits."""
    try:
        promo = PromoCodes(_ledger()).create(code, credits, max_uses=max_uses)
    except MeteringError as e:
        console.print(f"[red]{e.code}:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Promo code {promo.code} worth {promo.credits} credits created")
    sys.exit(EXIT_CODE_PASS)


@app.command("referral-code")
def referral_code(account_id: str):
    """Show an account's referral code and what it has earned."""
    try:
        stats = Referrals(_ledger()).stats(account_id)
    except MeteringError as e:
        console.print(f"[red]{e.code}:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(
        f"Referral code for {account_id}: [bold]{stats.referral_code}[/] "
        f"({stats.total_referrals} referrals, {stats.credits_earned} credits earned)"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def refer(account_id: str, code: str):
    """Apply a referral code to a newly opened account."""
    _report(Referrals(_ledger()).redeem(code, account_id), "Referral bonus applied")


@app.command()
def history(
    account_id: str,
    limit: int = typer.Option(20, "--limit", "-n", help="Entries per page"),
    offset: int = typer.Option(0, "--offset", help="Entries to skip"),
):
    """List ledger entries of an account, newest first."""
    page = _ledger().history(account_id, limit=limit, offset=offset)
    if not page.entries:
        console.print(f"\n[dim]No ledger entries for {account_id}.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Ledger: {account_id} ({page.total} entries)")
    table.add_column("Date")
    table.add_column("Kind")
    table.add_column("Amount", justify="right")
    table.add_column("Description")
    for entry in page.entries:
        colour = "green" if entry.amount > 0 else "red"
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M"),
            entry.kind.value,
            f"[{colour}]{entry.amount:+d}[/]",
            entry.description,
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    account_id: str,
    days: int = typer.Option(30, "--days", "-d", help="Reporting window in days"),
):
    """Summarize credits spent by an account."""
    stats = _ledger().usage_stats(account_id, days=days)
    console.print(f"\n[bold]Credits used in the last {days} days:[/bold] {stats.total_credits_used}")
    if not stats.daily:
        sys.exit(EXIT_CODE_PASS)

    by_kind = Table(title="By operation")
    by_kind.add_column("Operation")
    by_kind.add_column("Credits", justify="right")
    for kind, credits in sorted(stats.by_kind.items()):
        by_kind.add_row(kind, str(credits))
    console.print(by_kind)

    daily = Table(title="By day")
    daily.add_column("Date")
    daily.add_column("Credits", justify="right")
    for day in stats.daily:
        daily.add_row(day.date, str(day.credits))
    console.print(daily)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(account_id: str):
    """Check that an account's balance matches its ledger."""
    try:
        report = _ledger().reconcile(account_id)
    except MeteringError as e:
        console.print(f"[red]{e.code}:[/] {e.message}")
        sys.exit(EXIT_CODE_FAIL)
    if report.consistent:
        console.print(f"[green]✓[/] {account_id} balance {report.balance} matches the ledger")
        sys.exit(EXIT_CODE_PASS)
    console.print(
        f"[red]✗[/] {account_id} balance {report.balance} differs from ledger total {report.expected_balance}"
    )
    sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
