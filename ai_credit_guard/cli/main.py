"""
CLI interface for AI Credit Guard.

Provides command-line access to balances, reservations, usage and pricing.
"""

import sqlite3
import sys
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_credit_guard.config.loader import CreditConfig, load_credit_config
from ai_credit_guard.config.logging import configure_logging
from ai_credit_guard.core.errors import CreditGuardError
from ai_credit_guard.core.ledger import CreditLedger
from ai_credit_guard.core.tokenizer import TokenCounter, official_counters_from_env
from ai_credit_guard.storage.db import DEFAULT_DB_PATH
from ai_credit_guard.storage.repository import SQLiteCreditStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class Settings:
    def __init__(self, db_path: str, config_path: Optional[str]):
        self.db_path = db_path
        self.config_path = config_path

    def config(self) -> CreditConfig:
        if self.config_path:
            return load_credit_config(self.config_path)
        return CreditConfig.default()

    def ledger(self) -> CreditLedger:
        config = self.config().ledger
        counter = None
        if config.official_token_counts:
            counter = TokenCounter(official_counters=official_counters_from_env())
        return CreditLedger(SQLiteCreditStore(self.db_path), config, counter=counter)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _format_credits(amount) -> str:
    return f"{Decimal(amount).normalize():,f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """AI Credit Guard CLI."""
    configure_logging("DEBUG" if verbose else "WARNING")
    ctx.obj = Settings(db, config)
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Guard - Use --help to see available commands")


@app.command()
def init(
    ctx: typer.Context,
    seed_pricing: bool = typer.Option(True, "--seed-pricing/--no-seed-pricing",
                                      help="Load default model pricing"),
):
    """Initialize the AI Credit Guard database."""
    settings: Settings = ctx.obj
    try:
        initialize_schema(settings.db_path)
        store = SQLiteCreditStore(settings.db_path)
        rows = 0
        if seed_pricing:
            rows = store.seed_default_pricing()
        overrides = settings.config().pricing
        if overrides:
            rows += store.upsert_pricing(overrides)
        console.print(f"[green]✓[/] Database initialized successfully ({rows} pricing rows)")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def grant(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to credit"),
    amount: str = typer.Argument(..., help="Credits to add"),
    reason: str = typer.Option("Admin grant", "--reason", "-r", help="Audit log reason"),
):
    """Add credits to a user's balance, creating the account if needed."""
    try:
        credits = Decimal(amount)
    except InvalidOperation:
        _fail(f"Invalid amount: {amount}")
    try:
        change = ctx.obj.ledger().grant_credits(user_id, credits, reason)
    except (CreditGuardError, ValueError) as e:
        _fail(str(e))
    console.print(
        f"[green]✓[/] Granted {_format_credits(credits)} credits to {user_id}. "
        f"New balance: {_format_credits(change.balance_after)}"
    )


@app.command()
def balance(ctx: typer.Context, user_id: str = typer.Argument(..., help="User to inspect")):
    """Show a user's balance and available credits."""
    ledger = ctx.obj.ledger()
    try:
        current = ledger.store.get_balance(user_id)
        held = ledger.store.sum_active_reservations(user_id)
    except CreditGuardError as e:
        _fail(str(e))

    table = Table(title=f"Credits for {user_id}")
    table.add_column("Balance", justify="right")
    table.add_column("Reserved", justify="right")
    table.add_column("Available", justify="right")
    table.add_row(_format_credits(current), str(held), _format_credits(current - held))
    console.print(table)


@app.command()
def estimate(
    ctx: typer.Context,
    content: str = typer.Argument(..., help="Message text"),
    model: str = typer.Option(..., "--model", "-m", help="Model name"),
    provider: str = typer.Option(..., "--provider", "-p", help="Provider name"),
    system_prompt: Optional[str] = typer.Option(None, "--system", "-s", help="System prompt"),
    buffer: Optional[float] = typer.Option(None, "--buffer", "-b", help="Buffer multiplier"),
):
    """Estimate the credits a message will cost."""
    try:
        result = ctx.obj.ledger().estimate_message_credits(
            content, model, provider, {"system_prompt": system_prompt}, buffer_multiplier=buffer
        )
    except (CreditGuardError, ValueError) as e:
        _fail(str(e))

    console.print(f"\n[bold]Credit estimate[/bold] for {provider}/{model}")
    console.print("-" * 40)
    console.print(f"Input tokens: {result.input_tokens}")
    console.print(f"Estimated output tokens: {result.estimated_output_tokens}")
    console.print(f"Method: {result.token_count_method} (confidence: {result.confidence})")
    console.print(f"Estimated cost: ${result.total_cost_usd:.6f}")
    console.print(f"Credits needed: {result.credits_needed:.4f}")
    console.print(f"Credits to reserve (x{result.buffer_multiplier}): {result.reservation_credits}")


@app.command()
def reservations(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to inspect"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows"),
):
    """List a user's active reservations."""
    rows = ctx.obj.ledger().get_active_reservations(user_id, limit)
    if not rows:
        console.print(f"[dim]No active reservations for {user_id}[/]")
        return

    table = Table(title=f"Active reservations for {user_id}")
    table.add_column("ID")
    table.add_column("Credits", justify="right")
    table.add_column("Model")
    table.add_column("Created")
    table.add_column("Expires")
    for r in rows:
        table.add_row(
            r.id,
            str(r.credits_reserved),
            f"{r.context.provider}/{r.context.model}",
            r.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            r.expires_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command()
def usage(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User to inspect"),
    limit: int = typer.Option(10, "--limit", "-n", help="Recent rows to show"),
):
    """Show usage totals and recent calls for a user."""
    try:
        stats = ctx.obj.ledger().get_usage_stats(user_id, limit)
    except CreditGuardError as e:
        _fail(str(e))

    console.print(f"\n[bold]Usage for {user_id}[/bold]")
    console.print("-" * 40)
    console.print(f"Balance: {_format_credits(stats['current_balance'])} "
                  f"(available {_format_credits(stats['available_balance'])})")
    console.print(f"Requests: {stats['total_requests']}")
    console.print(f"Tokens: {stats['total_tokens']:,}")
    console.print(f"Cost: ${stats['total_cost_usd']:.6f}")
    console.print(f"Credits charged: {stats['total_credits_charged']}")

    if stats["recent_usage"]:
        table = Table(title="Recent usage")
        table.add_column("When")
        table.add_column("Model")
        table.add_column("Tokens", justify="right")
        table.add_column("Credits used", justify="right")
        table.add_column("Charged", justify="right")
        for row in stats["recent_usage"]:
            model = f"{row['provider']}/{row['model']}"
            if row["is_estimated"]:
                model += " (est.)"
            table.add_row(
                row["created_at"].strftime("%Y-%m-%d %H:%M:%S"),
                model,
                str(row["tokens"]),
                f"{row['credits_used']:.4f}",
                str(row["credits_charged"]),
            )
        console.print(table)


@app.command()
def cleanup(
    ctx: typer.Context,
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="Reservations per sweep"),
):
    """Expire reservations that are past their expiry time."""
    settings: Settings = ctx.obj
    size = batch_size or settings.config().cleanup.expire_batch_size
    expired = settings.ledger().expire_reservations(size)
    console.print(f"[green]✓[/] Expired {expired} reservation(s)")


@app.command()
def pricing(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter by provider"),
):
    """List model pricing."""
    try:
        rows = SQLiteCreditStore(ctx.obj.db_path).list_pricing(provider)
    except sqlite3.OperationalError as e:
        if "no such table" not in str(e).lower():
            raise
        rows = []
    if not rows:
        console.print("[yellow]No pricing found. Run `ai-credit-guard init` first.[/]")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Model pricing (USD per 1K tokens)")
    table.add_column("Provider")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    for row in rows:
        table.add_row(row.provider, row.model, str(row.input_price_per_1k), str(row.output_price_per_1k))
    console.print(table)


if __name__ == "__main__":
    app()
