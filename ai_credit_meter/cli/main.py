"""
CLI interface for AI Credit Meter.

Operator commands for accounts, pricing, estimates, usage and payments.
"""

import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ai_credit_meter.bootstrap import MeterServices, build_services
from ai_credit_meter.config.loader import default_config, load_meter_config
from ai_credit_meter.core.errors import MeterError
from ai_credit_meter.core.estimator import EstimationContext
from ai_credit_meter.core.ledger import adjust_credits
from ai_credit_meter.core.payments import PaymentEventStatus, ReconcileOutcome

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class _State:
    config_path: Optional[str] = None


state = _State()


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _services() -> MeterServices:
    try:
        config = load_meter_config(state.config_path) if state.config_path else default_config()
    except (FileNotFoundError, ValueError) as e:
        _fail(f"loading configuration: {e}")
    try:
        return build_services(config)
    except MeterError as e:
        _fail(f"initializing ledger: {e}")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the YAML meter configuration"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
):
    """AI Credit Meter CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True
    )
    state.config_path = config
    if ctx.invoked_subcommand is None:
        console.print("AI Credit Meter - Use --help to see available commands")


@app.command()
def init():
    """Initialize the ledger database."""
    services = _services()
    console.print(f"[green]✓[/] Ledger initialized ({services.config.ledger.backend.value})")
    sys.exit(EXIT_CODE_PASS)


@app.command("open-account")
def open_account(
    account_id: str = typer.Argument(..., help="Account identifier"),
    grant: Optional[int] = typer.Option(
        None,
        "--grant",
        "-g",
        help="Starting credits (defaults to the configured starting grant)"
    )
):
    """Open an account with its starting grant."""
    try:
        services = _services()
        if grant is None:
            grant = services.config.ledger.starting_grant
        account = services.ledger.open_account(account_id, grant)
        console.print(f"[green]✓[/] Opened {account.id} with {account.balance:,} credits")
    except (MeterError, ValueError) as e:
        _fail(str(e))


@app.command()
def deactivate(account_id: str = typer.Argument(..., help="Account identifier")):
    """Soft-deactivate an account."""
    try:
        _services().ledger.deactivate_account(account_id)
        console.print(f"[green]✓[/] Deactivated {account_id}")
    except MeterError as e:
        _fail(str(e))


@app.command()
def balance(account_id: str = typer.Argument(..., help="Account identifier")):
    """Show an account's credit balance."""
    try:
        account = _services().ledger.get_account(account_id)
    except MeterError as e:
        _fail(str(e))
        return
    status = "" if account.active else " [yellow](inactive)[/]"
    console.print(f"{account.id}: {account.balance:,} credits{status}")


@app.command("adjust-credits")
def adjust_credits_command(
    account_id: str = typer.Argument(..., help="Account identifier"),
    amount: int = typer.Argument(
        ...,
        help="Credits to add; negative to deduct (pass negatives after --)"
    ),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the balance is adjusted"),
    adjusted_by: str = typer.Option("operator", "--by", help="Who made the adjustment")
):
    """Add or deduct credits with an audited reason."""
    try:
        result = adjust_credits(
            _services().ledger, account_id, amount, reason, adjusted_by=adjusted_by
        )
    except (MeterError, ValueError) as e:
        _fail(str(e))
        return
    if not result.ok:
        _fail(f"Insufficient credits to deduct {-amount:,} (balance {result.balance:,})")
        return
    console.print(
        f"[green]✓[/] Adjusted {account_id} by {amount:+,} credits, balance {result.balance:,}"
    )


@app.command("set-price")
def set_price(
    model: str = typer.Argument(..., help="Model identifier"),
    rate: str = typer.Argument(..., help="Credits per token, e.g. 0.1"),
    inactive: bool = typer.Option(
        False,
        "--inactive",
        help="Store the rate but fall back to the default rate"
    ),
    provider: str = typer.Option("unknown", "--provider", help="Model provider")
):
    """Create or update the per-token rate of a model."""
    try:
        entry = _services().pricing.upsert(
            model, Decimal(rate), active=not inactive, provider=provider
        )
    except InvalidOperation:
        _fail(f"rate must be a number, got {rate!r}")
        return
    except (MeterError, ValueError) as e:
        _fail(str(e))
        return
    console.print(f"[green]✓[/] {entry.model}: {entry.cost_per_token} credits/token")


@app.command()
def prices():
    """List model pricing."""
    services = _services()
    table = Table(title="Model pricing")
    table.add_column("Model")
    table.add_column("Credits/token", justify="right")
    table.add_column("Provider")
    table.add_column("Active")
    for entry in services.pricing.entries():
        table.add_row(
            entry.model,
            str(entry.cost_per_token),
            entry.provider,
            "yes" if entry.active else "no"
        )
    console.print(table)
    console.print(f"Default rate: {services.pricing.default_cost_per_token} credits/token")


@app.command()
def estimate(
    prompt: str = typer.Argument(..., help="Request text"),
    model: str = typer.Option("gpt-3.5-turbo", "--model", "-m", help="Model identifier"),
    account_id: Optional[str] = typer.Option(
        None,
        "--account",
        "-a",
        help="Check the estimate against this account's balance"
    ),
    conversation_length: int = typer.Option(
        1,
        "--conversation-length",
        help="Turns in the conversation so far"
    ),
    files: bool = typer.Option(False, "--files", help="Request references file uploads")
):
    """Estimate tokens and credits for a prompt."""
    context = EstimationContext(
        conversation_length=conversation_length,
        has_file_uploads=files
    )
    try:
        services = _services()
        if account_id is None:
            result = services.estimator.estimate(prompt, model, context)
            affordability = ""
        else:
            quote = services.coordinator.estimate(account_id, prompt, model, context)
            result = quote.estimate
            verdict = "[green]can afford[/]" if quote.can_afford else "[red]cannot afford[/]"
            affordability = f"\nBalance: {quote.account_balance:,} credits ({verdict})"
    except MeterError as e:
        _fail(str(e))
        return

    console.print(f"\n[bold]Estimate for {result.model}[/bold]")
    console.print("-" * 40)
    console.print(f"Complexity: {result.complexity.value}")
    console.print(f"Predicted tokens: {result.predicted_tokens:,}")
    console.print(f"Predicted cost: {result.predicted_cost:,} credits")
    console.print(f"Confidence: {result.confidence.value}{affordability}")


@app.command()
def usage(
    account_id: str = typer.Argument(..., help="Account identifier"),
    limit: int = typer.Option(20, "--limit", "-l", help="Records to show"),
    days: int = typer.Option(30, "--days", "-d", help="Window for the summary")
):
    """Show recent usage records and a usage summary."""
    try:
        services = _services()
        records = services.ledger.usage_history(account_id, limit=limit)
        stats = services.ledger.usage_stats(account_id, days=days)
    except MeterError as e:
        _fail(str(e))
        return

    if not records:
        console.print(f"\n[bold yellow]No usage recorded for {account_id}[/]\n")
        return

    table = Table(title=f"Usage for {account_id}")
    table.add_column("Time")
    table.add_column("Operation")
    table.add_column("Model")
    table.add_column("Tokens", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Balance after", justify="right")
    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.operation,
            record.model,
            f"{record.tokens:,}",
            f"{record.cost:,}",
            "" if record.balance_after is None else f"{record.balance_after:,}"
        )
    console.print(table)
    console.print(
        f"Last {days} days: {stats.total_tokens:,} tokens, {stats.total_cost:,} credits "
        f"({stats.average_daily_cost:,.2f}/day)"
    )
    for model_name, tokens in stats.top_models:
        console.print(f"  {model_name}: {tokens:,} tokens")


@app.command("initiate-payment")
def initiate_payment(
    external_id: str = typer.Argument(..., help="Provider payment id"),
    account_id: str = typer.Argument(..., help="Account to credit"),
    amount_cents: int = typer.Argument(..., help="Amount in cents"),
    credits: Optional[int] = typer.Option(
        None,
        "--credits",
        help="Credits to grant (defaults to the matching credit pack)"
    )
):
    """Record a pending payment."""
    try:
        record = _services().reconciler.initiate_payment(
            external_id, account_id, amount_cents, credits_granted=credits
        )
    except (MeterError, ValueError) as e:
        _fail(str(e))
        return
    console.print(
        f"[green]✓[/] Payment {record.external_id} pending: {record.credits_granted:,} credits"
    )


@app.command()
def reconcile(
    external_id: str = typer.Argument(..., help="Provider payment id"),
    status: PaymentEventStatus = typer.Option(
        ...,
        "--status",
        "-s",
        help="Outcome reported by the payment provider"
    )
):
    """Apply a payment outcome (safe to replay)."""
    try:
        result = _services().reconciler.on_payment_event(external_id, status)
    except MeterError as e:
        _fail(str(e))
        return
    console.print(f"Payment {external_id}: {result.outcome.value} (applied={result.applied})")
    if result.outcome == ReconcileOutcome.NOT_FOUND:
        sys.exit(EXIT_CODE_FAIL)


if __name__ == "__main__":
    app()
