"""
CLI entry point for the bridge relayer.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
import structlog

from .amounts import translate as translate_amount
from .config import BridgeConfig
from .dispatcher import NotificationDispatcher
from .errors import InvalidAmount
from .models import NotificationBatch
from .monitor import MonitorOutcome, MonitorState

# Configure structlog
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="bridge-relayer",
    help="Arbitrum -> BitLayer transfer relayer",
    add_completion=False,
)


def _print_outcome(outcome: MonitorOutcome) -> None:
    if outcome.state is MonitorState.CONFIRMED:
        typer.echo(f"✓ Confirmed {outcome.source_tx_id}: {outcome.confirmed_tx_id}")
    else:
        typer.echo(
            f"✗ Not observed after {outcome.attempts} attempts: {outcome.source_tx_id} "
            f"(payout {outcome.payout_tx_hash}). Check the explorer manually."
        )


async def _dispatch(config: BridgeConfig, batch: NotificationBatch, wait: bool) -> int:
    dispatcher = NotificationDispatcher.from_config(config, on_outcome=_print_outcome)
    report = await dispatcher.dispatch(batch)

    for result in report.results:
        if result.payout and result.payout.success:
            pending = " (receipt pending)" if result.payout.receipt_pending else ""
            typer.echo(f"✓ Paid out {result.source_tx_id}: {result.payout.tx_hash}{pending}")
        elif result.error:
            typer.echo(f"✗ {result.status.value} {result.source_tx_id}: {result.error}")
        else:
            typer.echo(f"- {result.status.value} {result.source_tx_id}")
    typer.echo(f"Dispatched {len(report.results)} events, {len(report.accepted)} paid out")

    if wait and dispatcher.in_flight:
        typer.echo(f"Waiting for {dispatcher.in_flight} confirmation monitor(s)...")
        await dispatcher.wait_for_monitors()

    return 1 if report.failed else 0


@app.command()
def dispatch(
    payload_path: Path = typer.Argument(..., help="Webhook payload (JSON) to dispatch"),
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
    wait: bool = typer.Option(
        True,
        "--wait/--no-wait",
        help="Wait for destination confirmations before exiting",
    ),
) -> None:
    """
    Dispatch one inbound notification batch: pay out and confirm each transfer.
    """
    config = BridgeConfig.from_env(config_path)

    if not config.settings.private_key:
        typer.echo("Warning: PRIVATE_KEY not set - payouts will fail as unconfigured.")

    payload = json.loads(payload_path.read_text())
    batch = NotificationBatch.from_webhook(payload)

    exit_code = asyncio.run(_dispatch(config, batch, wait))
    raise typer.Exit(code=exit_code)


@app.command()
def translate(
    amount: str = typer.Argument(..., help="Decimal amount"),
    from_decimals: int = typer.Argument(..., help="Source precision"),
    to_decimals: int = typer.Argument(..., help="Target precision"),
) -> None:
    """
    Translate an amount between precisions (truncates when narrowing).
    """
    try:
        typer.echo(translate_amount(amount, from_decimals, to_decimals))
    except InvalidAmount as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2)


@app.command()
def assets(
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
) -> None:
    """List bridged assets and their payout mode."""
    config = BridgeConfig.from_env(config_path)

    for asset in config.asset_descriptors():
        target = "native" if asset.native_on_destination else asset.destination_address
        typer.echo(f"  {asset.symbol}")
        typer.echo(f"    Source: {asset.source_address} ({asset.source_decimals} decimals)")
        typer.echo(f"    Payout: {asset.mode} -> {target}")
        typer.echo("")


@app.command()
def version() -> None:
    """Show the relayer version."""
    from bridge_relayer import __version__
    typer.echo(f"bridge-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
