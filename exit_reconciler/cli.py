"""
CLI for the exit reconciler.

Commands: run (monitor loop), check (one pass), close-events (recent
unprocessed close events).
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from exit_reconciler.entrypoints.run_monitor import bootstrap, build_components, run_monitor
from exit_reconciler.monitoring.logger import get_logger
from exit_reconciler.reconciliation.price_order_monitor import PriceOrderMonitor
from exit_reconciler.storage.db import DEFAULT_DATABASE_URL, init_db
from exit_reconciler.storage.repository import OrderStore

app = typer.Typer(
    name="exit-reconciler",
    help="Stop-loss / take-profit exit reconciliation",
    add_completion=False,
)

logger = get_logger(__name__)


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Run the conditional order monitor until interrupted.

    Example:
        exit-reconciler run --config exit_reconciler/config/config.yaml
    """
    config = bootstrap(config_path)
    asyncio.run(run_monitor(config))


@app.command()
def check(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Run a single reconciliation pass immediately and print its summary.
    """
    config = bootstrap(config_path)

    async def run_once():
        store, exchange = await build_components(config)
        try:
            monitor = PriceOrderMonitor.from_config(config, store, exchange)
            return await monitor.run_pass()
        finally:
            await exchange.close()

    summary = asyncio.run(run_once())
    typer.echo("Reconciliation pass")
    typer.echo("=" * 50)
    for key, value in summary.to_dict().items():
        typer.echo(f"  {key:<12} {value}")
    if summary.aborted:
        typer.secho("Pass aborted (exchange listing failed or empty)", fg=typer.colors.YELLOW)


@app.command(name="close-events")
def close_events(
    hours: int = typer.Option(24, "--hours", help="Hours to look back"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    List close events not yet processed downstream.

    Example:
        exit-reconciler close-events --hours 12
    """
    config = bootstrap(config_path)
    store = OrderStore(init_db(config.data.database_url or DEFAULT_DATABASE_URL))

    events = store.list_unprocessed_close_events(since_hours=hours)
    if not events:
        typer.echo(f"No unprocessed close events in the last {hours}h.")
        return

    typer.echo(f"Unprocessed close events ({len(events)})")
    typer.echo("-" * 50)
    for e in events:
        pnl_color = typer.colors.GREEN if e.pnl >= 0 else typer.colors.RED
        typer.echo(f"  {e.symbol} {e.side.value} | {e.close_reason.value} | order {e.trigger_order_id}")
        typer.secho(f"    PnL: {e.pnl:+} ({e.pnl_percent:+.2f}%)", fg=pnl_color)
        typer.echo(f"    At:  {e.created_at.strftime('%Y-%m-%d %H:%M:%S')} UTC")


if __name__ == "__main__":
    app()
