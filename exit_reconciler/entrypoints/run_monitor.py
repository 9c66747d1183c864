"""
Conditional order monitor entrypoint.

Loads dotenv (outside prod) and config, sets up logging, opens the database,
connects the exchange and runs the monitor until SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

from exit_reconciler.config.config import Config, load_config
from exit_reconciler.config.dotenv_loader import load_dotenv_files
from exit_reconciler.exchange.ccxt_exchange import CcxtConditionalOrderExchange
from exit_reconciler.monitoring.logger import get_logger, setup_logging
from exit_reconciler.reconciliation.price_order_monitor import PriceOrderMonitor
from exit_reconciler.storage.db import DEFAULT_DATABASE_URL, init_db
from exit_reconciler.storage.repository import OrderStore

logger = get_logger(__name__)


def bootstrap(config_path: str | Path | None = None) -> Config:
    """Load env files and config, then configure logging."""
    load_dotenv_files()
    config = load_config(config_path)
    setup_logging(
        config.monitoring.log_level,
        config.monitoring.log_format,
        config.monitoring.log_file,
    )
    return config


async def build_components(config: Config) -> tuple[OrderStore, CcxtConditionalOrderExchange]:
    db = init_db(config.data.database_url or DEFAULT_DATABASE_URL)
    store = OrderStore(db)

    if not config.exchange.has_valid_credentials():
        logger.warning("Exchange credentials missing; private endpoints will fail", exchange=config.exchange.name)
    exchange = CcxtConditionalOrderExchange.from_config(config.exchange)
    try:
        await exchange.initialize()
    except Exception:
        await exchange.close()
        raise
    return store, exchange


async def run_monitor(config: Config) -> None:
    store, exchange = await build_components(config)
    monitor = PriceOrderMonitor.from_config(config, store, exchange)

    stop_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    logger.info(
        "STARTUP_IDENTITY",
        runtime="PriceOrderMonitor",
        environment=config.environment,
        exchange=config.exchange.name,
        testnet=config.exchange.use_testnet,
        check_interval_seconds=config.monitor.check_interval_seconds,
    )
    try:
        await monitor.start()
        await stop_event.wait()
    finally:
        await monitor.stop()
        await exchange.close()
        store.db.dispose()
    logger.info("Shutdown complete")


def main(config_path: str | Path | None = None) -> None:
    try:
        config = bootstrap(config_path)
    except (OSError, ValueError) as e:
        print(f"FATAL: failed to load config: {type(e).__name__}: {e}", file=sys.stderr)
        raise SystemExit(1)

    asyncio.run(run_monitor(config))


if __name__ == "__main__":
    main()
