"""
Conditional order monitor: the scheduled reconciliation loop.

Every pass diffs the locally active stop-loss / take-profit orders against the
exchange's open conditional orders. An order that vanished from the exchange
is either confirmed as triggered by a matching trade (status → triggered,
sibling cancelled, close recorded, position removed) or, with no confirming
trade, treated as cancelled externally.

- At most one pass runs at a time; a tick that fires during a pass is dropped.
- An empty exchange order list while orders are active locally is read as a
  transport failure and aborts the pass without touching state.
- Candidates are processed one at a time; one failing candidate never aborts
  the others, and nothing escapes the pass boundary.
"""
import asyncio
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional, Set

from exit_reconciler.domain.models import ConditionalOrder, ConditionalOrderStatus
from exit_reconciler.domain.protocols import ConditionalOrderExchange
from exit_reconciler.execution.close_recorder import CloseRecorder
from exit_reconciler.monitoring.logger import get_logger
from exit_reconciler.reconciliation.trigger_detector import (
    DEFAULT_RECENCY_WINDOW_SECONDS,
    DEFAULT_TRADE_LOOKBACK_LIMIT,
    TriggerDetector,
)
from exit_reconciler.storage.repository import OrderStore

logger = get_logger(__name__)

DEFAULT_CHECK_INTERVAL_SECONDS = 30
# Orders created moments before startup may not be visible on the exchange yet.
INITIAL_DELAY_SECONDS = 5 * 60


class CandidateOutcome(str, Enum):
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"
    ALREADY_RESOLVED = "already_resolved"


@dataclass
class PassSummary:
    """Counts for one reconciliation pass."""
    active: int = 0
    on_exchange: int = 0
    candidates: int = 0
    triggered: int = 0
    cancelled: int = 0
    failed: int = 0
    skipped: bool = False  # Another pass was in flight
    aborted: bool = False  # Exchange listing failed or came back empty

    def to_dict(self) -> dict:
        return asdict(self)


class PriceOrderMonitor:
    """
    Periodically reconciles conditional orders with the exchange.

    Usage:
        monitor = PriceOrderMonitor(store, exchange)
        await monitor.start()
        ...
        await monitor.stop()
    """

    def __init__(
        self,
        store: OrderStore,
        exchange: ConditionalOrderExchange,
        *,
        check_interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS,
        initial_delay_seconds: float = INITIAL_DELAY_SECONDS,
        trade_lookback_limit: int = DEFAULT_TRADE_LOOKBACK_LIMIT,
        recency_window_seconds: int = DEFAULT_RECENCY_WINDOW_SECONDS,
        detector: Optional[TriggerDetector] = None,
        recorder: Optional[CloseRecorder] = None,
    ):
        self.store = store
        self.exchange = exchange
        self.check_interval_seconds = check_interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.detector = detector or TriggerDetector(
            exchange,
            trade_lookback_limit=trade_lookback_limit,
            recency_window_seconds=recency_window_seconds,
        )
        self.recorder = recorder or CloseRecorder(store, exchange)

        self._ticker_task: Optional[asyncio.Task] = None
        self._pass_tasks: Set[asyncio.Task] = set()
        self._in_flight = False

    @classmethod
    def from_config(cls, config: Any, store: OrderStore, exchange: ConditionalOrderExchange) -> "PriceOrderMonitor":
        """Build from a Config (or anything with a ``monitor`` section)."""
        monitor_cfg = config.monitor
        return cls(
            store,
            exchange,
            check_interval_seconds=monitor_cfg.check_interval_seconds,
            trade_lookback_limit=monitor_cfg.trade_lookback_limit,
            recency_window_seconds=monitor_cfg.recency_window_seconds,
        )

    @property
    def is_running(self) -> bool:
        return self._ticker_task is not None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Start periodic reconciliation. Must be awaited inside the running loop.

        Returns:
            False (with a warning) if the monitor is already running.
        """
        if self._ticker_task is not None:
            logger.warning("Price order monitor already running")
            return False

        logger.info(
            "PRICE_ORDER_MONITOR_STARTED",
            check_interval_seconds=self.check_interval_seconds,
            initial_delay_seconds=self.initial_delay_seconds,
        )
        self._ticker_task = asyncio.create_task(self._schedule())
        return True

    async def stop(self) -> None:
        """
        Stop the timer. A pass already in flight is allowed to drain.
        Calling stop() on a stopped monitor is a no-op.
        """
        if self._ticker_task is None:
            return

        if not self._ticker_task.done():
            self._ticker_task.cancel()
        self._ticker_task = None

        if self._pass_tasks:
            await asyncio.gather(*list(self._pass_tasks), return_exceptions=True)
        logger.info("PRICE_ORDER_MONITOR_STOPPED")

    async def _schedule(self) -> None:
        """First pass after the grace delay, then one pass per interval."""
        logger.info("Waiting before first check so fresh orders are not misjudged", delay_seconds=self.initial_delay_seconds)
        await asyncio.sleep(self.initial_delay_seconds)
        self._fire()
        while True:
            await asyncio.sleep(self.check_interval_seconds)
            self._fire()

    def _fire(self) -> None:
        task = asyncio.create_task(self.run_pass())
        self._pass_tasks.add(task)
        task.add_done_callback(self._pass_tasks.discard)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def run_pass(self) -> PassSummary:
        """
        Run one reconciliation pass, or skip it if one is already in flight.

        Never raises.
        """
        if self._in_flight:
            logger.debug("Previous check still running, skipping this one")
            return PassSummary(skipped=True)

        self._in_flight = True
        summary = PassSummary()
        try:
            await self._reconcile(summary)
        except Exception as e:
            logger.error("Conditional order check failed", error=str(e), error_type=type(e).__name__)
        finally:
            self._in_flight = False
        return summary

    async def _reconcile(self, summary: PassSummary) -> None:
        active_orders = self.store.list_active_orders()
        if not active_orders:
            logger.debug("No active conditional orders to check")
            return
        summary.active = len(active_orders)
        logger.debug("Checking active conditional orders", count=len(active_orders))

        try:
            exchange_orders = await self.exchange.list_open_conditional_orders()
        except Exception as e:
            summary.aborted = True
            logger.warning("Failed to list exchange conditional orders, skipping this check", error=str(e))
            return

        if not exchange_orders:
            summary.aborted = True
            logger.warning(
                "Exchange returned no conditional orders while local orders are active, "
                "skipping this check (possible API error)",
                active=len(active_orders),
            )
            return

        open_ids = {str(o.get("id")) for o in exchange_orders if o.get("id") is not None}
        summary.on_exchange = len(open_ids)

        for order in active_orders:
            if order.order_id in open_ids:
                continue
            summary.candidates += 1
            try:
                outcome = await self.handle_candidate(order)
            except Exception as e:
                summary.failed += 1
                logger.error(
                    "Failed to process conditional order",
                    order_id=order.order_id,
                    symbol=order.symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            if outcome is CandidateOutcome.TRIGGERED:
                summary.triggered += 1
            elif outcome is CandidateOutcome.CANCELLED:
                summary.cancelled += 1

        logger.info("PRICE_ORDER_PASS_SUMMARY", **summary.to_dict())

    async def handle_candidate(self, order: ConditionalOrder) -> CandidateOutcome:
        """
        Resolve one order that is active locally but missing from the exchange.
        """
        # A sibling may have been cancelled earlier in this same pass.
        current = self.store.get_conditional_order(order.order_id)
        if current is None or current.status.is_terminal:
            return CandidateOutcome.ALREADY_RESOLVED

        logger.info(
            "Conditional order missing from exchange, possible trigger",
            order_id=order.order_id,
            symbol=order.symbol,
            order_type=order.order_type.value,
        )

        trade = await self.detector.confirm(order)
        if trade is None:
            self.store.update_status(order.order_id, ConditionalOrderStatus.CANCELLED)
            logger.info(
                "No closing trade found, conditional order treated as cancelled",
                order_id=order.order_id,
                symbol=order.symbol,
                order_type=order.order_type.value,
            )
            return CandidateOutcome.CANCELLED

        logger.info(
            "CONDITIONAL_ORDER_TRIGGERED",
            order_id=order.order_id,
            symbol=order.symbol,
            side=order.side.value,
            order_type=order.order_type.value,
            close_price=str(trade.price),
            close_trade_id=trade.id,
        )

        self.store.update_status(order.order_id, ConditionalOrderStatus.TRIGGERED)
        await self.store.cancel_opposite_order(order, self.exchange)

        position = self.store.get_position(order.symbol, order.side)
        if position is not None:
            await self.recorder.record(order, trade, position)
        else:
            logger.warning(
                "Position not found, cannot compute PnL",
                symbol=order.symbol,
                side=order.side.value,
                order_id=order.order_id,
            )

        self.store.remove_position(order.symbol, order.side)
        logger.info(
            "Trigger handling complete",
            order_id=order.order_id,
            symbol=order.symbol,
            order_type=order.order_type.value,
        )
        return CandidateOutcome.TRIGGERED
