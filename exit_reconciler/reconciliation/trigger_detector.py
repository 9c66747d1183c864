"""
Trigger detector: confirms that a conditional order missing from the exchange
actually filled, by matching it against recent account trades.

A trade confirms an order when all of:
- it executed after the order was created,
- it executed within the recency window (stale history is ignored, at the
  cost of a false negative when detection runs later than the window),
- it closes the position (a sell for a long, a buy for a short),
- its price satisfies the order's trigger condition.

The first matching trade in exchange order wins.
"""
import time
from typing import Callable, List, Optional

from exit_reconciler.domain.models import ConditionalOrder, ConditionalOrderType, Side, TradeRecord
from exit_reconciler.domain.protocols import ConditionalOrderExchange
from exit_reconciler.execution.trade_normalizer import normalize_trades
from exit_reconciler.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TRADE_LOOKBACK_LIMIT = 100
DEFAULT_RECENCY_WINDOW_SECONDS = 5 * 60


def _now_ms() -> int:
    return int(time.time() * 1000)


def closes_position(order: ConditionalOrder, trade: TradeRecord) -> bool:
    """A long is closed by a sell, a short by a buy."""
    if order.side is Side.LONG:
        return trade.is_sell
    return trade.is_buy


def price_crossed_trigger(order: ConditionalOrder, trade: TradeRecord) -> bool:
    """
    Stop-loss: long breaks down through the trigger, short breaks up.
    Take-profit: the mirror image.
    """
    if order.order_type is ConditionalOrderType.STOP_LOSS:
        if order.side is Side.LONG:
            return trade.price <= order.trigger_price
        return trade.price >= order.trigger_price
    if order.side is Side.LONG:
        return trade.price >= order.trigger_price
    return trade.price <= order.trigger_price


def trade_confirms_order(
    order: ConditionalOrder,
    trade: TradeRecord,
    now_ms: int,
    recency_window_ms: int = DEFAULT_RECENCY_WINDOW_SECONDS * 1000,
) -> bool:
    """True if ``trade`` is the fill of ``order``."""
    if trade.timestamp <= order.created_at_ms:
        return False
    if now_ms - trade.timestamp > recency_window_ms:
        logger.debug(
            "Skipping historical trade",
            trade_id=trade.id,
            executed_at=trade.executed_at.isoformat(),
            age_minutes=(now_ms - trade.timestamp) // 60000,
        )
        return False
    if not closes_position(order, trade):
        return False
    return price_crossed_trigger(order, trade)


class TriggerDetector:
    """
    Confirms trigger candidates against the exchange's recent trade history.
    """

    def __init__(
        self,
        exchange: ConditionalOrderExchange,
        *,
        trade_lookback_limit: int = DEFAULT_TRADE_LOOKBACK_LIMIT,
        recency_window_seconds: int = DEFAULT_RECENCY_WINDOW_SECONDS,
        venue: Optional[str] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        """
        Args:
            exchange: Exchange capability
            trade_lookback_limit: Number of recent trades fetched per candidate
            recency_window_seconds: Max trade age that may confirm a trigger
            venue: Trade payload format; defaults to the exchange's ``trade_format``
            clock: Epoch-millis clock (injected in tests)
        """
        self.exchange = exchange
        self.trade_lookback_limit = trade_lookback_limit
        self.recency_window_ms = recency_window_seconds * 1000
        self.venue = venue or getattr(exchange, "trade_format", "generic")
        self._clock = clock

    async def fetch_recent_trades(self, order: ConditionalOrder) -> List[TradeRecord]:
        contract = self.exchange.normalize_symbol(order.symbol)
        raw_trades = await self.exchange.list_recent_trades(contract, self.trade_lookback_limit)
        return normalize_trades(raw_trades or [], self.venue)

    async def confirm(self, order: ConditionalOrder) -> Optional[TradeRecord]:
        """
        Return the trade that filled ``order``, or None.

        Failing to fetch trade history is read as "no confirming trade".
        """
        try:
            trades = await self.fetch_recent_trades(order)
        except Exception as e:
            logger.error(
                "Failed to fetch recent trades for trigger confirmation",
                order_id=order.order_id,
                symbol=order.symbol,
                error=str(e),
            )
            return None

        now_ms = self._clock()
        for trade in trades:
            if trade_confirms_order(order, trade, now_ms, self.recency_window_ms):
                logger.debug(
                    "Found closing trade",
                    order_id=order.order_id,
                    trade_id=trade.id,
                    executed_at=trade.executed_at.isoformat(),
                    price=str(trade.price),
                )
                return trade
        return None
