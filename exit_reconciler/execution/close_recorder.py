"""
Close recorder: computes PnL for a confirmed trigger and persists one trade
ledger row plus one close event for the downstream decision layer.

Design decisions:
- Quantity is the absolute size of the matched trade, not the position size.
- PnL comes from the exchange's contract PnL function (contract size, inverse
  contracts); pnl_percent is the leveraged price move.
- Ledger row and close event are written in one transaction. A close event
  already present for the trigger order is treated as a replay: nothing is
  written and the previously computed numbers stand.
"""
from datetime import datetime, timezone
from decimal import Decimal

from exit_reconciler.domain.models import (
    CloseEvent,
    CloseReason,
    ConditionalOrder,
    LedgerTrade,
    PnLResult,
    Position,
    Side,
    TradeRecord,
)
from exit_reconciler.domain.protocols import ConditionalOrderExchange
from exit_reconciler.exceptions import CloseRecordError, StoreError
from exit_reconciler.monitoring.logger import get_logger
from exit_reconciler.storage.repository import OrderStore

logger = get_logger(__name__)


def compute_pnl_percent(side: Side, entry_price: Decimal, exit_price: Decimal, leverage: int) -> Decimal:
    """
    Leveraged return on margin, in percent.

    Long:  (exit - entry) / entry * 100 * leverage
    Short: (entry - exit) / entry * 100 * leverage
    """
    if entry_price == 0:
        raise CloseRecordError("Cannot compute pnl_percent with zero entry price")
    if side is Side.LONG:
        change = (exit_price - entry_price) / entry_price
    else:
        change = (entry_price - exit_price) / entry_price
    return change * Decimal(100) * Decimal(leverage)


class CloseRecorder:
    """Writes the trade ledger and close event for a confirmed trigger."""

    def __init__(self, store: OrderStore, exchange: ConditionalOrderExchange):
        self.store = store
        self.exchange = exchange

    async def compute_pnl(self, order: ConditionalOrder, trade: TradeRecord, position: Position) -> PnLResult:
        entry_price = position.entry_price
        exit_price = trade.price
        quantity = abs(trade.size)
        leverage = int(position.leverage)
        contract = self.exchange.normalize_symbol(order.symbol)

        pnl = await self.exchange.compute_contract_pnl(
            entry_price, exit_price, quantity, order.side, contract
        )
        pnl_percent = compute_pnl_percent(order.side, entry_price, exit_price, leverage)

        return PnLResult(
            pnl=Decimal(str(pnl)),
            pnl_percent=pnl_percent,
            quantity=quantity,
            entry_price=entry_price,
            exit_price=exit_price,
            leverage=leverage,
        )

    async def record(self, order: ConditionalOrder, trade: TradeRecord, position: Position) -> PnLResult:
        """
        Compute PnL and persist the ledger row and close event.

        Raises:
            CloseRecordError: PnL could not be computed or the rows could not be written.
        """
        try:
            result = await self.compute_pnl(order, trade, position)
        except CloseRecordError:
            raise
        except Exception as e:
            raise CloseRecordError(f"PnL computation failed for {order.order_id}: {e}") from e

        close_reason = CloseReason.for_order_type(order.order_type)
        ledger = LedgerTrade(
            order_id=trade.id,
            symbol=order.symbol,
            side=order.side,
            price=trade.price,
            quantity=result.quantity,
            leverage=result.leverage,
            pnl=result.pnl,
            fee=trade.fee,
            timestamp=trade.executed_at,
        )
        event = CloseEvent(
            symbol=order.symbol,
            side=order.side,
            close_reason=close_reason,
            trigger_price=order.trigger_price,
            close_price=result.exit_price,
            entry_price=result.entry_price,
            quantity=result.quantity,
            pnl=result.pnl,
            pnl_percent=result.pnl_percent,
            trigger_order_id=order.order_id,
            close_trade_id=trade.id,
            created_at=datetime.now(timezone.utc),
            processed=False,
        )

        try:
            written = self.store.save_close_records(ledger, event)
        except StoreError as e:
            logger.error(
                "CLOSE_RECORD_FAILURE",
                trigger_order_id=order.order_id,
                close_trade_id=trade.id,
                symbol=order.symbol,
                side=order.side.value,
                entry_price=str(result.entry_price),
                exit_price=str(result.exit_price),
                error=str(e),
            )
            raise CloseRecordError(str(e)) from e

        if written:
            logger.info(
                "Close trade recorded",
                symbol=order.symbol,
                side=order.side.value,
                close_reason=close_reason.value,
                pnl=f"{result.pnl:.2f}",
                pnl_percent=f"{result.pnl_percent:.2f}",
                trigger_order_id=order.order_id,
                close_trade_id=trade.id,
            )
        return result
