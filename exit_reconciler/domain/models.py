"""
Domain models for the exit reconciler.

These are the core business objects used throughout the application.
All datetimes are UTC timezone-aware; trade timestamps are epoch milliseconds.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


class Side(str, Enum):
    """Position side."""
    LONG = "long"
    SHORT = "short"


class ConditionalOrderType(str, Enum):
    """Kind of exit instruction resting on the exchange."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"

    @property
    def opposite(self) -> "ConditionalOrderType":
        """The sibling kind torn down when this one triggers."""
        if self is ConditionalOrderType.STOP_LOSS:
            return ConditionalOrderType.TAKE_PROFIT
        return ConditionalOrderType.STOP_LOSS


class ConditionalOrderStatus(str, Enum):
    """Conditional order status. TRIGGERED and CANCELLED are terminal."""
    ACTIVE = "active"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ConditionalOrderStatus.ACTIVE


class CloseReason(str, Enum):
    """Why a position was closed, as published to downstream consumers."""
    STOP_LOSS_TRIGGERED = "stop_loss_triggered"
    TAKE_PROFIT_TRIGGERED = "take_profit_triggered"

    @classmethod
    def for_order_type(cls, order_type: ConditionalOrderType) -> "CloseReason":
        if order_type is ConditionalOrderType.STOP_LOSS:
            return cls.STOP_LOSS_TRIGGERED
        return cls.TAKE_PROFIT_TRIGGERED


@dataclass
class ConditionalOrder:
    """
    Pending exit instruction (stop-loss / take-profit) placed on the exchange.
    """
    order_id: str  # Exchange-assigned, unique
    symbol: str  # e.g. "BTC"
    side: Side  # Side of the position this order protects
    order_type: ConditionalOrderType
    trigger_price: Decimal
    order_price: Decimal
    quantity: Decimal
    status: ConditionalOrderStatus
    created_at: datetime
    updated_at: Optional[datetime] = None
    triggered_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate order."""
        if self.created_at.tzinfo is None:
            raise ValueError("ConditionalOrder created_at must be timezone-aware (UTC)")
        if (self.status is ConditionalOrderStatus.TRIGGERED) != (self.triggered_at is not None):
            raise ValueError(
                f"triggered_at must be set iff status is triggered "
                f"(order_id={self.order_id}, status={self.status.value})"
            )

    @property
    def created_at_ms(self) -> int:
        """Creation time as epoch milliseconds, comparable with TradeRecord.timestamp."""
        return int(self.created_at.timestamp() * 1000)


@dataclass
class Position:
    """
    Local record of an open exchange position.
    """
    symbol: str
    side: Side
    entry_price: Decimal
    quantity: Decimal
    leverage: int
    partial_close_percentage: Decimal = Decimal("0")


@dataclass(frozen=True)
class TradeRecord:
    """
    Canonical trade record produced by the trade normalizer.

    ``size`` is signed: negative = sell, positive = buy.
    """
    id: str
    price: Decimal
    size: Decimal
    fee: Decimal
    timestamp: int  # epoch millis

    @property
    def is_sell(self) -> bool:
        return self.size < 0

    @property
    def is_buy(self) -> bool:
        return self.size > 0

    @property
    def executed_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class ContractSpec:
    """
    Venue contract metadata returned by the exchange's symbol normalization.
    """
    symbol: str  # Venue symbol, e.g. "BTC/USDT:USDT" or "BTC_USDT"
    contract_size: Decimal = Decimal("1")  # Base units per contract (quanto multiplier)
    inverse: bool = False
    settle: str = "USDT"


@dataclass(frozen=True)
class PnLResult:
    """Outcome of a confirmed close."""
    pnl: Decimal
    pnl_percent: Decimal
    quantity: Decimal
    entry_price: Decimal
    exit_price: Decimal
    leverage: int


@dataclass(frozen=True)
class LedgerTrade:
    """
    Row written to the trade ledger for a confirmed close.
    """
    order_id: str  # Close trade id from the exchange
    symbol: str
    side: Side
    price: Decimal
    quantity: Decimal
    leverage: int
    pnl: Decimal
    fee: Decimal
    timestamp: datetime
    type: str = "close"
    status: str = "filled"


@dataclass
class CloseEvent:
    """
    Immutable fact published for downstream consumption.

    ``processed`` is only ever flipped by the downstream consumer.
    """
    symbol: str
    side: Side
    close_reason: CloseReason
    trigger_price: Decimal
    close_price: Decimal
    entry_price: Decimal
    quantity: Decimal
    pnl: Decimal
    pnl_percent: Decimal
    trigger_order_id: str
    close_trade_id: str
    created_at: datetime
    processed: bool = False
