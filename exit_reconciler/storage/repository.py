"""
Persistence for conditional orders, positions, the trade ledger and close events.

Provides the order store gateway used by the reconciliation loop.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.exc import SQLAlchemyError

from exit_reconciler.domain.models import (
    CloseEvent,
    CloseReason,
    ConditionalOrder,
    ConditionalOrderStatus,
    ConditionalOrderType,
    LedgerTrade,
    Position,
    Side,
)
from exit_reconciler.domain.protocols import ConditionalOrderExchange
from exit_reconciler.exceptions import InvariantError, StoreError
from exit_reconciler.monitoring.logger import get_logger
from exit_reconciler.storage.db import Base, Database, get_db

logger = get_logger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Every stored datetime is UTC. Applied on write so SQLite, which keeps only
    the wall-clock value, does not shift offset-aware times, and on read to
    restore the tzinfo SQLite drops.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _dec(value) -> Decimal:
    return Decimal(str(value))


# ORM Models
class ConditionalOrderModel(Base):
    """ORM model for stop-loss / take-profit orders resting on the exchange."""
    __tablename__ = "price_orders"
    __table_args__ = (
        Index("idx_price_orders_symbol", "symbol"),
        Index("idx_price_orders_status", "status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, unique=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    type = Column(String, nullable=False)
    trigger_price = Column(Numeric(precision=20, scale=8), nullable=False)
    order_price = Column(Numeric(precision=20, scale=8), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    status = Column(String, nullable=False, default=ConditionalOrderStatus.ACTIVE.value)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    triggered_at = Column(DateTime(timezone=True), nullable=True)


class PositionModel(Base):
    """ORM model for open positions, one per (symbol, side)."""
    __tablename__ = "positions"
    __table_args__ = (
        UniqueConstraint("symbol", "side", name="uq_position_symbol_side"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    entry_price = Column(Numeric(precision=20, scale=8), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    leverage = Column(Integer, nullable=False)
    partial_close_percentage = Column(Numeric(precision=10, scale=4), nullable=False, default=0)
    opened_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class TradeModel(Base):
    """ORM model for the trade ledger."""
    __tablename__ = "trades"
    __table_args__ = (
        Index("idx_trade_symbol_time", "symbol", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    type = Column(String, nullable=False)
    price = Column(Numeric(precision=20, scale=8), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    leverage = Column(Integer, nullable=False)
    pnl = Column(Numeric(precision=20, scale=8), nullable=True)
    fee = Column(Numeric(precision=20, scale=8), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False)


class CloseEventModel(Base):
    """ORM model for position close events consumed by the decision layer."""
    __tablename__ = "position_close_events"
    __table_args__ = (
        Index("idx_close_events_processed", "processed", "created_at"),
        UniqueConstraint("trigger_order_id", name="uq_close_event_trigger_order"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    close_reason = Column(String, nullable=False)
    trigger_price = Column(Numeric(precision=20, scale=8), nullable=False)
    close_price = Column(Numeric(precision=20, scale=8), nullable=False)
    entry_price = Column(Numeric(precision=20, scale=8), nullable=False)
    quantity = Column(Numeric(precision=20, scale=8), nullable=False)
    pnl = Column(Numeric(precision=20, scale=8), nullable=False)
    pnl_percent = Column(Numeric(precision=20, scale=8), nullable=False)
    trigger_order_id = Column(String, nullable=False)
    close_trade_id = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    processed = Column(Boolean, nullable=False, default=False)


def _order_from_model(m: ConditionalOrderModel) -> ConditionalOrder:
    return ConditionalOrder(
        order_id=m.order_id,
        symbol=m.symbol,
        side=Side(m.side),
        order_type=ConditionalOrderType(m.type),
        trigger_price=_dec(m.trigger_price),
        order_price=_dec(m.order_price),
        quantity=_dec(m.quantity),
        status=ConditionalOrderStatus(m.status),
        created_at=_as_utc(m.created_at),
        updated_at=_as_utc(m.updated_at),
        triggered_at=_as_utc(m.triggered_at),
    )


def _position_from_model(m: PositionModel) -> Position:
    return Position(
        symbol=m.symbol,
        side=Side(m.side),
        entry_price=_dec(m.entry_price),
        quantity=_dec(m.quantity),
        leverage=int(m.leverage),
        partial_close_percentage=_dec(m.partial_close_percentage or 0),
    )


def _close_event_from_model(m: CloseEventModel) -> CloseEvent:
    return CloseEvent(
        symbol=m.symbol,
        side=Side(m.side),
        close_reason=CloseReason(m.close_reason),
        trigger_price=_dec(m.trigger_price),
        close_price=_dec(m.close_price),
        entry_price=_dec(m.entry_price),
        quantity=_dec(m.quantity),
        pnl=_dec(m.pnl),
        pnl_percent=_dec(m.pnl_percent),
        trigger_order_id=m.trigger_order_id,
        close_trade_id=m.close_trade_id,
        created_at=_as_utc(m.created_at),
        processed=bool(m.processed),
    )


class OrderStore:
    """
    Gateway over the persisted conditional orders, positions and close records.

    Owns the conditional-order status transitions. Database errors surface as
    StoreError so callers can treat them as per-candidate failures.
    """

    def __init__(self, db: Optional[Database] = None):
        self._db = db

    @property
    def db(self) -> Database:
        """Lazy-load the global database when none was injected."""
        if self._db is None:
            self._db = get_db()
        return self._db

    # ------------------------------------------------------------------
    # Conditional orders
    # ------------------------------------------------------------------

    def save_conditional_order(self, order: ConditionalOrder) -> None:
        """
        Insert a conditional order (used by order placement and tests).

        Raises:
            InvariantError: an active order of the same kind already protects
                this (symbol, side).
        """
        try:
            with self.db.get_session() as session:
                if order.status is ConditionalOrderStatus.ACTIVE:
                    clash = session.query(ConditionalOrderModel.order_id).filter(
                        ConditionalOrderModel.symbol == order.symbol,
                        ConditionalOrderModel.side == order.side.value,
                        ConditionalOrderModel.type == order.order_type.value,
                        ConditionalOrderModel.status == ConditionalOrderStatus.ACTIVE.value,
                    ).first()
                    if clash is not None:
                        raise InvariantError(
                            f"Active {order.order_type.value} already exists for "
                            f"{order.symbol} {order.side.value}: {clash.order_id}"
                        )
                session.add(
                    ConditionalOrderModel(
                        order_id=order.order_id,
                        symbol=order.symbol,
                        side=order.side.value,
                        type=order.order_type.value,
                        trigger_price=order.trigger_price,
                        order_price=order.order_price,
                        quantity=order.quantity,
                        status=order.status.value,
                        created_at=_as_utc(order.created_at),
                        updated_at=_as_utc(order.updated_at),
                        triggered_at=_as_utc(order.triggered_at),
                    )
                )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to save conditional order {order.order_id}: {e}") from e

    def get_conditional_order(self, order_id: str) -> Optional[ConditionalOrder]:
        try:
            with self.db.get_session() as session:
                m = session.query(ConditionalOrderModel).filter(
                    ConditionalOrderModel.order_id == order_id
                ).first()
                return _order_from_model(m) if m else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load conditional order {order_id}: {e}") from e

    def list_active_orders(self) -> List[ConditionalOrder]:
        """
        Active conditional orders ordered by symbol, then newest first.
        """
        try:
            with self.db.get_session() as session:
                rows = (
                    session.query(ConditionalOrderModel)
                    .filter(ConditionalOrderModel.status == ConditionalOrderStatus.ACTIVE.value)
                    .order_by(ConditionalOrderModel.symbol.asc(), ConditionalOrderModel.created_at.desc())
                    .all()
                )
                return [_order_from_model(m) for m in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list active conditional orders: {e}") from e

    def update_status(self, order_id: str, status: ConditionalOrderStatus) -> bool:
        """
        Transition a conditional order to ``status``.

        Idempotent: writing the current status again leaves the row untouched.
        Terminal statuses are never left; such a request is logged and refused.

        Returns:
            True if the row changed.
        """
        now = datetime.now(timezone.utc)
        try:
            with self.db.get_session() as session:
                m = session.query(ConditionalOrderModel).filter(
                    ConditionalOrderModel.order_id == order_id
                ).first()
                if m is None:
                    logger.warning("Conditional order not found for status update", order_id=order_id, status=status.value)
                    return False

                current = ConditionalOrderStatus(m.status)
                if current is status:
                    return False
                if current.is_terminal:
                    logger.error(
                        "INVARIANT_TERMINAL_STATUS_TRANSITION_REFUSED",
                        order_id=order_id,
                        current=current.value,
                        requested=status.value,
                    )
                    return False

                m.status = status.value
                m.updated_at = now
                m.triggered_at = now if status is ConditionalOrderStatus.TRIGGERED else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update status of {order_id} to {status.value}: {e}") from e

        logger.debug("Conditional order status updated", order_id=order_id, status=status.value)
        return True

    def find_active_order(
        self, symbol: str, side: Side, order_type: ConditionalOrderType
    ) -> Optional[ConditionalOrder]:
        try:
            with self.db.get_session() as session:
                m = (
                    session.query(ConditionalOrderModel)
                    .filter(
                        ConditionalOrderModel.symbol == symbol,
                        ConditionalOrderModel.side == side.value,
                        ConditionalOrderModel.type == order_type.value,
                        ConditionalOrderModel.status == ConditionalOrderStatus.ACTIVE.value,
                    )
                    .order_by(ConditionalOrderModel.created_at.desc())
                    .first()
                )
                return _order_from_model(m) if m else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to look up active {order_type.value} for {symbol} {side.value}: {e}") from e

    async def cancel_opposite_order(
        self, triggered: ConditionalOrder, exchange: ConditionalOrderExchange
    ) -> Optional[str]:
        """
        Tear down the sibling order of a triggered one.

        The exchange cancel is best effort (the order may already be gone);
        the local row is marked cancelled regardless.

        Returns:
            The cancelled order id, or None if there was nothing to cancel.
        """
        try:
            opposite = self.find_active_order(
                triggered.symbol, triggered.side, triggered.order_type.opposite
            )
            if opposite is None:
                logger.debug("No opposite conditional order", symbol=triggered.symbol, side=triggered.side.value)
                return None

            try:
                await exchange.cancel_order(opposite.order_id)
                logger.info("Exchange conditional order cancelled", order_id=opposite.order_id)
            except Exception as e:
                logger.warning(
                    "Exchange cancel failed (order may already be gone)",
                    order_id=opposite.order_id,
                    error=str(e),
                )

            self.update_status(opposite.order_id, ConditionalOrderStatus.CANCELLED)
            logger.info(
                "OPPOSITE_ORDER_CANCELLED",
                order_id=opposite.order_id,
                symbol=opposite.symbol,
                order_type=opposite.order_type.value,
                triggered_by=triggered.order_id,
            )
            return opposite.order_id
        except StoreError as e:
            logger.error(
                "Failed to cancel opposite conditional order",
                triggered_order_id=triggered.order_id,
                error=str(e),
            )
            return None

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def save_position(self, position: Position) -> None:
        """Insert or replace the position for (symbol, side)."""
        try:
            with self.db.get_session() as session:
                m = session.query(PositionModel).filter(
                    PositionModel.symbol == position.symbol,
                    PositionModel.side == position.side.value,
                ).first()
                if m is None:
                    m = PositionModel(symbol=position.symbol, side=position.side.value)
                    session.add(m)
                m.entry_price = position.entry_price
                m.quantity = position.quantity
                m.leverage = position.leverage
                m.partial_close_percentage = position.partial_close_percentage
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to save position {position.symbol} {position.side.value}: {e}") from e

    def get_position(self, symbol: str, side: Side) -> Optional[Position]:
        """Position for (symbol, side); lookup failures are logged and read as missing."""
        try:
            with self.db.get_session() as session:
                m = session.query(PositionModel).filter(
                    PositionModel.symbol == symbol,
                    PositionModel.side == side.value,
                ).first()
                return _position_from_model(m) if m else None
        except SQLAlchemyError as e:
            logger.error("Failed to load position", symbol=symbol, side=side.value, error=str(e))
            return None

    def remove_position(self, symbol: str, side: Side) -> int:
        """Delete the position for (symbol, side). Returns rows deleted."""
        try:
            with self.db.get_session() as session:
                count = session.query(PositionModel).filter(
                    PositionModel.symbol == symbol,
                    PositionModel.side == side.value,
                ).delete(synchronize_session=False)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to remove position {symbol} {side.value}: {e}") from e

        logger.debug("Position removed", symbol=symbol, side=side.value, rows=count)
        return count

    # ------------------------------------------------------------------
    # Trade ledger + close events
    # ------------------------------------------------------------------

    def save_close_records(self, ledger: LedgerTrade, event: CloseEvent) -> bool:
        """
        Write the ledger row and the close event in one transaction.

        Replays are detected by trigger_order_id: if a close event already
        exists for the trigger order nothing is written.

        Returns:
            True if rows were written, False on replay.
        """
        try:
            with self.db.get_session() as session:
                existing = session.query(CloseEventModel.id).filter(
                    CloseEventModel.trigger_order_id == event.trigger_order_id
                ).first()
                if existing is not None:
                    logger.warning(
                        "Close event already recorded, skipping",
                        trigger_order_id=event.trigger_order_id,
                    )
                    return False

                session.add(
                    TradeModel(
                        order_id=ledger.order_id,
                        symbol=ledger.symbol,
                        side=ledger.side.value,
                        type=ledger.type,
                        price=ledger.price,
                        quantity=ledger.quantity,
                        leverage=ledger.leverage,
                        pnl=ledger.pnl,
                        fee=ledger.fee,
                        timestamp=_as_utc(ledger.timestamp),
                        status=ledger.status,
                    )
                )
                session.add(
                    CloseEventModel(
                        symbol=event.symbol,
                        side=event.side.value,
                        close_reason=event.close_reason.value,
                        trigger_price=event.trigger_price,
                        close_price=event.close_price,
                        entry_price=event.entry_price,
                        quantity=event.quantity,
                        pnl=event.pnl,
                        pnl_percent=event.pnl_percent,
                        trigger_order_id=event.trigger_order_id,
                        close_trade_id=event.close_trade_id,
                        created_at=_as_utc(event.created_at),
                        processed=event.processed,
                    )
                )
        except SQLAlchemyError as e:
            raise StoreError(
                f"Failed to write close records for {event.trigger_order_id}: {e}"
            ) from e
        return True

    def list_unprocessed_close_events(self, since_hours: int = 24) -> List[CloseEvent]:
        """Close events not yet consumed downstream, newest first."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=since_hours)
        try:
            with self.db.get_session() as session:
                rows = (
                    session.query(CloseEventModel)
                    .filter(
                        CloseEventModel.processed.is_(False),
                        CloseEventModel.created_at > cutoff,
                    )
                    .order_by(CloseEventModel.created_at.desc())
                    .all()
                )
                return [_close_event_from_model(m) for m in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list close events: {e}") from e

    def count_close_events(self, trigger_order_id: Optional[str] = None) -> int:
        try:
            with self.db.get_session() as session:
                query = session.query(CloseEventModel)
                if trigger_order_id is not None:
                    query = query.filter(CloseEventModel.trigger_order_id == trigger_order_id)
                return query.count()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count close events: {e}") from e

    def count_trades(self, symbol: Optional[str] = None) -> int:
        try:
            with self.db.get_session() as session:
                query = session.query(TradeModel)
                if symbol is not None:
                    query = query.filter(TradeModel.symbol == symbol)
                return query.count()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to count trades: {e}") from e
