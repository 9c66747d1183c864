"""
Pytest configuration and shared fixtures.
"""
import os

# Keep get_db() away from any real database if a test forgets to inject one.
if "DATABASE_URL" not in os.environ:
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from exit_reconciler.domain.models import (
    ConditionalOrder,
    ConditionalOrderStatus,
    ConditionalOrderType,
    ContractSpec,
    Position,
    Side,
)
from exit_reconciler.storage.db import Database
from exit_reconciler.storage.repository import OrderStore


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


def now_ms() -> int:
    return int(time.time() * 1000)


def linear_pnl(entry_price, exit_price, quantity, side, contract):
    pnl = (exit_price - entry_price) * quantity * contract.contract_size
    return pnl if side is Side.LONG else -pnl


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'reconciler.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def store(db):
    return OrderStore(db)


# ---------------------------------------------------------------------------
# Exchange capability
# ---------------------------------------------------------------------------

@pytest.fixture
def exchange():
    """
    Exchange capability double: async calls are AsyncMocks, symbol mapping is sync.
    Trades are generic-shaped dicts (id/price/size/fee/timestamp).
    """
    ex = MagicMock()
    ex.trade_format = "generic"
    ex.list_open_conditional_orders = AsyncMock(return_value=[])
    ex.list_recent_trades = AsyncMock(return_value=[])
    ex.cancel_order = AsyncMock(return_value={"status": "canceled"})
    ex.compute_contract_pnl = AsyncMock(side_effect=linear_pnl)
    ex.normalize_symbol = MagicMock(side_effect=lambda s: ContractSpec(symbol=f"{s}/USDT:USDT"))
    return ex


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_order():
    def _make(
        order_id="sl-1",
        symbol="BTC",
        side=Side.LONG,
        order_type=ConditionalOrderType.STOP_LOSS,
        trigger_price="88000",
        quantity="0.01",
        status=ConditionalOrderStatus.ACTIVE,
        created_at=None,
    ):
        return ConditionalOrder(
            order_id=order_id,
            symbol=symbol,
            side=side,
            order_type=order_type,
            trigger_price=Decimal(trigger_price),
            order_price=Decimal(trigger_price),
            quantity=Decimal(quantity),
            status=status,
            created_at=created_at or datetime.now(timezone.utc) - timedelta(minutes=10),
        )
    return _make


@pytest.fixture
def make_position():
    def _make(symbol="BTC", side=Side.LONG, entry_price="90000", quantity="0.01", leverage=10):
        return Position(
            symbol=symbol,
            side=side,
            entry_price=Decimal(entry_price),
            quantity=Decimal(quantity),
            leverage=leverage,
        )
    return _make


@pytest.fixture
def make_trade():
    """Generic-shaped raw trade; ``age_s`` seconds ago."""
    def _make(trade_id="t-1", price="95100", size="-0.01", fee="0.05", age_s=60):
        return {
            "id": trade_id,
            "price": price,
            "size": size,
            "fee": fee,
            "timestamp": now_ms() - age_s * 1000,
        }
    return _make
