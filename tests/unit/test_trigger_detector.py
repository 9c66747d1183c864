"""
Unit tests for trigger confirmation against recent trade history.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from exit_reconciler.domain.models import ConditionalOrderType, Side, TradeRecord
from exit_reconciler.reconciliation.trigger_detector import (
    TriggerDetector,
    closes_position,
    price_crossed_trigger,
    trade_confirms_order,
)

NOW_MS = 1_735_689_600_000  # 2025-01-01T00:00:00Z
CREATED = datetime.fromtimestamp((NOW_MS - 10 * 60 * 1000) / 1000, tz=timezone.utc)


def _trade(price, size, age_s=60, trade_id="t-1"):
    return TradeRecord(
        id=trade_id,
        price=Decimal(price),
        size=Decimal(size),
        fee=Decimal("0"),
        timestamp=NOW_MS - age_s * 1000,
    )


def _raw(price, size, age_s=60, trade_id="t-1"):
    return {"id": trade_id, "price": price, "size": size, "fee": "0", "timestamp": NOW_MS - age_s * 1000}


# ---------------------------------------------------------------------------
# Match rules
# ---------------------------------------------------------------------------

class TestPriceCondition:
    @pytest.mark.parametrize(
        "side, order_type, trigger, price, expected",
        [
            (Side.LONG, ConditionalOrderType.STOP_LOSS, "88000", "87900", True),
            (Side.LONG, ConditionalOrderType.STOP_LOSS, "88000", "88000", True),
            (Side.LONG, ConditionalOrderType.STOP_LOSS, "88000", "88100", False),
            (Side.SHORT, ConditionalOrderType.STOP_LOSS, "92000", "92100", True),
            (Side.SHORT, ConditionalOrderType.STOP_LOSS, "92000", "91900", False),
            (Side.LONG, ConditionalOrderType.TAKE_PROFIT, "95000", "95100", True),
            (Side.LONG, ConditionalOrderType.TAKE_PROFIT, "95000", "94900", False),
            (Side.SHORT, ConditionalOrderType.TAKE_PROFIT, "85000", "84900", True),
            (Side.SHORT, ConditionalOrderType.TAKE_PROFIT, "85000", "85100", False),
        ],
    )
    def test_trigger_conditions(self, make_order, side, order_type, trigger, price, expected):
        order = make_order(side=side, order_type=order_type, trigger_price=trigger)
        size = "-1" if side is Side.LONG else "1"
        assert price_crossed_trigger(order, _trade(price, size)) is expected


class TestDirection:
    def test_long_closed_by_sell_only(self, make_order):
        order = make_order(side=Side.LONG)
        assert closes_position(order, _trade("1", "-0.01"))
        assert not closes_position(order, _trade("1", "0.01"))

    def test_short_closed_by_buy_only(self, make_order):
        order = make_order(side=Side.SHORT)
        assert closes_position(order, _trade("1", "0.01"))
        assert not closes_position(order, _trade("1", "-0.01"))


class TestTradeConfirmsOrder:
    def test_recent_matching_trade_confirms(self, make_order):
        order = make_order(created_at=CREATED)
        assert trade_confirms_order(order, _trade("87000", "-0.01", age_s=60), NOW_MS)

    def test_trade_older_than_window_never_confirms(self, make_order):
        order = make_order(created_at=datetime(2024, 12, 31, tzinfo=timezone.utc))
        assert not trade_confirms_order(order, _trade("87000", "-0.01", age_s=301), NOW_MS)

    def test_trade_at_window_edge_confirms(self, make_order):
        order = make_order(created_at=CREATED)
        assert trade_confirms_order(order, _trade("87000", "-0.01", age_s=300), NOW_MS)

    def test_trade_before_order_creation_ignored(self, make_order):
        order = make_order(created_at=datetime.fromtimestamp((NOW_MS - 30_000) / 1000, tz=timezone.utc))
        assert not trade_confirms_order(order, _trade("87000", "-0.01", age_s=60), NOW_MS)

    def test_wrong_direction_ignored(self, make_order):
        order = make_order(created_at=CREATED)
        assert not trade_confirms_order(order, _trade("87000", "0.01"), NOW_MS)


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_confirm_returns_first_match_in_exchange_order(exchange, make_order):
    exchange.list_recent_trades.return_value = [
        _raw("95000", "-0.01", age_s=10, trade_id="newest-no-cross"),
        _raw("87500", "-0.01", age_s=20, trade_id="match-1"),
        _raw("87000", "-0.01", age_s=30, trade_id="match-2"),
    ]
    detector = TriggerDetector(exchange, clock=lambda: NOW_MS)
    trade = await detector.confirm(make_order(created_at=CREATED))
    assert trade is not None
    assert trade.id == "match-1"
    exchange.normalize_symbol.assert_called_once_with("BTC")
    exchange.list_recent_trades.assert_awaited_once()
    assert exchange.list_recent_trades.await_args.args[1] == 100


@pytest.mark.asyncio
async def test_confirm_returns_none_without_match(exchange, make_order):
    exchange.list_recent_trades.return_value = [_raw("89000", "-0.01"), _raw("87000", "0.01")]
    detector = TriggerDetector(exchange, clock=lambda: NOW_MS)
    assert await detector.confirm(make_order(created_at=CREATED)) is None


@pytest.mark.asyncio
async def test_confirm_treats_fetch_failure_as_no_match(exchange, make_order):
    exchange.list_recent_trades = AsyncMock(side_effect=RuntimeError("timeout"))
    detector = TriggerDetector(exchange, clock=lambda: NOW_MS)
    assert await detector.confirm(make_order(created_at=CREATED)) is None


@pytest.mark.asyncio
async def test_confirm_skips_unparseable_trades(exchange, make_order):
    exchange.list_recent_trades.return_value = [
        {"id": "broken", "size": "-0.01"},
        _raw("87000", "-0.01", trade_id="good"),
    ]
    detector = TriggerDetector(exchange, clock=lambda: NOW_MS)
    trade = await detector.confirm(make_order(created_at=CREATED))
    assert trade.id == "good"


def test_venue_defaults_to_exchange_trade_format(exchange):
    exchange.trade_format = "gate"
    assert TriggerDetector(exchange).venue == "gate"
    assert TriggerDetector(exchange, venue="binance").venue == "binance"
