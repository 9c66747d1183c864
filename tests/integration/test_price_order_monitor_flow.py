"""
Integration tests for the reconciliation pass (SQLite store, mocked exchange).
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from exit_reconciler.domain.models import (
    CloseReason,
    ConditionalOrderStatus,
    ConditionalOrderType,
    Side,
)
from exit_reconciler.reconciliation.price_order_monitor import PriceOrderMonitor


def _trades_by_symbol(mapping):
    """list_recent_trades side effect keyed by base symbol."""
    async def _list(contract, limit):
        return mapping.get(contract.symbol.split("/")[0], [])
    return _list


@pytest.fixture
def seeded(store, make_order, make_position):
    """Long BTC with SL 88000 / TP 95000, plus an ETH stop that stays open."""
    store.save_conditional_order(make_order(order_id="btc-sl", trigger_price="88000"))
    store.save_conditional_order(
        make_order(order_id="btc-tp", order_type=ConditionalOrderType.TAKE_PROFIT, trigger_price="95000")
    )
    store.save_conditional_order(make_order(order_id="eth-sl", symbol="ETH", trigger_price="2800"))
    store.save_position(make_position())
    store.save_position(make_position(symbol="ETH", entry_price="3000", quantity="0.5", leverage=5))
    return store


@pytest.mark.asyncio
async def test_stop_loss_trigger_full_flow(seeded, exchange, make_trade):
    exchange.list_open_conditional_orders.return_value = [{"id": "btc-tp"}, {"id": "eth-sl"}]
    exchange.list_recent_trades.side_effect = _trades_by_symbol(
        {"BTC": [make_trade(trade_id="fill-1", price="87900", size="-0.01")]}
    )
    monitor = PriceOrderMonitor(seeded, exchange)

    summary = await monitor.run_pass()

    assert summary.candidates == 1
    assert summary.triggered == 1
    assert summary.failed == 0

    sl = seeded.get_conditional_order("btc-sl")
    assert sl.status is ConditionalOrderStatus.TRIGGERED
    assert sl.triggered_at is not None
    assert seeded.get_conditional_order("btc-tp").status is ConditionalOrderStatus.CANCELLED
    exchange.cancel_order.assert_awaited_once_with("btc-tp")

    assert seeded.get_position("BTC", Side.LONG) is None
    assert seeded.get_position("ETH", Side.LONG) is not None
    assert seeded.count_trades("BTC") == 1

    events = seeded.list_unprocessed_close_events()
    assert len(events) == 1
    assert events[0].close_reason is CloseReason.STOP_LOSS_TRIGGERED
    assert events[0].trigger_order_id == "btc-sl"
    assert events[0].close_trade_id == "fill-1"
    assert events[0].pnl == Decimal("-21")


@pytest.mark.asyncio
async def test_take_profit_trigger_records_profit(seeded, exchange, make_trade):
    exchange.list_open_conditional_orders.return_value = [{"id": "btc-sl"}, {"id": "eth-sl"}]
    exchange.list_recent_trades.side_effect = _trades_by_symbol(
        {"BTC": [make_trade(trade_id="fill-tp", price="95100", size="-0.01")]}
    )

    await PriceOrderMonitor(seeded, exchange).run_pass()

    assert seeded.get_conditional_order("btc-tp").status is ConditionalOrderStatus.TRIGGERED
    assert seeded.get_conditional_order("btc-sl").status is ConditionalOrderStatus.CANCELLED
    event = seeded.list_unprocessed_close_events()[0]
    assert event.close_reason is CloseReason.TAKE_PROFIT_TRIGGERED
    assert event.pnl == Decimal("51")
    assert round(event.pnl_percent, 2) == Decimal("56.67")


@pytest.mark.asyncio
async def test_disappeared_without_trade_is_cancelled(seeded, exchange, make_trade):
    exchange.list_open_conditional_orders.return_value = [{"id": "btc-tp"}, {"id": "eth-sl"}]
    # Stale fill outside the recency window
    exchange.list_recent_trades.side_effect = _trades_by_symbol(
        {"BTC": [make_trade(price="87900", size="-0.01", age_s=400)]}
    )

    summary = await PriceOrderMonitor(seeded, exchange).run_pass()

    assert summary.cancelled == 1
    assert summary.triggered == 0
    sl = seeded.get_conditional_order("btc-sl")
    assert sl.status is ConditionalOrderStatus.CANCELLED
    assert sl.triggered_at is None
    assert seeded.get_conditional_order("btc-tp").status is ConditionalOrderStatus.ACTIVE
    assert seeded.get_position("BTC", Side.LONG) is not None
    assert seeded.count_trades() == 0
    assert seeded.count_close_events() == 0
    exchange.cancel_order.assert_not_awaited()


@pytest.mark.asyncio
async def test_both_siblings_missing(seeded, exchange, make_trade):
    exchange.list_open_conditional_orders.return_value = [{"id": "eth-sl"}]
    exchange.list_recent_trades.side_effect = _trades_by_symbol(
        {"BTC": [make_trade(price="87900", size="-0.01")]}
    )

    summary = await PriceOrderMonitor(seeded, exchange).run_pass()

    assert summary.candidates == 2
    assert seeded.get_conditional_order("btc-sl").status is ConditionalOrderStatus.TRIGGERED
    assert seeded.get_conditional_order("btc-tp").status is ConditionalOrderStatus.CANCELLED
    assert seeded.count_close_events() == 1


@pytest.mark.asyncio
async def test_second_pass_is_idempotent(seeded, exchange, make_trade):
    exchange.list_open_conditional_orders.return_value = [{"id": "btc-tp"}, {"id": "eth-sl"}]
    exchange.list_recent_trades.side_effect = _trades_by_symbol(
        {"BTC": [make_trade(price="87900", size="-0.01")]}
    )
    monitor = PriceOrderMonitor(seeded, exchange)

    await monitor.run_pass()
    exchange.list_open_conditional_orders.return_value = [{"id": "eth-sl"}]
    second = await monitor.run_pass()

    assert second.candidates == 0
    assert seeded.count_close_events() == 1
    assert seeded.count_trades() == 1
    assert exchange.cancel_order.await_count == 1


@pytest.mark.asyncio
async def test_empty_exchange_listing_aborts_without_mutation(seeded, exchange):
    exchange.list_open_conditional_orders.return_value = []

    summary = await PriceOrderMonitor(seeded, exchange).run_pass()

    assert summary.aborted is True
    assert len(seeded.list_active_orders()) == 3
    assert seeded.get_position("BTC", Side.LONG) is not None
    exchange.list_recent_trades.assert_not_awaited()


@pytest.mark.asyncio
async def test_exchange_listing_error_aborts_without_mutation(seeded, exchange):
    exchange.list_open_conditional_orders = AsyncMock(side_effect=ConnectionError("502"))

    summary = await PriceOrderMonitor(seeded, exchange).run_pass()

    assert summary.aborted is True
    assert len(seeded.list_active_orders()) == 3


@pytest.mark.asyncio
async def test_no_active_orders_skips_exchange(store, exchange):
    summary = await PriceOrderMonitor(store, exchange).run_pass()
    assert summary.active == 0
    exchange.list_open_conditional_orders.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_candidate_does_not_block_others(seeded, exchange, make_trade):
    exchange.list_open_conditional_orders.return_value = [{"id": "btc-tp"}, {"id": "other"}]
    exchange.list_recent_trades.side_effect = _trades_by_symbol({
        "BTC": [make_trade(trade_id="btc-fill", price="87900", size="-0.01")],
        "ETH": [make_trade(trade_id="eth-fill", price="2790", size="-0.5")],
    })

    async def pnl(entry, exit_, qty, side, contract):
        if contract.symbol.startswith("BTC"):
            raise RuntimeError("contract metadata unavailable")
        return (exit_ - entry) * qty

    exchange.compute_contract_pnl = AsyncMock(side_effect=pnl)

    summary = await PriceOrderMonitor(seeded, exchange).run_pass()

    assert summary.candidates == 2
    assert summary.failed == 1
    assert summary.triggered == 1
    # BTC stays triggered with its position intact; ETH completes normally
    assert seeded.get_conditional_order("btc-sl").status is ConditionalOrderStatus.TRIGGERED
    assert seeded.get_position("BTC", Side.LONG) is not None
    assert seeded.get_conditional_order("eth-sl").status is ConditionalOrderStatus.TRIGGERED
    assert seeded.get_position("ETH", Side.LONG) is None
    assert seeded.count_close_events("eth-sl") == 1
    assert seeded.count_close_events("btc-sl") == 0


@pytest.mark.asyncio
async def test_missing_position_still_triggers(store, exchange, make_order, make_trade):
    store.save_conditional_order(make_order(order_id="sl-1"))
    exchange.list_open_conditional_orders.return_value = [{"id": "unrelated"}]
    exchange.list_recent_trades.side_effect = _trades_by_symbol(
        {"BTC": [make_trade(price="87900", size="-0.01")]}
    )

    summary = await PriceOrderMonitor(store, exchange).run_pass()

    assert summary.triggered == 1
    assert store.get_conditional_order("sl-1").status is ConditionalOrderStatus.TRIGGERED
    assert store.count_close_events() == 0
    exchange.compute_contract_pnl.assert_not_awaited()


@pytest.mark.asyncio
async def test_overlapping_passes_apply_once(seeded, exchange, make_trade):
    release = asyncio.Event()

    async def slow_listing():
        await release.wait()
        return [{"id": "btc-tp"}, {"id": "eth-sl"}]

    exchange.list_open_conditional_orders = AsyncMock(side_effect=slow_listing)
    exchange.list_recent_trades.side_effect = _trades_by_symbol(
        {"BTC": [make_trade(price="87900", size="-0.01")]}
    )
    monitor = PriceOrderMonitor(seeded, exchange)

    first = asyncio.create_task(monitor.run_pass())
    second = asyncio.create_task(monitor.run_pass())
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(first, second)

    assert sorted(r.skipped for r in results) == [False, True]
    assert seeded.count_close_events() == 1
    assert seeded.count_trades() == 1


@pytest.mark.asyncio
async def test_order_created_in_non_utc_offset_still_triggers(store, exchange, make_order, make_position, make_trade):
    created = datetime.now(timezone(timedelta(hours=8))) - timedelta(minutes=10)
    store.save_conditional_order(make_order(order_id="btc-sl", trigger_price="88000", created_at=created))
    store.save_position(make_position())
    exchange.list_open_conditional_orders.return_value = [{"id": "unrelated"}]
    exchange.list_recent_trades.side_effect = _trades_by_symbol(
        {"BTC": [make_trade(trade_id="fill-1", price="87900", size="-0.01", age_s=60)]}
    )

    summary = await PriceOrderMonitor(store, exchange).run_pass()

    assert summary.triggered == 1
    assert store.get_conditional_order("btc-sl").status is ConditionalOrderStatus.TRIGGERED
    assert store.count_close_events("btc-sl") == 1
