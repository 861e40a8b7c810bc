"""Tests for the stop-loss guard."""

from __future__ import annotations

from decimal import Decimal

import pytest

from perp_maker.core.errors import ExchangeError, RateLimitError
from perp_maker.core.trade_log import LogCategory, TradeLog
from perp_maker.execution.coordinator import OrderCoordinator
from perp_maker.execution.stop_guard import ProtectionState, StopLossGuard
from perp_maker.models import (
    OrderSide,
    OrderType,
    PositionSnapshot,
    PriceGuard,
    TimeInForce,
    TriggerKind,
)
from perp_maker.sim.mock_exchange import MockExchange


@pytest.fixture
def exchange() -> MockExchange:
    return MockExchange("BTCUSDT", auto_publish=False)


@pytest.fixture
def guard(exchange: MockExchange, trade_log: TradeLog) -> StopLossGuard:
    coordinator = OrderCoordinator(exchange, "BTCUSDT", trade_log)
    return StopLossGuard(
        coordinator, trade_log, loss_limit=Decimal("10"), price_tick=Decimal("0.1")
    )


def _position(amount: str, entry: str | None) -> PositionSnapshot:
    return PositionSnapshot(
        symbol="BTCUSDT",
        amount=Decimal(amount),
        entry_price=Decimal(entry) if entry is not None else None,
    )


def _stop(make_order, order_id: str, side: OrderSide, stop_price: str):
    return make_order(
        order_id, side, "0", order_type=OrderType.STOP_MARKET, stop_price=stop_price,
        reduce_only=True,
    )


def test_compute_target_long_and_short(guard: StopLossGuard) -> None:
    long_target = guard.compute_target(_position("1", "100"))
    short_target = guard.compute_target(_position("-2", "100"))

    assert long_target is not None and short_target is not None
    assert (long_target.side, long_target.trigger_price) == (OrderSide.SELL, Decimal("90.0"))
    assert (short_target.side, short_target.trigger_price) == (OrderSide.BUY, Decimal("105.0"))
    assert short_target.quantity == Decimal("2")
    assert guard.compute_target(_position("0", "100")) is None
    assert guard.compute_target(_position("1", None)) is None


def test_needs_replace_uses_one_tick_threshold(guard: StopLossGuard) -> None:
    assert guard.needs_replace(None, Decimal("90"))
    assert not guard.needs_replace(Decimal("90.0"), Decimal("90.05"))
    assert guard.needs_replace(Decimal("90.0"), Decimal("90.1"))


@pytest.mark.asyncio
async def test_long_position_gets_sell_stop(
    guard: StopLossGuard, exchange: MockExchange, trade_log: TradeLog
) -> None:
    state = await guard.reconcile(_position("1", "100"), [], last_price=Decimal("100"))

    assert state is ProtectionState.POSITION_PROTECTED
    params = exchange.created[0]
    assert params.side is OrderSide.SELL
    assert params.order_type is OrderType.STOP_MARKET
    assert params.stop_price == Decimal("90.0")
    assert params.reduce_only and params.close_position
    assert params.trigger_kind is TriggerKind.STOP_LOSS
    assert "Placed stop SELL STOP_MARKET @ 90.0 (STOP_LOSS)" in trade_log.messages(LogCategory.STOP)


@pytest.mark.asyncio
async def test_short_position_gets_buy_stop(guard: StopLossGuard, exchange: MockExchange) -> None:
    state = await guard.reconcile(_position("-2", "100"), [], last_price=Decimal("100"))

    assert state is ProtectionState.POSITION_PROTECTED
    params = exchange.created[0]
    assert params.side is OrderSide.BUY
    assert params.stop_price == Decimal("105.0")
    assert params.trigger_kind is TriggerKind.TAKE_PROFIT


@pytest.mark.asyncio
async def test_flat_position_needs_nothing(guard: StopLossGuard, exchange: MockExchange) -> None:
    assert await guard.reconcile(_position("0", None), []) is ProtectionState.NO_POSITION
    assert await guard.reconcile(None, []) is ProtectionState.NO_POSITION
    assert exchange.created == []


@pytest.mark.asyncio
async def test_unknown_entry_defers_and_logs_once(
    guard: StopLossGuard, exchange: MockExchange, trade_log: TradeLog
) -> None:
    position = _position("1", None)

    first = await guard.reconcile(position, [], last_price=Decimal("100"))
    second = await guard.reconcile(position, [], last_price=Decimal("100"))

    assert first is second is ProtectionState.POSITION_NO_PROTECTION
    assert exchange.created == []
    assert trade_log.messages().count(
        "Position open but entry price unknown, stop-loss deferred"
    ) == 1


@pytest.mark.asyncio
async def test_stop_within_a_tick_is_kept(
    guard: StopLossGuard, exchange: MockExchange, make_order
) -> None:
    existing = _stop(make_order, "9", OrderSide.SELL, "65000.0")

    state = await guard.reconcile(
        _position("1", "65010.05"), [existing], last_price=Decimal("65010")
    )

    assert state is ProtectionState.POSITION_PROTECTED
    assert exchange.created == []
    assert exchange.cancelled == []


@pytest.mark.asyncio
async def test_stop_moved_by_a_tick_is_replaced(
    exchange: MockExchange, trade_log: TradeLog, make_order
) -> None:
    existing = _stop(make_order, "9", OrderSide.SELL, "65000.0")
    cancelled = []
    guard = StopLossGuard(
        OrderCoordinator(exchange, "BTCUSDT", trade_log),
        trade_log,
        loss_limit=Decimal("10"),
        price_tick=Decimal("0.1"),
        on_cancelled=cancelled.append,
    )

    state = await guard.reconcile(
        _position("1", "65010.2"), [existing], last_price=Decimal("65010")
    )

    assert state is ProtectionState.POSITION_PROTECTED
    assert exchange.created[-1].stop_price == Decimal("65000.2")
    assert cancelled == [existing]
    assert "Stop moved: 65000.0 -> 65000.2" in trade_log.messages(LogCategory.STOP)


@pytest.mark.asyncio
async def test_failed_cancel_marks_stale_and_retries(
    guard: StopLossGuard, exchange: MockExchange, trade_log: TradeLog, make_order
) -> None:
    existing = _stop(make_order, "9", OrderSide.SELL, "80.0")
    exchange.fail_next_cancel(ExchangeError("Service unavailable"))

    first = await guard.reconcile(_position("1", "100"), [existing], last_price=Decimal("100"))

    assert first is ProtectionState.PROTECTION_STALE
    assert exchange.created == []
    assert any("Failed to cancel stale stop 9" in m for m in trade_log.messages(LogCategory.ERROR))

    second = await guard.reconcile(_position("1", "100"), [existing], last_price=Decimal("100"))

    assert second is ProtectionState.POSITION_PROTECTED
    assert exchange.created[0].stop_price == Decimal("90.0")


@pytest.mark.asyncio
async def test_rate_limited_cancel_propagates(
    guard: StopLossGuard, exchange: MockExchange, make_order
) -> None:
    existing = _stop(make_order, "9", OrderSide.SELL, "80.0")
    exchange.fail_next_cancel(RateLimitError("Too many requests", code=429))

    with pytest.raises(RateLimitError):
        await guard.reconcile(_position("1", "100"), [existing], last_price=Decimal("100"))


@pytest.mark.asyncio
async def test_breached_loss_with_stop_through_price_closes(
    guard: StopLossGuard, exchange: MockExchange, trade_log: TradeLog
) -> None:
    state = await guard.reconcile(
        _position("1", "100"),
        [],
        bid=Decimal("85"),
        ask=Decimal("85.2"),
        last_price=Decimal("85.1"),
    )

    assert state is ProtectionState.POSITION_NO_PROTECTION
    params = exchange.created[0]
    assert params.order_type is OrderType.LIMIT
    assert params.time_in_force is TimeInForce.IOC
    assert params.side is OrderSide.SELL
    assert params.price == Decimal("85")
    assert params.reduce_only
    assert any("Loss limit exceeded" in m for m in trade_log.messages(LogCategory.STOP))


@pytest.mark.asyncio
async def test_through_price_without_breach_refuses_stop(
    guard: StopLossGuard, exchange: MockExchange, trade_log: TradeLog
) -> None:
    state = await guard.reconcile(
        _position("1", "100"),
        [],
        bid=Decimal("95"),
        ask=Decimal("95.1"),
        last_price=Decimal("89"),
    )

    assert state is ProtectionState.POSITION_NO_PROTECTION
    assert exchange.created == []
    assert trade_log.messages(LogCategory.ERROR) == [
        "Stop price 90.0 is at or above last price 89, not placing"
    ]


@pytest.mark.asyncio
async def test_stop_wider_than_mark_band_is_still_placed(
    guard: StopLossGuard, exchange: MockExchange, trade_log: TradeLog
) -> None:
    band = PriceGuard(mark_price=Decimal("65000"), max_pct=Decimal("0.05"))

    state = await guard.reconcile(
        _position("0.001", "65000"), [], last_price=Decimal("65000"), guard=band
    )

    assert state is ProtectionState.POSITION_PROTECTED
    assert [(p.side, p.stop_price) for p in exchange.created] == [
        (OrderSide.SELL, Decimal("55000.0"))
    ]
    assert not any("blocked by price guard" in m for m in trade_log.messages())


@pytest.mark.asyncio
async def test_stop_on_wrong_side_of_mark_band_is_blocked(
    exchange: MockExchange, trade_log: TradeLog
) -> None:
    coordinator = OrderCoordinator(exchange, "BTCUSDT", trade_log)
    band = PriceGuard(mark_price=Decimal("100"), max_pct=Decimal("0.05"))

    blocked = await coordinator.place_stop_protection(
        OrderSide.SELL, Decimal("106"), Decimal("1"), None, guard=band
    )
    placed = await coordinator.place_stop_protection(
        OrderSide.BUY, Decimal("150"), Decimal("1"), None, guard=band
    )

    assert blocked is None
    assert placed is not None
    assert [(p.side, p.stop_price) for p in exchange.created] == [
        (OrderSide.BUY, Decimal("150.0"))
    ]
    assert any(
        "Stop order blocked by price guard: side=SELL trigger=106" in m
        for m in trade_log.messages(LogCategory.ERROR)
    )
    coordinator.close_all()


@pytest.mark.asyncio
async def test_stop_kept_when_new_target_is_through_price(
    guard: StopLossGuard, exchange: MockExchange, trade_log: TradeLog, make_order
) -> None:
    existing = _stop(make_order, "9", OrderSide.SELL, "80.0")

    for _ in range(2):
        state = await guard.reconcile(
            _position("1", "100"),
            [existing],
            bid=Decimal("95"),
            ask=Decimal("95.1"),
            last_price=Decimal("89"),
        )
        assert state is ProtectionState.PROTECTION_STALE

    assert exchange.cancelled == []
    assert exchange.created == []
    assert trade_log.messages(LogCategory.WARN) == [
        "Stop target 90.0 is through last price 89, keeping stop 9 @ 80.0"
    ]

    state = await guard.reconcile(
        _position("1", "100"), [existing], bid=Decimal("95"), ask=Decimal("95.1"),
        last_price=Decimal("95"),
    )

    assert state is ProtectionState.POSITION_PROTECTED
    assert "Stop moved: 80.0 -> 90.0" in trade_log.messages(LogCategory.STOP)
    assert exchange.created[0].stop_price == Decimal("90.0")
