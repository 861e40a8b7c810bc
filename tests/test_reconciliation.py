"""Tests for the reconciliation loop against the in-memory exchange."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from perp_maker.core.config import EngineConfig, load_config
from perp_maker.core.errors import InsufficientBalanceError, RateLimitError
from perp_maker.core.events import EventBus, EventTopic
from perp_maker.core.trade_log import LogCategory, LogEntry
from perp_maker.engine.reconciliation import EngineSnapshot, LoopPhase, ReconciliationLoop
from perp_maker.execution.stop_guard import ProtectionState
from perp_maker.models import (
    CreateOrderParams,
    OrderSide,
    OrderType,
    TimeInForce,
)
from perp_maker.sim.mock_exchange import BulkMockExchange, MockExchange
from perp_maker.strategies.offset import OffsetQuoteStrategy


class RecordingExchange(MockExchange):
    """MockExchange that records the order of venue calls."""

    def __init__(self, symbol: str) -> None:
        super().__init__(symbol)
        self.calls: list[str] = []

    async def create_order(self, params: CreateOrderParams):
        self.calls.append(f"create {params.side.value} {params.price}")
        return await super().create_order(params)

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        self.calls.append(f"cancel {order_id}")
        await super().cancel_order(symbol, order_id)


class ExplodingStrategy:
    def desired_orders(self, context):
        raise RuntimeError("strategy exploded")


def _config(**overrides: object) -> EngineConfig:
    values: dict[str, object] = {
        "symbol": "BTCUSDT",
        "trade_amount": Decimal("1"),
        "loss_limit": Decimal("1"),
        "refresh_interval_ms": 10,
    }
    values.update(overrides)
    return load_config(**values)


def _with_market(exchange: MockExchange) -> MockExchange:
    exchange.set_market(Decimal("99.9"), Decimal("100.1"))
    return exchange


@pytest.fixture
def exchange() -> MockExchange:
    return _with_market(MockExchange("BTCUSDT"))


def _engine(exchange: MockExchange, clock, **kwargs: object) -> ReconciliationLoop:
    return ReconciliationLoop(_config(), exchange, OffsetQuoteStrategy(), clock=clock, **kwargs)


async def _deliver() -> None:
    """Let scheduled order-feed pushes run."""
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_waits_for_all_feeds_and_logs_once(exchange: MockExchange, clock) -> None:
    engine = _engine(exchange, clock)

    await engine.tick()
    await engine.tick()

    messages = engine.trade_log.messages()
    for name in ("account", "orders", "depth", "ticker"):
        assert messages.count(f"Waiting for {name} feed") == 1
    assert engine.phase is LoopPhase.AWAITING_FEEDS
    assert exchange.created == []

    exchange.publish_all()
    exchange.publish_all()
    messages = engine.trade_log.messages()
    assert messages.count("Account snapshot synchronised") == 1
    assert messages.count("Open orders snapshot received") == 1
    assert messages.count("Order book depth received") == 1
    assert messages.count("Ticker ready") == 1
    assert engine.is_ready()


@pytest.mark.asyncio
async def test_startup_reset_cancels_existing_orders(exchange: MockExchange, clock) -> None:
    stale = await exchange.create_order(
        CreateOrderParams(
            symbol="BTCUSDT",
            side=OrderSide.BUY,
            order_type=OrderType.LIMIT,
            quantity=Decimal("1"),
            price=Decimal("95"),
            time_in_force=TimeInForce.GTX,
        )
    )
    engine = _engine(exchange, clock)
    exchange.publish_all()

    await engine.tick()

    assert exchange.cancel_all_calls == 1
    assert stale.order_id in exchange.cancelled
    assert "Cancelled existing orders on startup" in engine.trade_log.messages(LogCategory.ORDER)
    assert [(p.side, p.price) for p in exchange.created[1:]] == [
        (OrderSide.BUY, Decimal("99.9")),
        (OrderSide.SELL, Decimal("100.1")),
    ]
    assert engine.phase is LoopPhase.RUNNING


@pytest.mark.asyncio
async def test_no_startup_cancel_without_orders(exchange: MockExchange, clock) -> None:
    engine = _engine(exchange, clock)
    exchange.publish_all()

    await engine.tick()

    assert exchange.cancel_all_calls == 0
    assert len(exchange.created) == 2


@pytest.mark.asyncio
async def test_steady_state_does_not_churn(exchange: MockExchange, clock) -> None:
    engine = _engine(exchange, clock)
    exchange.publish_all()

    await engine.tick()
    await _deliver()
    assert engine.coordinator.locks.locked_keys() == []

    await engine.tick()

    assert len(exchange.created) == 2
    assert exchange.cancelled == []
    assert engine.trade_log.messages().count("Target orders: 1 buy / 1 sell") == 1


@pytest.mark.asyncio
async def test_requote_cancels_before_placing(clock) -> None:
    exchange = _with_market(RecordingExchange("BTCUSDT"))
    engine = _engine(exchange, clock)
    exchange.publish_all()
    await engine.tick()
    await _deliver()
    exchange.calls.clear()

    exchange.set_market(Decimal("100.0"), Decimal("100.2"))
    await engine.tick()

    assert exchange.calls == [
        "cancel 1",
        "cancel 2",
        "create BUY 100.0",
        "create SELL 100.2",
    ]


@pytest.mark.asyncio
async def test_bulk_venue_uses_dual_placement(clock) -> None:
    exchange = _with_market(BulkMockExchange("BTCUSDT"))
    engine = _engine(exchange, clock)
    exchange.publish_all()

    await engine.tick()

    assert exchange.bulk_calls == 1
    assert len(exchange.created) == 2
    assert "Placed dual orders (bulk): BUY@99.9 SELL@100.1" in engine.trade_log.messages()


@pytest.mark.asyncio
async def test_fill_switches_to_close_and_protects(exchange: MockExchange, clock) -> None:
    engine = _engine(exchange, clock)
    exchange.publish_all()
    await engine.tick()
    await _deliver()

    exchange.simulate_fill("1")
    await engine.tick()

    snapshot = engine.snapshot()
    assert snapshot.position.amount == Decimal("1")
    assert snapshot.protection is ProtectionState.POSITION_PROTECTED
    assert "2" in exchange.cancelled
    stops = [p for p in exchange.created if p.order_type is OrderType.STOP_MARKET]
    assert [(p.side, p.stop_price) for p in stops] == [(OrderSide.SELL, Decimal("98.9"))]
    closes = [p for p in exchange.created if p.order_type is OrderType.LIMIT and p.reduce_only]
    assert [(p.side, p.price) for p in closes] == [(OrderSide.SELL, Decimal("100.1"))]
    assert snapshot.session_volume == Decimal("100.0")


@pytest.mark.asyncio
async def test_rate_limit_sweeps_entries_but_keeps_stop(exchange: MockExchange, clock) -> None:
    engine = _engine(exchange, clock)
    exchange.publish_all()
    await engine.tick()
    await _deliver()
    exchange.simulate_fill("1")
    await engine.tick()
    await _deliver()

    await exchange.create_order(
        CreateOrderParams(
            symbol="BTCUSDT",
            side=OrderSide.BUY,
            order_type=OrderType.LIMIT,
            quantity=Decimal("1"),
            price=Decimal("99.0"),
            time_in_force=TimeInForce.GTX,
        )
    )
    await _deliver()
    exchange.fail_next_cancel(RateLimitError("Too many requests", code=429))

    await engine.tick()

    remaining = exchange.open_orders()
    assert [order.order_type for order in remaining] == [OrderType.STOP_MARKET]
    assert engine.rate_limit.is_paused()
    assert engine.snapshot().rate_limited
    assert "Rate limited during reconcile; pausing 2.0s (failures=1)" in (
        engine.trade_log.messages(LogCategory.WARN)
    )

    created_before = len(exchange.created)
    await engine.tick()
    assert len(exchange.created) == created_before

    clock.advance(2.5)
    await engine.tick()
    placed = exchange.created[created_before:]
    assert [(p.side, p.reduce_only) for p in placed] == [(OrderSide.SELL, True)]


async def _long_with_throttled_venue(exchange: MockExchange, engine: ReconciliationLoop) -> None:
    """Quote both sides, go long, then throttle the next cancel and stop placement."""
    exchange.publish_all()
    await engine.tick()
    await _deliver()
    exchange.set_position(Decimal("1"), Decimal("100"))
    exchange.fail_next_cancel(RateLimitError("Too many requests", code=429))
    exchange.fail_next(RateLimitError("Too many requests", code=429))


@pytest.mark.asyncio
async def test_rate_limit_sweep_runs_when_stop_placement_is_throttled(
    exchange: MockExchange, clock
) -> None:
    engine = _engine(exchange, clock)
    await _long_with_throttled_venue(exchange, engine)

    await engine.tick()

    assert [o for o in exchange.open_orders() if not o.is_protective] == []
    assert exchange.cancelled == ["1", "2"]
    assert engine.rate_limit.is_paused()
    assert (
        "Stop-loss check failed during rate-limit sweep: Too many requests (code=429)"
        in engine.trade_log.messages(LogCategory.ERROR)
    )


@pytest.mark.asyncio
async def test_throttled_cycle_still_places_stop(exchange: MockExchange, clock) -> None:
    config = _config(refresh_interval_ms=5000, rate_limit_backoff_ms=1000)
    engine = ReconciliationLoop(config, exchange, OffsetQuoteStrategy(), clock=clock)
    await _long_with_throttled_venue(exchange, engine)
    await engine.tick()
    created_before = len(exchange.created)
    assert not any(p.order_type is OrderType.STOP_MARKET for p in exchange.created)

    clock.advance(1.5)
    await engine.tick()

    placed = exchange.created[created_before:]
    assert [(p.order_type, p.side, p.stop_price) for p in placed] == [
        (OrderType.STOP_MARKET, OrderSide.SELL, Decimal("99.0"))
    ]
    assert engine.snapshot().protection is ProtectionState.POSITION_PROTECTED


@pytest.mark.asyncio
async def test_tick_is_not_reentrant(exchange: MockExchange, clock) -> None:
    engine = _engine(exchange, clock)
    exchange.publish_all()
    engine.state.processing = True

    await engine.tick()

    assert exchange.created == []
    assert engine.state.processing


@pytest.mark.asyncio
async def test_insufficient_balance_pauses_entries(exchange: MockExchange, clock) -> None:
    engine = _engine(exchange, clock)
    exchange.publish_all()
    exchange.fail_next(InsufficientBalanceError("Margin is insufficient.", code=-2019))

    await engine.tick()
    await _deliver()

    assert [p.side for p in exchange.created] == [OrderSide.SELL]
    assert engine.trade_log.messages(LogCategory.WARN) == [
        "Insufficient balance, pausing new entries for 15s: Margin is insufficient. (code=-2019)"
    ]

    clock.advance(1)
    await engine.tick()

    assert exchange.cancelled == ["1"]
    assert "No orders desired, waiting" in engine.trade_log.messages()

    clock.advance(15)
    await engine.tick()

    assert "Balance recovered, resuming entries" in engine.trade_log.messages()
    assert [p.side for p in exchange.created] == [OrderSide.SELL, OrderSide.BUY, OrderSide.SELL]


@pytest.mark.asyncio
async def test_snapshot_listeners_and_event_bus(exchange: MockExchange, clock) -> None:
    bus = EventBus()
    snapshots = bus.subscribe(EventTopic.SNAPSHOT)
    log_entries = bus.subscribe(EventTopic.LOG)
    engine = _engine(exchange, clock, event_bus=bus)
    received: list[EngineSnapshot] = []

    def broken(_: EngineSnapshot) -> None:
        raise RuntimeError("boom")

    engine.on(received.append)
    engine.on(broken)
    exchange.publish_all()
    await engine.tick()

    latest = received[-1]
    assert latest.ready
    assert latest.phase is LoopPhase.RUNNING
    assert latest.top_bid == Decimal("99.9")
    assert latest.spread == Decimal("0.2")
    assert len(latest.desired_orders) == 2
    assert "Snapshot listener failed: boom" in engine.trade_log.messages(LogCategory.ERROR)
    assert isinstance(snapshots.get_nowait(), EngineSnapshot)
    assert isinstance(log_entries.get_nowait(), LogEntry)

    engine.off(received.append)
    engine.off(broken)
    count = len(received)
    await engine.tick()
    assert len(received) == count
    snapshots.close()
    log_entries.close()


@pytest.mark.asyncio
async def test_foreign_and_market_orders_are_ignored(
    exchange: MockExchange, clock, make_order
) -> None:
    engine = _engine(exchange, clock)
    exchange.publish_all()

    exchange.publish_orders(
        [
            make_order("m", order_type=OrderType.MARKET),
            make_order("x", symbol="ETHUSDT"),
            make_order("k", OrderSide.BUY, "99.9"),
        ]
    )

    assert [order.order_id for order in engine.open_orders] == ["k"]


@pytest.mark.asyncio
async def test_missing_top_of_book_places_nothing(clock) -> None:
    exchange = MockExchange("BTCUSDT")
    engine = _engine(exchange, clock)
    exchange.publish_all()

    await engine.tick()

    snapshot = engine.snapshot()
    assert snapshot.ready
    assert snapshot.top_bid is None
    assert exchange.created == []


@pytest.mark.asyncio
async def test_cycle_errors_are_logged(exchange: MockExchange, clock) -> None:
    engine = ReconciliationLoop(_config(), exchange, ExplodingStrategy(), clock=clock)
    exchange.publish_all()

    await engine.tick()

    assert "Reconciliation error: strategy exploded" in engine.trade_log.messages(
        LogCategory.ERROR
    )
    assert not engine.state.processing


@pytest.mark.asyncio
async def test_start_and_stop(exchange: MockExchange) -> None:
    engine = ReconciliationLoop(_config(), exchange, OffsetQuoteStrategy())
    exchange.publish_all()

    engine.start()
    await asyncio.sleep(0.1)
    await engine.stop()

    assert len(exchange.created) >= 2
    assert engine.coordinator.locks.locked_keys() == []
    assert "Reconciliation loop started for BTCUSDT" in engine.trade_log.messages()
