"""Per-engine reconciliation loop driving the coordinator and stop guard."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TypeVar

from loguru import logger

from perp_maker.core.config import EngineConfig
from perp_maker.core.errors import ErrorKind, classify_error, describe_error
from perp_maker.core.events import EventBus, EventTopic
from perp_maker.core.trade_log import LogCategory, LogEntry, TradeLog
from perp_maker.engine.session_volume import SessionVolumeTracker
from perp_maker.execution.adapter import ExchangeAdapter, supports_bulk_orders
from perp_maker.execution.coordinator import OrderCoordinator
from perp_maker.execution.order_plan import plan_orders
from perp_maker.execution.rate_limit import RateLimitController, RateLimitDecision
from perp_maker.execution.stop_guard import ProtectionState, StopLossGuard
from perp_maker.models import (
    AccountSnapshot,
    DepthSnapshot,
    OpenOrder,
    OrderIntent,
    OrderSide,
    OrderType,
    PositionSnapshot,
    PriceGuard,
    TickerSnapshot,
)
from perp_maker.pricing import (
    compute_position_pnl,
    get_mid_or_last,
    get_top_prices,
    has_position,
    to_decimal,
)
from perp_maker.strategies.base import QuoteContext, QuoteStrategy

T = TypeVar("T")

FEEDS = ("account", "orders", "depth", "ticker")


class LoopPhase(str, Enum):
    """Lifecycle of a reconciliation loop."""

    AWAITING_FEEDS = "awaiting_feeds"
    STARTUP_RESET = "startup_reset"
    RUNNING = "running"


@dataclass(frozen=True, slots=True)
class FeedStatus:
    """Which feeds have delivered at least one snapshot."""

    account: bool = False
    orders: bool = False
    depth: bool = False
    ticker: bool = False

    @property
    def ready(self) -> bool:
        return self.account and self.orders and self.depth and self.ticker

    def missing(self) -> list[str]:
        return [name for name in FEEDS if not getattr(self, name)]


@dataclass(frozen=True, slots=True)
class EngineSnapshot:
    """Immutable view of the engine published after each cycle and feed update."""

    ready: bool
    phase: LoopPhase
    symbol: str
    top_bid: Decimal | None
    top_ask: Decimal | None
    spread: Decimal | None
    position: PositionSnapshot
    pnl: Decimal
    session_volume: Decimal
    open_orders: tuple[OpenOrder, ...]
    desired_orders: tuple[OrderIntent, ...]
    trade_log: tuple[LogEntry, ...]
    feed_status: FeedStatus
    protection: ProtectionState
    rate_limited: bool
    last_updated: datetime


@dataclass(slots=True)
class LoopState:
    """Mutable bookkeeping owned by the loop."""

    feeds: FeedStatus = field(default_factory=FeedStatus)
    feed_arrival_logged: set[str] = field(default_factory=set)
    readiness_logged: set[str] = field(default_factory=set)
    initial_order_snapshot_ready: bool = False
    startup_reset_done: bool = False
    processing: bool = False
    insufficient_until_ms: float = 0.0
    insufficient_notified: bool = False
    last_insufficient_message: str | None = None
    last_desired_summary: str | None = None
    pending_cancel: set[str] = field(default_factory=set)


SnapshotListener = Callable[[EngineSnapshot], None]


class ReconciliationLoop:
    """Keep the venue's resting orders in line with the strategy's desired set.

    Feeds update the held state through callbacks; a periodic tick gates on
    feed readiness and the rate limiter, diffs desired against open orders,
    executes cancels before places, repairs the protective stop and publishes
    an ``EngineSnapshot``. No failure escapes a tick.
    """

    def __init__(
        self,
        config: EngineConfig,
        adapter: ExchangeAdapter,
        strategy: QuoteStrategy,
        *,
        trade_log: TradeLog | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._adapter = adapter
        self._strategy = strategy
        self._event_bus = event_bus
        self._clock = clock
        if trade_log is None:
            trade_log = TradeLog(
                symbol=config.symbol, max_entries=config.max_log_entries, event_bus=event_bus
            )
        self._log = trade_log
        self._coordinator = OrderCoordinator(
            adapter,
            config.symbol,
            self._log,
            price_tick=config.price_tick,
            qty_step=config.qty_step,
            lock_timeout_ms=config.lock_timeout_ms,
        )
        self._rate_limit = RateLimitController(
            config.refresh_interval_ms,
            self._log,
            backoff_ms=config.rate_limit_backoff_ms,
            max_backoff_ms=config.rate_limit_max_backoff_ms,
            clock=clock,
        )
        self._stop_guard = StopLossGuard(
            self._coordinator,
            self._log,
            loss_limit=config.loss_limit,
            price_tick=config.price_tick,
            on_cancelled=self._forget_order,
        )
        self._session_volume = SessionVolumeTracker()
        self._state = LoopState()
        self._listeners: list[SnapshotListener] = []

        self._account: AccountSnapshot | None = None
        self._depth: DepthSnapshot | None = None
        self._ticker: TickerSnapshot | None = None
        self._open_orders: list[OpenOrder] = []
        self._desired: tuple[OrderIntent, ...] = ()

        self._runner: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

        self._bootstrap()

    @property
    def coordinator(self) -> OrderCoordinator:
        return self._coordinator

    @property
    def rate_limit(self) -> RateLimitController:
        return self._rate_limit

    @property
    def stop_guard(self) -> StopLossGuard:
        return self._stop_guard

    @property
    def trade_log(self) -> TradeLog:
        return self._log

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def open_orders(self) -> tuple[OpenOrder, ...]:
        return tuple(self._open_orders)

    @property
    def desired_orders(self) -> tuple[OrderIntent, ...]:
        return self._desired

    @property
    def phase(self) -> LoopPhase:
        if not self._state.feeds.ready:
            return LoopPhase.AWAITING_FEEDS
        if not self._state.startup_reset_done:
            return LoopPhase.STARTUP_RESET
        return LoopPhase.RUNNING

    def is_ready(self) -> bool:
        return self._state.feeds.ready

    def start(self) -> None:
        """Start the periodic tick on the running event loop."""
        if self._runner is not None and not self._runner.done():
            return
        self._runner = asyncio.create_task(self._run())
        self._log(LogCategory.INFO, f"Reconciliation loop started for {self._config.symbol}")

    async def stop(self) -> None:
        """Stop ticking, wait for the in-flight tick and release all locks."""
        runner, self._runner = self._runner, None
        if runner is not None:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._coordinator.close_all()
        logger.info("Reconciliation loop stopped for {}", self._config.symbol)

    async def _run(self) -> None:
        interval = self._config.refresh_interval_ms / 1000
        while True:
            task = asyncio.create_task(self.tick())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            await asyncio.sleep(interval)

    def on(self, listener: SnapshotListener) -> None:
        self._listeners.append(listener)

    def off(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _bootstrap(self) -> None:
        self._safe_subscribe(
            "account", lambda cb: self._adapter.watch_account(cb), self._on_account
        )
        self._safe_subscribe("orders", lambda cb: self._adapter.watch_orders(cb), self._on_orders)
        self._safe_subscribe(
            "depth",
            lambda cb: self._adapter.watch_depth(self._config.symbol, cb),
            self._on_depth,
        )
        self._safe_subscribe(
            "ticker",
            lambda cb: self._adapter.watch_ticker(self._config.symbol, cb),
            self._on_ticker,
        )

    def _safe_subscribe(
        self,
        name: str,
        subscribe: Callable[[Callable[[T], None]], None],
        handler: Callable[[T], None],
    ) -> None:
        def wrapped(payload: T) -> None:
            try:
                handler(payload)
            except Exception as exc:
                self._log(LogCategory.ERROR, f"Error processing {name} feed: {describe_error(exc)}")

        try:
            subscribe(wrapped)
        except Exception as exc:
            self._log(LogCategory.ERROR, f"Failed to subscribe to {name} feed: {describe_error(exc)}")

    def _mark_feed(self, name: str, arrival_message: str) -> None:
        if name not in self._state.feed_arrival_logged:
            self._log(LogCategory.INFO, arrival_message)
            self._state.feed_arrival_logged.add(name)
        if not getattr(self._state.feeds, name):
            self._state.feeds = replace(self._state.feeds, **{name: True})

    def _on_account(self, snapshot: AccountSnapshot) -> None:
        self._account = snapshot
        self._session_volume.update(self._position(), self._reference_price())
        self._mark_feed("account", "Account snapshot synchronised")
        self._emit()

    def _on_orders(self, orders: Sequence[OpenOrder]) -> None:
        self._coordinator.sync_with_orders(orders)
        self._open_orders = [
            order
            for order in orders
            if order.order_type is not OrderType.MARKET and order.symbol == self._config.symbol
        ]
        current_ids = {order.order_id for order in self._open_orders}
        self._state.pending_cancel &= current_ids
        self._state.initial_order_snapshot_ready = True
        self._mark_feed("orders", "Open orders snapshot received")
        self._emit()

    def _on_depth(self, depth: DepthSnapshot) -> None:
        self._depth = depth
        self._mark_feed("depth", "Order book depth received")
        self._emit()

    def _on_ticker(self, ticker: TickerSnapshot) -> None:
        self._ticker = ticker
        self._mark_feed("ticker", "Ticker ready")
        self._emit()

    async def tick(self) -> None:
        """Run one reconciliation cycle; a no-op while another cycle is in flight."""
        if self._state.processing:
            return
        self._state.processing = True
        had_rate_limit = False
        try:
            decision = self._rate_limit.before_cycle()
            if decision is RateLimitDecision.SKIP:
                if self.is_ready() and self._state.startup_reset_done:
                    await self._protect()
                return
            if not self.is_ready():
                self._log_readiness_blockers()
                self._emit()
                return
            self._state.readiness_logged.clear()
            if decision is RateLimitDecision.PAUSED:
                await self._protect()
                self._emit()
                return
            if not await self._ensure_startup_reset():
                self._emit()
                return
            await self._run_cycle()
        except Exception as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.RATE_LIMITED:
                had_rate_limit = True
                self._rate_limit.register_rate_limit(
                    "reconcile", retry_after=getattr(exc, "retry_after", None)
                )
                await self._enforce_rate_limit_stop()
            elif kind is ErrorKind.INSUFFICIENT_BALANCE:
                self._register_insufficient_balance(exc)
            elif kind is ErrorKind.UNKNOWN_ORDER:
                self._log(LogCategory.ORDER, f"Order already resolved: {describe_error(exc)}")
            else:
                self._log(LogCategory.ERROR, f"Reconciliation error: {describe_error(exc)}")
            self._emit()
        finally:
            self._rate_limit.on_cycle_complete(had_rate_limit)
            self._state.processing = False

    async def _run_cycle(self) -> None:
        bid, ask = get_top_prices(self._depth)
        position = self._position()
        if bid is None or ask is None:
            await self._protect()
            self._emit()
            return

        insufficient = self._apply_insufficient_balance_state(self._now_ms())
        can_enter = not self._rate_limit.should_block_entries() and not insufficient
        context = QuoteContext(
            symbol=self._config.symbol,
            bid=bid,
            ask=ask,
            position=position,
            can_enter=can_enter,
            price_tick=self._config.price_tick,
            trade_amount=self._config.trade_amount,
        )
        desired = list(self._strategy.desired_orders(context))
        if not can_enter:
            desired = [intent for intent in desired if intent.reduce_only]
        self._desired = tuple(desired)
        self._log_desired_orders(desired)

        await self._sync_orders(desired)
        await self._protect()
        self._emit()

    async def _sync_orders(self, desired: Sequence[OrderIntent]) -> None:
        candidates = [
            order
            for order in self._open_orders
            if order.order_id not in self._state.pending_cancel
            and order.status.is_active
            and not order.is_protective
        ]
        plan = plan_orders(candidates, desired, self._config.effective_price_tolerance)

        for order in plan.to_cancel:
            await self._cancel_tracked(order, raise_rate_limit=True)

        if not plan.to_place:
            return
        guard = self._price_guard()
        if self._place_as_dual(plan.to_place):
            buy = next(i for i in plan.to_place if i.side is OrderSide.BUY)
            sell = next(i for i in plan.to_place if i.side is OrderSide.SELL)
            await self._guarded_place(
                f"dual BUY {buy.price} / SELL {sell.price}",
                self._coordinator.place_atomic_dual_with_protection(
                    buy,
                    sell,
                    guard=guard,
                    open_orders=self._open_orders,
                    attach_stops=self._config.attach_dual_stops,
                    loss_limit=self._config.loss_limit,
                ),
            )
            return

        per_side = Counter(intent.side for intent in desired)
        for intent in plan.to_place:
            await self._guarded_place(
                f"{intent.side.value} {intent.price}",
                self._coordinator.place_limit(
                    intent.side,
                    intent.price,
                    intent.quantity,
                    reduce_only=intent.reduce_only,
                    guard=guard,
                    open_orders=self._open_orders,
                    skip_dedupe=per_side[intent.side] > 1,
                ),
            )

    def _place_as_dual(self, to_place: Sequence[OrderIntent]) -> bool:
        if len(to_place) != 2 or any(intent.reduce_only for intent in to_place):
            return False
        if {intent.side for intent in to_place} != {OrderSide.BUY, OrderSide.SELL}:
            return False
        return supports_bulk_orders(self._adapter) or self._config.attach_dual_stops

    async def _guarded_place(self, label: str, placement: Awaitable[object]) -> None:
        try:
            await placement
        except Exception as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.RATE_LIMITED:
                raise
            if kind is ErrorKind.INSUFFICIENT_BALANCE:
                self._register_insufficient_balance(exc)
            else:
                self._log(LogCategory.ERROR, f"Order failed ({label}): {describe_error(exc)}")

    async def _cancel_tracked(self, order: OpenOrder, *, raise_rate_limit: bool) -> None:
        """Cancel order once; the id stays in ``pending_cancel`` while in flight."""
        if order.order_id in self._state.pending_cancel:
            return
        self._state.pending_cancel.add(order.order_id)
        try:
            await self._coordinator.cancel(order)
        except Exception as exc:
            self._state.pending_cancel.discard(order.order_id)
            if classify_error(exc) is ErrorKind.RATE_LIMITED and raise_rate_limit:
                raise
            self._log(LogCategory.ERROR, f"Cancel failed for {order.order_id}: {describe_error(exc)}")
            return
        self._forget_order(order)

    def _forget_order(self, order: OpenOrder) -> None:
        self._state.pending_cancel.discard(order.order_id)
        self._open_orders = [o for o in self._open_orders if o.order_id != order.order_id]

    async def _protect(self) -> ProtectionState:
        bid, ask = get_top_prices(self._depth)
        open_orders = [
            order for order in self._open_orders if order.order_id not in self._state.pending_cancel
        ]
        return await self._stop_guard.reconcile(
            self._position(),
            open_orders,
            bid=bid,
            ask=ask,
            last_price=self._reference_price(),
            guard=self._price_guard(),
        )

    async def _enforce_rate_limit_stop(self) -> None:
        """Keep the position protected and shed every non-protective order."""
        if has_position(self._position()):
            try:
                await self._protect()
            except Exception as exc:
                self._log(
                    LogCategory.ERROR,
                    f"Stop-loss check failed during rate-limit sweep: {describe_error(exc)}",
                )
        for order in list(self._open_orders):
            if order.is_protective:
                continue
            await self._cancel_tracked(order, raise_rate_limit=False)

    async def _ensure_startup_reset(self) -> bool:
        if self._state.startup_reset_done:
            return True
        if not self._state.initial_order_snapshot_ready:
            return False
        if not self._open_orders:
            self._state.startup_reset_done = True
            return True
        try:
            await self._adapter.cancel_all_orders(self._config.symbol)
        except Exception as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.RATE_LIMITED:
                raise
            if kind is not ErrorKind.UNKNOWN_ORDER:
                self._log(LogCategory.ERROR, f"Startup order reset failed: {describe_error(exc)}")
                return False
            self._log(LogCategory.ORDER, "No existing orders to cancel on startup")
        else:
            self._log(LogCategory.ORDER, "Cancelled existing orders on startup")
        self._state.pending_cancel.clear()
        self._coordinator.close_all()
        self._open_orders = []
        self._state.startup_reset_done = True
        return True

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _register_insufficient_balance(self, exc: BaseException) -> None:
        now = self._now_ms()
        detail = describe_error(exc)
        already_active = now < self._state.insufficient_until_ms
        self._state.insufficient_until_ms = now + self._config.insufficient_balance_cooldown_ms
        if already_active and detail == self._state.last_insufficient_message:
            return
        self._state.last_insufficient_message = detail
        self._state.insufficient_notified = True
        seconds = self._config.insufficient_balance_cooldown_ms / 1000
        self._log(
            LogCategory.WARN,
            f"Insufficient balance, pausing new entries for {seconds:.0f}s: {detail}",
        )

    def _apply_insufficient_balance_state(self, now_ms: float) -> bool:
        active = now_ms < self._state.insufficient_until_ms
        if not active and self._state.insufficient_notified:
            self._log(LogCategory.INFO, "Balance recovered, resuming entries")
            self._state.insufficient_notified = False
            self._state.last_insufficient_message = None
        return active

    def _position(self) -> PositionSnapshot:
        if self._account is None:
            return PositionSnapshot(symbol=self._config.symbol)
        return self._account.position_for(self._config.symbol)

    def _reference_price(self) -> Decimal | None:
        return get_mid_or_last(self._depth, self._ticker)

    def _mark_price(self) -> Decimal | None:
        mark = self._position().mark_price
        if mark is not None and mark > 0:
            return mark
        if self._ticker is not None:
            return to_decimal(self._ticker.mark_price)
        return None

    def _price_guard(self) -> PriceGuard:
        return PriceGuard(
            mark_price=self._mark_price(),
            max_pct=self._config.max_close_slippage_pct,
        )

    def _log_readiness_blockers(self) -> None:
        for name in self._state.feeds.missing():
            if name in self._state.readiness_logged:
                continue
            self._log(LogCategory.INFO, f"Waiting for {name} feed")
            self._state.readiness_logged.add(name)

    def _log_desired_orders(self, desired: Sequence[OrderIntent]) -> None:
        if not desired:
            summary = "none"
            message = "No orders desired, waiting"
        else:
            buys = sum(1 for intent in desired if intent.side is OrderSide.BUY)
            sells = len(desired) - buys
            summary = f"{buys} buy / {sells} sell"
            message = f"Target orders: {summary}"
        if summary != self._state.last_desired_summary:
            self._log(LogCategory.INFO, message)
            self._state.last_desired_summary = summary

    def snapshot(self) -> EngineSnapshot:
        bid, ask = get_top_prices(self._depth)
        position = self._position()
        return EngineSnapshot(
            ready=self.is_ready(),
            phase=self.phase,
            symbol=self._config.symbol,
            top_bid=bid,
            top_ask=ask,
            spread=ask - bid if bid is not None and ask is not None else None,
            position=position,
            pnl=compute_position_pnl(position, bid, ask),
            session_volume=self._session_volume.value,
            open_orders=tuple(self._open_orders),
            desired_orders=self._desired,
            trade_log=self._log.entries(),
            feed_status=self._state.feeds,
            protection=self._stop_guard.state,
            rate_limited=self._rate_limit.is_paused(),
            last_updated=datetime.now(tz=UTC),
        )

    def _emit(self) -> None:
        if not self._listeners and self._event_bus is None:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                self._log(LogCategory.ERROR, f"Snapshot listener failed: {describe_error(exc)}")
        if self._event_bus is not None:
            self._event_bus.publish_nowait(EventTopic.SNAPSHOT, snapshot)
