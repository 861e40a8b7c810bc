"""Serialized order placement and cancellation per order class."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from decimal import Decimal

from perp_maker.core.constants import DEFAULT_LOCK_TIMEOUT_MS
from perp_maker.core.errors import describe_error, is_rate_limit_error, is_unknown_order_error
from perp_maker.core.trade_log import LogCategory, LogHandler
from perp_maker.execution.adapter import ExchangeAdapter, supports_trailing_stops
from perp_maker.execution.dual_placer import (
    BulkPlacer,
    SequentialPlacer,
    build_dual_params,
    select_dual_placer,
)
from perp_maker.execution.locks import OrderLockRegistry, order_class_key
from perp_maker.models import (
    CreateOrderParams,
    OpenOrder,
    OrderIntent,
    OrderSide,
    OrderType,
    PriceGuard,
    TimeInForce,
    trigger_kind_for,
)
from perp_maker.pricing import (
    is_order_price_allowed_by_mark,
    is_trigger_price_allowed_by_mark,
    round_down_to_tick,
    round_qty_down_to_step,
    to_decimal,
)


def stop_would_trigger_immediately(
    side: OrderSide, trigger_price: Decimal, last_price: Decimal | None
) -> bool:
    """A SELL stop must sit below last price and a BUY stop above it."""
    if last_price is None:
        return False
    if side is OrderSide.SELL:
        return trigger_price >= last_price
    return trigger_price <= last_price


class OrderCoordinator:
    """Execute placements and cancellations one operation per order class at a time.

    Outcomes of every placement method:

    * locked class: no-op, returns None
    * price guard rejection: logged, returns None
    * unknown-order error: treated as already resolved, returns None
    * any other venue error: lock released, exception propagated

    A successful submission keeps the class locked with the returned order id
    recorded as pending until the order feed reports it (``sync_with_orders``)
    or the lock expires.
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        symbol: str,
        log: LogHandler,
        *,
        price_tick: Decimal = Decimal("0.1"),
        qty_step: Decimal = Decimal("0.001"),
        lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        locks: OrderLockRegistry | None = None,
    ) -> None:
        self._adapter = adapter
        self._symbol = symbol
        self._log = log
        self._price_tick = price_tick
        self._qty_step = qty_step
        self._lock_timeout_ms = lock_timeout_ms
        if locks is None:
            locks = OrderLockRegistry(log, default_timeout_ms=lock_timeout_ms)
        self._locks = locks

    @property
    def locks(self) -> OrderLockRegistry:
        return self._locks

    @property
    def symbol(self) -> str:
        return self._symbol

    def lock(self, key: str, timeout_ms: int | None = None) -> None:
        self._locks.lock(key, self._lock_timeout_ms if timeout_ms is None else timeout_ms)

    def unlock(self, key: str) -> None:
        self._locks.unlock(key)

    def is_locked(self, key: str) -> bool:
        return self._locks.is_locked(key)

    def sync_with_orders(self, orders: Iterable[OpenOrder]) -> list[str]:
        return self._locks.sync_with_orders(orders)

    def close_all(self) -> None:
        self._locks.close()

    async def deduplicate(
        self,
        open_orders: Sequence[OpenOrder],
        order_type: OrderType,
        side: OrderSide,
        *,
        key: str | None = None,
    ) -> list[str]:
        """Cancel all but the most recently updated order of (order_type, side).

        Stop-like orders (any order carrying a positive stop price) count as
        STOP_MARKET. When update times tie the survivor is whichever sorts first
        in the input; the sort is stable.

        Returns:
            Ids submitted for cancellation.
        """
        candidates = [
            order
            for order in open_orders
            if order.side == side
            and order.status.is_active
            and (
                order.order_type == order_type
                or (
                    order_type is OrderType.STOP_MARKET
                    and (order.stop_price_value or Decimal("0")) > 0
                )
            )
        ]
        if len(candidates) <= 1:
            return []
        candidates.sort(key=lambda order: order.sort_time, reverse=True)
        order_ids = [order.order_id for order in candidates[1:]]
        lock_key = key or order_class_key(order_type, side, order_type is not OrderType.LIMIT)

        self.lock(lock_key)
        try:
            await self._adapter.cancel_orders(self._symbol, order_ids)
            self._log(
                LogCategory.ORDER,
                f"Cancelled duplicate {order_type.value} {side.value} orders: {','.join(order_ids)}",
            )
        except Exception as exc:
            if is_unknown_order_error(exc):
                self._log(LogCategory.ORDER, "Duplicate orders already gone, nothing to cancel")
            elif is_rate_limit_error(exc):
                raise
            else:
                self._log(LogCategory.ERROR, f"Duplicate cancel failed: {describe_error(exc)}")
        finally:
            self.unlock(lock_key)
        return order_ids

    async def place_limit(
        self,
        side: OrderSide,
        price: str | Decimal,
        quantity: Decimal,
        *,
        reduce_only: bool = False,
        guard: PriceGuard | None = None,
        open_orders: Sequence[OpenOrder] = (),
        skip_dedupe: bool = False,
    ) -> OpenOrder | None:
        """Place a post-only limit order for the (LIMIT, side, open/close) class."""
        key = order_class_key(OrderType.LIMIT, side, reduce_only)
        if self._locks.is_locked(key):
            return None
        price_value = to_decimal(price)
        if price_value is None or price_value <= 0:
            self._log(LogCategory.ERROR, f"Invalid limit price {price!r}, order skipped")
            return None
        if not self._guard_allows(side, price_value, guard, "Limit order"):
            return None

        params = CreateOrderParams(
            symbol=self._symbol,
            side=side,
            order_type=OrderType.LIMIT,
            quantity=round_qty_down_to_step(quantity, self._qty_step),
            price=price_value,
            time_in_force=TimeInForce.GTX,
            reduce_only=reduce_only,
        )
        if not skip_dedupe:
            await self.deduplicate(open_orders, OrderType.LIMIT, side, key=key)
        return await self._submit(
            key,
            params,
            LogCategory.ORDER,
            f"Placed limit {side.value} @ {params.price} qty {params.quantity} "
            f"reduceOnly={reduce_only}",
        )

    async def place_stop_protection(
        self,
        side: OrderSide,
        trigger_price: Decimal,
        quantity: Decimal,
        last_price: Decimal | None,
        *,
        guard: PriceGuard | None = None,
        open_orders: Sequence[OpenOrder] = (),
    ) -> OpenOrder | None:
        """Place a reduce-only, close-position STOP_MARKET order.

        Refused when the trigger is already through ``last_price``.
        """
        key = order_class_key(OrderType.STOP_MARKET, side, True)
        if self._locks.is_locked(key):
            return None
        if not self._trigger_guard_allows(side, trigger_price, guard):
            return None
        if stop_would_trigger_immediately(side, trigger_price, last_price):
            relation = "at or above" if side is OrderSide.SELL else "at or below"
            self._log(
                LogCategory.ERROR,
                f"Stop price {trigger_price} is {relation} last price {last_price}, not placing",
            )
            return None

        params = CreateOrderParams(
            symbol=self._symbol,
            side=side,
            order_type=OrderType.STOP_MARKET,
            quantity=round_qty_down_to_step(quantity, self._qty_step),
            stop_price=round_down_to_tick(trigger_price, self._price_tick),
            reduce_only=True,
            close_position=True,
            time_in_force=TimeInForce.GTC,
            trigger_kind=trigger_kind_for(side),
        )
        await self.deduplicate(open_orders, OrderType.STOP_MARKET, side, key=key)
        return await self._submit(
            key,
            params,
            LogCategory.STOP,
            f"Placed stop {side.value} STOP_MARKET @ {params.stop_price} ({params.trigger_kind.value})",
        )

    async def place_trailing_protection(
        self,
        side: OrderSide,
        activation_price: Decimal,
        quantity: Decimal,
        callback_rate: Decimal,
        *,
        guard: PriceGuard | None = None,
        open_orders: Sequence[OpenOrder] = (),
    ) -> OpenOrder | None:
        """Place a reduce-only TRAILING_STOP_MARKET order."""
        key = order_class_key(OrderType.TRAILING_STOP_MARKET, side, True)
        if self._locks.is_locked(key):
            return None
        if not supports_trailing_stops(self._adapter):
            self._log(LogCategory.WARN, "Venue does not support trailing stops, order skipped")
            return None
        if not self._guard_allows(side, activation_price, guard, "Trailing stop"):
            return None

        params = CreateOrderParams(
            symbol=self._symbol,
            side=side,
            order_type=OrderType.TRAILING_STOP_MARKET,
            quantity=round_qty_down_to_step(quantity, self._qty_step),
            activation_price=round_down_to_tick(activation_price, self._price_tick),
            callback_rate=callback_rate,
            reduce_only=True,
            time_in_force=TimeInForce.GTC,
            trigger_kind=trigger_kind_for(side),
        )
        await self.deduplicate(open_orders, OrderType.TRAILING_STOP_MARKET, side, key=key)
        return await self._submit(
            key,
            params,
            LogCategory.ORDER,
            f"Placed trailing stop {side.value} activation={params.activation_price} "
            f"callbackRate={callback_rate}",
        )

    async def place_atomic_dual_with_protection(
        self,
        buy_intent: OrderIntent,
        sell_intent: OrderIntent,
        *,
        guard: PriceGuard | None = None,
        open_orders: Sequence[OpenOrder] = (),
        attach_stops: bool = False,
        loss_limit: Decimal | None = None,
    ) -> list[OpenOrder] | None:
        """Place paired BUY and SELL entries, optionally with one stop per direction.

        Uses the venue's bulk primitive when available. If the bulk call fails
        the same parameter list is submitted sequentially.
        """
        buy_key = order_class_key(OrderType.LIMIT, OrderSide.BUY, False)
        sell_key = order_class_key(OrderType.LIMIT, OrderSide.SELL, False)
        if self._locks.is_locked(buy_key) or self._locks.is_locked(sell_key):
            return None

        buy_price = buy_intent.price_value
        sell_price = sell_intent.price_value
        if buy_price is None or sell_price is None:
            self._log(LogCategory.ERROR, "Invalid dual order prices, orders skipped")
            return None
        if not self._guard_allows(OrderSide.BUY, buy_price, guard, "Dual order (BUY)"):
            return None
        if not self._guard_allows(OrderSide.SELL, sell_price, guard, "Dual order (SELL)"):
            return None

        await self.deduplicate(open_orders, OrderType.LIMIT, OrderSide.BUY, key=buy_key)
        await self.deduplicate(open_orders, OrderType.LIMIT, OrderSide.SELL, key=sell_key)

        params = build_dual_params(
            self._symbol,
            buy_price,
            buy_intent.quantity,
            sell_price,
            sell_intent.quantity,
            price_tick=self._price_tick,
            qty_step=self._qty_step,
            attach_stops=attach_stops,
            loss_limit=loss_limit,
        )
        placer = select_dual_placer(self._adapter)
        self.lock(buy_key)
        self.lock(sell_key)
        try:
            placed: list[OpenOrder] | None = None
            if isinstance(placer, BulkPlacer):
                try:
                    placed = await placer.place(self._adapter, params)
                except Exception as exc:
                    if is_rate_limit_error(exc):
                        raise
                    self._log(
                        LogCategory.WARN,
                        f"Bulk order placement failed, falling back to sequential: "
                        f"{describe_error(exc)}",
                    )
                    placer = SequentialPlacer()
            if placed is None:
                placed = await placer.place(self._adapter, params)
        except Exception as exc:
            self.unlock(buy_key)
            self.unlock(sell_key)
            if is_unknown_order_error(exc):
                self._log(LogCategory.ORDER, "Dual order rejected as unknown order, ignoring")
                return None
            raise

        for key, side in ((buy_key, OrderSide.BUY), (sell_key, OrderSide.SELL)):
            entry = next(
                (o for o in placed if o.side == side and o.order_type is OrderType.LIMIT), None
            )
            self._locks.set_pending(key, entry.order_id if entry is not None else None)
        suffix = " with protective legs" if attach_stops else ""
        self._log(
            LogCategory.ORDER,
            f"Placed dual orders ({placer.name}): BUY@{buy_price} SELL@{sell_price}{suffix}",
        )
        return placed

    async def close(
        self,
        side: OrderSide,
        quantity: Decimal,
        *,
        guard: PriceGuard | None = None,
    ) -> OpenOrder | None:
        """Reduce-only IOC limit at the guard's expected price (or mark price)."""
        key = order_class_key(OrderType.MARKET, side, True)
        if self._locks.is_locked(key):
            return None
        expected = None
        if guard is not None:
            expected = guard.expected_price if guard.expected_price is not None else guard.mark_price
        if expected is None or not expected.is_finite() or expected <= 0:
            self._log(LogCategory.ERROR, "Cannot determine a limit price for close, skipped")
            return None
        if not self._guard_allows(side, expected, guard, "Close order"):
            return None

        params = CreateOrderParams(
            symbol=self._symbol,
            side=side,
            order_type=OrderType.LIMIT,
            quantity=round_qty_down_to_step(quantity, self._qty_step),
            price=expected,
            time_in_force=TimeInForce.IOC,
            reduce_only=True,
        )
        return await self._submit(
            key,
            params,
            LogCategory.ORDER,
            f"Close {side.value} IOC @ {expected} qty {params.quantity}",
        )

    async def cancel(self, order: OpenOrder) -> bool:
        """Cancel one order; an unknown order counts as already cancelled."""
        try:
            await self._adapter.cancel_order(self._symbol, order.order_id)
        except Exception as exc:
            if is_unknown_order_error(exc):
                self._log(LogCategory.ORDER, f"Order {order.order_id} already gone, skip cancel")
                return True
            raise
        self._log(
            LogCategory.ORDER,
            f"Cancelled {order.order_type.value} {order.side.value} @ "
            f"{order.stop_price if order.is_protective else order.price}",
        )
        return True

    def _guard_allows(
        self, side: OrderSide, price: Decimal, guard: PriceGuard | None, context: str
    ) -> bool:
        if guard is None or guard.max_pct is None:
            return True
        if is_order_price_allowed_by_mark(side, price, guard.mark_price, guard.max_pct):
            return True
        self._log(
            LogCategory.INFO,
            f"{context} blocked by price guard: side={side.value} price={price} "
            f"mark={guard.mark_price} exceeds {guard.max_pct * 100:.2f}%",
        )
        return False

    def _trigger_guard_allows(
        self, side: OrderSide, trigger_price: Decimal, guard: PriceGuard | None
    ) -> bool:
        if guard is None or guard.max_pct is None:
            return True
        if is_trigger_price_allowed_by_mark(side, trigger_price, guard.mark_price, guard.max_pct):
            return True
        self._log(
            LogCategory.ERROR,
            f"Stop order blocked by price guard: side={side.value} trigger={trigger_price} "
            f"is on the wrong side of mark={guard.mark_price} by more than "
            f"{guard.max_pct * 100:.2f}%",
        )
        return False

    async def _submit(
        self,
        key: str,
        params: CreateOrderParams,
        category: LogCategory,
        message: str,
    ) -> OpenOrder | None:
        self.lock(key)
        try:
            order = await self._adapter.create_order(params)
        except Exception as exc:
            self.unlock(key)
            if is_unknown_order_error(exc):
                self._log(LogCategory.ORDER, f"{key} order already resolved, skipping")
                return None
            raise
        self._locks.set_pending(key, order.order_id)
        self._log(category, message)
        return order
