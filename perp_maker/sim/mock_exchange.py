"""In-memory exchange adapter for simulation and tests."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Sequence
from decimal import Decimal

from loguru import logger

from perp_maker.core.errors import UnknownOrderError
from perp_maker.execution.adapter import (
    AccountCallback,
    DepthCallback,
    OrdersCallback,
    TickerCallback,
)
from perp_maker.models import (
    AccountSnapshot,
    CreateOrderParams,
    DepthSnapshot,
    OpenOrder,
    OrderSide,
    OrderStatus,
    OrderType,
    PositionSnapshot,
    TickerSnapshot,
    TimeInForce,
)


class MockExchange:
    """Simplified venue that acknowledges orders, tracks one position and pushes feeds.

    Failures can be injected with ``fail_next`` (create calls) and
    ``fail_next_cancel`` (cancel calls); queued exceptions are raised in order.
    """

    id = "mock"

    def __init__(self, symbol: str, *, trailing_stops: bool = True, auto_publish: bool = True) -> None:
        self.symbol = symbol
        self.trailing_stops = trailing_stops
        self.auto_publish = auto_publish
        self.created: list[CreateOrderParams] = []
        self.cancelled: list[str] = []
        self.cancel_all_calls = 0

        self._orders: dict[str, OpenOrder] = {}
        self._next_order_id = 1
        self._clock_ms = 1
        self._position = PositionSnapshot(symbol=symbol)
        self._bid: Decimal | None = None
        self._ask: Decimal | None = None
        self._create_failures: deque[BaseException] = deque()
        self._cancel_failures: deque[BaseException] = deque()
        self._lock = asyncio.Lock()

        self._account_callbacks: list[AccountCallback] = []
        self._order_callbacks: list[OrdersCallback] = []
        self._depth_callbacks: list[DepthCallback] = []
        self._ticker_callbacks: list[TickerCallback] = []

    # Feed subscriptions

    def watch_account(self, callback: AccountCallback) -> None:
        self._account_callbacks.append(callback)

    def watch_orders(self, callback: OrdersCallback) -> None:
        self._order_callbacks.append(callback)

    def watch_depth(self, symbol: str, callback: DepthCallback) -> None:
        self._depth_callbacks.append(callback)

    def watch_ticker(self, symbol: str, callback: TickerCallback) -> None:
        self._ticker_callbacks.append(callback)

    def supports_trailing_stops(self) -> bool:
        return self.trailing_stops

    # Failure injection

    def fail_next(self, *errors: BaseException) -> None:
        self._create_failures.extend(errors)

    def fail_next_cancel(self, *errors: BaseException) -> None:
        self._cancel_failures.extend(errors)

    # Publishing

    @property
    def position(self) -> PositionSnapshot:
        return self._position

    def open_orders(self) -> list[OpenOrder]:
        return [order.model_copy() for order in self._orders.values()]

    def publish_account(self) -> None:
        snapshot = AccountSnapshot(positions=[self._position])
        for callback in list(self._account_callbacks):
            callback(snapshot)

    def publish_orders(self, orders: Sequence[OpenOrder] | None = None) -> None:
        """Push the resting orders, or an explicit list when given."""
        orders = self.open_orders() if orders is None else list(orders)
        for callback in list(self._order_callbacks):
            callback(orders)

    def publish_depth(self) -> None:
        depth = DepthSnapshot(
            symbol=self.symbol,
            bids=[(str(self._bid), "1")] if self._bid is not None else [],
            asks=[(str(self._ask), "1")] if self._ask is not None else [],
        )
        for callback in list(self._depth_callbacks):
            callback(depth)

    def publish_ticker(self) -> None:
        last = self.mid_price()
        ticker = TickerSnapshot(
            symbol=self.symbol,
            last_price=str(last) if last is not None else "0",
            mark_price=str(last) if last is not None else None,
        )
        for callback in list(self._ticker_callbacks):
            callback(ticker)

    def publish_all(self) -> None:
        self.publish_account()
        self.publish_orders()
        self.publish_depth()
        self.publish_ticker()

    def mid_price(self) -> Decimal | None:
        if self._bid is None or self._ask is None:
            return None
        return (self._bid + self._ask) / 2

    def set_position(self, amount: Decimal, entry_price: Decimal | None) -> None:
        self._position = PositionSnapshot(
            symbol=self.symbol,
            amount=amount,
            entry_price=entry_price,
            mark_price=self.mid_price(),
        )
        if self.auto_publish:
            self.publish_account()

    def set_market(self, bid: Decimal, ask: Decimal) -> None:
        """Move the book and fill anything the new prices cross."""
        self._bid = bid
        self._ask = ask
        self._position = self._position.model_copy(update={"mark_price": self.mid_price()})
        self._match_resting_orders()
        if self.auto_publish:
            self.publish_depth()
            self.publish_ticker()

    # Order API

    async def create_order(self, params: CreateOrderParams) -> OpenOrder:
        async with self._lock:
            if self._create_failures:
                raise self._create_failures.popleft()
            order = self._accept(params)
        self._schedule_order_push()
        return order

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        async with self._lock:
            if self._cancel_failures:
                raise self._cancel_failures.popleft()
            if order_id not in self._orders:
                raise UnknownOrderError("Unknown order sent.", code=-2011)
            self._orders.pop(order_id)
            self.cancelled.append(order_id)
        if self.auto_publish:
            self.publish_orders()

    async def cancel_orders(self, symbol: str, order_ids: Sequence[str]) -> None:
        async with self._lock:
            if self._cancel_failures:
                raise self._cancel_failures.popleft()
            missing = [order_id for order_id in order_ids if order_id not in self._orders]
            if len(missing) == len(order_ids):
                raise UnknownOrderError("Unknown order sent.", code=-2011)
            for order_id in order_ids:
                if self._orders.pop(order_id, None) is not None:
                    self.cancelled.append(order_id)
        if self.auto_publish:
            self.publish_orders()

    async def cancel_all_orders(self, symbol: str) -> None:
        async with self._lock:
            self.cancel_all_calls += 1
            if self._cancel_failures:
                raise self._cancel_failures.popleft()
            self.cancelled.extend(self._orders)
            self._orders.clear()
        if self.auto_publish:
            self.publish_orders()

    def simulate_fill(self, order_id: str, price: Decimal | None = None) -> None:
        """Fill a resting order in full and update the position."""
        order = self._orders.pop(order_id, None)
        if order is None:
            return
        fill_price = price or order.price_value or order.stop_price_value or self.mid_price()
        if fill_price is None:
            raise ValueError("cannot determine fill price")
        quantity = order.quantity
        if order.close_position and quantity <= 0:
            quantity = abs(self._position.amount)
        self._apply_fill(order.side, quantity, fill_price, reduce_only=order.reduce_only)
        logger.debug("Mock fill {} {} {} @ {}", order_id, order.side.value, quantity, fill_price)
        if self.auto_publish:
            self.publish_orders()
            self.publish_account()

    def _schedule_order_push(self) -> None:
        # Order feed pushes for new orders arrive after the create call returns.
        if self.auto_publish:
            asyncio.get_running_loop().call_soon(self.publish_orders)

    def _accept(self, params: CreateOrderParams) -> OpenOrder:
        order_id = str(self._next_order_id)
        self._next_order_id += 1
        self._clock_ms += 1
        order = OpenOrder(
            order_id=order_id,
            symbol=params.symbol,
            side=params.side,
            order_type=params.order_type,
            price=str(params.price) if params.price is not None else "0",
            stop_price=str(params.stop_price or params.activation_price or "0"),
            quantity=params.quantity or Decimal("0"),
            status=OrderStatus.NEW,
            reduce_only=params.reduce_only,
            close_position=params.close_position,
            update_time=self._clock_ms,
            time=self._clock_ms,
        )
        self.created.append(params)
        if params.time_in_force is TimeInForce.IOC:
            # Immediate-or-cancel never rests: fill at the limit if marketable, else expire.
            if self._is_marketable(order):
                self._apply_fill(order.side, order.quantity, order.price_value, reduce_only=True)
                if self.auto_publish:
                    self.publish_account()
                return order.model_copy(update={"status": OrderStatus.FILLED})
            return order.model_copy(update={"status": OrderStatus.EXPIRED})
        self._orders[order_id] = order
        return order

    def _is_marketable(self, order: OpenOrder) -> bool:
        price = order.price_value
        if price is None:
            return False
        if order.side is OrderSide.BUY:
            return self._ask is not None and price >= self._ask
        return self._bid is not None and price <= self._bid

    def _match_resting_orders(self) -> None:
        last = self.mid_price()
        for order in list(self._orders.values()):
            if order.order_type is OrderType.LIMIT:
                if order.side is OrderSide.BUY and self._ask is not None:
                    hit = order.price_value is not None and self._ask <= order.price_value
                elif order.side is OrderSide.SELL and self._bid is not None:
                    hit = order.price_value is not None and self._bid >= order.price_value
                else:
                    hit = False
            else:
                trigger = order.stop_price_value
                if trigger is None or last is None:
                    continue
                hit = last <= trigger if order.side is OrderSide.SELL else last >= trigger
            if hit:
                self.simulate_fill(order.order_id, None if order.order_type is OrderType.LIMIT else last)

    def _apply_fill(
        self, side: OrderSide, quantity: Decimal, price: Decimal | None, *, reduce_only: bool
    ) -> None:
        if price is None or quantity <= 0:
            return
        current = self._position.amount
        signed = quantity if side is OrderSide.BUY else -quantity
        if reduce_only:
            if current == 0 or (current > 0) == (signed > 0):
                return
            if abs(signed) > abs(current):
                signed = -current
        new_amount = current + signed
        entry = self._position.entry_price
        if new_amount == 0:
            entry = None
        elif current == 0 or (current > 0) != (new_amount > 0):
            entry = price
        elif (current > 0) == (signed > 0):
            entry = ((entry or price) * abs(current) + price * abs(signed)) / abs(new_amount)
        self._position = PositionSnapshot(
            symbol=self.symbol,
            amount=new_amount,
            entry_price=entry,
            mark_price=self.mid_price(),
        )


class BulkMockExchange(MockExchange):
    """MockExchange that also exposes a batch order primitive."""

    id = "mock-bulk"

    def __init__(self, symbol: str, **kwargs: bool) -> None:
        super().__init__(symbol, **kwargs)
        self.bulk_calls = 0
        self._bulk_failures: deque[BaseException] = deque()

    def fail_next_bulk(self, *errors: BaseException) -> None:
        self._bulk_failures.extend(errors)

    async def create_bulk_orders(self, params: Sequence[CreateOrderParams]) -> list[OpenOrder]:
        async with self._lock:
            self.bulk_calls += 1
            if self._bulk_failures:
                raise self._bulk_failures.popleft()
            placed = [self._accept(item) for item in params]
        self._schedule_order_push()
        return placed
