"""Pytest configuration for shared fixtures."""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal

import pytest
from loguru import logger

from perp_maker.core.trade_log import TradeLog
from perp_maker.models import OpenOrder, OrderSide, OrderType


@pytest.fixture(scope="session", autouse=True)
def silence_loguru_handlers() -> None:
    """Route Loguru output to a no-op sink during tests to avoid closed stream errors."""
    logger.remove()
    logger.add(lambda _: None, catch=True)
    yield


class FakeClock:
    """Monotonic clock the tests advance by hand (seconds)."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def trade_log() -> TradeLog:
    return TradeLog(symbol="BTCUSDT")


@pytest.fixture
def make_order() -> Callable[..., OpenOrder]:
    """Factory for venue-style open orders with sensible defaults."""

    def factory(
        order_id: str,
        side: OrderSide = OrderSide.BUY,
        price: str = "100.0",
        *,
        order_type: OrderType = OrderType.LIMIT,
        stop_price: str = "0",
        quantity: Decimal = Decimal("1"),
        reduce_only: bool = False,
        update_time: int | None = None,
        symbol: str = "BTCUSDT",
    ) -> OpenOrder:
        return OpenOrder(
            order_id=order_id,
            symbol=symbol,
            side=side,
            order_type=order_type,
            price=price,
            stop_price=stop_price,
            quantity=quantity,
            reduce_only=reduce_only,
            update_time=update_time,
        )

    return factory
