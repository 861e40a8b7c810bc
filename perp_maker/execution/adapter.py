"""Exchange adapter capability set consumed by the execution core."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Protocol, runtime_checkable

from perp_maker.models import (
    AccountSnapshot,
    CreateOrderParams,
    DepthSnapshot,
    OpenOrder,
    TickerSnapshot,
)

AccountCallback = Callable[[AccountSnapshot], None]
OrdersCallback = Callable[[list[OpenOrder]], None]
DepthCallback = Callable[[DepthSnapshot], None]
TickerCallback = Callable[[TickerSnapshot], None]


@runtime_checkable
class ExchangeAdapter(Protocol):
    """Protocol that every venue adapter must satisfy.

    Feeds are push-based: each ``watch_*`` call registers a callback that the
    adapter invokes with a full snapshot on every update. Order calls raise
    subclasses of ``ExchangeError`` (or generic exceptions whose message
    identifies the failure) on rejection.
    """

    id: str

    def watch_account(self, callback: AccountCallback) -> None:
        """Subscribe to account/position snapshots."""
        ...

    def watch_orders(self, callback: OrdersCallback) -> None:
        """Subscribe to open-order snapshots."""
        ...

    def watch_depth(self, symbol: str, callback: DepthCallback) -> None:
        """Subscribe to order book snapshots for symbol."""
        ...

    def watch_ticker(self, symbol: str, callback: TickerCallback) -> None:
        """Subscribe to ticker snapshots for symbol."""
        ...

    async def create_order(self, params: CreateOrderParams) -> OpenOrder:
        """Submit a single order and return the venue acknowledgment."""
        ...

    async def cancel_order(self, symbol: str, order_id: str) -> None:
        """Cancel one order."""
        ...

    async def cancel_orders(self, symbol: str, order_ids: Sequence[str]) -> None:
        """Cancel several orders in one request."""
        ...

    async def cancel_all_orders(self, symbol: str) -> None:
        """Cancel every resting order for symbol."""
        ...


@runtime_checkable
class BulkOrderAdapter(Protocol):
    """Optional capability: submit several orders in a single request."""

    async def create_bulk_orders(self, params: Sequence[CreateOrderParams]) -> list[OpenOrder]:
        ...


def supports_bulk_orders(adapter: object) -> bool:
    return callable(getattr(adapter, "create_bulk_orders", None))


def supports_trailing_stops(adapter: object) -> bool:
    """Adapters opt out of trailing stops by returning False from ``supports_trailing_stops``."""
    probe = getattr(adapter, "supports_trailing_stops", None)
    if probe is None:
        return True
    return bool(probe() if callable(probe) else probe)
