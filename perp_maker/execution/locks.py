"""Per order-class locks with expiry timers and pending order ids."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass

from perp_maker.core.constants import DEFAULT_LOCK_TIMEOUT_MS
from perp_maker.core.trade_log import LogCategory, LogHandler
from perp_maker.models import OpenOrder, OrderSide, OrderType


def order_class_key(order_type: OrderType, side: OrderSide, reduce_only: bool) -> str:
    """Coordination domain for an order, e.g. ``LIMIT:BUY:OPEN``."""
    intent = "CLOSE" if reduce_only else "OPEN"
    return f"{order_type.value}:{side.value}:{intent}"


@dataclass(slots=True)
class LockState:
    """Lock bookkeeping for one order class."""

    locked: bool = False
    pending_order_id: str | None = None
    expiry_handle: asyncio.TimerHandle | None = None

    def cancel_timer(self) -> None:
        if self.expiry_handle is not None:
            self.expiry_handle.cancel()
            self.expiry_handle = None


class OrderLockRegistry:
    """Lazily created lock states keyed by order class.

    A lock is always released, either explicitly through ``unlock`` or by its
    expiry timer, so a lost venue response cannot wedge an order class.
    """

    def __init__(
        self,
        log: LogHandler,
        *,
        default_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
    ) -> None:
        self._log = log
        self._default_timeout_ms = default_timeout_ms
        self._states: dict[str, LockState] = {}

    def state(self, key: str) -> LockState:
        state = self._states.get(key)
        if state is None:
            state = LockState()
            self._states[key] = state
        return state

    def is_locked(self, key: str) -> bool:
        state = self._states.get(key)
        return state is not None and state.locked

    def lock(self, key: str, timeout_ms: int | None = None) -> None:
        """Mark key as busy and (re)arm its expiry timer.

        Must be called from within a running event loop.
        """
        state = self.state(key)
        state.locked = True
        state.cancel_timer()
        timeout = self._default_timeout_ms if timeout_ms is None else timeout_ms
        loop = asyncio.get_running_loop()
        state.expiry_handle = loop.call_later(timeout / 1000, self._expire, key)

    def unlock(self, key: str) -> None:
        state = self._states.get(key)
        if state is None:
            return
        state.locked = False
        state.pending_order_id = None
        state.cancel_timer()

    def set_pending(self, key: str, order_id: str | None) -> None:
        self.state(key).pending_order_id = order_id

    def pending_order_id(self, key: str) -> str | None:
        state = self._states.get(key)
        return state.pending_order_id if state is not None else None

    def pending(self) -> dict[str, str]:
        return {
            key: state.pending_order_id
            for key, state in self._states.items()
            if state.pending_order_id is not None
        }

    def locked_keys(self) -> list[str]:
        return [key for key, state in self._states.items() if state.locked]

    def sync_with_orders(self, orders: Iterable[OpenOrder]) -> list[str]:
        """Release locks whose pending order the order feed now reports.

        Pending ids missing from the feed keep their lock; the expiry timer
        bounds how long that can last.

        Returns:
            Keys that were released.
        """
        by_id = {order.order_id: order for order in orders}
        released: list[str] = []
        for key, state in self._states.items():
            if not state.locked or state.pending_order_id is None:
                continue
            if state.pending_order_id in by_id:
                released.append(key)
        for key in released:
            self.unlock(key)
        return released

    def close(self) -> None:
        """Cancel every timer; used on engine shutdown."""
        for state in self._states.values():
            state.cancel_timer()
            state.locked = False
            state.pending_order_id = None

    def _expire(self, key: str) -> None:
        state = self._states.get(key)
        if state is None:
            return
        state.expiry_handle = None
        if not state.locked:
            return
        state.locked = False
        state.pending_order_id = None
        self._log(LogCategory.INFO, f"{key} operation timed out, lock released")
