"""Keep a protective stop order in place for the open position."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from decimal import Decimal
from enum import Enum

from perp_maker.core.errors import describe_error, is_rate_limit_error
from perp_maker.core.trade_log import LogCategory, LogHandler
from perp_maker.execution.coordinator import OrderCoordinator, stop_would_trigger_immediately
from perp_maker.models import (
    OpenOrder,
    OrderSide,
    OrderType,
    PositionSnapshot,
    PriceGuard,
    StopLossTarget,
    trigger_kind_for,
)
from perp_maker.pricing import (
    calc_stop_loss_price,
    close_price_for,
    has_position,
    has_valid_entry,
    round_to_tick,
    should_stop_loss,
)

__all__ = ["ProtectionState", "StopLossGuard", "trigger_kind_for"]


class ProtectionState(str, Enum):
    """Protection status of the position after a reconcile pass."""

    NO_POSITION = "no_position"
    POSITION_NO_PROTECTION = "position_no_protection"
    POSITION_PROTECTED = "position_protected"
    PROTECTION_STALE = "protection_stale"


class StopLossGuard:
    """Derive the required stop from the position and repair the resting one.

    The guard never gives up on a position: a failed cancel leaves the state
    at PROTECTION_STALE and the next pass retries the replacement.
    """

    def __init__(
        self,
        coordinator: OrderCoordinator,
        log: LogHandler,
        *,
        loss_limit: Decimal,
        price_tick: Decimal,
        emergency_close: bool = True,
        on_cancelled: Callable[[OpenOrder], None] | None = None,
    ) -> None:
        self._coordinator = coordinator
        self._log = log
        self._loss_limit = loss_limit
        self._price_tick = price_tick
        self._emergency_close = emergency_close
        self._on_cancelled = on_cancelled
        self._entry_pending_logged = False
        self._kept_stop_logged = False
        self._state = ProtectionState.NO_POSITION

    @property
    def state(self) -> ProtectionState:
        return self._state

    def _raw_trigger(self, position: PositionSnapshot) -> Decimal:
        assert position.entry_price is not None
        return calc_stop_loss_price(
            position.entry_price, abs(position.amount), position.is_long, self._loss_limit
        )

    def compute_target(self, position: PositionSnapshot) -> StopLossTarget | None:
        """Stop required for position, or None when flat or entry is unknown."""
        if not has_position(position) or not has_valid_entry(position):
            return None
        side = OrderSide.SELL if position.is_long else OrderSide.BUY
        return StopLossTarget(
            side=side,
            trigger_price=round_to_tick(self._raw_trigger(position), self._price_tick),
            quantity=abs(position.amount),
        )

    @staticmethod
    def find_protective_order(
        open_orders: Sequence[OpenOrder], side: OrderSide
    ) -> OpenOrder | None:
        for order in open_orders:
            if order.side != side or not order.status.is_active:
                continue
            if order.order_type is OrderType.STOP_MARKET or (
                order.stop_price_value is not None and order.stop_price_value > 0
            ):
                return order
        return None

    def needs_replace(self, existing_trigger: Decimal | None, target_trigger: Decimal) -> bool:
        """Replace only when the resting trigger is at least one tick away."""
        if existing_trigger is None:
            return True
        return abs(existing_trigger - target_trigger) >= self._price_tick

    async def reconcile(
        self,
        position: PositionSnapshot | None,
        open_orders: Sequence[OpenOrder],
        *,
        bid: Decimal | None = None,
        ask: Decimal | None = None,
        last_price: Decimal | None = None,
        guard: PriceGuard | None = None,
    ) -> ProtectionState:
        """Run one protection pass and return the resulting state.

        Raises:
            Exception: rate-limit errors from the venue, so the caller can back off.
        """
        self._state = await self._reconcile(position, open_orders, bid, ask, last_price, guard)
        return self._state

    async def _reconcile(
        self,
        position: PositionSnapshot | None,
        open_orders: Sequence[OpenOrder],
        bid: Decimal | None,
        ask: Decimal | None,
        last_price: Decimal | None,
        guard: PriceGuard | None,
    ) -> ProtectionState:
        if position is None or not has_position(position):
            self._entry_pending_logged = False
            return ProtectionState.NO_POSITION

        if not has_valid_entry(position):
            if not self._entry_pending_logged:
                self._log(
                    LogCategory.INFO,
                    "Position open but entry price unknown, stop-loss deferred",
                )
                self._entry_pending_logged = True
            return ProtectionState.POSITION_NO_PROTECTION
        self._entry_pending_logged = False

        target = self.compute_target(position)
        assert target is not None
        raw_trigger = self._raw_trigger(position)
        existing = self.find_protective_order(open_orders, target.side)
        remaining = list(open_orders)
        through = stop_would_trigger_immediately(target.side, target.trigger_price, last_price)
        breached = self._emergency_close and should_stop_loss(
            position, bid, ask, self._loss_limit
        )

        if existing is None:
            self._kept_stop_logged = False
        else:
            if not self.needs_replace(existing.stop_price_value, raw_trigger):
                self._kept_stop_logged = False
                return ProtectionState.POSITION_PROTECTED
            if through:
                # The resting stop stays until a replacement can be placed.
                if breached:
                    await self._close_position(position, target, bid, ask, guard)
                elif not self._kept_stop_logged:
                    self._log(
                        LogCategory.WARN,
                        f"Stop target {target.trigger_price} is through last price "
                        f"{last_price}, keeping stop {existing.order_id} @ {existing.stop_price}",
                    )
                    self._kept_stop_logged = True
                return ProtectionState.PROTECTION_STALE
            self._kept_stop_logged = False
            try:
                await self._coordinator.cancel(existing)
            except Exception as exc:
                if is_rate_limit_error(exc):
                    raise
                self._log(
                    LogCategory.ERROR,
                    f"Failed to cancel stale stop {existing.order_id}: {describe_error(exc)}",
                )
                return ProtectionState.PROTECTION_STALE
            if self._on_cancelled is not None:
                self._on_cancelled(existing)
            self._log(
                LogCategory.STOP,
                f"Stop moved: {existing.stop_price} -> {target.trigger_price}",
            )
            remaining = [order for order in open_orders if order.order_id != existing.order_id]

        if through and breached:
            await self._close_position(position, target, bid, ask, guard)
            return ProtectionState.POSITION_NO_PROTECTION

        placed = await self._coordinator.place_stop_protection(
            target.side,
            target.trigger_price,
            target.quantity,
            last_price,
            guard=guard,
            open_orders=remaining,
        )
        if placed is not None:
            return ProtectionState.POSITION_PROTECTED
        if existing is not None:
            return ProtectionState.PROTECTION_STALE
        return ProtectionState.POSITION_NO_PROTECTION

    async def _close_position(
        self,
        position: PositionSnapshot,
        target: StopLossTarget,
        bid: Decimal | None,
        ask: Decimal | None,
        guard: PriceGuard | None,
    ) -> None:
        close_price = close_price_for(position, bid, ask)
        close_guard = PriceGuard(
            mark_price=guard.mark_price if guard is not None else None,
            max_pct=guard.max_pct if guard is not None else None,
            expected_price=close_price,
        )
        self._log(
            LogCategory.STOP,
            f"Loss limit exceeded and stop is through the market, closing {target.quantity} "
            f"{target.side.value} @ {close_price}",
        )
        await self._coordinator.close(target.side, target.quantity, guard=close_guard)
