"""Diff desired order intents against resting orders."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from perp_maker.core.constants import EPS
from perp_maker.models import OpenOrder, OrderIntent
from perp_maker.pricing import to_decimal


@dataclass(frozen=True, slots=True)
class OrderPlan:
    """Orders to cancel and intents to place, in input order."""

    to_cancel: tuple[OpenOrder, ...]
    to_place: tuple[OrderIntent, ...]

    @property
    def is_empty(self) -> bool:
        return not self.to_cancel and not self.to_place


def prices_match(open_price: str, intent_price: str, tolerance: Decimal) -> bool:
    """Exact string match, or absolute difference within tolerance when tolerance > 0."""
    if tolerance > 0:
        left = to_decimal(open_price)
        right = to_decimal(intent_price)
        if left is not None and right is not None:
            return abs(left - right) <= tolerance
    return open_price == intent_price


def plan_orders(
    open_orders: Sequence[OpenOrder],
    intents: Sequence[OrderIntent],
    price_tolerance: Decimal = Decimal("0"),
) -> OrderPlan:
    """Compute the cancel/place sets that turn open_orders into intents.

    Each open order consumes the first still-unmatched intent with the same side,
    the same reduce-only flag and a matching price. Unmatched open orders are
    cancelled; unmatched intents above dust size are placed.

    Args:
        open_orders: Resting orders eligible for reconciliation.
        intents: Orders the strategy wants resting.
        price_tolerance: Absolute price tolerance; negative values count as zero.

    Returns:
        OrderPlan with stable ordering for identical inputs.
    """
    tolerance = max(Decimal("0"), price_tolerance)
    matched = [False] * len(intents)
    to_cancel: list[OpenOrder] = []

    for order in open_orders:
        hit = None
        for index, intent in enumerate(intents):
            if matched[index]:
                continue
            if intent.side != order.side or intent.reduce_only != order.reduce_only:
                continue
            if prices_match(order.price, intent.price, tolerance):
                hit = index
                break
        if hit is None:
            to_cancel.append(order)
        else:
            matched[hit] = True

    to_place = tuple(
        intent
        for index, intent in enumerate(intents)
        if not matched[index] and intent.quantity > EPS
    )
    return OrderPlan(to_cancel=tuple(to_cancel), to_place=to_place)
