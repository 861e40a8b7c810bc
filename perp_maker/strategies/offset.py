"""Offset quoting around the top of book."""

from __future__ import annotations

from decimal import Decimal

from perp_maker.models import OrderIntent, OrderSide
from perp_maker.pricing import format_price, has_position

from .base import QuoteContext


class OffsetQuoteStrategy:
    """Quote both sides at a fixed offset from the touch while flat.

    With a position open only a reduce-only close at the near side of the book
    is requested; new entries wait until the position is flat again.
    """

    def __init__(self, bid_offset: Decimal = Decimal("0"), ask_offset: Decimal = Decimal("0")) -> None:
        if bid_offset < 0 or ask_offset < 0:
            raise ValueError("offsets cannot be negative")
        self.bid_offset = bid_offset
        self.ask_offset = ask_offset

    def desired_orders(self, context: QuoteContext) -> list[OrderIntent]:
        tick = context.price_tick
        position = context.position
        if has_position(position):
            size = abs(position.amount)
            if position.is_long:
                return [
                    OrderIntent(
                        side=OrderSide.SELL,
                        price=format_price(context.ask, tick),
                        quantity=size,
                        reduce_only=True,
                    )
                ]
            return [
                OrderIntent(
                    side=OrderSide.BUY,
                    price=format_price(context.bid, tick),
                    quantity=size,
                    reduce_only=True,
                )
            ]

        if not context.can_enter:
            return []
        return [
            OrderIntent(
                side=OrderSide.BUY,
                price=format_price(context.bid - self.bid_offset, tick),
                quantity=context.trade_amount,
            ),
            OrderIntent(
                side=OrderSide.SELL,
                price=format_price(context.ask + self.ask_offset, tick),
                quantity=context.trade_amount,
            ),
        ]
