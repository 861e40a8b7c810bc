"""Strategy seam: derive the desired resting orders for one cycle."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, runtime_checkable

from perp_maker.models import OrderIntent, PositionSnapshot


@dataclass(frozen=True, slots=True)
class QuoteContext:
    """Market and position state handed to the strategy each cycle."""

    symbol: str
    bid: Decimal
    ask: Decimal
    position: PositionSnapshot
    can_enter: bool
    price_tick: Decimal
    trade_amount: Decimal


@runtime_checkable
class QuoteStrategy(Protocol):
    """Anything that maps a QuoteContext to a list of order intents."""

    def desired_orders(self, context: QuoteContext) -> list[OrderIntent]:
        """Return the orders that should be resting after this cycle."""
        ...
