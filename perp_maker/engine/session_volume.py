"""Session traded-notional estimate derived from position changes."""

from __future__ import annotations

from decimal import Decimal

from perp_maker.core.constants import SESSION_REBATE_RATE
from perp_maker.models import PositionSnapshot


class SessionVolumeTracker:
    """Accumulate |position change| * reference price between account updates.

    The first update only records the starting position.
    """

    def __init__(self, maker_rebate_rate: Decimal = SESSION_REBATE_RATE) -> None:
        self._rebate_rate = maker_rebate_rate
        self._initialized = False
        self._previous_amount = Decimal("0")
        self._total = Decimal("0")
        self._trade_count = 0

    def update(self, position: PositionSnapshot, reference_price: Decimal | None) -> None:
        if not self._initialized:
            self._previous_amount = position.amount
            self._initialized = True
            return
        if reference_price is not None:
            delta = abs(position.amount - self._previous_amount)
            if delta > 0:
                self._total += delta * reference_price
                self._trade_count += 1
        self._previous_amount = position.amount

    @property
    def value(self) -> Decimal:
        return self._total

    @property
    def count(self) -> int:
        return self._trade_count

    @property
    def estimated_rebate(self) -> Decimal:
        return self._total * self._rebate_rate
