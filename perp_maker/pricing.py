"""Price and quantity helpers shared by the planner, coordinator and guard."""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation

from perp_maker.core.constants import ENTRY_PRICE_EPS, EPS
from perp_maker.models import (
    DepthSnapshot,
    OrderSide,
    PositionSnapshot,
    TickerSnapshot,
)


def to_decimal(value: object) -> Decimal | None:
    """Parse value into a finite Decimal, returning None when invalid."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def _positive(value: object) -> Decimal | None:
    result = to_decimal(value)
    if result is None or result <= 0:
        return None
    return result


def get_top_prices(depth: DepthSnapshot | None) -> tuple[Decimal | None, Decimal | None]:
    """Best bid and ask; non-positive or unparsable levels count as absent."""
    if depth is None:
        return None, None
    bid = _positive(depth.bids[0][0]) if depth.bids else None
    ask = _positive(depth.asks[0][0]) if depth.asks else None
    return bid, ask


def get_mid_or_last(
    depth: DepthSnapshot | None, ticker: TickerSnapshot | None
) -> Decimal | None:
    """Mid price when both sides are quoted, otherwise the ticker's last price."""
    bid, ask = get_top_prices(depth)
    if bid is not None and ask is not None:
        return (bid + ask) / 2
    if ticker is None:
        return None
    return to_decimal(ticker.last_price)


def round_down_to_tick(price: Decimal, tick: Decimal) -> Decimal:
    if tick <= 0:
        return price
    steps = (price / tick).to_integral_value(rounding=ROUND_DOWN)
    return (steps * tick).quantize(tick)


def round_to_tick(price: Decimal, tick: Decimal) -> Decimal:
    if tick <= 0:
        return price
    steps = (price / tick).to_integral_value(rounding=ROUND_HALF_UP)
    return (steps * tick).quantize(tick)


def round_qty_down_to_step(quantity: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return quantity
    steps = (quantity / step).to_integral_value(rounding=ROUND_DOWN)
    return (steps * step).quantize(step)


def format_price(price: Decimal, tick: Decimal) -> str:
    """Render a price with the tick's precision."""
    return str(round_to_tick(price, tick))


def has_position(position: PositionSnapshot | None) -> bool:
    return position is not None and abs(position.amount) >= EPS


def has_valid_entry(position: PositionSnapshot) -> bool:
    entry = position.entry_price
    return entry is not None and entry.is_finite() and abs(entry) >= ENTRY_PRICE_EPS


def close_price_for(
    position: PositionSnapshot, bid: Decimal | None, ask: Decimal | None
) -> Decimal | None:
    """Price at which the position would be closed: bid for longs, ask for shorts."""
    return bid if position.amount > 0 else ask


def compute_position_pnl(
    position: PositionSnapshot, bid: Decimal | None, ask: Decimal | None
) -> Decimal:
    """Unrealized PnL at top of book.

    Returns 0 when the reference price is missing, invalid or non-positive.
    """
    reference = _positive(close_price_for(position, bid, ask))
    if reference is None or not has_valid_entry(position):
        return Decimal("0")
    entry = position.entry_price
    size = abs(position.amount)
    if position.amount > 0:
        return (reference - entry) * size
    return (entry - reference) * size


def should_stop_loss(
    position: PositionSnapshot,
    bid: Decimal | None,
    ask: Decimal | None,
    loss_limit: Decimal,
) -> bool:
    """True when closing at top of book would lose more than loss_limit."""
    if not has_position(position) or not has_valid_entry(position):
        return False
    if _positive(close_price_for(position, bid, ask)) is None:
        return False
    return compute_position_pnl(position, bid, ask) < -loss_limit


def calc_stop_loss_price(
    entry_price: Decimal, quantity: Decimal, is_long: bool, loss_limit: Decimal
) -> Decimal:
    """Trigger price capping the loss of the full position at loss_limit.

    Args:
        entry_price: Average entry price.
        quantity: Absolute position size.
        is_long: Direction of the position.
        loss_limit: Maximum loss in quote currency.

    Returns:
        Trigger below entry for longs, above entry for shorts.
    """
    if quantity <= 0:
        return entry_price
    distance = loss_limit / quantity
    return entry_price - distance if is_long else entry_price + distance


def is_order_price_allowed_by_mark(
    side: OrderSide,
    order_price: Decimal | None,
    mark_price: Decimal | None,
    max_pct: Decimal | None,
) -> bool:
    """Reject BUYs far above mark and SELLs far below it.

    An unset band or an unknown mark price allows the order.
    """
    if max_pct is None:
        return True
    mark = _positive(mark_price)
    price = to_decimal(order_price)
    if mark is None or price is None:
        return True
    if side is OrderSide.BUY:
        return price <= mark * (1 + max_pct)
    return price >= mark * (1 - max_pct)


def is_trigger_price_allowed_by_mark(
    side: OrderSide,
    trigger_price: Decimal | None,
    mark_price: Decimal | None,
    max_pct: Decimal | None,
) -> bool:
    """Reject protective triggers that sit far on the wrong side of mark.

    A SELL stop belongs below mark and a BUY stop above it, so only a SELL
    trigger above ``mark * (1 + max_pct)`` or a BUY trigger below
    ``mark * (1 - max_pct)`` is refused. Stops any distance on their own side pass.
    """
    if max_pct is None:
        return True
    mark = _positive(mark_price)
    price = to_decimal(trigger_price)
    if mark is None or price is None:
        return True
    if side is OrderSide.SELL:
        return price <= mark * (1 + max_pct)
    return price >= mark * (1 - max_pct)
