"""Order, position and market models using Pydantic v2."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderSide(str, Enum):
    """Order side enumeration."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> OrderSide:
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """Order types understood by the venue adapters."""

    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP_MARKET = "STOP_MARKET"
    TRAILING_STOP_MARKET = "TRAILING_STOP_MARKET"


class TimeInForce(str, Enum):
    """Time-in-force values.

    GTX is post-only (good-till-crossing), IOC is immediate-or-cancel.
    """

    GTC = "GTC"
    GTX = "GTX"
    IOC = "IOC"


class TriggerKind(str, Enum):
    """Venue label attached to protective orders."""

    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"


def trigger_kind_for(side: OrderSide) -> TriggerKind:
    """Trigger label for a protective order; SELL stops loss, BUY is labelled take-profit."""
    return TriggerKind.TAKE_PROFIT if side is OrderSide.BUY else TriggerKind.STOP_LOSS


class OrderStatus(str, Enum):
    """Venue order status enumeration."""

    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    REJECTED = "REJECTED"
    CLOSED = "CLOSED"

    @property
    def is_active(self) -> bool:
        return self in (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED)


def _to_decimal(value: str | Decimal | float | int | None) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


class OrderIntent(BaseModel):
    """An order the strategy wants resting on the book this cycle."""

    model_config = ConfigDict(frozen=True)

    side: OrderSide
    price: str = Field(..., description="Limit price as a decimal string")
    quantity: Decimal = Field(..., ge=0, description="Order quantity in base units")
    reduce_only: bool = Field(default=False, description="Order may only reduce the position")

    @field_validator("price", mode="before")
    @classmethod
    def validate_price(cls, v: object) -> str:
        """Normalise numeric prices to their string form."""
        if isinstance(v, (Decimal, int, float)):
            return str(v)
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Price must be a non-empty decimal string")
        return v.strip()

    @property
    def price_value(self) -> Decimal | None:
        return _to_decimal(self.price)


class OpenOrder(BaseModel):
    """Venue-reported resting order."""

    order_id: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    price: str = Field(default="0")
    stop_price: str = Field(default="0")
    quantity: Decimal = Field(default=Decimal("0"))
    executed_quantity: Decimal = Field(default=Decimal("0"))
    status: OrderStatus = Field(default=OrderStatus.NEW)
    reduce_only: bool = Field(default=False)
    close_position: bool = Field(default=False)
    update_time: int | None = Field(default=None, description="Last update, epoch millis")
    time: int | None = Field(default=None, description="Creation time, epoch millis")

    @field_validator("order_id", mode="before")
    @classmethod
    def validate_order_id(cls, v: object) -> str:
        """Venues report ids as ints or strings; keep them as strings."""
        return str(v)

    @property
    def price_value(self) -> Decimal | None:
        return _to_decimal(self.price)

    @property
    def stop_price_value(self) -> Decimal | None:
        return _to_decimal(self.stop_price)

    @property
    def is_protective(self) -> bool:
        """Stop or trailing order, or anything carrying a trigger price."""
        if self.order_type in (OrderType.STOP_MARKET, OrderType.TRAILING_STOP_MARKET):
            return True
        stop = self.stop_price_value
        return stop is not None and stop > 0

    @property
    def sort_time(self) -> int:
        return self.update_time or self.time or 0


class PositionSnapshot(BaseModel):
    """Position reported by the account feed (amount > 0 long, < 0 short)."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    amount: Decimal = Field(default=Decimal("0"), description="Signed position size")
    entry_price: Decimal | None = Field(default=None)
    mark_price: Decimal | None = Field(default=None)
    unrealized_profit: Decimal = Field(default=Decimal("0"))

    @property
    def is_long(self) -> bool:
        return self.amount > 0

    @property
    def is_short(self) -> bool:
        return self.amount < 0


class AccountSnapshot(BaseModel):
    """Account feed push."""

    positions: list[PositionSnapshot] = Field(default_factory=list)
    available_balance: Decimal | None = Field(default=None)

    def position_for(self, symbol: str) -> PositionSnapshot:
        for position in self.positions:
            if position.symbol == symbol:
                return position
        return PositionSnapshot(symbol=symbol)


class DepthSnapshot(BaseModel):
    """Order book levels as (price, quantity) string pairs, best first."""

    symbol: str
    bids: list[tuple[str, str]] = Field(default_factory=list)
    asks: list[tuple[str, str]] = Field(default_factory=list)


class TickerSnapshot(BaseModel):
    """Ticker feed push."""

    symbol: str
    last_price: str = Field(default="0")
    mark_price: str | None = Field(default=None)


class StopLossTarget(BaseModel):
    """Protective order required for the current position."""

    model_config = ConfigDict(frozen=True)

    side: OrderSide
    trigger_price: Decimal
    quantity: Decimal


class PriceGuard(BaseModel):
    """Price-sanity inputs supplied with every placement."""

    model_config = ConfigDict(frozen=True)

    mark_price: Decimal | None = Field(default=None)
    max_pct: Decimal | None = Field(
        default=None, description="Maximum allowed deviation from mark price (fraction)"
    )
    expected_price: Decimal | None = Field(
        default=None, description="Price used for IOC closes; falls back to mark price"
    )


class CreateOrderParams(BaseModel):
    """Venue-agnostic order creation parameters."""

    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal | None = Field(default=None)
    price: Decimal | None = Field(default=None)
    stop_price: Decimal | None = Field(default=None)
    activation_price: Decimal | None = Field(default=None)
    callback_rate: Decimal | None = Field(default=None)
    time_in_force: TimeInForce | None = Field(default=None)
    reduce_only: bool = Field(default=False)
    close_position: bool = Field(default=False)
    trigger_kind: TriggerKind | None = Field(default=None)


__all__ = [
    "AccountSnapshot",
    "CreateOrderParams",
    "DepthSnapshot",
    "OpenOrder",
    "OrderIntent",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "PositionSnapshot",
    "PriceGuard",
    "StopLossTarget",
    "TickerSnapshot",
    "TimeInForce",
    "TriggerKind",
    "trigger_kind_for",
]
