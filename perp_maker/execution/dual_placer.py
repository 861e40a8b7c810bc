"""Placement strategies for the paired BUY/SELL entry with protective legs."""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import Protocol

from perp_maker.execution.adapter import ExchangeAdapter, supports_bulk_orders
from perp_maker.models import (
    CreateOrderParams,
    OpenOrder,
    OrderSide,
    OrderType,
    TimeInForce,
    trigger_kind_for,
)
from perp_maker.pricing import calc_stop_loss_price, round_down_to_tick, round_qty_down_to_step


class DualOrderPlacer(Protocol):
    """Submits a prepared list of order parameters."""

    name: str

    async def place(
        self, adapter: ExchangeAdapter, params: Sequence[CreateOrderParams]
    ) -> list[OpenOrder]: ...


class BulkPlacer:
    """Submit every leg in one batch request."""

    name = "bulk"

    async def place(
        self, adapter: ExchangeAdapter, params: Sequence[CreateOrderParams]
    ) -> list[OpenOrder]:
        created = await adapter.create_bulk_orders(list(params))  # type: ignore[attr-defined]
        return list(created)


class SequentialPlacer:
    """Submit legs one by one, in list order."""

    name = "sequential"

    async def place(
        self, adapter: ExchangeAdapter, params: Sequence[CreateOrderParams]
    ) -> list[OpenOrder]:
        placed: list[OpenOrder] = []
        for item in params:
            placed.append(await adapter.create_order(item))
        return placed


def select_dual_placer(adapter: object) -> DualOrderPlacer:
    if supports_bulk_orders(adapter):
        return BulkPlacer()
    return SequentialPlacer()


def _protective_leg(
    symbol: str,
    side: OrderSide,
    quantity: Decimal,
    trigger_price: Decimal,
) -> CreateOrderParams:
    return CreateOrderParams(
        symbol=symbol,
        side=side,
        order_type=OrderType.STOP_MARKET,
        quantity=quantity,
        stop_price=trigger_price,
        reduce_only=True,
        close_position=True,
        time_in_force=TimeInForce.GTC,
        trigger_kind=trigger_kind_for(side),
    )


def build_dual_params(
    symbol: str,
    buy_price: Decimal,
    buy_quantity: Decimal,
    sell_price: Decimal,
    sell_quantity: Decimal,
    *,
    price_tick: Decimal,
    qty_step: Decimal,
    attach_stops: bool = False,
    loss_limit: Decimal | None = None,
) -> list[CreateOrderParams]:
    """Build the two post-only entries and, optionally, one stop per resulting position.

    The BUY entry is protected by a SELL stop below it and the SELL entry by a
    BUY stop above it, each sized so that ``loss_limit`` caps the leg's loss.
    Both placers receive this exact list, so the bulk and sequential paths
    produce the same order set.
    """
    buy_qty = round_qty_down_to_step(buy_quantity, qty_step)
    sell_qty = round_qty_down_to_step(sell_quantity, qty_step)
    params = [
        CreateOrderParams(
            symbol=symbol,
            side=OrderSide.BUY,
            order_type=OrderType.LIMIT,
            quantity=buy_qty,
            price=buy_price,
            time_in_force=TimeInForce.GTX,
        ),
        CreateOrderParams(
            symbol=symbol,
            side=OrderSide.SELL,
            order_type=OrderType.LIMIT,
            quantity=sell_qty,
            price=sell_price,
            time_in_force=TimeInForce.GTX,
        ),
    ]
    if attach_stops:
        if loss_limit is None:
            raise ValueError("loss_limit is required when attaching protective legs")
        long_stop = round_down_to_tick(
            calc_stop_loss_price(buy_price, buy_qty, True, loss_limit), price_tick
        )
        short_stop = round_down_to_tick(
            calc_stop_loss_price(sell_price, sell_qty, False, loss_limit), price_tick
        )
        params.append(_protective_leg(symbol, OrderSide.SELL, buy_qty, long_stop))
        params.append(_protective_leg(symbol, OrderSide.BUY, sell_qty, short_stop))
    return params
