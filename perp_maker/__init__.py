"""Perp Maker - order reconciliation engine for perpetual futures market making."""

__version__ = "0.1.0"

from perp_maker.core.config import EngineConfig, load_config
from perp_maker.engine.reconciliation import EngineSnapshot, ReconciliationLoop
from perp_maker.execution.coordinator import OrderCoordinator
from perp_maker.execution.order_plan import OrderPlan, plan_orders
from perp_maker.execution.stop_guard import ProtectionState, StopLossGuard
from perp_maker.models import (
    OpenOrder,
    OrderIntent,
    OrderSide,
    OrderStatus,
    OrderType,
    PositionSnapshot,
)
from perp_maker.sim.mock_exchange import BulkMockExchange, MockExchange
from perp_maker.strategies import OffsetQuoteStrategy, QuoteContext, QuoteStrategy

__all__ = [
    "EngineConfig",
    "load_config",
    "EngineSnapshot",
    "ReconciliationLoop",
    "OrderCoordinator",
    "OrderPlan",
    "plan_orders",
    "ProtectionState",
    "StopLossGuard",
    "OpenOrder",
    "OrderIntent",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "PositionSnapshot",
    "MockExchange",
    "BulkMockExchange",
    "OffsetQuoteStrategy",
    "QuoteContext",
    "QuoteStrategy",
]
