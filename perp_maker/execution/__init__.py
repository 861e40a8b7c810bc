"""Execution layer modules (order planning, coordination, protection, throttling)."""

from .adapter import ExchangeAdapter, supports_bulk_orders, supports_trailing_stops
from .coordinator import OrderCoordinator
from .dual_placer import BulkPlacer, SequentialPlacer, build_dual_params, select_dual_placer
from .locks import LockState, OrderLockRegistry, order_class_key
from .order_plan import OrderPlan, plan_orders
from .rate_limit import RateLimitController, RateLimitDecision, RateLimitMode
from .stop_guard import ProtectionState, StopLossGuard

__all__ = [
    "ExchangeAdapter",
    "supports_bulk_orders",
    "supports_trailing_stops",
    "OrderCoordinator",
    "BulkPlacer",
    "SequentialPlacer",
    "build_dual_params",
    "select_dual_placer",
    "LockState",
    "OrderLockRegistry",
    "order_class_key",
    "OrderPlan",
    "plan_orders",
    "RateLimitController",
    "RateLimitDecision",
    "RateLimitMode",
    "ProtectionState",
    "StopLossGuard",
]
