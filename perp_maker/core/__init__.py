"""Core infrastructure modules for Perp Maker."""

from .config import EngineConfig, load_config
from .constants import (
    DEFAULT_INSUFFICIENT_BALANCE_COOLDOWN_MS,
    DEFAULT_LOCK_TIMEOUT_MS,
    DEFAULT_MAX_LOG_ENTRIES,
    DEFAULT_RATE_LIMIT_BACKOFF_MS,
    DEFAULT_RATE_LIMIT_MAX_BACKOFF_MS,
    DEFAULT_REFRESH_INTERVAL_MS,
    ENTRY_PRICE_EPS,
    EPS,
)
from .errors import (
    ErrorKind,
    ExchangeError,
    InsufficientBalanceError,
    RateLimitError,
    UnknownOrderError,
    classify_error,
    describe_error,
    is_insufficient_balance_error,
    is_rate_limit_error,
    is_unknown_order_error,
)
from .events import EventBus, EventSubscription, EventTopic
from .trade_log import LogCategory, LogEntry, LogHandler, TradeLog

__all__ = [
    "EngineConfig",
    "load_config",
    "EPS",
    "ENTRY_PRICE_EPS",
    "DEFAULT_LOCK_TIMEOUT_MS",
    "DEFAULT_REFRESH_INTERVAL_MS",
    "DEFAULT_INSUFFICIENT_BALANCE_COOLDOWN_MS",
    "DEFAULT_RATE_LIMIT_BACKOFF_MS",
    "DEFAULT_RATE_LIMIT_MAX_BACKOFF_MS",
    "DEFAULT_MAX_LOG_ENTRIES",
    "ErrorKind",
    "ExchangeError",
    "UnknownOrderError",
    "InsufficientBalanceError",
    "RateLimitError",
    "classify_error",
    "describe_error",
    "is_unknown_order_error",
    "is_rate_limit_error",
    "is_insufficient_balance_error",
    "EventBus",
    "EventTopic",
    "EventSubscription",
    "LogCategory",
    "LogEntry",
    "LogHandler",
    "TradeLog",
]
