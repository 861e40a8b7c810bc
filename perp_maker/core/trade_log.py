"""Trade log sink shared by the execution components."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from loguru import logger

from perp_maker.core.constants import DEFAULT_MAX_LOG_ENTRIES
from perp_maker.core.events import EventBus, EventTopic


class LogCategory(str, Enum):
    """Categories accepted by the log handler."""

    INFO = "info"
    ORDER = "order"
    STOP = "stop"
    WARN = "warn"
    ERROR = "error"


_LEVELS = {
    LogCategory.INFO: "INFO",
    LogCategory.ORDER: "INFO",
    LogCategory.STOP: "INFO",
    LogCategory.WARN: "WARNING",
    LogCategory.ERROR: "ERROR",
}


class LogHandler(Protocol):
    """Callable sink receiving (category, message) pairs."""

    def __call__(self, category: LogCategory, message: str) -> None: ...


@dataclass(frozen=True, slots=True)
class LogEntry:
    """Single trade log record."""

    timestamp: datetime
    category: LogCategory
    message: str


class TradeLog:
    """Bounded in-memory log mirrored to loguru and optional listeners."""

    def __init__(
        self,
        *,
        symbol: str | None = None,
        max_entries: int = DEFAULT_MAX_LOG_ENTRIES,
        event_bus: EventBus | None = None,
    ) -> None:
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._symbol = symbol
        self._event_bus = event_bus
        self._listeners: list[Callable[[LogEntry], None]] = []

    def __call__(self, category: LogCategory | str, message: str) -> None:
        self.push(category, message)

    def push(self, category: LogCategory | str, message: str) -> LogEntry:
        category = LogCategory(category)
        entry = LogEntry(timestamp=datetime.now(tz=UTC), category=category, message=message)
        self._entries.append(entry)
        logger.bind(category=category.value, symbol=self._symbol).log(
            _LEVELS[category], "[{}] {}", category.value, message
        )
        if self._event_bus is not None:
            self._event_bus.publish_nowait(EventTopic.LOG, entry)
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as exc:  # pragma: no cover - defensive
                logger.warning("Trade log listener failed: {}", exc)
        return entry

    def add_listener(self, listener: Callable[[LogEntry], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[LogEntry], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def entries(self) -> tuple[LogEntry, ...]:
        return tuple(self._entries)

    def messages(self, category: LogCategory | str | None = None) -> list[str]:
        """Messages in arrival order, optionally filtered by category."""
        if category is None:
            return [entry.message for entry in self._entries]
        wanted = LogCategory(category)
        return [entry.message for entry in self._entries if entry.category is wanted]

    def __len__(self) -> int:
        return len(self._entries)
