"""Venue throttling state and cycle gating."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from perp_maker.core.constants import (
    DEFAULT_RATE_LIMIT_BACKOFF_MS,
    DEFAULT_RATE_LIMIT_MAX_BACKOFF_MS,
)
from perp_maker.core.trade_log import LogCategory, LogHandler


class RateLimitDecision(str, Enum):
    """What a reconciliation cycle may do."""

    PROCEED = "proceed"
    PAUSED = "paused"
    SKIP = "skip"


class RateLimitMode(str, Enum):
    NORMAL = "normal"
    PAUSED = "paused"
    BACKING_OFF = "backing_off"


@dataclass(slots=True)
class RateLimitState:
    """Mutable throttling state, owned by RateLimitController."""

    paused_until_ms: float | None = None
    consecutive_failures: int = 0


class RateLimitController:
    """Track venue throttling and decide whether a cycle may act.

    After a rate-limit response the controller pauses for an exponentially
    growing interval. Once the pause ends it stays in a backing-off mode, in
    which cycles are throttled to one per ``max(backoff_ms, base_interval_ms)``
    and new entries are blocked, until a cycle completes without being
    throttled again.
    """

    def __init__(
        self,
        base_interval_ms: int,
        log: LogHandler,
        *,
        backoff_ms: int = DEFAULT_RATE_LIMIT_BACKOFF_MS,
        max_backoff_ms: int = DEFAULT_RATE_LIMIT_MAX_BACKOFF_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._log = log
        self._backoff_ms = backoff_ms
        self._max_backoff_ms = max(max_backoff_ms, backoff_ms)
        self._throttle_ms = max(backoff_ms, base_interval_ms)
        self._clock = clock
        self._state = RateLimitState()
        self._last_proceed_ms: float | None = None
        self._last_decision: RateLimitDecision | None = None

    @property
    def state(self) -> RateLimitState:
        return RateLimitState(
            paused_until_ms=self._state.paused_until_ms,
            consecutive_failures=self._state.consecutive_failures,
        )

    @property
    def mode(self) -> RateLimitMode:
        if self.is_paused():
            return RateLimitMode.PAUSED
        if self._state.consecutive_failures > 0:
            return RateLimitMode.BACKING_OFF
        return RateLimitMode.NORMAL

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def is_paused(self) -> bool:
        until = self._state.paused_until_ms
        return until is not None and self._now_ms() < until

    def backoff_ms(self, failures: int | None = None) -> int:
        """Pause length for the given failure streak."""
        streak = self._state.consecutive_failures if failures is None else failures
        return min(self._backoff_ms * (2**streak), self._max_backoff_ms)

    def before_cycle(self) -> RateLimitDecision:
        now = self._now_ms()
        until = self._state.paused_until_ms
        if until is not None and now < until:
            decision = RateLimitDecision.PAUSED
        elif (
            self._state.consecutive_failures > 0
            and self._last_proceed_ms is not None
            and now - self._last_proceed_ms < self._throttle_ms
        ):
            decision = RateLimitDecision.SKIP
        else:
            if until is not None:
                self._state.paused_until_ms = None
            self._last_proceed_ms = now
            decision = RateLimitDecision.PROCEED
        self._last_decision = decision
        return decision

    def register_rate_limit(self, context: str, retry_after: float | None = None) -> None:
        """Record a throttling response and pause further actions."""
        delay = self.backoff_ms()
        if retry_after is not None and retry_after * 1000 > delay:
            delay = min(int(retry_after * 1000), self._max_backoff_ms)
        self._state.paused_until_ms = self._now_ms() + delay
        self._state.consecutive_failures += 1
        self._log(
            LogCategory.WARN,
            f"Rate limited during {context}; pausing {delay / 1000:.1f}s "
            f"(failures={self._state.consecutive_failures})",
        )

    def on_cycle_complete(self, had_rate_limit: bool) -> None:
        """Reset the failure streak after a clean, acting cycle."""
        if had_rate_limit or self._last_decision is not RateLimitDecision.PROCEED:
            return
        if self._state.consecutive_failures > 0:
            self._log(LogCategory.INFO, "Rate limit cleared, resuming normal operation")
        self._state.consecutive_failures = 0
        self._state.paused_until_ms = None

    def should_block_entries(self) -> bool:
        """True while paused or backing off; protective actions are never blocked."""
        return self.is_paused() or self._state.consecutive_failures > 0
