"""Exchange error hierarchy and classification."""

from __future__ import annotations

from enum import Enum


class ExchangeError(Exception):
    """Base error raised by exchange adapters."""

    def __init__(self, message: str, *, code: int | str | None = None) -> None:
        super().__init__(message)
        self.code = code


class UnknownOrderError(ExchangeError):
    """Raised when the venue no longer knows the referenced order."""


class InsufficientBalanceError(ExchangeError):
    """Raised when the venue rejects an order for lack of margin."""


class RateLimitError(ExchangeError):
    """Raised when the venue throttles requests."""

    def __init__(
        self,
        message: str,
        *,
        code: int | str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.retry_after = retry_after


class ErrorKind(str, Enum):
    """Failure classes absorbed by the reconciliation loop."""

    UNKNOWN_ORDER = "unknown_order"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    RATE_LIMITED = "rate_limited"
    VENUE_ERROR = "venue_error"


_UNKNOWN_ORDER_MARKERS = ("-2011", "unknown order", "order does not exist", "order not found")
_RATE_LIMIT_MARKERS = ("429", "-1003", "too many requests", "rate limit", "too many orders")
_INSUFFICIENT_MARKERS = ("-2019", "insufficient", "margin is insufficient", "not enough balance")


def _message_of(exc: BaseException) -> str:
    parts = [str(exc)]
    code = getattr(exc, "code", None)
    if code is not None:
        parts.append(str(code))
    return " ".join(parts).lower()


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an adapter exception onto an ErrorKind.

    Typed exceptions are mapped directly. Untyped errors (adapters that only
    raise generic exceptions) are matched on their message and code.
    """
    if isinstance(exc, UnknownOrderError):
        return ErrorKind.UNKNOWN_ORDER
    if isinstance(exc, RateLimitError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, InsufficientBalanceError):
        return ErrorKind.INSUFFICIENT_BALANCE

    text = _message_of(exc)
    if any(marker in text for marker in _UNKNOWN_ORDER_MARKERS):
        return ErrorKind.UNKNOWN_ORDER
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMITED
    if any(marker in text for marker in _INSUFFICIENT_MARKERS):
        return ErrorKind.INSUFFICIENT_BALANCE
    return ErrorKind.VENUE_ERROR


def is_unknown_order_error(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.UNKNOWN_ORDER


def is_rate_limit_error(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.RATE_LIMITED


def is_insufficient_balance_error(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.INSUFFICIENT_BALANCE


def describe_error(exc: BaseException) -> str:
    """Short human-readable form for log lines."""
    message = str(exc) or exc.__class__.__name__
    code = getattr(exc, "code", None)
    if code is not None and str(code) not in message:
        return f"{message} (code={code})"
    return message
