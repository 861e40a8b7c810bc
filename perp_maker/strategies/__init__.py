"""Quoting strategies feeding the reconciliation loop."""

from .base import QuoteContext, QuoteStrategy
from .offset import OffsetQuoteStrategy

__all__ = [
    "OffsetQuoteStrategy",
    "QuoteContext",
    "QuoteStrategy",
]
