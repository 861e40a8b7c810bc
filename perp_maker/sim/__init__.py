"""Simulation adapters."""

from .mock_exchange import BulkMockExchange, MockExchange

__all__ = ["BulkMockExchange", "MockExchange"]
