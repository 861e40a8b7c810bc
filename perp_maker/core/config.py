"""Configuration management for the perp maker engine."""

from __future__ import annotations

from decimal import Decimal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from perp_maker.core.constants import (
    DEFAULT_INSUFFICIENT_BALANCE_COOLDOWN_MS,
    DEFAULT_LOCK_TIMEOUT_MS,
    DEFAULT_MAX_LOG_ENTRIES,
    DEFAULT_RATE_LIMIT_BACKOFF_MS,
    DEFAULT_RATE_LIMIT_MAX_BACKOFF_MS,
    DEFAULT_REFRESH_INTERVAL_MS,
)


class EngineConfig(BaseSettings):
    """Engine configuration.

    Uses Pydantic v2 settings with environment variable support
    (``PERP_MAKER_`` prefix, optional ``.env`` file).
    """

    model_config = SettingsConfigDict(
        env_prefix="PERP_MAKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Instrument
    symbol: str = Field(default="BTCUSDT", description="Traded symbol")
    price_tick: Decimal = Field(default=Decimal("0.1"), description="Minimum price increment")
    qty_step: Decimal = Field(default=Decimal("0.001"), description="Minimum quantity increment")

    # Sizing and risk
    trade_amount: Decimal = Field(default=Decimal("0.001"), description="Quantity per quote")
    loss_limit: Decimal = Field(
        default=Decimal("10"), description="Maximum loss in quote currency for the full position"
    )
    max_close_slippage_pct: Decimal | None = Field(
        default=Decimal("0.05"),
        description="Maximum deviation from mark price for any submission (fraction, None disables)",
    )
    price_tolerance: Decimal | None = Field(
        default=None,
        description="Absolute tolerance when matching resting orders (defaults to half a tick)",
    )

    # Quoting
    bid_offset: Decimal = Field(default=Decimal("0"), description="Offset below top bid")
    ask_offset: Decimal = Field(default=Decimal("0"), description="Offset above top ask")
    attach_dual_stops: bool = Field(
        default=False, description="Attach protective legs when placing dual entries"
    )

    # Timing
    refresh_interval_ms: int = Field(default=DEFAULT_REFRESH_INTERVAL_MS, gt=0)
    lock_timeout_ms: int = Field(default=DEFAULT_LOCK_TIMEOUT_MS, gt=0)
    insufficient_balance_cooldown_ms: int = Field(
        default=DEFAULT_INSUFFICIENT_BALANCE_COOLDOWN_MS, ge=0
    )
    rate_limit_backoff_ms: int = Field(default=DEFAULT_RATE_LIMIT_BACKOFF_MS, gt=0)
    rate_limit_max_backoff_ms: int = Field(default=DEFAULT_RATE_LIMIT_MAX_BACKOFF_MS, gt=0)

    max_log_entries: int = Field(default=DEFAULT_MAX_LOG_ENTRIES, gt=0)

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Ensure symbol is uppercase and non-empty."""
        if not v or not v.strip():
            raise ValueError("Symbol cannot be empty")
        return v.upper().strip()

    @field_validator("price_tick", "qty_step", "trade_amount", "loss_limit")
    @classmethod
    def validate_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("max_close_slippage_pct")
    @classmethod
    def validate_slippage(cls, v: Decimal | None) -> Decimal | None:
        """Slippage band is a fraction in (0, 1)."""
        if v is None:
            return v
        if not (Decimal("0") < v < Decimal("1")):
            raise ValueError("max_close_slippage_pct must be between 0 and 1 (exclusive)")
        return v

    @field_validator("price_tolerance")
    @classmethod
    def validate_tolerance(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v < 0:
            raise ValueError("price_tolerance cannot be negative")
        return v

    @property
    def effective_price_tolerance(self) -> Decimal:
        if self.price_tolerance is not None:
            return self.price_tolerance
        return self.price_tick / 2


def load_config(**overrides: object) -> EngineConfig:
    """Load configuration from environment and .env file."""
    return EngineConfig(**overrides)
