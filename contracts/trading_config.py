"""
Trading Configuration Model.

This module defines the named options that control signal confirmation,
order execution and risk guards for one instrument. One TradingConfig
drives one independent instance of the execution core.
"""

from enum import Enum

from pydantic import BaseModel, Field, model_validator

from contracts.position import PositionSide
from contracts.signal import SignalSourceConfig
from shared.constants import (
    DEFAULT_CONFIRMATION_THRESHOLD_SECONDS,
    DEFAULT_CONTRACTS_PER_TRADE,
    DEFAULT_FUNDING_COST_PERCENT_PER_HOUR,
    DEFAULT_MAX_LOSS_LIMIT,
    DEFAULT_MAX_OPEN_ATTEMPTS,
    DEFAULT_MINIMUM_PROFIT_PERCENT,
    DEFAULT_PER_ATTEMPT_TIMEOUT_SECONDS,
    DEFAULT_PRICE_INCREMENT,
    ORDER_POLL_INTERVAL_SECONDS,
    ORDER_RETRY_DELAY_SECONDS,
    TICK_INTERVAL_SECONDS,
)


class AllowedTradeSides(str, Enum):
    """Restriction on which sides may be opened"""

    LONG = "long"
    SHORT = "short"
    BOTH = "both"

    def allows(self, side: PositionSide) -> bool:
        if self is AllowedTradeSides.BOTH:
            return True
        return self.value == side.value


class TradingConfig(BaseModel):
    """
    Trading configuration model.

    Covers the whole configuration surface of the execution core:
    signal aggregation and debounce, order sizing and timeouts, and the
    loss cap, trade-count cap, take-profit and minimum-profit guards.
    """

    # Signal
    signal_source: SignalSourceConfig = Field(
        default_factory=SignalSourceConfig, description="Vote aggregation rule"
    )
    confirmation_threshold_seconds: float = Field(
        DEFAULT_CONFIRMATION_THRESHOLD_SECONDS,
        ge=0,
        description="How long a direction must persist before it locks",
    )
    allowed_trade_sides: AllowedTradeSides = Field(
        AllowedTradeSides.BOTH, description="long, short or both"
    )

    # Execution
    contracts_per_trade: float = Field(
        DEFAULT_CONTRACTS_PER_TRADE, gt=0, description="Size requested per open"
    )
    contract_size: float = Field(
        1.0, gt=0, description="Underlying units per contract, used for pnl"
    )
    per_attempt_timeout_seconds: float = Field(
        DEFAULT_PER_ATTEMPT_TIMEOUT_SECONDS,
        gt=0,
        description="How long one limit order may rest before it is cancelled",
    )
    price_increment: float = Field(
        DEFAULT_PRICE_INCREMENT, gt=0, description="Exchange price tick grid"
    )
    poll_interval_seconds: float = Field(ORDER_POLL_INTERVAL_SECONDS, gt=0)
    retry_delay_seconds: float = Field(ORDER_RETRY_DELAY_SECONDS, ge=0)
    tick_interval_seconds: float = Field(TICK_INTERVAL_SECONDS, gt=0)
    max_open_attempts: int | None = Field(
        DEFAULT_MAX_OPEN_ATTEMPTS,
        ge=1,
        description="Attempt cap for opens (None retries until the signal reverses)",
    )

    # Max loss guard
    max_loss_limit: float = Field(
        DEFAULT_MAX_LOSS_LIMIT, gt=0, description="Cumulative loss cap"
    )

    # Max trade count guard
    max_trade_count_enabled: bool = False
    max_trade_count: int = Field(1, ge=1)

    # Take profit guard
    take_profit_enabled: bool = False
    take_profit_threshold: float | None = Field(
        None, gt=0, description="Net unrealized profit that triggers a close"
    )
    take_profit_wait_next_bar: bool = Field(
        False, description="Block re-entry after take profit until the next bar"
    )

    # Minimum profit on close
    minimum_profit_enabled: bool = False
    minimum_profit_percent: float = Field(
        DEFAULT_MINIMUM_PROFIT_PERCENT,
        ge=0,
        description="Required profit %, also used as the estimated fee cost",
    )
    funding_cost_percent_per_hour: float = Field(
        DEFAULT_FUNDING_COST_PERCENT_PER_HOUR, ge=0
    )

    @model_validator(mode="after")
    def validate_take_profit(self) -> "TradingConfig":
        if self.take_profit_enabled and self.take_profit_threshold is None:
            raise ValueError("take_profit_threshold is required when take profit is enabled")
        return self
