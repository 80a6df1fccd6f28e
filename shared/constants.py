"""
LockTrader - Centralized Constants and Configuration

This module provides a centralized location for constants, tunable defaults
and environment variables used throughout the execution core.

All modules should import constants from this file rather than defining their own.
"""

import os
from typing import Any

# =============================================================================
# APPLICATION CONSTANTS
# =============================================================================

APP_NAME = "LockTrader"
APP_VERSION = "0.1.0"
APP_DESCRIPTION = "Signal-locked limit order execution core"

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
DEFAULT_SYMBOL = os.getenv("SYMBOL", "BIP-20DEC30-CDE")


# =============================================================================
# LOOP TIMING
# =============================================================================

# Outer tick: sampler -> lock -> position manager -> risk guard
TICK_INTERVAL_SECONDS = float(os.getenv("TICK_INTERVAL_SECONDS", "0.1"))

# Inner poll loop while an order attempt is outstanding
ORDER_POLL_INTERVAL_SECONDS = float(os.getenv("ORDER_POLL_INTERVAL_SECONDS", "0.5"))

# Pause between two attempts of the same action
ORDER_RETRY_DELAY_SECONDS = float(os.getenv("ORDER_RETRY_DELAY_SECONDS", "0.5"))

# Status re-reads after a cancel lost the race against a fill
CANCEL_CONFIRM_RETRIES = int(os.getenv("CANCEL_CONFIRM_RETRIES", "10"))
CANCEL_CONFIRM_INTERVAL_SECONDS = float(
    os.getenv("CANCEL_CONFIRM_INTERVAL_SECONDS", "0.2")
)


# =============================================================================
# TRADING DEFAULTS
# =============================================================================

DEFAULT_CONFIRMATION_THRESHOLD_SECONDS = float(
    os.getenv("DEFAULT_CONFIRMATION_THRESHOLD_SECONDS", "5.0")
)
DEFAULT_CONTRACTS_PER_TRADE = float(os.getenv("DEFAULT_CONTRACTS_PER_TRADE", "1"))
DEFAULT_PER_ATTEMPT_TIMEOUT_SECONDS = float(
    os.getenv("DEFAULT_PER_ATTEMPT_TIMEOUT_SECONDS", "10")
)
DEFAULT_PRICE_INCREMENT = float(os.getenv("DEFAULT_PRICE_INCREMENT", "0.01"))
DEFAULT_MAX_LOSS_LIMIT = float(os.getenv("DEFAULT_MAX_LOSS_LIMIT", "100"))
DEFAULT_MAX_OPEN_ATTEMPTS = int(os.getenv("DEFAULT_MAX_OPEN_ATTEMPTS", "20"))
DEFAULT_MINIMUM_PROFIT_PERCENT = float(
    os.getenv("DEFAULT_MINIMUM_PROFIT_PERCENT", "0.10")
)
DEFAULT_FUNDING_COST_PERCENT_PER_HOUR = float(
    os.getenv("DEFAULT_FUNDING_COST_PERCENT_PER_HOUR", "0.02")
)


# =============================================================================
# SIMULATION
# =============================================================================

SIMULATION_START_PRICE = float(os.getenv("SIMULATION_START_PRICE", "100000.0"))
SIMULATION_VOLATILITY = float(os.getenv("SIMULATION_VOLATILITY", "0.0005"))
SIMULATION_FILL_RATIO = float(os.getenv("SIMULATION_FILL_RATIO", "1.0"))


# =============================================================================
# ERROR CODES AND MESSAGES
# =============================================================================

# Exchange rejections that abort the whole action
ERROR_INSUFFICIENT_FUND = "INSUFFICIENT_FUND"
ERROR_MARGIN_INSUFFICIENT = "MARGIN_INSUFFICIENT"
ERROR_INVALID_PRODUCT = "INVALID_PRODUCT"
ERROR_INVALID_ORDER_CONFIG = "INVALID_ORDER_CONFIG"

FATAL_ORDER_REASONS = frozenset(
    {
        ERROR_INSUFFICIENT_FUND,
        ERROR_MARGIN_INSUFFICIENT,
        ERROR_INVALID_PRODUCT,
        ERROR_INVALID_ORDER_CONFIG,
    }
)

# Cancel failure meaning the order filled before the cancel arrived
ERROR_ORDER_ALREADY_FILLED = "ORDER_IS_FULLY_FILLED"

# Order still working after every cancel attempt; no new order may be placed
ERROR_ORDER_UNRESOLVED = "ORDER_UNRESOLVED"

# Action-level outcomes
ERROR_SIGNAL_CHANGED = "signal changed"
ERROR_ATTEMPTS_EXHAUSTED = "attempts exhausted"


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def get_config_summary() -> dict[str, Any]:
    """Get a summary of the tunable defaults for debugging/logging"""
    return {
        "app": {
            "name": APP_NAME,
            "version": APP_VERSION,
            "environment": ENVIRONMENT,
        },
        "timing": {
            "tick_interval_seconds": TICK_INTERVAL_SECONDS,
            "order_poll_interval_seconds": ORDER_POLL_INTERVAL_SECONDS,
            "order_retry_delay_seconds": ORDER_RETRY_DELAY_SECONDS,
        },
        "defaults": {
            "confirmation_threshold_seconds": DEFAULT_CONFIRMATION_THRESHOLD_SECONDS,
            "per_attempt_timeout_seconds": DEFAULT_PER_ATTEMPT_TIMEOUT_SECONDS,
            "max_loss_limit": DEFAULT_MAX_LOSS_LIMIT,
            "max_open_attempts": DEFAULT_MAX_OPEN_ATTEMPTS,
        },
    }
