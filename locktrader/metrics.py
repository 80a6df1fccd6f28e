"""
Execution Core Metrics - Prometheus metrics for signal locks, orders and positions

All metrics follow the same naming pattern: locktrader_<subject>_<unit>.
Labels are kept low-cardinality (symbol, side, reason, outcome).
"""

from prometheus_client import Counter, Gauge, Histogram

# Signal Metrics
lock_changes_total = Counter(
    "locktrader_lock_changes_total",
    "Total signal lock changes",
    ["symbol", "direction"],
)

# Position Lifecycle Metrics
positions_opened_total = Counter(
    "locktrader_positions_opened_total",
    "Total positions opened",
    ["symbol", "position_side", "fill"],
)

positions_closed_total = Counter(
    "locktrader_positions_closed_total",
    "Total positions closed",
    ["symbol", "position_side", "close_reason"],
)

position_pnl = Histogram(
    "locktrader_position_pnl",
    "Realized pnl per closed position",
    ["symbol", "position_side"],
    buckets=[-1000, -500, -100, -50, -10, 0, 10, 50, 100, 500, 1000, 5000],
)

position_duration_seconds = Histogram(
    "locktrader_position_duration_seconds",
    "Position duration in seconds",
    ["symbol", "position_side", "close_reason"],
    buckets=[60, 300, 900, 1800, 3600, 7200, 14400, 28800, 86400],  # 1m to 1day
)

open_position_size = Gauge(
    "locktrader_open_position_size",
    "Size of the currently open position (0 when flat)",
    ["symbol"],
)

# Order Execution Metrics
order_attempts_total = Counter(
    "locktrader_order_attempts_total",
    "Limit order attempts by outcome",
    ["symbol", "action", "outcome"],
)

order_actions_total = Counter(
    "locktrader_order_actions_total",
    "Completed open/close actions by result",
    ["symbol", "action", "result"],
)

order_action_duration_seconds = Histogram(
    "locktrader_order_action_duration_seconds",
    "Wall time spent filling one open/close action",
    ["symbol", "action"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600],
)

fatal_order_failures_total = Counter(
    "locktrader_fatal_order_failures_total",
    "Fatal exchange rejections that aborted an action",
    ["symbol", "action", "reason"],
)

# Risk Guard Metrics
risk_guard_trips_total = Counter(
    "locktrader_risk_guard_trips_total",
    "Risk guard trips",
    ["symbol", "guard"],
)

state_desyncs_total = Counter(
    "locktrader_state_desyncs_total",
    "Local position disagreed with the exchange on restart",
    ["symbol"],
)
