"""
Risk Guard - loss cap, trade-count cap, take-profit and minimum-profit checks

Evaluated every tick and before every order action. The loss and count
trips are monotonic: once set they stay set until reset() is called.
"""

import logging
import math

from pydantic import BaseModel, Field

from contracts.position import (
    CloseReason,
    Position,
    PositionSide,
    PositionState,
    Trade,
)
from contracts.state import RiskGuardState
from contracts.trading_config import TradingConfig
from locktrader.metrics import risk_guard_trips_total

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0


class RiskDecision(BaseModel):
    """What the guard wants done this tick"""

    close_reason: CloseReason | None = None
    block_open: bool = False
    block_reason: str | None = None
    tripped: list[str] = Field(default_factory=list)


def hours_in_position(position: Position, now: float) -> float:
    if position.entry_time is None:
        return 0.0
    return max(now - position.entry_time, 0.0) / SECONDS_PER_HOUR


def required_profit_percent(
    config: TradingConfig, position: Position, now: float
) -> float:
    """Minimum profit % plus funding accrued while holding"""
    funding = config.funding_cost_percent_per_hour * hours_in_position(position, now)
    return config.minimum_profit_percent + funding


def estimated_exit_cost(config: TradingConfig, position: Position, now: float) -> float:
    """Fees and funding estimated as a percentage of the entry notional"""
    if position.entry_price is None:
        return 0.0
    cost_percent = required_profit_percent(config, position, now)
    notional = position.entry_price * position.open_size * config.contract_size
    return notional * cost_percent / 100


def net_unrealized_pnl(
    config: TradingConfig, position: Position, price: float, now: float
) -> float:
    gross = position.unrealized_pnl(price, config.contract_size)
    return gross - estimated_exit_cost(config, position, now)


def minimum_acceptable_price(
    config: TradingConfig, position: Position, now: float
) -> float | None:
    """Worst exit price that still books the configured minimum profit.

    Longs round up and shorts round down on the price grid so the floor is
    never below the target.
    """
    if not config.minimum_profit_enabled:
        return None
    if position.side is None or position.entry_price is None:
        return None

    percent = required_profit_percent(config, position, now)
    increment = config.price_increment
    if position.side == PositionSide.LONG:
        raw = position.entry_price * (1 + percent / 100)
        return round(math.ceil(round(raw / increment, 9)) * increment, 10)
    raw = position.entry_price * (1 - percent / 100)
    return round(math.floor(round(raw / increment, 9)) * increment, 10)


def meets_minimum_profit(
    config: TradingConfig, position: Position, price: float, now: float
) -> bool:
    floor = minimum_acceptable_price(config, position, now)
    if floor is None or position.side is None:
        return True
    if position.side == PositionSide.LONG:
        return price >= floor
    return price <= floor


def evaluate_risk(
    state: RiskGuardState,
    config: TradingConfig,
    position: Position,
    price: float | None,
    now: float,
) -> tuple[RiskGuardState, RiskDecision]:
    """Pure guard evaluation over the state plus live unrealized pnl"""
    updates: dict = {}
    decision = RiskDecision()
    exposed = position.state in (PositionState.OPEN, PositionState.CLOSING)

    unrealized = 0.0
    if exposed and price is not None:
        unrealized = position.unrealized_pnl(price, config.contract_size)

    if not state.loss_tripped and state.cumulative_pnl + unrealized <= -state.max_loss_limit:
        updates["loss_tripped"] = True
        decision.tripped.append("max_loss")

    if (
        state.max_trade_limit is not None
        and not state.count_tripped
        and state.completed_trade_count >= state.max_trade_limit
    ):
        updates["count_tripped"] = True
        decision.tripped.append("max_trades")

    loss_tripped = updates.get("loss_tripped", state.loss_tripped)
    count_tripped = updates.get("count_tripped", state.count_tripped)

    if position.state == PositionState.OPEN:
        if loss_tripped:
            decision.close_reason = CloseReason.MAX_LOSS
        elif count_tripped:
            decision.close_reason = CloseReason.MAX_TRADES
        elif (
            config.take_profit_enabled
            and config.take_profit_threshold is not None
            and price is not None
            and net_unrealized_pnl(config, position, price, now)
            >= config.take_profit_threshold
        ):
            decision.close_reason = CloseReason.TAKE_PROFIT

    if loss_tripped:
        decision.block_open, decision.block_reason = True, "max loss"
    elif count_tripped:
        decision.block_open, decision.block_reason = True, "max trades"
    elif state.waiting_for_next_bar:
        decision.block_open, decision.block_reason = True, "waiting for next bar"

    new_state = state.model_copy(update=updates) if updates else state
    return new_state, decision


class RiskGuard:
    """Stateful wrapper around evaluate_risk"""

    def __init__(
        self,
        config: TradingConfig,
        state: RiskGuardState | None = None,
        symbol: str = "",
    ) -> None:
        self.config = config
        self.symbol = symbol
        self.state = state or RiskGuardState(
            max_loss_limit=config.max_loss_limit,
            max_trade_limit=(
                config.max_trade_count if config.max_trade_count_enabled else None
            ),
        )

    def evaluate(self, position: Position, price: float | None, now: float) -> RiskDecision:
        self.state, decision = evaluate_risk(
            self.state, self.config, position, price, now
        )
        for guard in decision.tripped:
            risk_guard_trips_total.labels(symbol=self.symbol, guard=guard).inc()
            logger.error(
                f"[{self.symbol}] 🛑 RISK GUARD TRIPPED: {guard} "
                f"(cumulative pnl {self.state.cumulative_pnl:.2f}, "
                f"trades {self.state.completed_trade_count})"
            )
        return decision

    def can_open(self) -> tuple[bool, str | None]:
        if self.state.loss_tripped:
            return False, "max loss"
        if self.state.count_tripped:
            return False, "max trades"
        if self.state.waiting_for_next_bar:
            return False, "waiting for next bar"
        return True, None

    @property
    def tripped(self) -> bool:
        return self.state.loss_tripped or self.state.count_tripped

    def record_trade(self, trade: Trade) -> None:
        self.state = self.state.model_copy(
            update={
                "cumulative_pnl": self.state.cumulative_pnl + trade.pnl,
                "completed_trade_count": self.state.completed_trade_count + 1,
            }
        )

    def record_realized_pnl(self, pnl: float) -> None:
        """Partial close that did not complete a trade"""
        self.state = self.state.model_copy(
            update={"cumulative_pnl": self.state.cumulative_pnl + pnl}
        )

    def note_take_profit(self) -> None:
        if self.config.take_profit_wait_next_bar:
            self.state = self.state.model_copy(update={"waiting_for_next_bar": True})
            logger.info(f"[{self.symbol}] Waiting for next bar before re-entry")

    def on_new_bar(self) -> None:
        if self.state.waiting_for_next_bar:
            logger.info(f"[{self.symbol}] New bar - clearing take-profit wait guard")
            self.state = self.state.model_copy(update={"waiting_for_next_bar": False})

    def reset(self) -> None:
        """Explicit operator reset: clears trips and starts a new pnl baseline"""
        logger.warning(f"[{self.symbol}] Risk guard reset by operator")
        self.state = self.state.model_copy(
            update={
                "cumulative_pnl": 0.0,
                "loss_tripped": False,
                "completed_trade_count": 0,
                "count_tripped": False,
                "waiting_for_next_bar": False,
            }
        )
