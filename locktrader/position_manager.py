"""
Position Manager - the Flat -> Opening -> Open -> Closing -> Flat lifecycle

Owns the single Position of one instrument, drives OrderExecutor for opens
and closes, applies RiskGuard decisions and emits Trade records.

Only one order action runs at a time. Lock changes that arrive while an
action is in flight are remembered and followed once the action finishes.
A second close trigger while a close is in flight is a no-op.
"""

import logging
import time
from collections.abc import Awaitable, Callable

from contracts.order import ExecutionResult, OrderAction
from contracts.position import CloseReason, Position, PositionSide, PositionState, Trade
from contracts.signal import Direction, LockChange
from contracts.trading_config import TradingConfig
from locktrader.exceptions import InvalidTransitionError
from locktrader.metrics import (
    open_position_size,
    position_duration_seconds,
    position_pnl,
    positions_closed_total,
    positions_opened_total,
)
from locktrader.order_executor import OrderExecutor
from locktrader.risk_guard import RiskDecision, RiskGuard, minimum_acceptable_price
from locktrader.trade_log import TradeLog
from shared.constants import ERROR_SIGNAL_CHANGED

logger = logging.getLogger(__name__)

ChangeHook = Callable[[], Awaitable[None]]


class PositionManager:
    """Position state machine for one instrument"""

    def __init__(
        self,
        symbol: str,
        config: TradingConfig,
        executor: OrderExecutor,
        risk_guard: RiskGuard,
        trade_log: TradeLog,
        clock: Callable[[], float] = time.time,
        on_change: ChangeHook | None = None,
        position: Position | None = None,
    ) -> None:
        self.symbol = symbol
        self.config = config
        self.executor = executor
        self.risk_guard = risk_guard
        self.trade_log = trade_log
        self.clock = clock
        self.on_change = on_change
        self.position = position or Position()

        self.locked_direction = Direction.NONE
        self.last_price: float | None = None
        self.alerts: list[str] = []

        self._in_flight = False
        self._closing = False
        self._close_reason: CloseReason | None = None
        self._lock_changed_during_action = False

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._in_flight

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def lock_change_pending(self) -> bool:
        return self._lock_changed_during_action

    def update_price(self, price: float | None) -> None:
        if price is not None and price > 0:
            self.last_price = price

    def note_lock(self, change: LockChange) -> None:
        """Record a lock change; the open abort predicate reads it immediately"""
        self.locked_direction = change.current
        if self._in_flight:
            self._lock_changed_during_action = True
            logger.info(
                f"[{self.symbol}] Lock -> {change.current.value} while "
                f"{self.position.state.value}, will re-evaluate after the action"
            )

    async def on_lock_change(self, change: LockChange) -> None:
        self.note_lock(change)
        if not self._in_flight:
            await self.follow_lock()

    def check_risk(self, now: float) -> RiskDecision:
        """Evaluate the guards against the latest price.

        The returned close_reason is only set when the position is Open; the
        caller decides when to act on it.
        """
        decision = self.risk_guard.evaluate(self.position, self.last_price, now)
        if (
            self._closing
            and self.risk_guard.state.loss_tripped
            and self._close_reason == CloseReason.SIGNAL_REVERSED
        ):
            # A floored reversal close becomes an unconditional max-loss close
            logger.warning(f"[{self.symbol}] Max loss during close - dropping profit floor")
            self._close_reason = CloseReason.MAX_LOSS
            self.position = self.position.model_copy(
                update={"close_reason": CloseReason.MAX_LOSS}
            )
        return decision

    async def on_tick(self, price: float | None, now: float) -> RiskDecision:
        """Price update, guard evaluation and any forced close, inline"""
        self.update_price(price)
        decision = self.check_risk(now)
        if decision.close_reason is not None and not self._in_flight:
            await self.close(decision.close_reason)
        return decision

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def may_open(self, side: PositionSide) -> tuple[bool, str | None]:
        if not self.config.allowed_trade_sides.allows(side):
            return False, f"{side.value} trades not allowed"
        return self.risk_guard.can_open()

    async def follow_lock(self) -> None:
        """Bring the position in line with the locked direction.

        Loops so that a flip (close then open the new side) and lock changes
        seen during an action are handled before returning.
        """
        while not self._in_flight:
            self._lock_changed_during_action = False
            side = PositionSide.from_direction(self.locked_direction)
            if side is None:
                return

            if self.position.state == PositionState.FLAT:
                allowed, reason = self.may_open(side)
                if not allowed:
                    logger.info(f"[{self.symbol}] Not opening {side.value}: {reason}")
                    return
                result = await self.open(side)
                if self.position.is_flat and result.error != ERROR_SIGNAL_CHANGED:
                    return
            elif self.position.state == PositionState.OPEN and self.position.side != side:
                trade = await self.close(CloseReason.SIGNAL_REVERSED)
                if trade is None:
                    return
            else:
                return

    async def open(self, side: PositionSide) -> ExecutionResult:
        if self.position.state != PositionState.FLAT:
            raise InvalidTransitionError(self.position.state, PositionState.OPENING)
        if self._in_flight:
            raise InvalidTransitionError(self.position.state, PositionState.OPENING)

        size = self.config.contracts_per_trade
        logger.info(f"[{self.symbol}] OPENING {side.value.upper()} {size} contracts")
        self.position = Position(state=PositionState.OPENING, pending_side=side)
        self._in_flight = True
        await self._changed()

        try:
            result = await self.executor.execute(
                OrderAction.OPEN,
                side.open_order_side,
                size,
                lambda: self.last_price,
                self.config.per_attempt_timeout_seconds,
                abort=lambda: self.locked_direction != side.direction,
                max_attempts=self.config.max_open_attempts,
            )
        except Exception:
            # Nothing is known about fills; keep Opening visible for reconciliation
            self._in_flight = False
            logger.exception(f"[{self.symbol}] Open action crashed")
            raise

        if result.filled_size > 0:
            self.position = Position(
                state=PositionState.OPEN,
                side=side,
                entry_price=result.avg_fill_price,
                entry_time=self.clock(),
                open_size=result.filled_size,
            )
            fill = "full" if result.success else "partial"
            positions_opened_total.labels(
                symbol=self.symbol, position_side=side.value, fill=fill
            ).inc()
            open_position_size.labels(symbol=self.symbol).set(result.filled_size)
            logger.info(
                f"[{self.symbol}] ✅ OPEN {side.value.upper()} {result.filled_size} "
                f"@ {result.avg_fill_price:.4f} ({fill} fill)"
            )
        else:
            self.position = Position()
            logger.info(
                f"[{self.symbol}] Open {side.value} ended with nothing filled "
                f"({result.error or 'no fill'})"
            )

        if result.fatal:
            self._alert(
                f"Open {side.value} failed: {result.error} "
                f"({result.filled_size}/{size} filled)"
            )

        self._in_flight = False
        await self._changed()
        return result

    def _close_reference_price(self) -> float | None:
        """Market price, held at the minimum-profit floor for reversal closes"""
        price = self.last_price
        reason = self._close_reason
        if reason is None or reason.guard_triggered or self.risk_guard.state.loss_tripped:
            return price
        if reason != CloseReason.SIGNAL_REVERSED:
            return price

        floor = minimum_acceptable_price(self.config, self.position, self.clock())
        if floor is None:
            return price
        if price is None:
            return floor
        if self.position.side == PositionSide.LONG:
            return max(price, floor)
        return min(price, floor)

    async def close(self, reason: CloseReason) -> Trade | None:
        """Close the open position; a no-op when Flat or already closing"""
        state = self.position.state
        if state == PositionState.FLAT:
            logger.debug(f"[{self.symbol}] Close requested while flat - ignoring")
            return None
        if self._closing:
            logger.info(
                f"[{self.symbol}] Close ({reason.value}) ignored, close already in flight"
            )
            return None
        if state != PositionState.OPEN or self._in_flight:
            raise InvalidTransitionError(state, PositionState.CLOSING)

        position = self.position
        assert position.side is not None and position.entry_price is not None
        self._closing = True
        self._in_flight = True
        self._close_reason = reason
        self.position = position.model_copy(
            update={"state": PositionState.CLOSING, "close_reason": reason}
        )
        logger.info(
            f"[{self.symbol}] CLOSING {position.side.value.upper()} "
            f"{position.open_size} ({reason.value})"
        )
        if reason == CloseReason.TAKE_PROFIT:
            self.risk_guard.note_take_profit()
        await self._changed()

        try:
            result = await self.executor.execute(
                OrderAction.CLOSE,
                position.side.close_order_side,
                position.open_size,
                self._close_reference_price,
                self.config.per_attempt_timeout_seconds,
            )
        except Exception:
            self._closing = False
            self._in_flight = False
            logger.exception(f"[{self.symbol}] Close action crashed")
            raise

        trade: Trade | None = None
        if result.success:
            trade = self._book_trade(position, result, self._close_reason or reason)
            self.position = Position()
        else:
            self._after_failed_close(position, result)

        self._closing = False
        self._in_flight = False
        self._close_reason = None
        await self._changed()
        return trade

    def _book_trade(
        self, position: Position, result: ExecutionResult, reason: CloseReason
    ) -> Trade:
        assert position.side is not None and position.entry_price is not None
        exit_price = result.avg_fill_price or position.entry_price
        pnl = (
            (exit_price - position.entry_price)
            * position.side.sign
            * position.open_size
            * self.config.contract_size
        )
        trade = Trade(
            side=position.side,
            size=position.open_size,
            entry_price=position.entry_price,
            exit_price=exit_price,
            pnl=pnl,
            entry_time=position.entry_time or self.clock(),
            exit_time=self.clock(),
            close_reason=reason,
            order_ids=tuple(result.order_ids),
        )
        self._record(trade)
        logger.info(
            f"[{self.symbol}] ✅ CLOSED {trade.side.value.upper()} {trade.size} "
            f"{trade.entry_price:.4f} -> {trade.exit_price:.4f} pnl {trade.pnl:+.2f} "
            f"({reason.value})"
        )
        return trade

    def _after_failed_close(self, position: Position, result: ExecutionResult) -> None:
        """Fatal close: keep whatever is still open and surface it"""
        remaining = position.open_size - result.filled_size
        if result.filled_size > 0 and result.avg_fill_price is not None:
            assert position.side is not None and position.entry_price is not None
            realized = (
                (result.avg_fill_price - position.entry_price)
                * position.side.sign
                * result.filled_size
                * self.config.contract_size
            )
            self.risk_guard.record_realized_pnl(realized)
        self.position = position.model_copy(
            update={"state": PositionState.OPEN, "open_size": remaining, "close_reason": None}
        )
        open_position_size.labels(symbol=self.symbol).set(remaining)
        self._alert(
            f"Close {position.side.value if position.side else ''} failed: "
            f"{result.error} ({result.filled_size}/{position.open_size} closed, "
            f"{remaining} still open)"
        )

    def _record(self, trade: Trade) -> None:
        self.risk_guard.record_trade(trade)
        self.trade_log.append(trade)
        side = trade.side.value
        positions_closed_total.labels(
            symbol=self.symbol, position_side=side, close_reason=trade.close_reason.value
        ).inc()
        position_pnl.labels(symbol=self.symbol, position_side=side).observe(trade.pnl)
        position_duration_seconds.labels(
            symbol=self.symbol, position_side=side, close_reason=trade.close_reason.value
        ).observe(trade.duration_seconds)
        open_position_size.labels(symbol=self.symbol).set(0)

    # ------------------------------------------------------------------
    # Reconciliation hooks
    # ------------------------------------------------------------------

    def force_flat_external(self, exit_price: float | None) -> Trade | None:
        """Exchange reports no matching position: emit a synthetic trade and go Flat"""
        position = self.position
        trade: Trade | None = None
        if position.side is not None and position.entry_price is not None:
            exit_px = exit_price or position.entry_price
            trade = Trade(
                side=position.side,
                size=position.open_size,
                entry_price=position.entry_price,
                exit_price=exit_px,
                pnl=(exit_px - position.entry_price)
                * position.side.sign
                * position.open_size
                * self.config.contract_size,
                entry_time=position.entry_time or self.clock(),
                exit_time=self.clock(),
                close_reason=CloseReason.CLOSED_EXTERNALLY,
            )
            self._record(trade)
        self.position = Position()
        self._closing = False
        self._close_reason = None
        logger.warning(f"[{self.symbol}] ⚠️ Position closed externally - forced Flat")
        return trade

    def _alert(self, message: str) -> None:
        logger.error(f"[{self.symbol}] 🚨 {message}")
        self.alerts.append(message)

    async def _changed(self) -> None:
        if self.on_change is not None:
            await self.on_change()
