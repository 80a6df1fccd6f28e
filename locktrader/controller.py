"""
Trading Controller - wires the execution core together and runs the tick loop

Each tick samples the votes, advances the signal lock, evaluates the risk
guards and hands any resulting open/close to the PositionManager. Order
actions run as their own task so the tick keeps running (and keeps
tracking the lock) while an order is being worked.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from contracts.position import CloseReason, PositionState
from contracts.signal import Direction, LockChange
from contracts.trading_config import TradingConfig
from locktrader.exceptions import InvalidTransitionError
from locktrader.exchange.base import ExchangeBoundary
from locktrader.metrics import lock_changes_total
from locktrader.order_executor import OrderExecutor
from locktrader.position_manager import PositionManager
from locktrader.recovery import ReconcileAction, ReconcileResult, StateRecovery
from locktrader.risk_guard import RiskGuard
from locktrader.signal_lock import SignalLock
from locktrader.signal_sampler import SignalSampler, VoteBoard
from locktrader.state_store import StateStore
from locktrader.trade_log import TradeLog

logger = logging.getLogger(__name__)


class TradingController:
    """One independent execution core for one instrument"""

    def __init__(
        self,
        symbol: str,
        config: TradingConfig,
        exchange: ExchangeBoundary,
        store: StateStore,
        votes: VoteBoard | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.symbol = symbol
        self.config = config
        self.exchange = exchange
        self.store = store
        self.votes = votes or VoteBoard()
        self.clock = clock
        self.sleep = sleep

        self.sampler = SignalSampler(config.signal_source, self.votes)
        self.signal_lock = SignalLock(config.confirmation_threshold_seconds, symbol=symbol)
        self.risk_guard = RiskGuard(config, symbol=symbol)
        self.trade_log = TradeLog()
        self.executor = OrderExecutor(
            exchange,
            symbol,
            config.price_increment,
            poll_interval=config.poll_interval_seconds,
            retry_delay=config.retry_delay_seconds,
            clock=monotonic,
            sleep=sleep,
        )
        self.manager = PositionManager(
            symbol,
            config,
            self.executor,
            self.risk_guard,
            self.trade_log,
            clock=clock,
            on_change=self.save_state,
        )
        self.recovery = StateRecovery(
            symbol,
            store,
            exchange,
            self.manager,
            self.signal_lock,
            self.risk_guard,
            self.trade_log,
            clock=clock,
        )

        self.is_running = False
        self.last_reconcile: ReconcileResult | None = None
        self._loop_task: asyncio.Task | None = None
        self._action_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, auto_resume: bool = True) -> None:
        """Connect, restore the snapshot and reconcile before resuming.

        An interrupted close is resumed even when auto_resume is off and the
        tick loop stays stopped.
        """
        await self.exchange.initialize()
        await self.store.connect()

        snapshot = await self.recovery.restore()
        if snapshot is None:
            return

        self.manager.update_price(await self._read_price())
        self.last_reconcile = await self.recovery.reconcile()
        logger.info(
            f"[{self.symbol}] Reconciliation: {self.last_reconcile.action.value}"
        )
        await self.save_state()

        if snapshot.is_running and auto_resume:
            await self.start()
        if self.last_reconcile.action == ReconcileAction.RESUME_CLOSE:
            reason = self.last_reconcile.resume_close_reason or CloseReason.STOPPED_MANUALLY
            self._spawn(self.manager.close(reason))

    async def shutdown(self) -> None:
        """Stop the loop, let an in-flight order action finish, release resources"""
        running = self.is_running
        await self._cancel_loop()
        await self.wait_idle()
        await self.recovery.save(running)
        await self.exchange.close()
        await self.store.disconnect()
        logger.info(f"[{self.symbol}] Controller shut down")

    async def start(self) -> None:
        if self.is_running:
            return
        self.is_running = True
        if self.trade_log.session_start_time is None:
            self.trade_log.session_start_time = self.clock()
        logger.info(f"[{self.symbol}] ▶️ Trading started")
        await self.save_state()
        self._loop_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop ticking and forget lock tracking; the position is kept"""
        if not self.is_running:
            return
        await self._cancel_loop()
        self.signal_lock.reset()
        self.manager.locked_direction = Direction.NONE
        logger.info(f"[{self.symbol}] ⏹️ Trading stopped")
        await self.save_state()

    async def clear(self) -> None:
        """Stop, then reset guards and session statistics"""
        await self.stop()
        self.risk_guard.reset()
        self.trade_log.clear()
        self.manager.alerts.clear()
        await self.store.clear()
        await self.save_state()

    async def _cancel_loop(self) -> None:
        self.is_running = False
        task, self._loop_task = self._loop_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while self.is_running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"[{self.symbol}] Tick failed: {e}", exc_info=True)
            await self.sleep(self.config.tick_interval_seconds)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self.manager.busy or (
            self._action_task is not None and not self._action_task.done()
        )

    async def _read_price(self) -> float | None:
        try:
            return await self.exchange.get_price(self.symbol)
        except Exception as e:
            logger.warning(f"[{self.symbol}] Price unavailable: {e}")
            return None

    async def tick(self, now: float | None = None) -> LockChange | None:
        now = self.clock() if now is None else now
        self.manager.update_price(await self._read_price())

        change = self.signal_lock.update(self.sampler.sample(now))
        if change is not None:
            lock_changes_total.labels(
                symbol=self.symbol, direction=change.current.value
            ).inc()
            self.manager.note_lock(change)

        decision = self.manager.check_risk(now)

        if not self.busy:
            if decision.close_reason is not None:
                self._spawn(self.manager.close(decision.close_reason))
            elif change is not None:
                self._spawn(self.manager.follow_lock())

        if change is not None or decision.tripped:
            await self.save_state()
        return change

    def _spawn(self, action: Coroutine[Any, Any, Any]) -> bool:
        if self.busy:
            action.close()
            return False
        self._action_task = asyncio.create_task(self._run_action(action))
        return True

    async def _run_action(self, action: Coroutine[Any, Any, Any]) -> None:
        try:
            await action
            if self.manager.lock_change_pending:
                await self.manager.follow_lock()
        except Exception as e:
            logger.error(f"[{self.symbol}] Order action failed: {e}", exc_info=True)
            self.manager.alerts.append(f"Order action failed: {e}")

    async def wait_idle(self) -> None:
        """Wait for the in-flight order action, if any"""
        while self._action_task is not None and not self._action_task.done():
            await asyncio.wait({self._action_task})

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    async def close_position(self) -> bool:
        """Manual close; returns False when there is nothing to close"""
        state = self.manager.position.state
        if state == PositionState.FLAT or self.manager.closing:
            return False
        if state != PositionState.OPEN:
            raise InvalidTransitionError(state, PositionState.CLOSING)
        return self._spawn(self.manager.close(CloseReason.STOPPED_MANUALLY))

    async def on_new_bar(self) -> None:
        self.risk_guard.on_new_bar()
        await self.save_state()

    async def reset_risk_guard(self) -> None:
        self.risk_guard.reset()
        await self.save_state()

    async def save_state(self) -> None:
        await self.recovery.save(self.is_running)

    def status(self) -> dict[str, Any]:
        position = self.manager.position
        price = self.manager.last_price
        lock_state = self.signal_lock.state
        return {
            "symbol": self.symbol,
            "is_running": self.is_running,
            "busy": self.busy,
            "position": position.model_dump(mode="json"),
            "unrealized_pnl": (
                position.unrealized_pnl(price, self.config.contract_size) if price else 0.0
            ),
            "last_price": price,
            "lock": {
                "locked_direction": lock_state.locked_direction.value,
                "pending_direction": lock_state.pending_direction.value,
                "pending_elapsed": self.signal_lock.pending_elapsed(self.clock()),
                "confirmed": lock_state.confirmed,
            },
            "risk_guard": self.risk_guard.state.model_dump(mode="json"),
            "votes": {
                name: vote.direction.value for name, vote in self.votes.snapshot().items()
            },
            "summary": self.trade_log.summary().model_dump(mode="json"),
            "alerts": list(self.manager.alerts),
        }

    def export_trades(self) -> dict[str, Any]:
        return self.trade_log.export(
            self.symbol, self.config.model_dump(mode="json")
        )
