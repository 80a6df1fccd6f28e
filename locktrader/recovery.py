"""
State Recovery - snapshot, restore and reconcile against the exchange

The exchange is the source of truth. On restore the believed Position is
compared with get_open_position() and force-corrected before the tick loop
resumes, so a restart never opens a duplicate position.
"""

import logging
import time
from collections.abc import Callable
from enum import Enum

from pydantic import BaseModel

from contracts.position import CloseReason, Position, PositionState, Trade
from contracts.state import EngineSnapshot
from locktrader.exchange.base import ExchangeBoundary, ExchangePosition
from locktrader.metrics import state_desyncs_total
from locktrader.position_manager import PositionManager
from locktrader.risk_guard import RiskGuard
from locktrader.signal_lock import SignalLock
from locktrader.state_store import StateStore, save_quietly
from locktrader.trade_log import TradeLog

logger = logging.getLogger(__name__)

# Size difference tolerated before correcting the local size
SIZE_MATCH_TOLERANCE = 1e-9


class ReconcileAction(str, Enum):
    IN_SYNC = "in_sync"
    CLOSED_EXTERNALLY = "closed_externally"
    SIZE_CORRECTED = "size_corrected"
    ADOPTED_OPEN = "adopted_open"
    OPEN_ABANDONED = "open_abandoned"
    RESUME_CLOSE = "resume_close"
    UNTRACKED_EXCHANGE_POSITION = "untracked_exchange_position"


class ReconcileResult(BaseModel):
    action: ReconcileAction
    exchange_position: ExchangePosition | None = None
    trade: Trade | None = None
    resume_close_reason: CloseReason | None = None


class StateRecovery:
    """Persists the engine snapshot and rebuilds the core from it"""

    def __init__(
        self,
        symbol: str,
        store: StateStore,
        exchange: ExchangeBoundary,
        manager: PositionManager,
        signal_lock: SignalLock,
        risk_guard: RiskGuard,
        trade_log: TradeLog,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.symbol = symbol
        self.store = store
        self.exchange = exchange
        self.manager = manager
        self.signal_lock = signal_lock
        self.risk_guard = risk_guard
        self.trade_log = trade_log
        self.clock = clock

    def snapshot(self, is_running: bool) -> EngineSnapshot:
        return EngineSnapshot(
            symbol=self.symbol,
            is_running=is_running,
            position=self.manager.position,
            lock_state=self.signal_lock.state,
            risk_guard_state=self.risk_guard.state,
            session_start_time=self.trade_log.session_start_time,
        )

    async def save(self, is_running: bool) -> bool:
        for trade in self.trade_log.drain_unpersisted():
            try:
                await self.store.append_trade(trade)
            except Exception as e:
                logger.error(f"[{self.symbol}] Failed to persist trade: {e}")
        return await save_quietly(self.store, self.snapshot(is_running))

    async def restore(self) -> EngineSnapshot | None:
        """Load the snapshot into the core; reconciliation is a separate step"""
        snapshot = await self.store.load()
        if snapshot is None:
            logger.info(f"[{self.symbol}] No saved state, starting fresh")
            return None
        if snapshot.symbol != self.symbol:
            logger.warning(
                f"[{self.symbol}] Ignoring saved state for {snapshot.symbol}"
            )
            return None

        self.signal_lock.state = snapshot.lock_state
        self.manager.locked_direction = snapshot.lock_state.locked_direction
        self.risk_guard.state = snapshot.risk_guard_state.model_copy(
            update={
                "max_loss_limit": self.risk_guard.config.max_loss_limit,
                "max_trade_limit": self.risk_guard.state.max_trade_limit,
            }
        )
        self.manager.position = snapshot.position
        self.trade_log.session_start_time = snapshot.session_start_time
        for trade in await self.store.load_trades():
            self.trade_log.append(trade)
        self.trade_log.drain_unpersisted()

        logger.info(
            f"[{self.symbol}] Restored state: position={snapshot.position.state.value}, "
            f"lock={snapshot.lock_state.locked_direction.value}, "
            f"running={snapshot.is_running}, trades={len(self.trade_log)}"
        )
        return snapshot

    async def _current_price(self) -> float | None:
        try:
            return await self.exchange.get_price(self.symbol)
        except Exception as e:
            logger.warning(f"[{self.symbol}] Could not read price for reconciliation: {e}")
            return None

    async def reconcile(self) -> ReconcileResult:
        """Force the local Position to agree with the exchange"""
        exchange_position = await self.exchange.get_open_position(self.symbol)
        local = self.manager.position

        if local.state == PositionState.FLAT:
            if exchange_position is not None:
                logger.warning(
                    f"[{self.symbol}] ⚠️ Exchange reports {exchange_position.side.value} "
                    f"{exchange_position.size} but local state is flat - not adopting"
                )
                return ReconcileResult(
                    action=ReconcileAction.UNTRACKED_EXCHANGE_POSITION,
                    exchange_position=exchange_position,
                )
            return ReconcileResult(action=ReconcileAction.IN_SYNC)

        if local.state == PositionState.OPENING:
            return await self._resolve_opening(exchange_position)

        expected_side = local.side
        if exchange_position is None or exchange_position.side != expected_side:
            state_desyncs_total.labels(symbol=self.symbol).inc()
            if local.state == PositionState.CLOSING and exchange_position is None:
                logger.info(f"[{self.symbol}] Close completed while offline")
            else:
                remote = (
                    f"{exchange_position.side.value} {exchange_position.size}"
                    if exchange_position
                    else "flat"
                )
                logger.warning(
                    f"[{self.symbol}] ⚠️ STATE DESYNC: local {local.state.value} "
                    f"{expected_side.value if expected_side else '-'} {local.open_size}, "
                    f"exchange {remote}"
                )
            trade = self.manager.force_flat_external(await self._current_price())
            return ReconcileResult(
                action=ReconcileAction.CLOSED_EXTERNALLY,
                exchange_position=exchange_position,
                trade=trade,
            )

        size_differs = abs(exchange_position.size - local.open_size) > SIZE_MATCH_TOLERANCE
        if size_differs:
            state_desyncs_total.labels(symbol=self.symbol).inc()
            logger.warning(
                f"[{self.symbol}] ⚠️ Size mismatch: local {local.open_size}, exchange "
                f"{exchange_position.size} - using exchange size"
            )
            self.manager.position = local.model_copy(
                update={"open_size": exchange_position.size}
            )

        if local.state == PositionState.CLOSING:
            reason = local.close_reason or CloseReason.STOPPED_MANUALLY
            self.manager.position = self.manager.position.model_copy(
                update={"state": PositionState.OPEN, "close_reason": None}
            )
            logger.info(f"[{self.symbol}] Resuming interrupted close ({reason.value})")
            return ReconcileResult(
                action=ReconcileAction.RESUME_CLOSE,
                exchange_position=exchange_position,
                resume_close_reason=reason,
            )

        if size_differs:
            return ReconcileResult(
                action=ReconcileAction.SIZE_CORRECTED, exchange_position=exchange_position
            )
        return ReconcileResult(
            action=ReconcileAction.IN_SYNC, exchange_position=exchange_position
        )

    async def _resolve_opening(
        self, exchange_position: ExchangePosition | None
    ) -> ReconcileResult:
        pending_side = self.manager.position.pending_side
        if exchange_position is None or (
            pending_side is not None and exchange_position.side != pending_side
        ):
            logger.warning(
                f"[{self.symbol}] Open was interrupted with no matching exchange "
                f"position - returning to flat"
            )
            self.manager.position = Position()
            return ReconcileResult(
                action=ReconcileAction.OPEN_ABANDONED, exchange_position=exchange_position
            )

        self.manager.position = Position(
            state=PositionState.OPEN,
            side=exchange_position.side,
            entry_price=exchange_position.entry_price or await self._current_price(),
            entry_time=self.clock(),
            open_size=exchange_position.size,
        )
        logger.info(
            f"[{self.symbol}] Adopted interrupted open: {exchange_position.side.value} "
            f"{exchange_position.size} @ {exchange_position.entry_price}"
        )
        return ReconcileResult(
            action=ReconcileAction.ADOPTED_OPEN, exchange_position=exchange_position
        )
