from datetime import datetime

from pydantic import BaseModel, Field

from contracts.position import Position
from contracts.signal import Direction


class SignalLockState(BaseModel):
    """Debounce state; only SignalLock mutates it"""

    locked_direction: Direction = Direction.NONE
    pending_direction: Direction = Direction.NONE
    pending_since: float | None = None
    confirmed: bool = False


class RiskGuardState(BaseModel):
    """Guard counters; the tripped flags only clear through an explicit reset"""

    cumulative_pnl: float = 0.0
    max_loss_limit: float = Field(..., gt=0)
    loss_tripped: bool = False
    completed_trade_count: int = 0
    max_trade_limit: int | None = None
    count_tripped: bool = False
    waiting_for_next_bar: bool = False


class EngineSnapshot(BaseModel):
    """Minimal state needed to resume after a restart"""

    symbol: str
    is_running: bool = False
    position: Position = Field(default_factory=Position)
    lock_state: SignalLockState = Field(default_factory=SignalLockState)
    risk_guard_state: RiskGuardState
    session_start_time: float | None = None
    saved_at: datetime = Field(default_factory=datetime.utcnow)
