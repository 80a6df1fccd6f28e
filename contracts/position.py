from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from contracts.order import OrderSide
from contracts.signal import Direction


class PositionState(str, Enum):
    """Position lifecycle states (linear, no skipping)"""

    FLAT = "flat"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"


class PositionSide(str, Enum):
    """Directional exposure"""

    LONG = "long"
    SHORT = "short"

    @classmethod
    def from_direction(cls, direction: Direction) -> "PositionSide | None":
        if direction == Direction.BUY:
            return cls.LONG
        if direction == Direction.SELL:
            return cls.SHORT
        return None

    @property
    def direction(self) -> Direction:
        return Direction.BUY if self is PositionSide.LONG else Direction.SELL

    @property
    def open_order_side(self) -> OrderSide:
        return OrderSide.BUY if self is PositionSide.LONG else OrderSide.SELL

    @property
    def close_order_side(self) -> OrderSide:
        return OrderSide.SELL if self is PositionSide.LONG else OrderSide.BUY

    @property
    def sign(self) -> int:
        return 1 if self is PositionSide.LONG else -1


class CloseReason(str, Enum):
    """Human readable close reasons recorded on trades"""

    SIGNAL_REVERSED = "signal reversed"
    TAKE_PROFIT = "take profit"
    MAX_LOSS = "max loss"
    MAX_TRADES = "max trades"
    STOPPED_MANUALLY = "stopped manually"
    CLOSED_EXTERNALLY = "closed externally"

    @property
    def guard_triggered(self) -> bool:
        """Closes forced by risk guards are never held back by profit protection"""
        return self in (CloseReason.MAX_LOSS, CloseReason.MAX_TRADES)


class Position(BaseModel):
    """The single position the engine manages for one instrument"""

    state: PositionState = PositionState.FLAT
    side: PositionSide | None = None
    # Side requested by the in-flight open; side itself is only set once Open
    pending_side: PositionSide | None = None
    entry_price: float | None = None
    entry_time: float | None = None
    open_size: float = 0.0
    # Set while Closing so an interrupted close resumes with the same reason
    close_reason: CloseReason | None = None

    @property
    def is_flat(self) -> bool:
        return self.state == PositionState.FLAT

    def unrealized_pnl(self, price: float, contract_size: float = 1.0) -> float:
        if self.side is None or self.entry_price is None or not self.open_size:
            return 0.0
        return (
            (price - self.entry_price) * self.side.sign * self.open_size * contract_size
        )


class Trade(BaseModel):
    """Closed round trip; immutable once created"""

    model_config = ConfigDict(frozen=True)

    side: PositionSide
    size: float
    entry_price: float
    exit_price: float
    pnl: float
    entry_time: float
    exit_time: float
    close_reason: CloseReason
    order_ids: tuple[str, ...] = Field(default_factory=tuple)

    @property
    def duration_seconds(self) -> float:
        return max(self.exit_time - self.entry_time, 0.0)

    @property
    def pnl_percent(self) -> float:
        if not self.entry_price:
            return 0.0
        return (self.exit_price - self.entry_price) * self.side.sign / self.entry_price * 100
