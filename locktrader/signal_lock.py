"""
Signal Lock - debounce and hysteresis for the sampled direction

A candidate direction must be sampled without interruption for the
confirmation threshold before it takes the lock. The lock is never released
by a missing signal; only the opposite direction earning its own
confirmation replaces it. Pre-confirmed sources skip the local wait.
"""

import logging

from contracts.signal import Direction, LockChange, Signal
from contracts.state import SignalLockState

logger = logging.getLogger(__name__)

# Absorbs float drift from summing tick intervals
_THRESHOLD_TOLERANCE = 1e-9


def advance_lock(
    state: SignalLockState,
    direction: Direction,
    now: float,
    threshold: float,
    pre_confirmed: bool = False,
) -> tuple[SignalLockState, LockChange | None]:
    """Pure lock transition for one sample.

    Returns the next state and a LockChange when the lock moved.
    """
    if direction == Direction.NONE:
        # Signal loss resets pending progress but keeps the lock
        if state.pending_direction == Direction.NONE and state.pending_since is None:
            return state, None
        return (
            state.model_copy(
                update={
                    "pending_direction": Direction.NONE,
                    "pending_since": None,
                    "confirmed": False,
                }
            ),
            None,
        )

    if direction != state.pending_direction:
        state = state.model_copy(
            update={
                "pending_direction": direction,
                "pending_since": now,
                "confirmed": False,
            }
        )
        if pre_confirmed and state.locked_direction != direction:
            change = LockChange(
                previous=state.locked_direction,
                current=direction,
                changed_at=now,
                pre_confirmed=True,
            )
            return (
                state.model_copy(
                    update={"locked_direction": direction, "confirmed": True}
                ),
                change,
            )

    if state.confirmed or state.pending_since is None:
        return state, None

    if now - state.pending_since + _THRESHOLD_TOLERANCE < threshold:
        return state, None

    if state.locked_direction == direction:
        # Threshold met again for the direction we already hold
        return state.model_copy(update={"confirmed": True}), None

    change = LockChange(
        previous=state.locked_direction, current=direction, changed_at=now
    )
    return (
        state.model_copy(update={"locked_direction": direction, "confirmed": True}),
        change,
    )


class SignalLock:
    """Owns the SignalLockState and applies advance_lock each tick"""

    def __init__(
        self,
        threshold_seconds: float,
        state: SignalLockState | None = None,
        symbol: str = "",
    ) -> None:
        self.threshold_seconds = threshold_seconds
        self.state = state or SignalLockState()
        self.symbol = symbol

    @property
    def locked_direction(self) -> Direction:
        return self.state.locked_direction

    def update(self, signal: Signal) -> LockChange | None:
        self.state, change = advance_lock(
            self.state,
            signal.direction,
            signal.sampled_at,
            self.threshold_seconds,
            pre_confirmed=signal.pre_confirmed,
        )
        if change is not None:
            how = "pre-confirmed" if change.pre_confirmed else "threshold met"
            logger.info(
                f"[{self.symbol}] Signal lock {change.previous.value} -> "
                f"{change.current.value} ({how})"
            )
        return change

    def pending_elapsed(self, now: float) -> float:
        if self.state.pending_since is None:
            return 0.0
        return max(now - self.state.pending_since, 0.0)

    def reset(self) -> None:
        """Forget pending progress and the lock (used on stop)"""
        self.state = SignalLockState()
