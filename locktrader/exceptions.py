"""
Exception hierarchy for the execution core.

Retryable order failures never surface as exceptions; they are folded into
OrderExecutor's retry loop. These types cover misuse and infrastructure faults.
"""

from contracts.position import PositionState


class LockTraderError(Exception):
    """Base class for execution core errors"""


class ExchangeUnavailableError(LockTraderError):
    """Exchange boundary used before initialize() or after close()"""


class StateStoreError(LockTraderError):
    """Persisted snapshot could not be read or written"""


class InvalidTransitionError(LockTraderError):
    """Position state machine asked to skip or reverse a state"""

    def __init__(self, current: PositionState, requested: PositionState) -> None:
        super().__init__(
            f"Invalid position transition {current.value} -> {requested.value}"
        )
        self.current = current
        self.requested = requested
