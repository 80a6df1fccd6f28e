"""
Tests for locktrader/signal_lock.py: debounce, hysteresis and the
threshold boundary
"""

import pytest

from contracts.signal import Direction, Signal
from contracts.state import SignalLockState
from locktrader.signal_lock import SignalLock, advance_lock

BUY, SELL, NONE = Direction.BUY, Direction.SELL, Direction.NONE


def feed(lock: SignalLock, direction: Direction, start: float, end: float, step: float = 1.0):
    """Sample `direction` every `step` seconds from start to end inclusive"""
    changes = []
    t = start
    while t <= end + 1e-12:
        change = lock.update(Signal(direction=direction, sampled_at=t))
        if change is not None:
            changes.append(change)
        t += step
    return changes


class TestThresholdBoundary:
    def test_one_tick_short_never_confirms(self):
        lock = SignalLock(threshold_seconds=5.0)
        assert feed(lock, BUY, 0.0, 4.0) == []
        assert lock.locked_direction == NONE

    def test_confirms_on_the_tick_that_reaches_threshold(self):
        lock = SignalLock(threshold_seconds=5.0)
        feed(lock, BUY, 0.0, 4.0)
        change = lock.update(Signal(direction=BUY, sampled_at=5.0))
        assert change is not None
        assert change.previous == NONE
        assert change.current == BUY
        assert change.changed_at == 5.0

    def test_accumulated_tick_drift_still_confirms(self):
        """Fifty 100ms ticks sum to 5s give or take float error"""
        lock = SignalLock(threshold_seconds=5.0)
        t = 0.0
        changes = []
        for _ in range(51):
            change = lock.update(Signal(direction=BUY, sampled_at=t))
            if change:
                changes.append(change)
            t += 0.1
        assert len(changes) == 1
        assert lock.locked_direction == BUY

    def test_zero_threshold_confirms_immediately(self):
        lock = SignalLock(threshold_seconds=0.0)
        assert lock.update(Signal(direction=SELL, sampled_at=3.0)) is not None


class TestDebounce:
    def test_interruption_resets_progress(self):
        lock = SignalLock(threshold_seconds=5.0)
        feed(lock, BUY, 0.0, 4.0)
        lock.update(Signal(direction=SELL, sampled_at=4.5))
        assert feed(lock, BUY, 5.0, 9.0) == []
        assert lock.update(Signal(direction=BUY, sampled_at=10.0)) is not None

    def test_none_resets_pending_but_keeps_lock(self):
        lock = SignalLock(threshold_seconds=5.0)
        feed(lock, BUY, 0.0, 5.0)
        assert lock.locked_direction == BUY

        feed(lock, NONE, 6.0, 60.0)

        assert lock.locked_direction == BUY
        assert lock.state.pending_direction == NONE
        assert lock.state.pending_since is None

    def test_one_event_per_sustained_run(self):
        lock = SignalLock(threshold_seconds=5.0)
        changes = feed(lock, BUY, 0.0, 30.0)
        assert len(changes) == 1

    def test_same_direction_reconfirm_emits_nothing(self):
        """Buy, gap, Buy again: the lock is already Buy"""
        lock = SignalLock(threshold_seconds=5.0)
        feed(lock, BUY, 0.0, 5.0)
        feed(lock, NONE, 6.0, 7.0)
        assert feed(lock, BUY, 8.0, 20.0) == []
        assert lock.state.confirmed is True

    def test_opposite_direction_must_earn_confirmation(self):
        lock = SignalLock(threshold_seconds=5.0)
        feed(lock, BUY, 0.0, 5.0)
        assert feed(lock, SELL, 20.0, 24.0) == []
        assert lock.locked_direction == BUY

        changes = feed(lock, SELL, 25.0, 25.0)

        assert len(changes) == 1
        assert changes[0].previous == BUY
        assert changes[0].current == SELL


class TestPreConfirmed:
    def test_direction_change_locks_immediately(self):
        lock = SignalLock(threshold_seconds=30.0)
        change = lock.update(Signal(direction=BUY, sampled_at=1.0, pre_confirmed=True))
        assert change is not None
        assert change.pre_confirmed is True
        assert lock.locked_direction == BUY

    def test_event_fires_once_per_change(self):
        lock = SignalLock(threshold_seconds=30.0)
        changes = []
        for t in range(10):
            change = lock.update(Signal(direction=BUY, sampled_at=float(t), pre_confirmed=True))
            if change:
                changes.append(change)
        assert len(changes) == 1

    def test_return_to_locked_direction_emits_nothing(self):
        lock = SignalLock(threshold_seconds=30.0)
        lock.update(Signal(direction=BUY, sampled_at=0.0, pre_confirmed=True))
        lock.update(Signal(direction=NONE, sampled_at=1.0, pre_confirmed=True))
        assert lock.update(Signal(direction=BUY, sampled_at=2.0, pre_confirmed=True)) is None


class TestPureTransition:
    def test_advance_lock_does_not_mutate_input(self):
        state = SignalLockState()
        new_state, _ = advance_lock(state, BUY, 0.0, 5.0)
        assert state.pending_direction == NONE
        assert new_state.pending_direction == BUY
        assert new_state.pending_since == 0.0

    def test_reset_and_pending_elapsed(self):
        lock = SignalLock(threshold_seconds=5.0)
        lock.update(Signal(direction=BUY, sampled_at=10.0))
        assert lock.pending_elapsed(13.0) == pytest.approx(3.0)
        lock.reset()
        assert lock.state == SignalLockState()
        assert lock.pending_elapsed(13.0) == 0.0
