"""
Tests for locktrader/controller.py: the tick pipeline, action scheduling
and operator commands
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from contracts.order import OrderSide, OrderStatus
from contracts.position import CloseReason, PositionSide, PositionState
from contracts.signal import Direction, SignalRule, SignalSourceConfig
from contracts.trading_config import TradingConfig
from locktrader.controller import TradingController
from locktrader.exceptions import InvalidTransitionError
from locktrader.state_store import MemoryStateStore
from tests.integration.fakes import FakeClock, FakeExchange

SYMBOL = "TEST-PERP"
VOTE = "live_drift"


async def tick_for(controller: TradingController, clock: FakeClock, seconds: float, step=0.5):
    """Tick every `step` seconds, letting each spawned action finish"""
    changes = []
    end = clock.now + seconds
    while clock.now <= end:
        change = await controller.tick()
        if change is not None:
            changes.append(change)
        await controller.wait_idle()
        clock.advance(step)
    return changes


async def let_action_run(rounds: int = 3) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def external_controller(
    trading_config: TradingConfig,
    exchange: FakeExchange,
    memory_store: MemoryStateStore,
    clock: FakeClock,
) -> TradingController:
    config = trading_config.model_copy(
        update={"signal_source": SignalSourceConfig(rule=SignalRule.EXTERNAL, votes=["lv"])}
    )
    return TradingController(
        SYMBOL, config, exchange, memory_store, clock=clock, monotonic=clock, sleep=clock.sleep
    )


async def open_long(controller: TradingController, clock: FakeClock) -> None:
    controller.votes.publish(VOTE, Direction.BUY)
    await tick_for(controller, clock, 5.0)
    assert controller.manager.position.state == PositionState.OPEN


class TestTick:
    @pytest.mark.asyncio
    async def test_sustained_vote_locks_and_opens(
        self, controller: TradingController, clock: FakeClock
    ):
        controller.votes.publish(VOTE, Direction.BUY)

        changes = await tick_for(controller, clock, 8.0)

        assert len(changes) == 1
        assert changes[0].current == Direction.BUY
        position = controller.manager.position
        assert position.state == PositionState.OPEN
        assert position.side == PositionSide.LONG
        assert position.open_size == 3

    @pytest.mark.asyncio
    async def test_short_vote_does_not_lock(self, controller: TradingController, clock: FakeClock):
        controller.votes.publish(VOTE, Direction.BUY)
        assert await tick_for(controller, clock, 4.0) == []
        assert controller.manager.position.is_flat

    @pytest.mark.asyncio
    async def test_lock_change_is_saved(
        self, controller: TradingController, clock: FakeClock, memory_store: MemoryStateStore
    ):
        await open_long(controller, clock)
        assert memory_store.snapshot is not None
        assert memory_store.snapshot.lock_state.locked_direction == Direction.BUY
        assert memory_store.snapshot.position.state == PositionState.OPEN

    @pytest.mark.asyncio
    async def test_missing_price_does_not_break_the_tick(
        self, controller: TradingController, exchange: FakeExchange
    ):
        with patch.object(exchange, "get_price", AsyncMock(side_effect=ConnectionError("down"))):
            assert await controller.tick() is None
        assert controller.manager.last_price is None

    @pytest.mark.asyncio
    async def test_queued_action_follows_latest_lock(
        self, external_controller: TradingController, exchange: FakeExchange
    ):
        external_controller.votes.publish("lv", Direction.BUY)
        await external_controller.tick()
        assert external_controller.busy is True

        external_controller.votes.publish("lv", Direction.SELL)
        await external_controller.tick()
        await external_controller.wait_idle()

        assert [o["side"] for o in exchange.placed] == [OrderSide.SELL]
        assert external_controller.manager.position.side == PositionSide.SHORT

    @pytest.mark.asyncio
    async def test_lock_change_mid_open_aborts_and_reverses(
        self, external_controller: TradingController, exchange: FakeExchange
    ):
        exchange.script((OrderStatus.OPEN, 0.0, None))
        external_controller.votes.publish("lv", Direction.BUY)
        await external_controller.tick()
        await let_action_run()
        assert len(exchange.placed) == 1
        assert external_controller.manager.busy is True

        external_controller.votes.publish("lv", Direction.SELL)
        await external_controller.tick()
        await external_controller.wait_idle()

        assert [o["side"] for o in exchange.placed] == [OrderSide.BUY, OrderSide.SELL]
        assert external_controller.manager.position.side == PositionSide.SHORT
        assert external_controller.trade_log.trades == []

    @pytest.mark.asyncio
    async def test_max_loss_forces_close_and_blocks_opens(
        self, controller: TradingController, clock: FakeClock, exchange: FakeExchange
    ):
        await open_long(controller, clock)
        exchange.price = 66.0

        await controller.tick()
        await controller.wait_idle()

        trades = controller.trade_log.trades
        assert len(trades) == 1
        assert trades[0].close_reason == CloseReason.MAX_LOSS
        assert controller.risk_guard.state.loss_tripped is True

        exchange.price = 100.0
        controller.votes.publish(VOTE, Direction.SELL)
        await tick_for(controller, clock, 12.0)
        controller.votes.publish(VOTE, Direction.BUY)
        await tick_for(controller, clock, 12.0)

        assert controller.manager.position.is_flat
        assert len(controller.trade_log) == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_without_snapshot(
        self, controller: TradingController, exchange: FakeExchange
    ):
        await controller.initialize()
        assert exchange.initialized is True
        assert controller.is_running is False
        assert controller.last_reconcile is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, controller: TradingController, clock: FakeClock):
        await open_long(controller, clock)

        await controller.start()
        assert controller.is_running is True
        assert controller.trade_log.session_start_time == clock.now
        await controller.stop()

        assert controller.is_running is False
        assert controller.signal_lock.locked_direction == Direction.NONE
        assert controller.manager.locked_direction == Direction.NONE
        assert controller.manager.position.state == PositionState.OPEN

    @pytest.mark.asyncio
    async def test_clear_resets_guards_and_history(
        self, controller: TradingController, clock: FakeClock, memory_store: MemoryStateStore
    ):
        await open_long(controller, clock)
        await controller.close_position()
        await controller.wait_idle()
        assert memory_store.trades

        await controller.clear()

        assert len(controller.trade_log) == 0
        assert controller.risk_guard.state.completed_trade_count == 0
        assert memory_store.trades == []
        assert memory_store.snapshot is not None

    @pytest.mark.asyncio
    async def test_shutdown_closes_exchange(
        self, controller: TradingController, exchange: FakeExchange
    ):
        await controller.initialize()
        await controller.shutdown()
        assert exchange.initialized is False


class TestOperatorCommands:
    @pytest.mark.asyncio
    async def test_close_when_flat(self, controller: TradingController):
        assert await controller.close_position() is False

    @pytest.mark.asyncio
    async def test_manual_close(self, controller: TradingController, clock: FakeClock):
        await open_long(controller, clock)

        assert await controller.close_position() is True
        await controller.wait_idle()

        trades = controller.trade_log.trades
        assert trades[0].close_reason == CloseReason.STOPPED_MANUALLY
        assert controller.manager.position.is_flat

    @pytest.mark.asyncio
    async def test_manual_close_while_opening_is_rejected(self, controller: TradingController):
        controller.manager.position = controller.manager.position.model_copy(
            update={"state": PositionState.OPENING, "pending_side": PositionSide.LONG}
        )
        with pytest.raises(InvalidTransitionError):
            await controller.close_position()

    @pytest.mark.asyncio
    async def test_new_bar_clears_take_profit_wait(self, controller: TradingController):
        controller.risk_guard.state = controller.risk_guard.state.model_copy(
            update={"waiting_for_next_bar": True}
        )
        await controller.on_new_bar()
        assert controller.risk_guard.can_open() == (True, None)

    @pytest.mark.asyncio
    async def test_reset_risk_guard(self, controller: TradingController):
        controller.risk_guard.state = controller.risk_guard.state.model_copy(
            update={"loss_tripped": True, "cumulative_pnl": -150.0}
        )
        await controller.reset_risk_guard()
        assert controller.risk_guard.tripped is False

    @pytest.mark.asyncio
    async def test_status(self, controller: TradingController, clock: FakeClock):
        await open_long(controller, clock)

        status = controller.status()

        assert status["symbol"] == SYMBOL
        assert status["position"]["state"] == "open"
        assert status["lock"]["locked_direction"] == "buy"
        assert status["votes"] == {VOTE: "buy"}
        assert status["risk_guard"]["loss_tripped"] is False
        assert status["summary"]["total_trades"] == 0
        assert status["unrealized_pnl"] == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_export_trades(self, controller: TradingController, clock: FakeClock):
        await open_long(controller, clock)
        await controller.close_position()
        await controller.wait_idle()

        export = controller.export_trades()

        assert export["config"]["contracts_per_trade"] == 3
        assert len(export["trades"]) == 1
