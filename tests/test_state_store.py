"""
Tests for locktrader/state_store.py backends
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from contracts.position import CloseReason, Position, PositionSide, PositionState, Trade
from contracts.signal import Direction
from contracts.state import EngineSnapshot, RiskGuardState, SignalLockState
from locktrader.exceptions import StateStoreError
from locktrader.state_store import (
    JsonFileStateStore,
    MemoryStateStore,
    MongoStateStore,
    StateStore,
    create_state_store,
    save_quietly,
)


def make_snapshot(symbol: str = "TEST-PERP") -> EngineSnapshot:
    return EngineSnapshot(
        symbol=symbol,
        is_running=True,
        position=Position(
            state=PositionState.CLOSING,
            side=PositionSide.LONG,
            entry_price=100.33,
            entry_time=1_700_000_000.0,
            open_size=3,
            close_reason=CloseReason.SIGNAL_REVERSED,
        ),
        lock_state=SignalLockState(
            locked_direction=Direction.SELL,
            pending_direction=Direction.SELL,
            pending_since=20.0,
            confirmed=True,
        ),
        risk_guard_state=RiskGuardState(
            max_loss_limit=100, cumulative_pnl=-12.5, completed_trade_count=2
        ),
        session_start_time=1_700_000_000.0,
    )


def make_trade(pnl: float = 1.0, exit_time: float = 10.0) -> Trade:
    return Trade(
        side=PositionSide.SHORT,
        size=3,
        entry_price=100,
        exit_price=100 - pnl / 3,
        pnl=pnl,
        entry_time=0,
        exit_time=exit_time,
        close_reason=CloseReason.TAKE_PROFIT,
        order_ids=("a", "b"),
    )


class _AsyncCursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._docs:
            raise StopAsyncIteration
        return self._docs.pop(0)


class TestMemoryStateStore:
    @pytest.mark.asyncio
    async def test_round_trip_is_a_copy(self, memory_store: MemoryStateStore):
        snapshot = make_snapshot()
        await memory_store.save(snapshot)

        loaded = await memory_store.load()

        assert loaded == snapshot
        assert loaded is not snapshot
        assert memory_store.save_count == 1

    @pytest.mark.asyncio
    async def test_empty_store_loads_none(self, memory_store: MemoryStateStore):
        assert await memory_store.load() is None
        assert await memory_store.load_trades() == []

    @pytest.mark.asyncio
    async def test_clear(self, memory_store: MemoryStateStore):
        await memory_store.save(make_snapshot())
        await memory_store.append_trade(make_trade())
        await memory_store.clear()
        assert await memory_store.load() is None
        assert await memory_store.load_trades() == []


class TestJsonFileStateStore:
    @pytest.mark.asyncio
    async def test_snapshot_round_trip(self, tmp_path):
        store = JsonFileStateStore(tmp_path / "state" / "engine.json")
        snapshot = make_snapshot()

        await store.save(snapshot)
        loaded = await store.load()

        assert loaded is not None
        assert loaded.position == snapshot.position
        assert loaded.lock_state == snapshot.lock_state
        assert loaded.risk_guard_state == snapshot.risk_guard_state
        assert not (tmp_path / "state" / "engine.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_file_io_runs_off_the_event_loop(self, tmp_path):
        store = JsonFileStateStore(tmp_path / "engine.json")
        with patch(
            "locktrader.state_store.asyncio.to_thread", wraps=asyncio.to_thread
        ) as offload:
            await store.save(make_snapshot())
            await store.append_trade(make_trade(1.0))
            await store.load()
            await store.load_trades()

        assert offload.await_count == 4

    @pytest.mark.asyncio
    async def test_missing_file_loads_none(self, tmp_path):
        assert await JsonFileStateStore(tmp_path / "nope.json").load() is None

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_raises(self, tmp_path):
        path = tmp_path / "engine.json"
        path.write_text("{not json")
        with pytest.raises(StateStoreError):
            await JsonFileStateStore(path).load()

    @pytest.mark.asyncio
    async def test_trades_append_in_order(self, tmp_path):
        store = JsonFileStateStore(tmp_path / "engine.json")
        await store.append_trade(make_trade(1.0))
        await store.append_trade(make_trade(-2.0))

        trades = await store.load_trades()

        assert [t.pnl for t in trades] == [1.0, -2.0]
        assert trades[0].order_ids == ("a", "b")
        assert (tmp_path / "engine_trades.jsonl").exists()

    @pytest.mark.asyncio
    async def test_bad_trade_line_is_skipped(self, tmp_path):
        store = JsonFileStateStore(tmp_path / "engine.json")
        await store.append_trade(make_trade(1.0))
        with store.trades_path.open("a") as f:
            f.write("garbage\n")
        await store.append_trade(make_trade(3.0))

        assert [t.pnl for t in await store.load_trades()] == [1.0, 3.0]

    @pytest.mark.asyncio
    async def test_clear_removes_files(self, tmp_path):
        store = JsonFileStateStore(tmp_path / "engine.json")
        await store.save(make_snapshot())
        await store.append_trade(make_trade())

        await store.clear()

        assert await store.load() is None
        assert await store.load_trades() == []


@pytest.fixture
def mongo_collections():
    return {"engine_state": MagicMock(), "trades": MagicMock()}


@pytest.fixture
def mongo_client(mongo_collections):
    client = MagicMock()
    client.admin.command = AsyncMock(return_value={"ok": 1})
    db = MagicMock()
    db.__getitem__.side_effect = mongo_collections.__getitem__
    client.__getitem__.return_value = db
    return client


class TestMongoStateStore:
    @pytest.mark.asyncio
    async def test_connect_pings(self, mongo_client):
        store = MongoStateStore("mongodb://localhost:27017", "locktrader", "TEST-PERP")
        with patch("locktrader.state_store.AsyncIOMotorClient", return_value=mongo_client):
            await store.connect()

        assert store.connected is True
        mongo_client.admin.command.assert_awaited_once_with("ping")

    @pytest.mark.asyncio
    async def test_connect_failure_raises(self, mongo_client):
        mongo_client.admin.command = AsyncMock(side_effect=Exception("no server"))
        store = MongoStateStore("mongodb://localhost:27017", "locktrader", "TEST-PERP")
        with patch("locktrader.state_store.AsyncIOMotorClient", return_value=mongo_client):
            with pytest.raises(StateStoreError):
                await store.connect()
        assert store.connected is False

    @pytest.mark.asyncio
    async def test_use_before_connect_raises(self):
        store = MongoStateStore("mongodb://localhost:27017", "locktrader", "TEST-PERP")
        with pytest.raises(StateStoreError):
            await store.load()

    @pytest.mark.asyncio
    async def test_save_upserts_by_symbol(self, mongo_client, mongo_collections):
        mongo_collections["engine_state"].replace_one = AsyncMock()
        store = MongoStateStore("mongodb://localhost:27017", "locktrader", "TEST-PERP")
        with patch("locktrader.state_store.AsyncIOMotorClient", return_value=mongo_client):
            await store.connect()
            await store.save(make_snapshot())

        call = mongo_collections["engine_state"].replace_one.await_args
        assert call.args[0] == {"symbol": "TEST-PERP"}
        assert call.args[1]["position"]["state"] == "closing"
        assert call.kwargs == {"upsert": True}

    @pytest.mark.asyncio
    async def test_load_strips_id(self, mongo_client, mongo_collections):
        doc = make_snapshot().model_dump(mode="json")
        doc["_id"] = "abc"
        mongo_collections["engine_state"].find_one = AsyncMock(return_value=doc)
        store = MongoStateStore("mongodb://localhost:27017", "locktrader", "TEST-PERP")
        with patch("locktrader.state_store.AsyncIOMotorClient", return_value=mongo_client):
            await store.connect()
            loaded = await store.load()

        assert loaded is not None
        assert loaded.position.close_reason == CloseReason.SIGNAL_REVERSED

    @pytest.mark.asyncio
    async def test_trades(self, mongo_client, mongo_collections):
        trades = mongo_collections["trades"]
        trades.insert_one = AsyncMock()
        stored = make_trade(2.0).model_dump(mode="json")
        stored.update({"_id": "x", "symbol": "TEST-PERP"})
        trades.find.return_value.sort.return_value = _AsyncCursor([stored])
        store = MongoStateStore("mongodb://localhost:27017", "locktrader", "TEST-PERP")
        with patch("locktrader.state_store.AsyncIOMotorClient", return_value=mongo_client):
            await store.connect()
            await store.append_trade(make_trade(2.0))
            loaded = await store.load_trades()

        assert trades.insert_one.await_args.args[0]["symbol"] == "TEST-PERP"
        assert [t.pnl for t in loaded] == [2.0]
        trades.find.assert_called_once_with({"symbol": "TEST-PERP"})


class TestFactoryAndHelpers:
    def test_create_state_store(self, tmp_path):
        settings = MagicMock(state_store="memory")
        assert isinstance(create_state_store(settings), MemoryStateStore)

        settings = MagicMock(state_store="file", state_file_path=str(tmp_path / "s.json"))
        assert isinstance(create_state_store(settings), JsonFileStateStore)

        settings = MagicMock(
            state_store="mongodb",
            mongodb_uri="mongodb://localhost",
            mongodb_database="locktrader",
            symbol="TEST-PERP",
            mongodb_timeout_ms=100,
        )
        store = create_state_store(settings)
        assert isinstance(store, MongoStateStore)
        assert store.timeout_ms == 100

    @pytest.mark.asyncio
    async def test_save_quietly_swallows_store_errors(self):
        store = MagicMock(spec=StateStore)
        store.save = AsyncMock(side_effect=StateStoreError("disk full"))
        assert await save_quietly(store, make_snapshot()) is False

    @pytest.mark.asyncio
    async def test_save_quietly_success(self, memory_store: MemoryStateStore):
        assert await save_quietly(memory_store, make_snapshot()) is True
