"""
State Store - persistence for the resume-after-restart snapshot and trade log

Three backends share one async interface: in-memory (tests), a JSON file
with atomic replace, and MongoDB through motor.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import ValidationError

from contracts.position import Trade
from contracts.state import EngineSnapshot
from locktrader.exceptions import StateStoreError

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """load()/save() of the engine snapshot plus an append-only trade list"""

    async def connect(self) -> None:
        """Open connections. Default is a no-op."""

    async def disconnect(self) -> None:
        """Close connections. Default is a no-op."""

    @abstractmethod
    async def load(self) -> EngineSnapshot | None: ...

    @abstractmethod
    async def save(self, snapshot: EngineSnapshot) -> None: ...

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    async def append_trade(self, trade: Trade) -> None: ...

    @abstractmethod
    async def load_trades(self) -> list[Trade]: ...


class MemoryStateStore(StateStore):
    def __init__(self) -> None:
        self.snapshot: EngineSnapshot | None = None
        self.trades: list[Trade] = []
        self.save_count = 0

    async def load(self) -> EngineSnapshot | None:
        return self.snapshot.model_copy(deep=True) if self.snapshot else None

    async def save(self, snapshot: EngineSnapshot) -> None:
        self.snapshot = snapshot.model_copy(deep=True)
        self.save_count += 1

    async def clear(self) -> None:
        self.snapshot = None
        self.trades = []

    async def append_trade(self, trade: Trade) -> None:
        self.trades.append(trade)

    async def load_trades(self) -> list[Trade]:
        return list(self.trades)


class JsonFileStateStore(StateStore):
    """Snapshot as one JSON document, trades as JSON lines next to it"""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.trades_path = self.path.with_name(self.path.stem + "_trades.jsonl")

    async def load(self) -> EngineSnapshot | None:
        if not self.path.exists():
            return None
        try:
            raw = await asyncio.to_thread(self.path.read_text)
            return EngineSnapshot.model_validate_json(raw)
        except (OSError, ValidationError) as e:
            raise StateStoreError(f"Unreadable snapshot {self.path}: {e}") from e

    async def save(self, snapshot: EngineSnapshot) -> None:
        try:
            await asyncio.to_thread(self._write, snapshot.model_dump_json(indent=2))
        except OSError as e:
            raise StateStoreError(f"Failed to write snapshot {self.path}: {e}") from e

    def _write(self, payload: str) -> None:
        """Write a temp file next to the snapshot, then replace it"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(payload)
        os.replace(tmp, self.path)

    async def clear(self) -> None:
        for path in (self.path, self.trades_path):
            if path.exists():
                path.unlink()
        logger.info(f"Cleared state file {self.path}")

    async def append_trade(self, trade: Trade) -> None:
        await asyncio.to_thread(self._append_line, trade.model_dump_json())

    def _append_line(self, line: str) -> None:
        self.trades_path.parent.mkdir(parents=True, exist_ok=True)
        with self.trades_path.open("a") as f:
            f.write(line + "\n")

    async def load_trades(self) -> list[Trade]:
        if not self.trades_path.exists():
            return []
        raw = await asyncio.to_thread(self.trades_path.read_text)
        trades = []
        for line_number, line in enumerate(raw.splitlines(), 1):
            if not line.strip():
                continue
            try:
                trades.append(Trade.model_validate_json(line))
            except ValidationError as e:
                logger.warning(
                    f"Skipping unreadable trade on line {line_number} of "
                    f"{self.trades_path}: {e}"
                )
        return trades


class MongoStateStore(StateStore):
    """One snapshot document per symbol and an append-only trades collection"""

    def __init__(
        self,
        connection_string: str,
        database_name: str,
        symbol: str,
        timeout_ms: int = 5000,
    ) -> None:
        self.connection_string = connection_string
        self.database_name = database_name
        self.symbol = symbol
        self.timeout_ms = timeout_ms
        self.client: Any | None = None  # AsyncIOMotorClient type
        self.db: Any | None = None  # AsyncIOMotorDatabase type
        self.connected = False

    async def connect(self) -> None:
        """Establish MongoDB connection."""
        try:
            self.client = AsyncIOMotorClient(
                self.connection_string,
                serverSelectionTimeoutMS=self.timeout_ms,
            )
            self.db = self.client[self.database_name]

            # Test connection
            await self.client.admin.command("ping")
            self.connected = True
            logger.info(f"MongoDB connected to database: {self.database_name}")
        except Exception as e:
            self.connected = False
            logger.error(f"MongoDB connection failed: {e}")
            raise StateStoreError(f"MongoDB connection failed: {e}") from e

    async def disconnect(self) -> None:
        """Close MongoDB connection."""
        if self.client:
            self.client.close()
            self.connected = False
            logger.info("MongoDB connection closed")

    def _collection(self, name: str) -> Any:
        if self.db is None:
            raise StateStoreError("MongoDB state store used before connect()")
        return self.db[name]

    async def load(self) -> EngineSnapshot | None:
        doc = await self._collection("engine_state").find_one({"symbol": self.symbol})
        if not doc:
            return None
        doc.pop("_id", None)
        try:
            return EngineSnapshot.model_validate(doc)
        except ValidationError as e:
            raise StateStoreError(f"Unreadable snapshot for {self.symbol}: {e}") from e

    async def save(self, snapshot: EngineSnapshot) -> None:
        doc = snapshot.model_dump(mode="json")
        await self._collection("engine_state").replace_one(
            {"symbol": self.symbol}, doc, upsert=True
        )

    async def clear(self) -> None:
        await self._collection("engine_state").delete_many({"symbol": self.symbol})
        result = await self._collection("trades").delete_many({"symbol": self.symbol})
        logger.info(f"MongoDB cleared state for {self.symbol}: trades={result.deleted_count}")

    async def append_trade(self, trade: Trade) -> None:
        doc = trade.model_dump(mode="json")
        doc["symbol"] = self.symbol
        await self._collection("trades").insert_one(doc)

    async def load_trades(self) -> list[Trade]:
        cursor = self._collection("trades").find({"symbol": self.symbol}).sort("exit_time", 1)
        trades = []
        async for doc in cursor:
            doc.pop("_id", None)
            doc.pop("symbol", None)
            trades.append(Trade.model_validate(doc))
        return trades


def create_state_store(settings: Any) -> StateStore:
    """Build the backend named by settings.state_store"""
    if settings.state_store == "memory":
        return MemoryStateStore()
    if settings.state_store == "mongodb":
        return MongoStateStore(
            settings.mongodb_uri,
            settings.mongodb_database,
            settings.symbol,
            timeout_ms=settings.mongodb_timeout_ms,
        )
    return JsonFileStateStore(settings.state_file_path)


async def save_quietly(store: StateStore, snapshot: EngineSnapshot) -> bool:
    """Persist without letting a store outage stop the tick loop"""
    try:
        await store.save(snapshot)
        return True
    except Exception as e:
        logger.error(f"Failed to persist state: {e}")
        return False
