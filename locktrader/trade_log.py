"""
Trade Log - append-only record of closed trades and the session statistics
derived from it
"""

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from contracts.position import PositionSide, Trade

logger = logging.getLogger(__name__)


class SessionSummary(BaseModel):
    """Statistics recalculated from the trade list"""

    total_trades: int = 0
    total_pnl: float = 0.0
    long_pnl: float = 0.0
    short_pnl: float = 0.0
    wins: int = 0
    losses: int = 0
    win_rate: float | None = None
    peak_profit: float = 0.0
    peak_loss: float = 0.0
    avg_trade_seconds: float | None = None
    session_start_time: float | None = None


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


class TradeLog:
    """Trades are only ever appended; clear() starts a new session view"""

    def __init__(self, trades: list[Trade] | None = None) -> None:
        self._trades: list[Trade] = list(trades or [])
        self._unpersisted: list[Trade] = []
        self.session_start_time: float | None = None

    def __len__(self) -> int:
        return len(self._trades)

    @property
    def trades(self) -> list[Trade]:
        return list(self._trades)

    def append(self, trade: Trade) -> None:
        self._trades.append(trade)
        self._unpersisted.append(trade)

    def drain_unpersisted(self) -> list[Trade]:
        """Trades appended since the last drain, for the state store"""
        pending, self._unpersisted = self._unpersisted, []
        return pending

    def clear(self) -> None:
        logger.info(f"Clearing trade log view ({len(self._trades)} trades)")
        self._trades = []
        self._unpersisted = []
        self.session_start_time = None

    def summary(self) -> SessionSummary:
        summary = SessionSummary(
            total_trades=len(self._trades), session_start_time=self.session_start_time
        )
        running = 0.0
        durations = []
        for trade in self._trades:
            running += trade.pnl
            if trade.side == PositionSide.LONG:
                summary.long_pnl += trade.pnl
            else:
                summary.short_pnl += trade.pnl
            if trade.pnl > 0:
                summary.wins += 1
            else:
                summary.losses += 1
            summary.peak_profit = max(summary.peak_profit, running)
            summary.peak_loss = max(summary.peak_loss, -running)
            durations.append(trade.duration_seconds)

        summary.total_pnl = running
        if summary.wins + summary.losses:
            summary.win_rate = summary.wins / (summary.wins + summary.losses) * 100
        if durations:
            summary.avg_trade_seconds = sum(durations) / len(durations)
        return summary

    def recent_pnl(self, minutes: float, now: float) -> float:
        cutoff = now - minutes * 60
        return sum(t.pnl for t in self._trades if t.exit_time >= cutoff)

    def export(self, symbol: str, config: dict[str, Any] | None = None) -> dict[str, Any]:
        """JSON-ready export of config, summary and trades"""
        return {
            "symbol": symbol,
            "export_time": datetime.now(timezone.utc).isoformat(),
            "config": config or {},
            "summary": self.summary().model_dump(mode="json"),
            "trades": [
                {
                    "side": t.side.value,
                    "size": t.size,
                    "entry_price": t.entry_price,
                    "exit_price": t.exit_price,
                    "pnl": t.pnl,
                    "pnl_percent": t.pnl_percent,
                    "entry_time": _iso(t.entry_time),
                    "exit_time": _iso(t.exit_time),
                    "duration_seconds": t.duration_seconds,
                    "close_reason": t.close_reason.value,
                    "order_ids": list(t.order_ids),
                }
                for t in self._trades
            ],
        }
