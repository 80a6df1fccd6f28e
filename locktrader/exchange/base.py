"""
Exchange boundary - the abstract contract the execution core trades against

Vendor adapters and the simulator implement this interface. The core never
talks to a vendor API directly.
"""

import math
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from contracts.order import CancelResult, OrderSide, OrderStatusReport, PlaceOrderResult
from contracts.position import PositionSide


class ExchangePosition(BaseModel):
    """Position as the exchange reports it"""

    symbol: str
    side: PositionSide
    size: float
    entry_price: float | None = None
    unrealized_pnl: float | None = None


class ExchangeBoundary(ABC):
    """Minimal exchange surface used by OrderExecutor and StateRecovery"""

    async def initialize(self) -> None:
        """Connect / authenticate. Default is a no-op."""

    async def close(self) -> None:
        """Release connections. Default is a no-op."""

    async def health_check(self) -> dict[str, Any]:
        return {"status": "healthy", "type": type(self).__name__}

    @abstractmethod
    async def place_limit_order(
        self, symbol: str, side: OrderSide, size: float, price: float
    ) -> PlaceOrderResult:
        """Place a good-till-cancelled limit order"""

    @abstractmethod
    async def get_order_status(self, order_id: str) -> OrderStatusReport:
        """Current status and cumulative fill of an order"""

    @abstractmethod
    async def cancel_order(self, order_id: str) -> CancelResult:
        """Cancel one order; never affects other orders"""

    @abstractmethod
    async def get_open_position(self, symbol: str) -> ExchangePosition | None:
        """Open position for the instrument, used at restart reconciliation"""

    @abstractmethod
    async def get_price(self, symbol: str) -> float:
        """Latest reference price for the instrument"""


def round_to_tick(price: float, increment: float, side: OrderSide) -> float:
    """Round conservatively for the requester on the price grid.

    BUY rounds up and SELL rounds down, which is worse for the counterparty
    and makes the order more likely to fill.
    """
    steps = round(price / increment, 9)
    if side == OrderSide.BUY:
        steps = math.ceil(steps)
    else:
        steps = math.floor(steps)
    decimals = max(0, -int(math.floor(math.log10(increment)))) if increment < 1 else 0
    return round(steps * increment, decimals + 2)
