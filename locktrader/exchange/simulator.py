import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Any

from contracts.order import (
    CancelResult,
    OrderSide,
    OrderStatus,
    OrderStatusReport,
    PlaceOrderResult,
)
from contracts.position import PositionSide
from locktrader.exceptions import ExchangeUnavailableError
from locktrader.exchange.base import ExchangeBoundary, ExchangePosition
from shared.constants import (
    ERROR_ORDER_ALREADY_FILLED,
    SIMULATION_FILL_RATIO,
    SIMULATION_START_PRICE,
    SIMULATION_VOLATILITY,
)

logger = logging.getLogger(__name__)


class SimulatorExchange(ExchangeBoundary):
    """Simulator exchange for testing and development.

    Prices follow a random walk (or are pinned with set_price). A resting
    limit order fills whenever it is marketable at the time its status is
    read, at most `fill_ratio` of its size per read, which produces partial
    fills across polls.
    """

    def __init__(
        self,
        start_price: float = SIMULATION_START_PRICE,
        volatility: float = SIMULATION_VOLATILITY,
        fill_ratio: float = SIMULATION_FILL_RATIO,
        seed: int | None = None,
    ) -> None:
        self.price = start_price
        self.volatility = volatility
        self.fill_ratio = fill_ratio
        self.pinned = False
        self.orders: dict[str, dict[str, Any]] = {}
        self.positions: dict[str, float] = {}
        self.entry_prices: dict[str, float] = {}
        self._rejections: list[str] = []
        self._random = random.Random(seed)
        self.connected = False

    async def initialize(self) -> None:
        """Initialize simulator exchange"""
        self.connected = True
        logger.info("Simulator exchange initialized")

    async def close(self) -> None:
        """Close simulator exchange"""
        self.connected = False
        logger.info("Simulator exchange closed")

    async def health_check(self) -> dict[str, Any]:
        """Check simulator health"""
        status = "healthy" if self.connected else "unhealthy"
        return {"status": status, "type": "simulator", "price": self.price}

    def _require_connection(self) -> None:
        if not self.connected:
            raise ExchangeUnavailableError("Simulator exchange is not initialized")

    def set_price(self, price: float, pin: bool = True) -> None:
        self.price = price
        self.pinned = pin

    def reject_next(self, reason: str) -> None:
        """Queue a rejection reason for the next placed order"""
        self._rejections.append(reason)

    async def get_price(self, symbol: str) -> float:
        """Get simulated price for a symbol"""
        self._require_connection()
        if not self.pinned:
            self.price *= 1 + self._random.uniform(-self.volatility, self.volatility)
        return self.price

    async def place_limit_order(
        self, symbol: str, side: OrderSide, size: float, price: float
    ) -> PlaceOrderResult:
        self._require_connection()
        if self._rejections:
            reason = self._rejections.pop(0)
            logger.info(f"Simulated rejection of {side.value} {size} {symbol}: {reason}")
            return PlaceOrderResult(success=False, failure_reason=reason, message=reason)

        order_id = str(uuid.uuid4())
        self.orders[order_id] = {
            "order_id": order_id,
            "symbol": symbol,
            "side": side,
            "size": size,
            "limit_price": price,
            "filled_size": 0.0,
            "fill_notional": 0.0,
            "status": OrderStatus.OPEN,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info(
            "Simulated LIMIT %s %s %s @ %s -> %s", side.value, size, symbol, price, order_id
        )
        return PlaceOrderResult(success=True, order_id=order_id)

    def _marketable(self, order: dict[str, Any]) -> bool:
        if order["side"] == OrderSide.BUY:
            return self.price <= order["limit_price"]
        return self.price >= order["limit_price"]

    def _apply_fill(self, order: dict[str, Any]) -> None:
        remaining = order["size"] - order["filled_size"]
        if remaining <= 0 or not self._marketable(order):
            return

        quantity = min(remaining, max(order["size"] * self.fill_ratio, 0.0))
        if quantity <= 0:
            return
        # Limit orders fill at the limit or better; the simulator gives the limit
        fill_price = order["limit_price"]
        order["filled_size"] += quantity
        order["fill_notional"] += quantity * fill_price
        order["status"] = (
            OrderStatus.FILLED
            if order["filled_size"] >= order["size"] - 1e-12
            else OrderStatus.PARTIALLY_FILLED
        )
        self._book_position(order["symbol"], order["side"], quantity, fill_price)

    def _book_position(
        self, symbol: str, side: OrderSide, quantity: float, price: float
    ) -> None:
        signed = quantity if side == OrderSide.BUY else -quantity
        before = self.positions.get(symbol, 0.0)
        after = before + signed
        if before == 0 or (before > 0) == (signed > 0):
            # Opening or adding: weighted entry
            prior_notional = abs(before) * self.entry_prices.get(symbol, price)
            self.entry_prices[symbol] = (prior_notional + quantity * price) / abs(after)
        elif after != 0 and (before > 0) != (after > 0):
            # Crossed through flat: the remainder is a new position
            self.entry_prices[symbol] = price
        if abs(after) < 1e-12:
            self.positions.pop(symbol, None)
            self.entry_prices.pop(symbol, None)
        else:
            self.positions[symbol] = after

    async def get_order_status(self, order_id: str) -> OrderStatusReport:
        self._require_connection()
        order = self.orders.get(order_id)
        if order is None:
            return OrderStatusReport(order_id=order_id, status=OrderStatus.NOT_FOUND)
        if order["status"] in (OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED):
            self._apply_fill(order)
        avg = (
            order["fill_notional"] / order["filled_size"] if order["filled_size"] else None
        )
        return OrderStatusReport(
            order_id=order_id,
            status=order["status"],
            filled_size=order["filled_size"],
            avg_fill_price=avg,
        )

    async def cancel_order(self, order_id: str) -> CancelResult:
        """Cancel order in simulator"""
        self._require_connection()
        order = self.orders.get(order_id)
        if order is None:
            return CancelResult(success=False, failure_reason="UNKNOWN_CANCEL_ORDER")
        if order["status"] == OrderStatus.FILLED:
            return CancelResult(success=False, failure_reason=ERROR_ORDER_ALREADY_FILLED)
        order["status"] = OrderStatus.CANCELLED
        return CancelResult(success=True)

    async def get_open_position(self, symbol: str) -> ExchangePosition | None:
        self._require_connection()
        size = self.positions.get(symbol, 0.0)
        if not size:
            return None
        return ExchangePosition(
            symbol=symbol,
            side=PositionSide.LONG if size > 0 else PositionSide.SHORT,
            size=abs(size),
            entry_price=self.entry_prices.get(symbol),
        )
