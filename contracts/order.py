from enum import Enum

from pydantic import BaseModel, Field


class OrderSide(str, Enum):
    """Order side options"""

    BUY = "buy"
    SELL = "sell"


class OrderAction(str, Enum):
    """Whether an execution opens or closes the position"""

    OPEN = "open"
    CLOSE = "close"


class OrderStatus(str, Enum):
    """Order status options as reported by the exchange boundary"""

    PENDING = "pending"
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"
    NOT_FOUND = "not_found"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_working(self) -> bool:
        return self in (
            OrderStatus.PENDING,
            OrderStatus.OPEN,
            OrderStatus.PARTIALLY_FILLED,
            OrderStatus.NOT_FOUND,
        )


TERMINAL_STATUSES = frozenset(
    {
        OrderStatus.FILLED,
        OrderStatus.CANCELLED,
        OrderStatus.EXPIRED,
        OrderStatus.FAILED,
    }
)


class PlaceOrderResult(BaseModel):
    """Outcome of placing a limit order"""

    success: bool = Field(..., description="Exchange accepted the order")
    order_id: str | None = Field(None, description="Exchange order ID")
    failure_reason: str | None = Field(None, description="Rejection reason code")
    message: str | None = Field(None, description="Human readable rejection detail")


class OrderStatusReport(BaseModel):
    """Snapshot of one order's state on the exchange"""

    order_id: str
    status: OrderStatus
    filled_size: float = Field(0.0, ge=0)
    avg_fill_price: float | None = None


class CancelResult(BaseModel):
    """Outcome of a cancel request"""

    success: bool
    failure_reason: str | None = None


class OrderAttempt(BaseModel):
    """One limit order placed during a retry loop"""

    requested_size: float = Field(..., gt=0)
    limit_price: float | None = None
    filled_size: float = Field(0.0, ge=0)
    avg_fill_price: float | None = None
    exchange_order_id: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    fatal: bool = False
    error: str | None = None
    message: str | None = None
    timed_out: bool = False


class ExecutionResult(BaseModel):
    """Aggregate outcome of one OrderExecutor invocation"""

    action: OrderAction
    side: OrderSide
    requested_size: float
    filled_size: float = 0.0
    avg_fill_price: float | None = None
    attempts: int = 0
    order_ids: list[str] = Field(default_factory=list)
    success: bool = False
    fatal: bool = False
    error: str | None = None
    message: str | None = None

    @property
    def partial(self) -> bool:
        return not self.success and self.filled_size > 0

    @property
    def remaining_size(self) -> float:
        return max(self.requested_size - self.filled_size, 0.0)
