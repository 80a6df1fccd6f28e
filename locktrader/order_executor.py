"""
Order Executor - fills a requested size with retrying limit orders

One limit order is outstanding at a time. Each attempt is polled until it
reaches a terminal status or its timeout, then cancelled and accounted for.
A new order is only placed once the previous one is known to be terminal;
an order that cannot be cancelled ends the action as a fatal failure.
The loop places a new order for whatever is left until the size is filled,
a fatal rejection arrives, or (opens only) the abort predicate fires.

Close actions ignore the abort predicate and are never attempt-capped:
they exit only on a full fill or a fatal failure.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from contracts.order import (
    ExecutionResult,
    OrderAction,
    OrderAttempt,
    OrderSide,
    OrderStatus,
    OrderStatusReport,
)
from locktrader.exceptions import LockTraderError
from locktrader.exchange.base import ExchangeBoundary, round_to_tick
from locktrader.metrics import (
    fatal_order_failures_total,
    order_action_duration_seconds,
    order_actions_total,
    order_attempts_total,
)
from otel_init import get_tracer
from shared.constants import (
    CANCEL_CONFIRM_INTERVAL_SECONDS,
    CANCEL_CONFIRM_RETRIES,
    ERROR_ATTEMPTS_EXHAUSTED,
    ERROR_ORDER_ALREADY_FILLED,
    ERROR_ORDER_UNRESOLVED,
    ERROR_SIGNAL_CHANGED,
    FATAL_ORDER_REASONS,
    ORDER_POLL_INTERVAL_SECONDS,
    ORDER_RETRY_DELAY_SECONDS,
)

logger = logging.getLogger(__name__)
tracer = get_tracer("locktrader.order_executor")

# Sizes below this are treated as fully filled
SIZE_TOLERANCE = 1e-9

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class OrderExecutor:
    """Places, polls, cancels and retries limit orders for one instrument"""

    def __init__(
        self,
        exchange: ExchangeBoundary,
        symbol: str,
        price_increment: float,
        poll_interval: float = ORDER_POLL_INTERVAL_SECONDS,
        retry_delay: float = ORDER_RETRY_DELAY_SECONDS,
        cancel_confirm_retries: int = CANCEL_CONFIRM_RETRIES,
        cancel_confirm_interval: float = CANCEL_CONFIRM_INTERVAL_SECONDS,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.exchange = exchange
        self.symbol = symbol
        self.price_increment = price_increment
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self.cancel_confirm_retries = cancel_confirm_retries
        self.cancel_confirm_interval = cancel_confirm_interval
        self.clock = clock
        self.sleep = sleep
        self.active = False

    async def execute(
        self,
        action: OrderAction,
        side: OrderSide,
        total_size: float,
        reference_price: Callable[[], float | None],
        timeout: float,
        abort: Callable[[], bool] | None = None,
        max_attempts: int | None = None,
    ) -> ExecutionResult:
        """Fill total_size, returning the aggregate size and weighted price"""
        if self.active:
            raise LockTraderError(f"Order executor for {self.symbol} is already active")

        if action == OrderAction.CLOSE:
            # Guaranteed completion: closes are never aborted or capped
            abort = None
            max_attempts = None

        self.active = True
        started = self.clock()
        try:
            with tracer.start_as_current_span("order_action") as span:
                span.set_attribute("symbol", self.symbol)
                span.set_attribute("action", action.value)
                span.set_attribute("side", side.value)
                span.set_attribute("size", total_size)
                result = await self._run(
                    action, side, total_size, reference_price, timeout, abort, max_attempts
                )
                span.set_attribute("filled_size", result.filled_size)
                span.set_attribute("attempts", result.attempts)
        finally:
            self.active = False
            order_action_duration_seconds.labels(
                symbol=self.symbol, action=action.value
            ).observe(max(self.clock() - started, 0.0))

        outcome = "success" if result.success else ("partial" if result.partial else "failed")
        order_actions_total.labels(
            symbol=self.symbol, action=action.value, result=outcome
        ).inc()
        return result

    async def _run(
        self,
        action: OrderAction,
        side: OrderSide,
        total_size: float,
        reference_price: Callable[[], float | None],
        timeout: float,
        abort: Callable[[], bool] | None,
        max_attempts: int | None,
    ) -> ExecutionResult:
        result = ExecutionResult(action=action, side=side, requested_size=total_size)
        fill_notional = 0.0

        logger.info(
            f"[{self.symbol}] {action.value.upper()} {side.value}: {total_size} "
            f"contracts (timeout: {timeout}s per attempt)"
        )

        while total_size - result.filled_size > SIZE_TOLERANCE:
            remaining = total_size - result.filled_size

            if action == OrderAction.OPEN and result.attempts > 0:
                if abort is not None and abort():
                    logger.info(f"[{self.symbol}] Signal changed - aborting open order")
                    result.error = ERROR_SIGNAL_CHANGED
                    return result
                if max_attempts is not None and result.attempts >= max_attempts:
                    logger.warning(
                        f"[{self.symbol}] Open gave up after {result.attempts} attempts "
                        f"({result.filled_size}/{total_size} filled)"
                    )
                    result.error = ERROR_ATTEMPTS_EXHAUSTED
                    return result

            result.attempts += 1
            logger.info(
                f"[{self.symbol}] Attempt {result.attempts}: {remaining} contracts remaining"
            )

            with tracer.start_as_current_span("order_attempt") as span:
                attempt = await self._attempt(side, remaining, reference_price, timeout)
                span.set_attribute("filled_size", attempt.filled_size)
                span.set_attribute("status", attempt.status.value)

            if attempt.exchange_order_id:
                result.order_ids.append(attempt.exchange_order_id)

            filled = min(attempt.filled_size, remaining)
            if filled > 0:
                price = attempt.avg_fill_price or attempt.limit_price or 0.0
                result.filled_size += filled
                fill_notional += filled * price
                result.avg_fill_price = fill_notional / result.filled_size
                logger.info(
                    f"[{self.symbol}] ✓ Filled {filled} @ {price} "
                    f"({result.filled_size}/{total_size})"
                )

            order_attempts_total.labels(
                symbol=self.symbol, action=action.value, outcome=_attempt_outcome(attempt)
            ).inc()

            if attempt.fatal:
                logger.error(
                    f"[{self.symbol}] ✗ Fatal order rejection: {attempt.error} "
                    f"({attempt.message or 'no detail'})"
                )
                fatal_order_failures_total.labels(
                    symbol=self.symbol, action=action.value, reason=attempt.error or "unknown"
                ).inc()
                result.fatal = True
                result.error = attempt.error
                result.message = attempt.message
                return result

            if total_size - result.filled_size > SIZE_TOLERANCE:
                await self.sleep(self.retry_delay)

        result.filled_size = total_size
        result.success = True
        logger.info(
            f"[{self.symbol}] ✓ ALL FILLED: {total_size} contracts @ avg "
            f"{result.avg_fill_price} ({result.attempts} attempts)"
        )
        return result

    async def _attempt(
        self,
        side: OrderSide,
        size: float,
        reference_price: Callable[[], float | None],
        timeout: float,
    ) -> OrderAttempt:
        """Place one limit order and wait for it to fill or time out"""
        raw_price = reference_price()
        if raw_price is None or raw_price <= 0:
            logger.warning(f"[{self.symbol}] No reference price, skipping attempt")
            return OrderAttempt(
                requested_size=size, status=OrderStatus.FAILED, error="NO_PRICE"
            )

        limit_price = round_to_tick(raw_price, self.price_increment, side)
        attempt = OrderAttempt(requested_size=size, limit_price=limit_price)
        logger.info(
            f"[{self.symbol}] Placing LIMIT {side.value.upper()} {size} @ {limit_price} "
            f"(timeout: {timeout}s)"
        )

        try:
            placed = await self.exchange.place_limit_order(
                self.symbol, side, size, limit_price
            )
        except Exception as e:
            logger.warning(f"[{self.symbol}] Order placement failed: {e}")
            attempt.status = OrderStatus.FAILED
            attempt.error = str(e)
            return attempt

        if not placed.success or not placed.order_id:
            reason = placed.failure_reason or "UNKNOWN"
            attempt.status = OrderStatus.FAILED
            attempt.error = reason
            attempt.message = placed.message
            attempt.fatal = reason in FATAL_ORDER_REASONS
            if not attempt.fatal:
                logger.warning(f"[{self.symbol}] Order rejected (retryable): {reason}")
            return attempt

        attempt.exchange_order_id = placed.order_id
        logger.info(f"[{self.symbol}] Order placed: {placed.order_id}")

        try:
            await self._await_fill(attempt, timeout)
        except Exception as e:
            logger.error(f"[{self.symbol}] Limit order error: {e}")
            await self._recover_after_error(attempt, e)
        return attempt

    async def _await_fill(self, attempt: OrderAttempt, timeout: float) -> None:
        order_id = attempt.exchange_order_id
        assert order_id is not None
        started = self.clock()
        first_poll = True

        while self.clock() - started < timeout:
            # First poll is immediate, subsequent polls wait
            if not first_poll:
                await self.sleep(self.poll_interval)
            first_poll = False

            report = await self.exchange.get_order_status(order_id)
            elapsed = self.clock() - started

            if report.status == OrderStatus.NOT_FOUND:
                logger.debug(
                    f"[{self.symbol}] Order not indexed yet, retrying... ({elapsed:.1f}s)"
                )
                continue

            previous = attempt.filled_size
            self._apply_report(attempt, report)

            if report.status == OrderStatus.FILLED:
                logger.info(f"[{self.symbol}] Order FILLED after {elapsed:.1f}s")
                return

            if attempt.filled_size > previous:
                logger.info(
                    f"[{self.symbol}] Partial fill: {attempt.filled_size}/"
                    f"{attempt.requested_size} after {elapsed:.1f}s"
                )

            if report.status.is_terminal:
                logger.info(
                    f"[{self.symbol}] Order {report.status.value} after {elapsed:.1f}s"
                )
                attempt.error = report.status.value
                return

        # Timeout reached - cancel unfilled portion
        attempt.timed_out = True
        logger.info(f"[{self.symbol}] Timeout reached, cancelling order {order_id}...")
        await self._settle(attempt)

    async def _settle(self, attempt: OrderAttempt) -> None:
        """Cancel the order and wait until its final fill is known.

        The next attempt is only placed once this order is terminal. An order
        still working after the bounded cancel/status rounds makes the attempt
        fatal instead.
        """
        order_id = attempt.exchange_order_id
        assert order_id is not None
        wait = False

        for _ in range(self.cancel_confirm_retries):
            if wait:
                await self.sleep(self.cancel_confirm_interval)
            wait = True

            try:
                report = await self.exchange.get_order_status(order_id)
            except Exception as e:
                logger.warning(f"[{self.symbol}] Status check for {order_id} failed: {e}")
            else:
                if report.status != OrderStatus.NOT_FOUND:
                    self._apply_report(attempt, report)
                if report.status.is_terminal:
                    logger.info(
                        f"[{self.symbol}] Order cancelled/completed (final: "
                        f"{attempt.filled_size}/{attempt.requested_size}, "
                        f"status: {report.status.value})"
                    )
                    return

            try:
                cancel = await self.exchange.cancel_order(order_id)
            except Exception as e:
                logger.warning(f"[{self.symbol}] Cancel of {order_id} failed: {e}")
                continue

            if cancel.success:
                # Read the final fill straight away
                wait = False
                continue

            if cancel.failure_reason == ERROR_ORDER_ALREADY_FILLED:
                logger.info(
                    f"[{self.symbol}] Order already FILLED (cancel reported "
                    f"{ERROR_ORDER_ALREADY_FILLED})"
                )
                confirmed = await self._confirm_fill(order_id)
                if confirmed is None:
                    self._assume_full_fill(attempt)
                else:
                    self._apply_report(attempt, confirmed)
                return

            logger.warning(
                f"[{self.symbol}] Cancel of {order_id} refused: {cancel.failure_reason}"
            )

        logger.error(
            f"[{self.symbol}] Order {order_id} still working after "
            f"{self.cancel_confirm_retries} cancel attempts"
        )
        attempt.fatal = True
        attempt.error = ERROR_ORDER_UNRESOLVED
        attempt.message = (
            f"Order {order_id} could not be cancelled "
            f"({attempt.filled_size}/{attempt.requested_size} filled)"
        )

    async def _confirm_fill(self, order_id: str) -> OrderStatusReport | None:
        """Re-read status until the exchange reports the fill it told us about"""
        for _ in range(self.cancel_confirm_retries):
            await self.sleep(self.cancel_confirm_interval)
            try:
                report = await self.exchange.get_order_status(order_id)
            except Exception as e:
                logger.warning(f"[{self.symbol}] Fill confirmation read failed: {e}")
                continue
            if report.status == OrderStatus.FILLED and report.filled_size > 0:
                return report
        return None

    def _assume_full_fill(self, attempt: OrderAttempt) -> None:
        logger.warning(
            f"[{self.symbol}] Assuming full fill of {attempt.requested_size} "
            f"@ {attempt.limit_price} (fill data never arrived)"
        )
        attempt.status = OrderStatus.FILLED
        attempt.filled_size = attempt.requested_size
        attempt.avg_fill_price = attempt.limit_price

    async def _recover_after_error(self, attempt: OrderAttempt, error: Exception) -> None:
        """Cancel after an unexpected error and keep whatever already filled"""
        attempt.error = str(error)
        if not attempt.exchange_order_id:
            attempt.status = OrderStatus.FAILED
            return
        await self._settle(attempt)
        if attempt.filled_size > 0:
            logger.info(
                f"[{self.symbol}] Recovered {attempt.filled_size} filled contracts after error"
            )

    @staticmethod
    def _apply_report(attempt: OrderAttempt, report: OrderStatusReport) -> None:
        attempt.status = report.status
        # Fills only grow; a later report never lowers what was already seen
        filled = min(report.filled_size, attempt.requested_size)
        if report.status == OrderStatus.FILLED and not filled:
            filled = attempt.requested_size
        if filled >= attempt.filled_size:
            attempt.filled_size = filled
            if filled > 0:
                attempt.avg_fill_price = report.avg_fill_price or attempt.limit_price


def _attempt_outcome(attempt: OrderAttempt) -> str:
    if attempt.fatal:
        return "fatal"
    if attempt.filled_size >= attempt.requested_size - SIZE_TOLERANCE:
        return "filled"
    if attempt.filled_size > 0:
        return "partial"
    if attempt.exchange_order_id is None:
        return "rejected"
    return "unfilled"
