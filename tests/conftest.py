"""
Global test configuration and fixtures for locktrader.
"""

import os
from typing import Generator

import pytest

# Set up test environment BEFORE any imports that might trigger validation
os.environ.update(
    {
        "ENVIRONMENT": "test",
        "LOG_LEVEL": "DEBUG",
        "SYMBOL": "TEST-PERP",
        "STATE_STORE": "memory",
        "AUTO_RESUME": "false",
        "OTEL_ENABLED": "false",
        "ENABLE_OTEL": "false",
        "PROMETHEUS_ENABLED": "true",
    }
)

from contracts.trading_config import TradingConfig  # noqa: E402
from locktrader.controller import TradingController  # noqa: E402
from locktrader.order_executor import OrderExecutor  # noqa: E402
from locktrader.position_manager import PositionManager  # noqa: E402
from locktrader.risk_guard import RiskGuard  # noqa: E402
from locktrader.state_store import MemoryStateStore  # noqa: E402
from locktrader.trade_log import TradeLog  # noqa: E402
from tests.integration.fakes import FakeClock, FakeExchange  # noqa: E402

SYMBOL = "TEST-PERP"


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment() -> Generator[None, None, None]:
    """Set up test environment."""
    # Environment is already set up above
    yield


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start=1_700_000_000.0)


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange(price=100.0)


@pytest.fixture
def memory_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def trading_config() -> TradingConfig:
    """Config with short timeouts so scripted orders resolve in few polls"""
    return TradingConfig(
        confirmation_threshold_seconds=5.0,
        contracts_per_trade=3,
        per_attempt_timeout_seconds=2.0,
        poll_interval_seconds=0.5,
        retry_delay_seconds=0.5,
        price_increment=0.01,
        max_loss_limit=100.0,
    )


@pytest.fixture
def executor(exchange: FakeExchange, clock: FakeClock) -> OrderExecutor:
    return OrderExecutor(
        exchange,
        SYMBOL,
        price_increment=0.01,
        poll_interval=0.5,
        retry_delay=0.5,
        clock=clock,
        sleep=clock.sleep,
    )


def build_manager(
    config: TradingConfig, exchange: FakeExchange, clock: FakeClock
) -> PositionManager:
    executor = OrderExecutor(
        exchange,
        SYMBOL,
        price_increment=config.price_increment,
        poll_interval=config.poll_interval_seconds,
        retry_delay=config.retry_delay_seconds,
        clock=clock,
        sleep=clock.sleep,
    )
    manager = PositionManager(
        SYMBOL,
        config,
        executor,
        RiskGuard(config, symbol=SYMBOL),
        TradeLog(),
        clock=clock,
    )
    manager.update_price(exchange.price)
    return manager


@pytest.fixture
def manager(
    trading_config: TradingConfig, exchange: FakeExchange, clock: FakeClock
) -> PositionManager:
    return build_manager(trading_config, exchange, clock)


@pytest.fixture
def make_manager(exchange: FakeExchange, clock: FakeClock):
    """Factory for managers with a non-default TradingConfig"""

    def _make(**overrides) -> PositionManager:
        config = TradingConfig(
            confirmation_threshold_seconds=5.0,
            contracts_per_trade=3,
            per_attempt_timeout_seconds=2.0,
            poll_interval_seconds=0.5,
            retry_delay_seconds=0.5,
            price_increment=0.01,
            max_loss_limit=100.0,
        ).model_copy(update=overrides)
        return build_manager(config, exchange, clock)

    return _make


@pytest.fixture
def controller(
    trading_config: TradingConfig,
    exchange: FakeExchange,
    memory_store: MemoryStateStore,
    clock: FakeClock,
) -> TradingController:
    """Controller whose executor waits on the fake clock"""
    return TradingController(
        SYMBOL,
        trading_config,
        exchange,
        memory_store,
        clock=clock,
        monotonic=clock,
        sleep=clock.sleep,
    )
