import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest
from pydantic import BaseModel, field_validator

import otel_init
from contracts.signal import Direction
from locktrader.controller import TradingController
from locktrader.exceptions import InvalidTransitionError
from locktrader.exchange.simulator import SimulatorExchange
from locktrader.state_store import create_state_store
from shared.config import settings
from shared.constants import APP_DESCRIPTION, APP_NAME, APP_VERSION
from shared.logger import configure_logging

logger = logging.getLogger(__name__)

# Set by the lifespan handler
controller: TradingController | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager"""
    global controller

    configure_logging(settings.log_level)
    logger.info(f"Starting {APP_NAME} for {settings.symbol}...")

    if settings.otel_enabled:
        otel_init.setup_telemetry(otlp_endpoint=settings.otel_exporter_otlp_endpoint)
        otel_init.attach_logging_handler()

    settings.validate_required_settings()

    controller = TradingController(
        settings.symbol,
        settings.trading,
        SimulatorExchange(),
        create_state_store(settings),
    )
    try:
        await controller.initialize(auto_resume=settings.auto_resume)
        logger.info(f"✅ {APP_NAME} ready (running={controller.is_running})")
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise

    yield

    logger.info(f"Shutting down {APP_NAME}...")
    try:
        await controller.shutdown()
    except Exception as e:
        logger.error(f"Shutdown error: {e}")
    controller = None
    logger.info(f"{APP_NAME} shut down complete")


app = FastAPI(
    title=f"{APP_NAME} API",
    description=APP_DESCRIPTION,
    version=APP_VERSION,
    lifespan=lifespan,
)

otel_init.instrument_fastapi_app(app)


class HealthResponse(BaseModel):
    """Health check response model"""

    status: str
    version: str
    timestamp: str
    components: dict[str, Any]


class VoteRequest(BaseModel):
    direction: Direction

    @field_validator("direction", mode="before")
    @classmethod
    def parse_direction(cls, v: Any) -> Direction:
        return Direction.parse(v)


def get_controller() -> TradingController:
    if controller is None:
        raise HTTPException(status_code=503, detail="Controller not initialized")
    return controller


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health of the controller and the exchange boundary"""
    ctl = get_controller()
    try:
        exchange_health = await ctl.exchange.health_check()
    except Exception as e:
        logger.error(f"Health check error: {e}")
        exchange_health = {"status": "unhealthy", "error": str(e)}

    components = {
        "exchange": exchange_health,
        "controller": {
            "status": "healthy",
            "is_running": ctl.is_running,
            "position": ctl.manager.position.state.value,
        },
        "risk_guard": {
            "status": "tripped" if ctl.risk_guard.tripped else "healthy",
        },
    }
    all_healthy = all(c.get("status") == "healthy" for c in components.values())
    return HealthResponse(
        status="healthy" if all_healthy else "degraded",
        version=APP_VERSION,
        timestamp=datetime.utcnow().isoformat(),
        components=components,
    )


@app.get("/status")
async def get_status() -> dict[str, Any]:
    return get_controller().status()


@app.post("/start")
async def start_trading() -> dict[str, Any]:
    ctl = get_controller()
    await ctl.start()
    return {"is_running": ctl.is_running}


@app.post("/stop")
async def stop_trading() -> dict[str, Any]:
    ctl = get_controller()
    await ctl.stop()
    return {"is_running": ctl.is_running}


@app.post("/clear")
async def clear_session() -> dict[str, Any]:
    """Stop trading and reset guards and session statistics"""
    ctl = get_controller()
    await ctl.clear()
    return {"is_running": ctl.is_running, "trades": len(ctl.trade_log)}


@app.post("/close")
async def close_position() -> dict[str, Any]:
    """Close the open position with reason 'stopped manually'"""
    ctl = get_controller()
    try:
        closing = await ctl.close_position()
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"closing": closing, "position": ctl.manager.position.state.value}


@app.post("/risk/reset")
async def reset_risk_guard() -> dict[str, Any]:
    ctl = get_controller()
    await ctl.reset_risk_guard()
    return {"risk_guard": ctl.risk_guard.state.model_dump(mode="json")}


@app.post("/votes/{name}")
async def publish_vote(name: str, request: VoteRequest) -> dict[str, Any]:
    """Indicator collaborators push their current vote here"""
    vote = get_controller().votes.publish(name, request.direction)
    return {"name": vote.name, "direction": vote.direction.value}


@app.post("/bar")
async def new_bar() -> dict[str, Any]:
    """New time-bar notification; releases the take-profit re-entry wait"""
    ctl = get_controller()
    await ctl.on_new_bar()
    return {"waiting_for_next_bar": ctl.risk_guard.state.waiting_for_next_bar}


@app.get("/trades")
async def get_trades() -> dict[str, Any]:
    ctl = get_controller()
    return {
        "trades": [t.model_dump(mode="json") for t in ctl.trade_log.trades],
        "summary": ctl.trade_log.summary().model_dump(mode="json"),
    }


@app.get("/trades/export")
async def export_trades() -> dict[str, Any]:
    return get_controller().export_trades()


@app.get("/metrics")
async def metrics() -> PlainTextResponse:
    """Get Prometheus metrics"""
    if not settings.prometheus_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "locktrader.api:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
