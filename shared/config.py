"""
Configuration settings for LockTrader
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from contracts.trading_config import TradingConfig
from shared.constants import DEFAULT_SYMBOL


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Instrument handled by this process
    symbol: str = DEFAULT_SYMBOL

    # Trading configuration (TRADING__CONFIRMATION_THRESHOLD_SECONDS=5, ...)
    trading: TradingConfig = Field(default_factory=TradingConfig)

    # State persistence
    state_store: Literal["memory", "file", "mongodb"] = "file"
    state_file_path: str = "./state/locktrader.json"
    mongodb_uri: str | None = None
    mongodb_database: str = "locktrader"
    mongodb_timeout_ms: int = 5000

    # Resume the tick loop on startup when the snapshot says it was running
    auto_resume: bool = True

    # API Configuration (for uvicorn)
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Monitoring Configuration
    prometheus_enabled: bool = True
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.environment.lower() == "production"

    @property
    def is_testing(self) -> bool:
        """Check if running in testing environment"""
        return self.environment.lower() in ("testing", "test")

    def validate_required_settings(self) -> None:
        """Validate that required settings are present"""
        if self.state_store == "mongodb" and not self.mongodb_uri:
            raise ValueError("MONGODB_URI is required when STATE_STORE=mongodb")


# Global settings instance
settings = Settings()
