"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path(".metering/metering.db")


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with METERING_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="METERING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Invoicing
    default_currency: str = "USD"
    invoice_number_prefix: str = "INV"
    invoice_due_days: int = Field(default=30, ge=0)

    # Upgrade preview
    upgrade_lookback_days: int = Field(default=30, ge=1)

    # Anomaly detection
    anomaly_lookback_days: int = Field(default=14, ge=3)
    anomaly_min_points: int = Field(default=3, ge=3)
    anomaly_z_score: float = Field(default=2.0, gt=0)


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded engine settings (db=%s)", settings.database_url[:40])

    return settings
