"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from typing import Self

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_PORT=9000``) or through a ``.env`` file in the
    working directory.  Engine-level knobs (invoice due days, anomaly
    thresholds) live in :class:`metering_engine.config.Settings`.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # asyncpg for PostgreSQL, aiosqlite for local mode.
    database_url: str = "sqlite+aiosqlite:///.metering/metering.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled."""
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    # Stripe usage reporting.
    billing_enabled: bool = False
    stripe_secret_key: SecretStr = SecretStr("")

    # Background export worker.
    export_worker_concurrency: int = Field(default=1, ge=1)
    export_queue_size: int = Field(default=100, ge=1)


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
