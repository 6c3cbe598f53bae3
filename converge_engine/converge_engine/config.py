"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EngineEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class StateStoreType(str, Enum):
    LOCAL = "local"
    DATABASE = "database"


class Settings(BaseSettings):
    """Engine settings loaded from environment variables with CONVERGE_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="CONVERGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: EngineEnv = EngineEnv.DEV
    debug: bool = False

    # State store
    state_store_type: StateStoreType = StateStoreType.LOCAL
    state_path: Path = Path(".converge/state.json")
    workspace: str = Field(default="default", min_length=1, max_length=128)

    # Database
    database_url: str = "sqlite+aiosqlite:///.converge/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Locking
    lock_timeout_seconds: float = Field(default=0.0, ge=0.0)
    lock_poll_interval: float = Field(default=0.5, gt=0.0)
    lock_expiry_seconds: float = Field(default=3600.0, gt=0.0)

    # Reconciler
    max_parallelism: int = Field(default=10, ge=1)
    provider_timeout_seconds: float | None = Field(default=300.0, gt=0.0)

    # Provider retry
    max_retries: int = Field(default=3, ge=0)
    retry_backoff_base: float = Field(default=2.0, gt=0.0)
    retry_max_delay: float = Field(default=60.0, gt=0.0)
    retry_jitter: bool = True

    # Telemetry
    structured_logging: bool = False
    log_level: str = "INFO"

    def is_database_backend(self) -> bool:
        return self.state_store_type == StateStoreType.DATABASE


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info(
            "Loaded settings for environment: %s (state backend: %s)",
            settings.env.value,
            settings.state_store_type.value,
        )

    return settings
