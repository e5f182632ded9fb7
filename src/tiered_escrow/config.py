"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup - if a setting has the wrong shape, the app fails fast with a
clear error message.

Usage:
    from tiered_escrow.config import get_settings
    settings = get_settings()
    print(settings.escrow_transfer_mode)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ONE_DAY_MS = 24 * 60 * 60 * 1000
MAX_TIMELOCK_MS = 100 * 365 * ONE_DAY_MS


class Settings(BaseSettings):
    """Central configuration for the Tiered Escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database ---
    database_url: str = "sqlite+aiosqlite:///./tiered_escrow.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis (event fan-out) ---
    redis_url: str = "redis://localhost:6379/0"
    redis_event_channel: str = "tiered_escrow.events"

    # --- Escrow protocol ---
    escrow_owner: str = "owner"
    escrow_custody_account: str = "escrow-custody"
    escrow_transfer_mode: Literal["psp22", "native_asset"] = "psp22"
    escrow_psp22_contract: str = "psp22-usdt"
    escrow_native_asset_id: int = 1984
    escrow_default_timelock_ms: int = Field(
        default=30 * ONE_DAY_MS, ge=ONE_DAY_MS, le=MAX_TIMELOCK_MS
    )
    escrow_initial_fee_bps: int = Field(default=100, ge=0, le=10_000)

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
