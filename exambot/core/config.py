"""Runtime configuration resolved from ``EXAMBOT_*`` environment variables."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from exambot.services.notifier import DISCORD_API_BASE


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="EXAMBOT_", env_file=".env", extra="ignore")

    # Scheduling
    tick_seconds: float = 60.0
    scheduler_enabled: bool = True

    # Delivery log entries kept in memory
    delivery_log_size: int = 1000

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    # Discord delivery; without a token reminders are only logged
    discord_token: str | None = None
    discord_api_base: str = DISCORD_API_BASE
    http_timeout_seconds: float = 10.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return Settings()
