"""Application configuration using pydantic-settings."""
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Process configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TABSHELF_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage backend - "memory" keeps everything in-process (tests, single surface)
    storage_backend: Literal["memory", "redis"] = "memory"

    # Redis - shared key-value store between surfaces
    redis_url: str = "redis://localhost:6379"
    redis_enabled: bool = True
    redis_pool_size: int = Field(default=10, ge=1)
    key_prefix: str = "tabshelf:"

    # Expiry poller
    expiry_poll_seconds: float = Field(default=60.0, gt=0)

    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """Accept log levels case-insensitively."""
        return v.upper()

    @property
    def changes_channel(self) -> str:
        """Pub/sub channel carrying change notifications."""
        return f"{self.key_prefix}changes"


@lru_cache
def get_config() -> AppConfig:
    """Get cached configuration instance."""
    return AppConfig()
