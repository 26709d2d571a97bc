"""
Configuration using Pydantic Settings.

Every field can be set from the environment with the ``ZSQ_`` prefix
(``ZSQ_REDIS_URL``, ``ZSQ_SCRIPTING=false``, ...) or from a ``.env`` file.
The store and queue classes never read settings on their own; use
``RedisStore.from_settings`` / ``MessageQueue.from_settings`` to build them
from configuration.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueSettings(BaseSettings):
    """zsq settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ZSQ_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    namespace: str = Field(default="rsmq", pattern=r"^[A-Za-z0-9_-]+$")
    realtime: bool = False
    scripting: bool = True
    max_retries: int = Field(default=5, ge=1)
    socket_timeout: float = Field(default=2.0, gt=0)

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"


@lru_cache
def get_settings() -> QueueSettings:
    """Get cached settings instance."""
    return QueueSettings()
