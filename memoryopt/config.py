from __future__ import annotations

"""Configuration management for the memory optimization layer."""

import os
import uuid
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from ``MEMORYOPT_*`` environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MEMORYOPT_",
        extra="ignore",
    )

    cache_max_size: int = Field(1000, gt=0, description="Local cache capacity in entries")
    cache_ttl: float = Field(300.0, gt=0, description="Local cache TTL in seconds")
    metrics_window: int = Field(1000, gt=0, description="Latency samples kept per operation kind")

    redis_url: str | None = Field(None, description="Distributed cache URL; unset disables the tier")
    redis_password: str | None = None
    redis_db: int = Field(0, ge=0)
    redis_key_prefix: str = "memoryopt:"
    redis_ttl_short: int = Field(300, gt=0)
    redis_ttl_medium: int = Field(3600, gt=0)
    redis_ttl_long: int = Field(86400, gt=0)
    redis_connect_attempts: int = Field(5, gt=0)

    service_id: str = Field(default_factory=lambda: f"memoryopt-{uuid.uuid4().hex[:8]}")
    bus_channel_prefix: str = "memoryopt:bus:"

    embedding_url: str | None = None
    embedding_model: str = "text-embedding-3-small"
    embedding_api_key: str | None = None
    embedding_dims: int | None = Field(None, gt=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    otel_trace_url: str | None = None

    @classmethod
    def load(cls) -> "Settings":
        """Load settings using optional env file from ``MEMORYOPT_CONFIG_FILE``."""
        env_file = os.getenv("MEMORYOPT_CONFIG_FILE")
        kwargs = {"_env_file": env_file} if env_file else {}
        return cls(**kwargs)

    @property
    def distributed_enabled(self) -> bool:
        return bool(self.redis_url)


__all__ = ["Settings"]
