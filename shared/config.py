"""
Shared configuration management for the URL Redirector service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="REDIRECTOR_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Persistent snapshot storage
    storage_path: str = Field(default="redirector-storage.json")
    sync_redis_url: Optional[str] = Field(default=None)
    sync_key_prefix: str = Field(default="redirector:")

    # Feed refresh
    feed_timeout_seconds: float = Field(default=15.0)
    feed_retry_attempts: int = Field(default=2)
    feed_retry_base_delay: float = Field(default=0.5)
    scheduler_enabled: bool = Field(default=True)
    default_update_interval: int = Field(default=900)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
