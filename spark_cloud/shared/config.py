"""
Shared configuration management for the Spark Cloud SDK.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SparkCloudConfig(BaseSettings):
    """Client configuration, overridable through ``SPARK_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SPARK_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Cloud API
    api_base_url: str = Field(default="https://api.particle.io")
    oauth_client_id: str = Field(default="particle")
    oauth_client_secret: str = Field(default="particle")
    request_timeout: float = Field(default=10.0)
    log_level: str = Field(default="info")
    # Install the structlog JSON pipeline when the client is created.
    setup_logging: bool = Field(default=False)

    # Stream connections
    reconnect_base_delay: float = Field(default=1.0)
    reconnect_max_delay: float = Field(default=30.0)
    reconnect_jitter: bool = Field(default=False)
    max_reconnect_attempts: Optional[int] = Field(default=None)
    # No read timeout on streams; keep-alive comments arrive roughly every 9s.
    stream_read_timeout: Optional[float] = Field(default=None)

    # Event dispatch
    dispatch_workers: int = Field(default=4, ge=1)

    # Owned devices snapshot
    device_snapshot_ttl: float = Field(default=300.0)

    # Publishing
    default_ttl: int = Field(default=60, ge=0)

    def url(self, path: str) -> str:
        """Join a cloud API path onto the configured base URL."""
        return f"{self.api_base_url.rstrip('/')}/{path.lstrip('/')}"


def get_config(**overrides) -> SparkCloudConfig:
    """Get client configuration, applying explicit overrides over the environment."""
    return SparkCloudConfig(**overrides)
