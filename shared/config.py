"""
Shared configuration management for the Curve Data API.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CURVE_API_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Cache storage; an empty redis_url keeps entries in process memory
    redis_url: str = Field(default="")
    cache_retention_seconds: Optional[int] = Field(default=86400)

    # Upstream access
    rpc_timeout_seconds: float = Field(default=10.0)
    multicall_max_calls_per_batch: int = Field(default=500)
    multicall_group_concurrency: int = Field(default=4)
    chain_concurrency: int = Field(default=4)
    prices_api_url: str = Field(default="https://prices.curve.fi")
    chains_file: Optional[str] = Field(default=None)

    # HTTP
    cors_origins: str = Field(default="*")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)
