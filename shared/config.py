"""
Shared configuration management for the Directory Access service.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ACCESS_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")
    store_backend: str = Field(default="postgres", description="postgres or memory")

    # Directory access
    unit_price: float = Field(default=29.99, description="Monthly price of one paid seat")
    paid_access_days: int = Field(default=30, description="Length of a paid access period")
    access_cache_ttl: int = Field(default=300, description="Seconds to cache subject access checks")
    transition_retry_attempts: int = Field(default=2, description="Attempts for a transition that lost a write race")


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
