"""
Shared configuration management for the tiered credential broker.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="BROKER_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage
    storage_backend: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")
    cas_max_attempts: int = Field(default=32)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


class BrokerConfig(ServiceConfig):
    """Settings for the credential broker service."""

    # Upstream generation API
    upstream_url: str = Field(default="http://localhost:8030")
    upstream_timeout_seconds: float = Field(default=120.0)

    # Credential renewal endpoints
    credential_service_url: str = Field(default="http://localhost:8030")
    renewal_timeout_seconds: float = Field(default=10.0)
    renewal_margin_seconds: int = Field(default=300)
    default_credential_ttl_seconds: int = Field(default=3600)
    renewal_failure_threshold: int = Field(default=3)
    renewal_recovery_timeout: float = Field(default=30.0)

    # Tiers
    free_hourly_quota: int = Field(default=10)
    free_priority: int = Field(default=1)
    premium_hourly_quota: int = Field(default=100)
    premium_priority: int = Field(default=2)


def get_config(service_name: str, port: int) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port)


def get_broker_config(port: int = 8020, **overrides) -> BrokerConfig:
    """Get configuration for the broker service."""
    return BrokerConfig(service_name="broker", port=port, **overrides)
