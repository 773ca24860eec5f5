"""
Shared configuration management for the Membership Access Layer.
"""

from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Relational store
    postgres_dsn: str = Field(default="postgres://localhost:5432/members")
    postgres_min_pool_size: int = Field(default=2)
    postgres_max_pool_size: int = Field(default=10)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


class AccessConfig(ServiceConfig):
    """Configuration for the access service."""

    # "postgres" in deployed environments, "memory" for local runs
    store_backend: str = Field(default="postgres")
    store_timeout_seconds: float = Field(default=2.0, gt=0)

    # "log", "store" or "none"
    audit_sink: str = Field(default="log")

    # Whether 403 responses carry the tier a resource requires
    expose_tier_hint: bool = Field(default=True)

    # Additional entitlement key -> tier name registrations
    extra_tier_weights: Dict[str, str] = Field(default_factory=dict)


def get_config(service_name: str, port: int) -> AccessConfig:
    """Get configuration for a specific service."""
    return AccessConfig(service_name=service_name, port=port)
