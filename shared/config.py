"""
Shared configuration management for the Door Access Layer.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")
    user_service_url: str = Field(default="http://localhost:8020")
    store_backend: Literal["postgres", "memory"] = Field(default="postgres")

    # Collaborator calls (rule fetch, door fetch, user context, audit append)
    collaborator_timeout_seconds: float = Field(default=3.0, ge=0.1, le=30.0)
    user_service_failure_threshold: int = Field(default=5, ge=1)
    user_service_recovery_timeout: float = Field(default=30.0, gt=0)

    # Decision policy
    audit_failure_policy: Literal["warn", "fail_closed"] = Field(default="warn")
    default_timezone: str = Field(default="Europe/Oslo")
    default_minimum_rssi: int = Field(default=-70)

    # Audit analytics
    suspicious_window_minutes: int = Field(default=30, ge=1)
    suspicious_threshold: int = Field(default=5, ge=1)
    log_export_limit: int = Field(default=10000, ge=1)


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
