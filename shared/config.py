"""
Shared configuration management for the Food Traceability service.
"""

from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_REQUIRED_CERTIFICATIONS = ["FDA Approved", "FSSAI Certified", "ISO 22000"]


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="TRACE_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Record store
    store_backend: str = Field(default="memory", description="memory or postgres")
    postgres_dsn: str = Field(default="postgres://localhost:5432/food_traceability")
    postgres_min_pool_size: int = Field(default=2)
    postgres_max_pool_size: int = Field(default=10)
    postgres_command_timeout: float = Field(default=30.0)

    # Evaluation rules
    required_certifications: List[str] = Field(
        default_factory=lambda: list(DEFAULT_REQUIRED_CERTIFICATIONS)
    )
    near_expiry_hours: int = Field(default=24)

    # Alert broadcasting
    max_subscribers: int = Field(default=1000)
    subscriber_queue_size: int = Field(default=100)


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
