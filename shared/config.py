"""
Shared configuration management for the Rewards Policy Engine.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="REWARDS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/rewards")

    # Policy source: "memory", "file" or "postgres"
    policy_source: str = Field(default="memory")
    policy_file: Optional[str] = Field(default=None)

    # Registry cache
    policy_cache_ttl_seconds: float = Field(default=60.0, gt=0)
    policy_fetch_timeout_seconds: float = Field(default=2.0, gt=0)
    policy_cache_max_scopes: int = Field(default=10000, gt=0)

    # Evaluation
    evaluation_timeout_seconds: Optional[float] = Field(default=None)

    # Change notifications
    enable_invalidation_listener: bool = Field(default=False)
    invalidation_channel: str = Field(default="rewards:policy-changes")


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
