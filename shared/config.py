"""
Shared configuration management for the Access Layer permissions engine.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PERMISSIONS_",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")


class PermissionsConfig(BaseConfig):
    """Permissions engine configuration."""

    service_name: str = "permissions"

    # Storage
    postgres_min_pool: int = Field(default=2)
    postgres_max_pool: int = Field(default=10)

    # Grant cache
    enable_grant_cache: bool = Field(default=False)
    grant_cache_ttl_seconds: int = Field(default=300)
    entitlement_cache_ttl_seconds: int = Field(default=3600)

    # Generated Literal aliases for entitlement names; None disables generation
    entitlement_types_file: Optional[str] = Field(default=None)


@lru_cache(maxsize=1)
def get_config() -> PermissionsConfig:
    """Get the process-wide permissions configuration."""
    return PermissionsConfig()
