"""
Shared configuration management for the PC Configurator services.
"""

from typing import Any, Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CONFIGURATOR_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/configurator")

    # Rule graph
    rules_file: Optional[str] = Field(default=None, description="Rule export JSON used instead of PostgreSQL")
    rule_graph_ttl_seconds: int = Field(default=300)
    list_delimiter: str = Field(default=",")
    required_slot_groups: List[Dict[str, Any]] = Field(default_factory=list)

    # Result caching
    enable_result_cache: bool = Field(default=True)
    result_cache_ttl_seconds: int = Field(default=60)


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
