"""
Shared configuration management for the Grounded AI Gateway.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Coordination store. Unset means in-process coordination only.
    redis_url: Optional[str] = Field(default=None)
    redis_socket_timeout: float = Field(default=2.0)
    coordination_key_prefix: str = Field(default="ai:")

    # Upstream completion service
    upstream_url: str = Field(default="https://api.openai.com")
    upstream_api_key: Optional[str] = Field(default=None)
    upstream_timeout: float = Field(default=60.0)
    upstream_max_attempts: int = Field(default=5)
    upstream_base_backoff_ms: int = Field(default=250)
    upstream_jitter_ms: int = Field(default=125)

    # Admission control
    rate_limit: int = Field(default=20)
    rate_window_seconds: int = Field(default=60)
    lock_ttl_seconds: int = Field(default=30)

    # Payload bounds
    max_user_message_chars: int = Field(default=4000)
    max_top_k: int = Field(default=8)
    max_context_chars: int = Field(default=20_000)

    # Retrieval
    retrieval_max_chunks: int = Field(default=10)
    retrieval_char_budget: int = Field(default=6500)
    retrieval_chunk_char_cap: int = Field(default=1500)
    retrieval_max_keywords: int = Field(default=12)


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
