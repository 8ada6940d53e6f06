"""
Shared configuration management for the Credential Broker.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BROKER_",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Downstream org (authorization query host)
    org_url: str = Field(default="")
    check_path: str = Field(default="/checkAccess")
    authorized_field: str = Field(default="isAuthorized")
    subject_field: str = Field(default="subjectId")

    # Authority (token issuing host, falls back to org_url)
    token_host: str = Field(default="")
    token_path: str = Field(default="/services/oauth2/token")
    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    user_agent: str = Field(default="credential-broker/1.0")

    # Token acquisition
    token_max_attempts: int = Field(default=3)
    token_backoff_min: float = Field(default=0.3)
    token_backoff_max: float = Field(default=0.7)
    token_expiry_skew_seconds: float = Field(default=30.0)
    reauth_delay_seconds: float = Field(default=0.15)
    http_timeout: float = Field(default=10.0)

    # External token cache (optional)
    redis_url: Optional[str] = Field(default=None)
    token_cache_key: Optional[str] = Field(default=None)
    token_cache_ttl_seconds: int = Field(default=45 * 60)

    # Boundary
    allowed_origin: str = Field(default="*")
    edge_cache_control: str = Field(default="s-maxage=60, stale-while-revalidate=30")

    @property
    def resolved_token_host(self) -> str:
        """Token host, falling back to the org host."""
        return (self.token_host.strip() or self.org_url.strip()).rstrip("/")


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
