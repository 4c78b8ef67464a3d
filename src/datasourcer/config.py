from __future__ import annotations

import logging
import sys
from typing import List, Literal, Optional

from pydantic import BaseModel, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from datasourcer.exceptions import ConfigError


def split_csv(value: Optional[str]) -> List[str]:
    """Split a comma-separated setting into trimmed, non-empty parts."""
    if not value:
        return []
    return [p.strip() for p in value.split(",") if p and p.strip()]


class AppConfig(BaseModel):
    """Application-specific configuration values."""

    name: str = "datasourcer"
    log_level: str = "INFO"
    # Only newline-delimited JSON-RPC over stdio is served for now
    transport: Literal["stdio"] = "stdio"
    # Comma-separated connector names, e.g. "localfs, web". Empty enables all.
    enabled_connectors: Optional[str] = None


class AuthConfig(BaseModel):
    """Credential store and token refresh settings."""

    store_path: Optional[str] = None
    safety_margin_seconds: int = 60


class HttpConfig(BaseModel):
    timeout: float = 20.0
    connect_timeout: float = 5.0
    user_agent: str = "datasourcer/0.1"


class RetryConfig(BaseModel):
    """Per-request retry policy shared by HTTP connectors."""

    initial_delay: float = 0.8
    multiplier: float = 1.8
    max_retries: int = 4


class CpuPoolConfig(BaseModel):
    workers: Optional[int] = None


class LocalFsConfig(BaseModel):
    """Local files connector configuration values."""

    roots: Optional[str] = None  # Comma-separated directories, e.g. "~/notes, ~/docs"
    max_file_bytes: int = 5 * 1024 * 1024
    max_list: int = 500


class MicrosoftConfig(BaseModel):
    """Microsoft Graph connector configuration values."""

    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    default_scopes: str = "offline_access Mail.Read Calendars.Read User.Read"
    tenant_id: Optional[str] = None


class FederatedConfig(BaseModel):
    """Cross-connector search defaults."""

    default_limit: int = 10
    timeout_seconds: float = 10.0


class Settings(BaseSettings):
    """Top-level settings loaded from environment variables and .env only."""

    model_config = SettingsConfigDict(
        env_prefix="DATASOURCER_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    app: AppConfig = AppConfig()
    auth: AuthConfig = AuthConfig()
    http: HttpConfig = HttpConfig()
    retry: RetryConfig = RetryConfig()
    cpu_pool: CpuPoolConfig = CpuPoolConfig()
    localfs: LocalFsConfig = LocalFsConfig()
    microsoft: MicrosoftConfig = MicrosoftConfig()
    federated: FederatedConfig = FederatedConfig()


def load_settings() -> Settings:
    """Load settings from environment variables and .env only."""
    try:
        return Settings()  # type: ignore[call-arg]
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def configure_logging(level: str = "INFO") -> None:
    """Send log records to stderr; stdout carries the JSON-RPC stream."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
