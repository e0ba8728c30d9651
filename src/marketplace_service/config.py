"""
Configuration management for the marketplace service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEY_PARTS: tuple[str, ...] = ("secret", "password", "token", "private_key")


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str
    timeout_seconds: float


class PaymentsConfig(BaseModel):
    """Platform fee configuration."""

    model_config = ConfigDict(extra="forbid")
    platform_fee: Decimal


class RetryConfig(BaseModel):
    """Backoff policy for transient persistence failures."""

    model_config = ConfigDict(extra="forbid")
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float


class SubscriptionsConfig(BaseModel):
    """Live list (SSE) configuration."""

    model_config = ConfigDict(extra="forbid")
    poll_interval_seconds: float
    keepalive_interval_seconds: int


class StorageConfig(BaseModel):
    """Completion photo storage configuration."""

    model_config = ConfigDict(extra="forbid")
    photo_path: str
    public_base_url: str
    max_photo_size: int


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    payments: PaymentsConfig
    retry: RetryConfig
    subscriptions: SubscriptionsConfig
    storage: StorageConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    return Path(os.environ.get("CONFIG_PATH", "config.yaml"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings from the configured YAML file."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings so the next call reloads the file."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER
            if any(part in key.lower() for part in _SENSITIVE_KEY_PARTS)
            else _redact(item)
            for key, item in value.items()
        }
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return _redact(get_settings().model_dump(mode="json"))
