"""
Configuration management for the task escrow service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict


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


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class EscrowConfig(BaseModel):
    """Automatic escrow release configuration."""

    model_config = ConfigDict(extra="forbid")
    enabled: bool
    delay_ms: int
    min_amount: Decimal
    max_amount: Decimal
    poll_interval_seconds: float


class SweeperConfig(BaseModel):
    """Expiry sweeper and retention cleanup configuration."""

    model_config = ConfigDict(extra="forbid")
    interval_seconds: float
    stale_after_seconds: int
    retention_seconds: int
    retention_interval_seconds: float


class WebhooksConfig(BaseModel):
    """Webhook delivery configuration."""

    model_config = ConfigDict(extra="forbid")
    workers: int
    max_attempts: int
    backoff_base_seconds: float
    timeout_seconds: float
    failure_threshold: int


class BiddingConfig(BaseModel):
    """Bid admission configuration."""

    model_config = ConfigDict(extra="forbid")
    min_reputation: float


class LedgerConfig(BaseModel):
    """External settlement ledger connection configuration."""

    model_config = ConfigDict(extra="forbid")
    enabled: bool
    base_url: str
    create_path: str
    release_path: str
    timeout_seconds: int


class ReputationConfig(BaseModel):
    """Reputation service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    score_path: str
    timeout_seconds: int


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
    request: RequestConfig
    escrow: EscrowConfig
    sweeper: SweeperConfig
    webhooks: WebhooksConfig
    bidding: BiddingConfig
    ledger: LedgerConfig
    reputation: ReputationConfig


def get_config_path() -> Path:
    """Determine configuration file path."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


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
    """Drop the cached settings so the next call reloads from disk."""
    get_settings.cache_clear()
