"""
Configuration loading for pagescore.

Loads non-secret settings from config.yaml, secrets from environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from pagescore.freshness import REBUILD_MAX_TTL, SERVE_STALE_INTERVAL
from pagescore.keys import DEFAULT_LOCK_PREFIX
from pagescore.pagespeed_client import DEFAULT_BASE_URL
from pagescore.ratelimit import DEFAULT_IP_HEADERS

DEFAULT_CONFIG_PATH = "config.yaml"


class AppConfig(BaseModel):
    """Application configuration. Secrets come from env vars, rest from YAML."""

    # Secrets (from environment only)
    pagespeed_api_key: Optional[str] = None
    api_key: Optional[str] = None

    # Shared store; in-memory when unset
    redis_url: Optional[str] = None

    # PageSpeed settings
    pagespeed_base_url: str = DEFAULT_BASE_URL
    fetch_timeout: float = Field(default=60.0, gt=0)

    # Cache settings (seconds)
    serve_stale_interval: float = Field(default=SERVE_STALE_INTERVAL, gt=0)
    rebuild_max_ttl: float = Field(default=REBUILD_MAX_TTL, gt=0)
    lock_ttl: float = Field(default=30.0, gt=0)
    lock_prefix: str = Field(default=DEFAULT_LOCK_PREFIX, min_length=1)

    # Rate limiting
    rate_limit_requests: int = Field(default=5, ge=1)
    rate_limit_window: float = Field(default=60.0, gt=0)
    rate_limit_prefix: str = "RATELIMIT:"
    client_ip_headers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IP_HEADERS)
    )

    @model_validator(mode="after")
    def validate_rebuild_threshold(self) -> "AppConfig":
        if self.rebuild_max_ttl >= self.serve_stale_interval:
            raise ValueError(
                "rebuild_max_ttl must be less than serve_stale_interval "
                f"({self.rebuild_max_ttl} >= {self.serve_stale_interval})"
            )
        return self


def load_config(config_path: str | None = None) -> AppConfig:
    """
    Load configuration from YAML file + environment variables.

    Args:
        config_path: Path to config.yaml. If None, reads CONFIG_PATH env var;
                     if that is unset too, config.yaml in the current
                     directory is used when present, defaults otherwise.

    Returns:
        Validated AppConfig instance.
    """
    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH")

    raw = None
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = Path(DEFAULT_CONFIG_PATH)

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    # Inject secrets from environment (never from YAML)
    config_data = {
        **raw,
        "pagespeed_api_key": os.environ.get("PAGESPEED_API_KEY"),
        "api_key": os.environ.get("API_KEY"),
    }

    redis_url = os.environ.get("REDIS_URL")
    if redis_url:
        config_data["redis_url"] = redis_url

    return AppConfig(**config_data)
