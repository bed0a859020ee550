# routemerge/config.py
"""
routemerge configuration
------------------------

Environment-driven settings for the aggregator service. Values are read from
the process environment (and a `.env` file when present) using the
`ROUTEMERGE_` prefix, then validated into a pydantic `Settings` model.

Note:
- Module-level defaults are plain constants so that low-level modules
  (poller, models) can import them without building a Settings object.
- `get_settings()` is cached; tests build `Settings(...)` directly and pass it
  to `create_app()`.
"""

from __future__ import annotations

import os
import sys
import logging
import pathlib
import functools
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from routemerge.utils.common import get_env

# Setup logging for the config module
LOG = logging.getLogger("routemerge.config")
LOG.setLevel(os.getenv("ROUTEMERGE_CONFIG_LOG_LEVEL", "INFO"))
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
if not LOG.handlers:
    LOG.addHandler(_handler)

# Load environment variables
load_dotenv()  # loads .env if present

# Aggregator defaults
DEFAULT_HTTP_TIMEOUT = 5.0           # seconds, per provider fetch
MIN_POLL_INTERVAL = 5                # seconds, floor applied to every provider
DEFAULT_REFRESH_INTERVAL = 30        # seconds, used when a provider is created without a usable interval
LOCAL_SOURCE_NAME = "local"          # owner name of first-party definitions; reserved for providers
LOCAL_SOURCE_PRIORITY = 9999         # reported priority of the first-party configuration

REGISTRY_BACKENDS = ("memory", "file")

class Settings(BaseModel):
    """
    Runtime settings for one routemerge process.
    """
    app_title: str = Field("routemerge", description="OpenAPI title")
    version: str = Field("0.1.0")
    host: str = Field("0.0.0.0")
    port: int = Field(8080)

    http_timeout: float = Field(DEFAULT_HTTP_TIMEOUT, description="Per-fetch timeout in seconds")
    min_poll_interval: int = Field(MIN_POLL_INTERVAL, description="Lower bound for every provider poll interval")
    default_refresh_interval: int = Field(DEFAULT_REFRESH_INTERVAL)

    registry_backend: str = Field("memory", description="memory | file")
    data_dir: pathlib.Path = Field(pathlib.Path("data"))
    local_config_path: Optional[pathlib.Path] = Field(None, description="JSON file with first-party routers/services/middlewares")

    provider_token: str = Field("", description="Shared token for the reverse-proxy provider endpoint; empty disables the check")

    log_level: str = Field("INFO")
    log_json: bool = Field(False)
    log_dir: Optional[str] = Field(None)

    cors_allow_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://localhost:8080"])

    @field_validator("registry_backend")
    @classmethod
    def backend_must_be_known(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in REGISTRY_BACKENDS:
            raise ValueError(f"registry_backend must be one of {REGISTRY_BACKENDS}, got {v!r}")
        return v

    @field_validator("http_timeout")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("http_timeout must be positive")
        return v

    @field_validator("min_poll_interval", "default_refresh_interval")
    @classmethod
    def interval_must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("intervals must be at least 1 second")
        return v

    @property
    def registry_path(self) -> pathlib.Path:
        return self.data_dir / "sources.json"

def load_settings_from_env() -> Settings:
    """
    Build Settings from ROUTEMERGE_* environment variables.
    """
    origins = get_env("ROUTEMERGE_CORS_ALLOW_ORIGINS", None)
    local_path = get_env("ROUTEMERGE_LOCAL_CONFIG_PATH", None)
    kwargs = {
        "app_title": get_env("ROUTEMERGE_APP_TITLE", "routemerge"),
        "version": get_env("ROUTEMERGE_VERSION", "0.1.0"),
        "host": get_env("ROUTEMERGE_HOST", "0.0.0.0"),
        "port": get_env("ROUTEMERGE_PORT", 8080, int),
        "http_timeout": get_env("ROUTEMERGE_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT, float),
        "min_poll_interval": get_env("ROUTEMERGE_MIN_POLL_INTERVAL", MIN_POLL_INTERVAL, int),
        "default_refresh_interval": get_env("ROUTEMERGE_DEFAULT_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL, int),
        "registry_backend": get_env("ROUTEMERGE_REGISTRY_BACKEND", "memory"),
        "data_dir": pathlib.Path(get_env("ROUTEMERGE_DATA_DIR", "data")),
        "local_config_path": pathlib.Path(local_path) if local_path else None,
        "provider_token": get_env("ROUTEMERGE_PROVIDER_TOKEN", ""),
        "log_level": get_env("ROUTEMERGE_LOG_LEVEL", "INFO"),
        "log_json": get_env("ROUTEMERGE_LOG_JSON", False, bool),
        "log_dir": get_env("ROUTEMERGE_LOG_DIR", None),
    }
    if origins:
        kwargs["cors_allow_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
    settings = Settings(**kwargs)
    if not settings.provider_token:
        LOG.warning("ROUTEMERGE_PROVIDER_TOKEN is empty; the provider endpoint is unauthenticated")
    return settings

@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings_from_env()
