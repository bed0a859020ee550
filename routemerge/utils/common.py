# routemerge/utils/common.py
"""
routemerge common utilities
---------------------------
Small shared helpers used across the aggregator, the registry and the API layer.

Features:
 - JSON encoding with datetime / set / pydantic model support
 - Atomic JSON file writes and tolerant JSON file reads
 - Typed environment variable access
 - UTC time helpers (RFC3339 rendering)
 - Request-scoped context propagation via contextvars (used by the logger)
"""

from __future__ import annotations

import os
import sys
import json
import logging
import datetime
import contextvars
from typing import Any, Callable, Dict, Optional, Union

from pydantic import BaseModel

# Logging
LOG = logging.getLogger("routemerge.utils.common")
LOG.setLevel(os.getenv("ROUTEMERGE_UTIL_LOG", "INFO"))
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
if not LOG.handlers:
    LOG.addHandler(_handler)

# -------------------------
# JSON Helpers
# -------------------------
class EnhancedJSONEncoder(json.JSONEncoder):
    """JSON encoder that understands datetimes, sets and pydantic models."""
    def default(self, obj):
        if isinstance(obj, (datetime.datetime, datetime.date)):
            return obj.isoformat()
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        return super().default(obj)

def json_dumps(obj: Any, indent: Optional[int] = None) -> str:
    try:
        return json.dumps(obj, cls=EnhancedJSONEncoder, indent=indent)
    except (TypeError, ValueError):
        return json.dumps(str(obj))

# -------------------------
# File & Env Utilities
# -------------------------
def safe_write_json(path: Union[str, os.PathLike], data: Any):
    """Atomically write JSON file (write to temp, then rename over the target)."""
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, cls=EnhancedJSONEncoder, indent=2)
    os.replace(tmp_path, path)

def safe_read_json(path: Union[str, os.PathLike], default: Optional[Any] = None) -> Any:
    if not os.path.exists(path):
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        LOG.warning("Failed to read %s: %s", path, e)
        return default

def get_env(key: str, default: Any = None, type_: Callable[[Any], Any] = str) -> Any:
    val = os.getenv(key, None)
    if val is None or val == "":
        return default
    try:
        if type_ == bool:
            return val.lower() in ("1", "true", "yes", "on")
        return type_(val)
    except (TypeError, ValueError):
        LOG.warning("Invalid value for %s=%r; using default %r", key, val, default)
        return default

# -------------------------
# Time utilities
# -------------------------
def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)

def to_rfc3339(dt: Optional[datetime.datetime]) -> str:
    """Render a timestamp as RFC3339; empty string for a missing value."""
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt.isoformat(timespec="seconds").replace("+00:00", "Z")

# -------------------------
# Context propagation
# -------------------------
_current_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("routemerge_ctx", default={})

def set_context(key: str, value: Any):
    ctx = dict(_current_context.get())
    ctx[key] = value
    _current_context.set(ctx)

def get_context(key: str, default: Any = None) -> Any:
    return _current_context.get().get(key, default)

__all__ = [
    "EnhancedJSONEncoder",
    "json_dumps",
    "safe_write_json",
    "safe_read_json",
    "get_env",
    "utc_now",
    "to_rfc3339",
    "set_context",
    "get_context",
]
