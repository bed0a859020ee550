# routemerge/utils/logger.py
"""
routemerge logger utilities
---------------------------
Logging setup shared by the aggregator service.

Features:
 - JSONFormatter and human-friendly formatter
 - Console handler plus optional rotating file handler
 - FastAPI request middleware that injects a request_id into the log context
 - Helper to configure logging from Settings / environment variables

Usage:
    from routemerge.utils.logger import configure_logging
    configure_logging(app_name="routemerge", level="INFO", json=False)
    log = logging.getLogger("routemerge.poller")
    log.info("hello", extra={"source": "edge-a"})
"""

from __future__ import annotations

import os
import sys
import time
import uuid
import socket
import logging
import logging.handlers
import pathlib
import threading
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from routemerge.utils.common import json_dumps, set_context, get_context, utc_now, to_rfc3339

# -------------------------
# Constants & Env defaults
# -------------------------
DEFAULT_LOG_LEVEL = os.getenv("ROUTEMERGE_LOG_LEVEL", "INFO").upper()
DEFAULT_LOG_FILE = os.getenv("ROUTEMERGE_LOG_FILE", "routemerge.log")
DEFAULT_MAX_BYTES = int(os.getenv("ROUTEMERGE_LOG_MAX_BYTES", str(20 * 1024 * 1024)))  # 20MB
DEFAULT_BACKUP_COUNT = int(os.getenv("ROUTEMERGE_LOG_BACKUPS", "5"))

# attributes every LogRecord carries; anything else came in through `extra`
_RESERVED_ATTRS = frozenset((
    "args", "msg", "levelname", "levelno", "name", "pathname", "filename", "module",
    "lineno", "funcName", "exc_info", "exc_text", "stack_info", "created", "msecs",
    "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
    "message", "asctime",
))

def _make_request_id() -> str:
    return uuid.uuid4().hex

def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown-host"

# -------------------------
# Formatters
# -------------------------
class JSONFormatter(logging.Formatter):
    """
    JSON formatter that attaches standard fields:
      - ts, level, logger, message, module, line
      - service, hostname, pid
      - optional: request_id, extra, exc_info
    """
    def __init__(self, service_name: str = "routemerge", extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.service = service_name
        self.extra_fields = extra_fields or {}
        self.hostname = _get_hostname()
        self.pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": to_rfc3339(utc_now()),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "service": self.service,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        extra = {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(self.extra_fields)
        return json_dumps(payload)

class HumanFormatter(logging.Formatter):
    """
    Human-friendly formatter. Appends the request id when one is in context.
    """
    def __init__(self, service_name: str = "routemerge"):
        fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        super().__init__(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")
        self.service = service_name

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        req_id = getattr(record, "request_id", None) or get_context("request_id", None)
        if req_id:
            base = f"{base} | req_id={req_id}"
        return base

class RequestIdFilter(logging.Filter):
    """
    Attach request_id to log records (pulled from get_context()).
    """
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_context("request_id", None)
        return True

# -------------------------
# FastAPI middleware integration (request context)
# -------------------------
class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Injects a request id into the log context and logs request timing.
    """
    def __init__(self, app: FastAPI, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        req_id = request.headers.get(self.header_name) or _make_request_id()
        set_context("request_id", req_id)
        try:
            response = await call_next(request)
        finally:
            elapsed = time.perf_counter() - start
        response.headers[self.header_name] = req_id
        logging.getLogger("routemerge.request").debug("http_request", extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_sec": round(elapsed, 6),
        })
        set_context("request_id", None)
        return response

# -------------------------
# Configure logging
# -------------------------
_DEFAULT_CONFIGURED = False
_LOCK = threading.Lock()

def configure_logging(
    app_name: str = "routemerge",
    level: Optional[str] = None,
    json: bool = False,
    log_dir: Optional[str] = None,
    extra_fields: Optional[Dict[str, Any]] = None,
):
    """
    Configure root logging for the service.

    Parameters:
      - app_name: service name inserted into JSON logs
      - level: logging level (e.g. "INFO")
      - json: use JSONFormatter on the console instead of HumanFormatter
      - log_dir: when set, also write JSON logs to a rotating file there
    """
    global _DEFAULT_CONFIGURED
    with _LOCK:
        if _DEFAULT_CONFIGURED:
            return
        level = (level or DEFAULT_LOG_LEVEL).upper()
        numeric = getattr(logging, level, logging.INFO)
        root = logging.getLogger()
        root.setLevel(numeric)

        ch = logging.StreamHandler(stream=sys.stdout)
        if json:
            ch.setFormatter(JSONFormatter(service_name=app_name, extra_fields=extra_fields))
        else:
            ch.setFormatter(HumanFormatter(service_name=app_name))
        ch.setLevel(numeric)
        ch.addFilter(RequestIdFilter())
        root.addHandler(ch)

        if log_dir:
            path = pathlib.Path(log_dir)
            path.mkdir(parents=True, exist_ok=True)
            fh = logging.handlers.RotatingFileHandler(
                str(path / DEFAULT_LOG_FILE),
                maxBytes=DEFAULT_MAX_BYTES,
                backupCount=DEFAULT_BACKUP_COUNT,
                encoding="utf-8",
            )
            fh.setLevel(numeric)
            fh.setFormatter(JSONFormatter(service_name=app_name, extra_fields=extra_fields))
            fh.addFilter(RequestIdFilter())
            root.addHandler(fh)

        _DEFAULT_CONFIGURED = True

def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Return a routemerge logger. call configure_logging first.
    """
    if name is None:
        name = "routemerge"
    return logging.getLogger(name)

__all__ = [
    "configure_logging",
    "get_logger",
    "JSONFormatter",
    "HumanFormatter",
    "RequestContextMiddleware",
    "RequestIdFilter",
]
