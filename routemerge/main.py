# routemerge/main.py
"""
routemerge FastAPI application

 - app factory wiring registry, snapshot cache, poller and aggregator
 - startup: logging, registry load, pollers for every active provider
 - shutdown: cooperative stop of every poller, HTTP session closed
 - exception handlers mapping aggregator errors to HTTP statuses
 - health probes (/health/live, /health/ready) and a Prometheus scrape (/metrics)
 - uvicorn CLI entrypoint
"""

from __future__ import annotations

import os
import sys
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from routemerge.api.providers import router as providers_router
from routemerge.config import Settings, get_settings
from routemerge.errors import DuplicateSourceError, NoCachedResponseError, RegistryError, SourceNotFoundError
from routemerge.local_store import LocalConfigStore
from routemerge.metrics import prometheus_payload
from routemerge.registry import FileSourceRegistry, InMemorySourceRegistry, SourceRegistry
from routemerge.services.lifecycle import AggregatorService
from routemerge.utils.logger import RequestContextMiddleware, configure_logging

LOG = logging.getLogger("routemerge.main")
LOG.setLevel(os.getenv("ROUTEMERGE_MAIN_LOG", "INFO"))
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
if not LOG.handlers:
    LOG.addHandler(_handler)

APP_DESC = "Aggregates dynamic reverse-proxy configuration from HTTP providers and serves the merged result."


def build_registry(settings: Settings) -> SourceRegistry:
    intervals = {"min_interval": settings.min_poll_interval, "default_interval": settings.default_refresh_interval}
    if settings.registry_backend == "file":
        return FileSourceRegistry(settings.registry_path, **intervals)
    return InMemorySourceRegistry(**intervals)


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[SourceRegistry] = None,
    aggregator: Optional[AggregatorService] = None,
    local_store: Optional[LocalConfigStore] = None,
) -> FastAPI:
    settings = settings or get_settings()
    registry = registry or build_registry(settings)
    if aggregator is None:
        aggregator = AggregatorService(
            registry,
            timeout=settings.http_timeout,
            min_interval=settings.min_poll_interval,
        )

    app = FastAPI(title=settings.app_title, version=settings.version, description=APP_DESC)
    app.state.settings = settings
    app.state.registry = registry
    app.state.aggregator = aggregator
    app.state.local_store = local_store or LocalConfigStore(settings.local_config_path)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)

    # -------------------------
    # Exception handlers
    # -------------------------
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(SourceNotFoundError)
    async def not_found_handler(request: Request, exc: SourceNotFoundError):
        return JSONResponse(status_code=404, content={"error": "Provider not found"})

    @app.exception_handler(NoCachedResponseError)
    async def no_response_handler(request: Request, exc: NoCachedResponseError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(DuplicateSourceError)
    async def duplicate_handler(request: Request, exc: DuplicateSourceError):
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        LOG.error("Registry error: %s", exc)
        return JSONResponse(status_code=503, content={"error": "Provider registry unavailable"})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        LOG.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"error": "internal_server_error"})

    # -------------------------
    # Health & metrics
    # -------------------------
    @app.get("/health/live", tags=["health"])
    async def liveness_probe():
        return PlainTextResponse("OK", status_code=200)

    @app.get("/health/ready", tags=["health"])
    async def readiness_probe():
        agg: Optional[AggregatorService] = getattr(app.state, "aggregator", None)
        if agg is None or not agg.started:
            return JSONResponse(status_code=503, content={"ready": False})
        return {"ready": True, "pollers": agg.poller.active_count, "snapshots": len(agg.cache)}

    @app.get("/metrics", tags=["metrics"])
    async def metrics():
        body, content_type = prometheus_payload()
        return Response(content=body, media_type=content_type)

    app.include_router(providers_router)

    # -------------------------
    # Startup / Shutdown events
    # -------------------------
    @app.on_event("startup")
    async def _startup_event():
        configure_logging(
            app_name=settings.app_title,
            level=settings.log_level,
            json=settings.log_json,
            log_dir=settings.log_dir,
        )
        LOG.info("Starting routemerge (version=%s, registry=%s)", settings.version, settings.registry_backend)
        if isinstance(registry, FileSourceRegistry):
            await registry.load()
        await aggregator.start_all()

    @app.on_event("shutdown")
    async def _shutdown_event():
        LOG.info("Shutting down routemerge")
        await aggregator.stop_all()

    return app


def run_uvicorn(host: str = "0.0.0.0", port: int = 8080, reload: bool = False):
    import uvicorn

    uvicorn.run("routemerge.main:create_app", factory=True, host=host, port=int(port), reload=reload, log_level="info")


def main():
    import argparse

    settings = get_settings()
    parser = argparse.ArgumentParser(prog="routemerge")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()
    run_uvicorn(args.host, args.port, reload=args.reload)


if __name__ == "__main__":
    main()
