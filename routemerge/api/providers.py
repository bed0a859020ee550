# routemerge/api/providers.py
"""
HTTP provider API
-----------------

Admin surface for external providers plus the endpoint the reverse proxy
polls for its merged dynamic configuration.

Routes (prefix /api/traefik):
 - GET    /http-providers                 list providers
 - POST   /http-providers                 create (starts polling when active)
 - GET    /http-providers/{id}            show one provider
 - PUT    /http-providers/{id}            partial update (restarts / stops polling)
 - DELETE /http-providers/{id}            stop polling and delete
 - POST   /http-providers/{id}/refresh    fire-and-forget fetch
 - POST   /http-providers/{id}/test       fetch now and return the updated record
 - GET    /http-providers/{id}/response   last document served by the provider
 - GET    /merged-config                  merged document + conflicts + sources
 - GET    /provider/config                merged document for the reverse proxy
"""

from __future__ import annotations

import os
import sys
import secrets
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from routemerge.config import Settings
from routemerge.errors import DuplicateSourceError, NoCachedResponseError, SourceNotFoundError
from routemerge.local_store import LocalConfigStore
from routemerge.models import HTTPConfiguration, SourceCreate, SourceUpdate
from routemerge.registry import SourceRegistry
from routemerge.services.lifecycle import AggregatorService

LOG = logging.getLogger("routemerge.api.providers")
LOG.setLevel(os.getenv("ROUTEMERGE_API_LOG", "INFO"))
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
if not LOG.handlers:
    LOG.addHandler(_handler)

router = APIRouter(prefix="/api/traefik", tags=["providers"])

# -------------------------
# Dependencies
# -------------------------
def get_registry(request: Request) -> SourceRegistry:
    return request.app.state.registry


def get_aggregator(request: Request) -> Optional[AggregatorService]:
    return getattr(request.app.state, "aggregator", None)


def require_aggregator(aggregator: Optional[AggregatorService] = Depends(get_aggregator)) -> AggregatorService:
    if aggregator is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Aggregator service not available")
    return aggregator


def get_local_configuration(request: Request) -> HTTPConfiguration:
    store: Optional[LocalConfigStore] = getattr(request.app.state, "local_store", None)
    return store.configuration() if store is not None else HTTPConfiguration()


def verify_provider_token(
    request: Request,
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
):
    settings: Settings = request.app.state.settings
    expected = settings.provider_token
    if not expected:
        return
    supplied = token
    if authorization and authorization.lower().startswith("bearer "):
        supplied = authorization[7:].strip()
    if not supplied or not secrets.compare_digest(supplied, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid provider token")


async def _load_source(registry: SourceRegistry, provider_id: int):
    source = await registry.get_source(provider_id)
    if source is None:
        raise HTTPException(status_code=404, detail="Provider not found")
    return source

# -------------------------
# Provider CRUD
# -------------------------
@router.get("/http-providers")
async def list_providers(registry: SourceRegistry = Depends(get_registry)):
    sources = await registry.list_sources()
    return {"providers": [s.to_response() for s in sources]}


@router.get("/http-providers/{provider_id}")
async def get_provider(provider_id: int, registry: SourceRegistry = Depends(get_registry)):
    source = await _load_source(registry, provider_id)
    return source.to_response()


@router.post("/http-providers", status_code=status.HTTP_201_CREATED)
async def create_provider(
    payload: SourceCreate,
    registry: SourceRegistry = Depends(get_registry),
    aggregator: Optional[AggregatorService] = Depends(get_aggregator),
):
    try:
        source = await registry.create_source(payload)
    except DuplicateSourceError:
        raise HTTPException(status_code=409, detail="Provider with this name already exists")

    if source.is_active and aggregator is not None:
        await aggregator.on_source_created(source)
        source = await registry.get_source(source.id) or source
    return source.to_response()


@router.put("/http-providers/{provider_id}")
async def update_provider(
    provider_id: int,
    payload: SourceUpdate,
    registry: SourceRegistry = Depends(get_registry),
    aggregator: Optional[AggregatorService] = Depends(get_aggregator),
):
    try:
        source = await registry.update_source(provider_id, payload)
    except SourceNotFoundError:
        raise HTTPException(status_code=404, detail="Provider not found")
    except DuplicateSourceError:
        raise HTTPException(status_code=409, detail="Provider name already in use")

    if aggregator is not None:
        await aggregator.on_source_updated(source)
        source = await registry.get_source(source.id) or source
    return source.to_response()


@router.delete("/http-providers/{provider_id}")
async def delete_provider(
    provider_id: int,
    registry: SourceRegistry = Depends(get_registry),
    aggregator: Optional[AggregatorService] = Depends(get_aggregator),
):
    await _load_source(registry, provider_id)
    if aggregator is not None:
        await aggregator.on_source_deleted(provider_id)
    try:
        await registry.delete_source(provider_id)
    except SourceNotFoundError:
        raise HTTPException(status_code=404, detail="Provider not found")
    return {"message": "Provider deleted successfully"}

# -------------------------
# Fetch controls
# -------------------------
@router.post("/http-providers/{provider_id}/refresh")
async def refresh_provider(provider_id: int, aggregator: AggregatorService = Depends(require_aggregator)):
    try:
        await aggregator.refresh_now(provider_id)
    except SourceNotFoundError:
        raise HTTPException(status_code=404, detail="Provider not found")
    return {"message": "Refresh triggered"}


@router.post("/http-providers/{provider_id}/test")
async def test_provider(
    provider_id: int,
    registry: SourceRegistry = Depends(get_registry),
    aggregator: Optional[AggregatorService] = Depends(get_aggregator),
):
    if aggregator is None:
        source = await _load_source(registry, provider_id)
        return source.to_response()
    try:
        source = await aggregator.test_source(provider_id)
    except SourceNotFoundError:
        raise HTTPException(status_code=404, detail="Provider not found")
    return source.to_response()


@router.get("/http-providers/{provider_id}/response")
async def provider_response(provider_id: int, aggregator: AggregatorService = Depends(require_aggregator)):
    try:
        return await aggregator.get_provider_response(provider_id)
    except SourceNotFoundError:
        raise HTTPException(status_code=404, detail="Provider not found")
    except NoCachedResponseError:
        raise HTTPException(status_code=404, detail="No cached response available")

# -------------------------
# Merged views
# -------------------------
@router.get("/merged-config")
async def merged_config(
    aggregator: AggregatorService = Depends(require_aggregator),
    local: HTTPConfiguration = Depends(get_local_configuration),
) -> Dict[str, Any]:
    merged = aggregator.get_merged_config(local)
    body = merged.to_dict()
    body["sources"] = await aggregator.sources_info(local)
    return body


@router.get("/provider/config", dependencies=[Depends(verify_provider_token)])
async def provider_config(
    aggregator: Optional[AggregatorService] = Depends(get_aggregator),
    local: HTTPConfiguration = Depends(get_local_configuration),
):
    if aggregator is None:
        return local.to_document()
    merged = aggregator.get_merged_config(local)
    for c in merged.conflicts:
        LOG.warning(
            "Conflict: %s %r from %s (priority %d) overridden by %s",
            c.type, c.name, c.source, c.source_priority, c.overridden_by,
        )
    return merged.to_document()
