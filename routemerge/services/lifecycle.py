# routemerge/services/lifecycle.py
"""
Aggregator lifecycle controller
-------------------------------

`AggregatorService` wires the registry, the snapshot cache and the poller
together and is the single object the HTTP layer talks to.

Responsibilities:
 - boot: load every registry source and start a poller for each active one
 - registry hooks: on_source_created / on_source_updated / on_source_deleted
 - out-of-band refresh (fire-and-forget, tracked) and synchronous test fetch
 - read side: merged configuration, cache statuses, sources info, last
   provider response
 - shutdown: stop pollers, cancel pending refreshes, close the HTTP session
"""

from __future__ import annotations

import os
import asyncio
from typing import Any, Dict, List, Optional, Set

from routemerge.config import DEFAULT_HTTP_TIMEOUT, MIN_POLL_INTERVAL
from routemerge.errors import AggregatorStartupError, NoCachedResponseError, SourceNotFoundError
from routemerge.metrics import set_merge_conflicts
from routemerge.models import HTTPConfiguration, MergedConfiguration, Snapshot, Source
from routemerge.registry import SourceRegistry
from routemerge.services.merge import merge_configurations
from routemerge.services.poller import Poller
from routemerge.services.snapshot_cache import SnapshotCache
from routemerge.services.status import get_sources_info
from routemerge.utils.logger import get_logger

LOG = get_logger("routemerge.aggregator")
LOG.setLevel(os.getenv("ROUTEMERGE_AGGREGATOR_LOG", "INFO"))


class AggregatorService:
    def __init__(
        self,
        registry: SourceRegistry,
        cache: Optional[SnapshotCache] = None,
        poller: Optional[Poller] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        min_interval: int = MIN_POLL_INTERVAL,
    ):
        self.registry = registry
        self.cache = cache or SnapshotCache()
        self.poller = poller or Poller(registry, self.cache, timeout=timeout, min_interval=min_interval)
        self._refresh_tasks: Set[asyncio.Task] = set()
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    # -------------------------
    # Boot / shutdown
    # -------------------------
    async def start_all(self) -> int:
        """Start a poller for every active source. Returns the number started."""
        LOG.info("Starting HTTP provider aggregator service...")
        try:
            sources = await self.registry.list_sources()
        except Exception as e:
            raise AggregatorStartupError(f"Failed to load HTTP providers: {e}") from e

        results = await asyncio.gather(*(self.poller.start(s) for s in sources), return_exceptions=True)
        started = 0
        for source, result in zip(sources, results):
            if isinstance(result, BaseException):
                LOG.error("Failed to start polling %s: %s", source.name, result)
            elif result:
                started += 1
        self._started = True
        LOG.info("Aggregator service started with %d providers (%d polling)", len(sources), started)
        return started

    async def stop_all(self):
        pending = [t for t in self._refresh_tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._refresh_tasks.clear()
        await self.poller.stop_all()
        await self.poller.close()
        self._started = False
        LOG.info("Aggregator service stopped")

    # -------------------------
    # Registry hooks
    # -------------------------
    async def on_source_created(self, source: Source) -> bool:
        return await self.poller.start(source)

    async def on_source_updated(self, source: Source) -> bool:
        if not source.is_active:
            await self.poller.stop(source.id)
            return False
        return await self.poller.start(source)

    async def on_source_deleted(self, source_id: int) -> bool:
        return await self.poller.stop(source_id, forget=True)

    # -------------------------
    # Manual fetches
    # -------------------------
    async def refresh_now(self, source_id: int) -> asyncio.Task:
        """
        Schedule one fetch for `source_id` outside the regular interval. The
        poller timer is left alone. Raises SourceNotFoundError for unknown ids.
        """
        source = await self.registry.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        task = asyncio.create_task(self.poller.fetch(source), name=f"routemerge-refresh-{source_id}")
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)
        return task

    async def test_source(self, source_id: int) -> Source:
        """Fetch once, wait for the outcome and return the updated record."""
        source = await self.registry.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        await self.poller.fetch(source)
        refreshed = await self.registry.get_source(source_id)
        return refreshed if refreshed is not None else source

    # -------------------------
    # Read side
    # -------------------------
    def get_merged_config(self, local: Optional[HTTPConfiguration] = None) -> MergedConfiguration:
        merged = merge_configurations(local, self.cache.get_all())
        set_merge_conflicts(len(merged.conflicts))
        return merged

    def get_statuses(self) -> List[Snapshot]:
        return self.cache.list_sorted_by_priority_descending()

    async def sources_info(self, local: Optional[HTTPConfiguration] = None) -> List[Dict[str, Any]]:
        sources = await self.registry.list_sources()
        return get_sources_info(local, sources, self.cache.get_all())

    async def get_provider_response(self, source_id: int) -> Dict[str, Any]:
        """Last successfully fetched document of a source, as served by the provider."""
        source = await self.registry.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        snapshot = self.cache.get(source_id)
        if snapshot is None or not snapshot.has_document:
            raise NoCachedResponseError(source_id)
        return snapshot.document.to_document()
