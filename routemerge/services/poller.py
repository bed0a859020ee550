# routemerge/services/poller.py
"""
Provider poller
---------------

One cooperative asyncio task per active provider. Each task fetches the
provider URL on a fixed interval and writes the outcome to the snapshot cache
and (denormalized) to the source registry.

Features:
 - shared aiohttp ClientSession with a per-request total timeout
 - fixed-interval re-polling with a lower bound (MIN_POLL_INTERVAL)
 - the source record is re-read from the registry on every tick, so URL and
   priority edits take effect without a restart
 - cooperative stop via asyncio.Event; late results from a stopped poller are
   rejected by the cache generation check
 - fetch errors are recorded, never raised; the prior document is kept
 - prometheus counters for fetch outcome / latency and running pollers
"""

from __future__ import annotations

import os
import sys
import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import aiohttp
from aiohttp import ClientTimeout

from routemerge.config import DEFAULT_HTTP_TIMEOUT, MIN_POLL_INTERVAL
from routemerge.errors import DocumentParseError, SourceNotFoundError
from routemerge.metrics import record_fetch, set_active_pollers
from routemerge.models import HTTPConfiguration, Snapshot, Source, parse_provider_document
from routemerge.registry import SourceRegistry
from routemerge.services.snapshot_cache import SnapshotCache
from routemerge.utils.common import utc_now

# -------------------------
# Logging
# -------------------------
LOG = logging.getLogger("routemerge.poller")
LOG.setLevel(os.getenv("ROUTEMERGE_POLLER_LOG", "INFO"))
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
if not LOG.handlers:
    LOG.addHandler(_handler)


def _describe(exc: BaseException) -> str:
    # aiohttp timeouts stringify to "", keep the message readable
    text = str(exc)
    return text if text else exc.__class__.__name__


@dataclass
class _PollHandle:
    source_id: int
    generation: int
    interval: float
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


class Poller:
    """
    Owns the polling tasks. Calls for the same source are serialized with a
    per-source asyncio.Lock; different sources never wait on each other.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        cache: SnapshotCache,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        min_interval: float = MIN_POLL_INTERVAL,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.registry = registry
        self.cache = cache
        self.timeout = float(timeout)
        self.min_interval = min_interval
        self._session = session
        self._owns_session = session is None
        self._handles: Dict[int, _PollHandle] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, source_id: int) -> asyncio.Lock:
        lock = self._locks.get(source_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[source_id] = lock
        return lock

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    def effective_interval(self, source: Source) -> float:
        return max(source.refresh_interval or 0, self.min_interval)

    def is_polling(self, source_id: int) -> bool:
        return source_id in self._handles

    @property
    def active_count(self) -> int:
        return len(self._handles)

    # -------------------------
    # Lifecycle
    # -------------------------
    async def start(self, source: Source) -> bool:
        """
        (Re)start polling `source`. Any existing poller for the same id is
        stopped first. An inactive source is not polled and its snapshot is
        evicted. Returns True when a poller is running afterwards.
        """
        async with self._lock_for(source.id):
            self._halt(source.id)
            if not source.is_active:
                self.cache.remove(source.id)
                set_active_pollers(len(self._handles))
                return False

            generation = self.cache.open_generation(source.id)
            try:
                await self.fetch(source, generation)
            except Exception:
                LOG.exception("Initial fetch failed unexpectedly for provider %s", source.name)

            handle = _PollHandle(source_id=source.id, generation=generation, interval=self.effective_interval(source))
            handle.task = asyncio.create_task(self._run(handle), name=f"routemerge-poll-{source.id}")
            self._handles[source.id] = handle
            set_active_pollers(len(self._handles))
            LOG.info("Polling provider %s every %ss", source.name, handle.interval)
            return True

    async def stop(self, source_id: int, forget: bool = False) -> bool:
        """
        Stop polling and evict the snapshot. An in-flight fetch may still
        complete; its cache write is rejected. Returns whether a poller existed.

        `forget=True` is used once the source is deleted and also drops its
        per-source lock.
        """
        async with self._lock_for(source_id):
            handle = self._halt(source_id)
            self.cache.remove(source_id)
            set_active_pollers(len(self._handles))
            if forget:
                self._locks.pop(source_id, None)
            return handle is not None

    async def stop_all(self, grace: Optional[float] = None):
        """Signal every poller, wait up to `grace` seconds for them, cancel stragglers."""
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.stop_event.set()
        tasks = [h.task for h in handles if h.task is not None]
        if tasks:
            wait_for = grace if grace is not None else self.timeout + 1.0
            _, pending = await asyncio.wait(tasks, timeout=wait_for)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        for handle in handles:
            self.cache.remove(handle.source_id)
        set_active_pollers(0)
        LOG.info("Stopped %d pollers", len(handles))

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _halt(self, source_id: int) -> Optional[_PollHandle]:
        handle = self._handles.pop(source_id, None)
        if handle is not None:
            handle.stop_event.set()
        return handle

    async def _run(self, handle: _PollHandle):
        while not handle.stop_event.is_set():
            try:
                await asyncio.wait_for(handle.stop_event.wait(), timeout=handle.interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                source = await self.registry.get_source(handle.source_id)
            except Exception:
                LOG.exception("Registry read failed for provider %d; retrying next tick", handle.source_id)
                continue

            if source is None:
                LOG.info("Provider %d not found, stopping polling", handle.source_id)
                self._retire(handle)
                break
            if not source.is_active:
                LOG.info("Provider %s deactivated, stopping polling", source.name)
                self._retire(handle)
                break
            if handle.stop_event.is_set():
                break
            try:
                await self.fetch(source, handle.generation)
            except Exception:
                LOG.exception("Fetch failed unexpectedly for provider %s; retrying next tick", source.name)

    def _retire(self, handle: _PollHandle):
        # self-initiated exit; a restart may already have replaced the handle
        if self._handles.get(handle.source_id) is handle:
            del self._handles[handle.source_id]
            self.cache.remove(handle.source_id)
            set_active_pollers(len(self._handles))

    # -------------------------
    # Fetch
    # -------------------------
    async def fetch(self, source: Source, generation: Optional[int] = None) -> Optional[Snapshot]:
        """
        Fetch `source` once and record the outcome.

        `generation` tags the cache write; when omitted the running poller's
        generation is used, and a source with no poller only has its registry
        record updated. Returns the stored snapshot (None when nothing was
        written to the cache).
        """
        if generation is None:
            handle = self._handles.get(source.id)
            generation = handle.generation if handle is not None else None

        LOG.debug("Fetching from provider %s (%s)", source.name, source.url)
        started = time.monotonic()
        document, error = await self._download(source.url)
        record_fetch(source.name, error is None, time.monotonic() - started)

        if error is not None:
            return await self._record_error(source, error, generation)
        return await self._record_success(source, document, generation)

    async def _download(self, url: str):
        """Returns (document, None) on success or (None, error message)."""
        try:
            session = await self._get_session()
            async with session.get(url) as resp:
                if not 200 <= resp.status < 300:
                    return None, f"HTTP {resp.status}: {resp.status} {resp.reason or ''}".rstrip()
                try:
                    body = await resp.read()
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    return None, f"Read error: {_describe(e)}"
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            return None, f"Connection error: {_describe(e)}"

        try:
            return parse_provider_document(body), None
        except DocumentParseError as e:
            return None, f"JSON parse error: {e}"

    async def _record_success(self, source: Source, document: HTTPConfiguration, generation: Optional[int]) -> Optional[Snapshot]:
        now = utc_now()
        snapshot = Snapshot.from_document(source, document, now)
        stored = None
        if generation is not None:
            if self.cache.put(source.id, snapshot, generation):
                stored = snapshot
            else:
                LOG.debug("Discarded late result for provider %s", source.name)

        await self._write_status(
            source,
            last_error="",
            last_fetched=now,
            router_count=snapshot.router_count,
            service_count=snapshot.service_count,
            middleware_count=snapshot.middleware_count,
        )
        LOG.info(
            "Successfully fetched from %s: %d routers, %d services, %d middlewares",
            source.name, snapshot.router_count, snapshot.service_count, snapshot.middleware_count,
        )
        return stored

    async def _record_error(self, source: Source, message: str, generation: Optional[int]) -> Optional[Snapshot]:
        LOG.warning("Provider %s error: %s", source.name, message)
        stored = None
        if generation is not None:
            stored = self.cache.apply(
                source.id,
                lambda prev: prev.with_error(message, source) if prev is not None else Snapshot.failed(source, message),
                generation,
            )
        await self._write_status(source, last_error=message)
        return stored

    async def _write_status(self, source: Source, **fields):
        try:
            await self.registry.update_status(source.id, **fields)
        except SourceNotFoundError:
            LOG.debug("Provider %s disappeared before its status could be saved", source.name)
        except Exception:
            LOG.exception("Failed to save status for provider %s", source.name)
