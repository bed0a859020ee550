# routemerge/registry.py
"""
routemerge source registry
--------------------------

Persistent home of provider records. The aggregator only needs the read side
(list / get) and `update_status` to write the denormalized fetch fields back;
create / update / delete are used by the admin API.

Backends:
 - InMemorySourceRegistry: process-local dict (default, used by tests)
 - FileSourceRegistry: same semantics, persisted to a JSON file after every
   mutation (atomic rename), loaded on `load()`
"""

from __future__ import annotations

import os
import sys
import asyncio
import logging
import pathlib
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from routemerge.config import DEFAULT_REFRESH_INTERVAL, MIN_POLL_INTERVAL
from routemerge.errors import DuplicateSourceError, RegistryError, SourceNotFoundError
from routemerge.models import Source, SourceCreate, SourceUpdate
from routemerge.utils.common import safe_read_json, safe_write_json, utc_now

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
LOG = logging.getLogger("routemerge.registry")
LOG.setLevel(os.getenv("ROUTEMERGE_REGISTRY_LOG", "INFO"))
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
if not LOG.handlers:
    LOG.addHandler(_handler)

_UNSET: Any = object()


class SourceRegistry(ABC):
    """Async interface every registry backend implements."""

    @abstractmethod
    async def list_sources(self) -> List[Source]:
        """All sources, ordered by priority descending then creation order."""

    @abstractmethod
    async def get_source(self, source_id: int) -> Optional[Source]:
        ...

    @abstractmethod
    async def create_source(self, req: SourceCreate) -> Source:
        ...

    @abstractmethod
    async def update_source(self, source_id: int, req: SourceUpdate) -> Source:
        ...

    @abstractmethod
    async def delete_source(self, source_id: int) -> Source:
        ...

    @abstractmethod
    async def update_status(
        self,
        source_id: int,
        *,
        last_error: str,
        last_fetched: Any = _UNSET,
        router_count: Any = _UNSET,
        service_count: Any = _UNSET,
        middleware_count: Any = _UNSET,
    ) -> None:
        """Write the denormalized fetch fields; unset keyword arguments are left untouched."""


class InMemorySourceRegistry(SourceRegistry):
    """
    Dict-backed registry. Returned Source objects are copies, so callers can
    never mutate registry state behind its lock.

    `min_interval` / `default_interval` decide what a requested refresh
    interval turns into on create and update.
    """

    def __init__(
        self,
        sources: Optional[List[Source]] = None,
        min_interval: int = MIN_POLL_INTERVAL,
        default_interval: int = DEFAULT_REFRESH_INTERVAL,
    ):
        self._lock = asyncio.Lock()
        self._sources: Dict[int, Source] = {}
        self._next_id = 1
        self.min_interval = min_interval
        self.default_interval = default_interval
        for s in sources or []:
            self._sources[s.id] = s.model_copy()
            self._next_id = max(self._next_id, s.id + 1)

    # hook for persistent subclasses; called with the lock held
    async def _persist(self):
        return None

    async def _commit(self, sources: Dict[int, Source], next_id: int):
        """Install a candidate table; restore the previous one if it cannot be persisted."""
        previous = (self._sources, self._next_id)
        self._sources, self._next_id = sources, next_id
        try:
            await self._persist()
        except RegistryError:
            self._sources, self._next_id = previous
            raise

    def _ordered(self) -> List[Source]:
        # stable sort keeps insertion (creation) order among equal priorities
        return sorted(self._sources.values(), key=lambda s: -s.priority)

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        return any(s.name == name and s.id != exclude_id for s in self._sources.values())

    async def list_sources(self) -> List[Source]:
        async with self._lock:
            return [s.model_copy() for s in self._ordered()]

    async def get_source(self, source_id: int) -> Optional[Source]:
        async with self._lock:
            s = self._sources.get(source_id)
            return s.model_copy() if s else None

    async def create_source(self, req: SourceCreate) -> Source:
        async with self._lock:
            if self._name_taken(req.name):
                raise DuplicateSourceError(req.name)
            now = utc_now()
            source = Source(
                id=self._next_id,
                name=req.name,
                url=req.url,
                priority=req.priority,
                is_active=req.is_active,
                refresh_interval=req.interval_or_default(self.min_interval, self.default_interval),
                created_at=now,
                updated_at=now,
            )
            await self._commit({**self._sources, source.id: source}, self._next_id + 1)
            LOG.info("Created provider %s (id=%d priority=%d)", source.name, source.id, source.priority)
            return source.model_copy()

    async def update_source(self, source_id: int, req: SourceUpdate) -> Source:
        async with self._lock:
            current = self._sources.get(source_id)
            if current is None:
                raise SourceNotFoundError(source_id)
            updated = req.apply_to(current, self.min_interval)
            if updated.name != current.name and self._name_taken(updated.name, exclude_id=source_id):
                raise DuplicateSourceError(updated.name)
            updated = updated.model_copy(update={"updated_at": utc_now()})
            await self._commit({**self._sources, source_id: updated}, self._next_id)
            return updated.model_copy()

    async def delete_source(self, source_id: int) -> Source:
        async with self._lock:
            source = self._sources.get(source_id)
            if source is None:
                raise SourceNotFoundError(source_id)
            remaining = {k: v for k, v in self._sources.items() if k != source_id}
            await self._commit(remaining, self._next_id)
            LOG.info("Deleted provider %s (id=%d)", source.name, source_id)
            return source

    async def update_status(
        self,
        source_id: int,
        *,
        last_error: str,
        last_fetched: Any = _UNSET,
        router_count: Any = _UNSET,
        service_count: Any = _UNSET,
        middleware_count: Any = _UNSET,
    ) -> None:
        changes: Dict[str, Any] = {"last_error": last_error}
        for key, value in (
            ("last_fetched", last_fetched),
            ("router_count", router_count),
            ("service_count", service_count),
            ("middleware_count", middleware_count),
        ):
            if value is not _UNSET:
                changes[key] = value
        async with self._lock:
            current = self._sources.get(source_id)
            if current is None:
                raise SourceNotFoundError(source_id)
            await self._commit({**self._sources, source_id: current.model_copy(update=changes)}, self._next_id)


class FileSourceRegistry(InMemorySourceRegistry):
    """
    JSON-file backed registry. The whole table is rewritten atomically after
    each mutation; fine for the handful of providers a deployment carries.
    A mutation whose write fails is rolled back in memory too.
    """

    def __init__(
        self,
        path: Union[str, pathlib.Path],
        min_interval: int = MIN_POLL_INTERVAL,
        default_interval: int = DEFAULT_REFRESH_INTERVAL,
    ):
        super().__init__(min_interval=min_interval, default_interval=default_interval)
        self.path = pathlib.Path(path)

    async def load(self) -> int:
        """Read the file (missing file = empty registry). Raises RegistryError on corrupt data."""
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, safe_read_json, self.path, None)
        async with self._lock:
            self._sources.clear()
            if raw is None:
                if self.path.exists():
                    raise RegistryError(f"Registry file {self.path} is unreadable")
                self._next_id = 1
                return 0
            try:
                records = [Source.model_validate(item) for item in raw.get("sources", [])]
                self._next_id = int(raw.get("next_id", 1))
            except (AttributeError, TypeError, ValueError, ValidationError) as e:
                raise RegistryError(f"Registry file {self.path} is invalid: {e}") from e
            for s in records:
                self._sources[s.id] = s
                self._next_id = max(self._next_id, s.id + 1)
            LOG.info("Loaded %d providers from %s", len(records), self.path)
            return len(records)

    async def _persist(self):
        payload = {
            "next_id": self._next_id,
            "sources": [s.model_dump(mode="json") for s in self._sources.values()],
        }
        loop = asyncio.get_running_loop()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            await loop.run_in_executor(None, safe_write_json, self.path, payload)
        except OSError as e:
            raise RegistryError(f"Failed to write registry file {self.path}: {e}") from e
