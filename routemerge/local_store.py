# routemerge/local_store.py
"""
First-party configuration store.

Reads routers / services / middlewares from a JSON file of the form

    {"routers": [...], "services": [...], "middlewares": [...]}

and renders them into the local HTTPConfiguration. The file is re-read when
its modification time changes, so edits are picked up without a restart.
Without a file the store is empty (providers only).
"""

from __future__ import annotations

import os
import sys
import pathlib
import logging
import threading
from typing import Optional, Union

from pydantic import ValidationError

from routemerge.models import HTTPConfiguration, LocalEntities
from routemerge.services.rendering import build_local_configuration
from routemerge.utils.common import safe_read_json

LOG = logging.getLogger("routemerge.local_store")
LOG.setLevel(os.getenv("ROUTEMERGE_LOCAL_STORE_LOG", "INFO"))
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
if not LOG.handlers:
    LOG.addHandler(_handler)


class LocalConfigStore:
    def __init__(self, path: Optional[Union[str, pathlib.Path]] = None, entities: Optional[LocalEntities] = None):
        self.path = pathlib.Path(path) if path else None
        self._lock = threading.Lock()
        self._entities = entities or LocalEntities()
        self._mtime: Optional[float] = None

    def set_entities(self, entities: LocalEntities):
        with self._lock:
            self._entities = entities

    def entities(self) -> LocalEntities:
        self._maybe_reload()
        with self._lock:
            return self._entities

    def configuration(self) -> HTTPConfiguration:
        ents = self.entities()
        return build_local_configuration(ents.routers, ents.services, ents.middlewares)

    def _maybe_reload(self):
        if self.path is None:
            return
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return
        with self._lock:
            if self._mtime == mtime:
                return
            raw = safe_read_json(self.path, None)
            if raw is None:
                # keep the last good entities; the file may be mid-write
                return
            try:
                self._entities = LocalEntities.model_validate(raw)
            except ValidationError as e:
                LOG.error("Invalid local configuration in %s: %s", self.path, e)
                return
            self._mtime = mtime
            LOG.info(
                "Loaded local configuration from %s: %d routers, %d services, %d middlewares",
                self.path, len(self._entities.routers), len(self._entities.services), len(self._entities.middlewares),
            )
