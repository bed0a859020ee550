# routemerge/services/snapshot_cache.py
"""
Snapshot cache
--------------
In-memory map source_id -> Snapshot, shared by the pollers (writers) and the
merge / status paths (readers).

 - one coarse RLock, held only around dict operations (never across I/O)
 - values are immutable Snapshots, so a reader always sees a whole snapshot
 - every source has a generation counter; a poller tags its writes with the
   generation it was started under and `remove()` / `open_generation()` bump
   it, so a fetch that was in flight when its poller stopped cannot
   resurrect the evicted entry
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional

from routemerge.models import Snapshot


class SnapshotCache:
    def __init__(self):
        self._lock = threading.RLock()
        self._snapshots: Dict[int, Snapshot] = {}
        self._generations: Dict[int, int] = {}

    # -------------------------
    # Generations
    # -------------------------
    def open_generation(self, source_id: int) -> int:
        """Start a new writer generation for `source_id` and return it."""
        with self._lock:
            gen = self._generations.get(source_id, 0) + 1
            self._generations[source_id] = gen
            return gen

    def current_generation(self, source_id: int) -> Optional[int]:
        with self._lock:
            return self._generations.get(source_id)

    def _accepts(self, source_id: int, generation: Optional[int]) -> bool:
        return generation is None or self._generations.get(source_id) == generation

    # -------------------------
    # Writes
    # -------------------------
    def put(self, source_id: int, snapshot: Snapshot, generation: Optional[int] = None) -> bool:
        """Replace the snapshot. Returns False when `generation` is stale."""
        with self._lock:
            if not self._accepts(source_id, generation):
                return False
            self._snapshots[source_id] = snapshot
            return True

    def apply(
        self,
        source_id: int,
        fn: Callable[[Optional[Snapshot]], Snapshot],
        generation: Optional[int] = None,
    ) -> Optional[Snapshot]:
        """
        Atomically derive the next snapshot from the current one.
        `fn` must be cheap and must not block. Returns the stored snapshot, or
        None when the write was rejected as stale.
        """
        with self._lock:
            if not self._accepts(source_id, generation):
                return None
            snapshot = fn(self._snapshots.get(source_id))
            self._snapshots[source_id] = snapshot
            return snapshot

    def remove(self, source_id: int) -> Optional[Snapshot]:
        """Evict the snapshot and invalidate any writer still holding the old generation."""
        with self._lock:
            self._generations[source_id] = self._generations.get(source_id, 0) + 1
            return self._snapshots.pop(source_id, None)

    def clear(self):
        with self._lock:
            for source_id in list(self._generations):
                self._generations[source_id] += 1
            self._snapshots.clear()

    # -------------------------
    # Reads
    # -------------------------
    def get(self, source_id: int) -> Optional[Snapshot]:
        with self._lock:
            return self._snapshots.get(source_id)

    def get_all(self) -> List[Snapshot]:
        with self._lock:
            return list(self._snapshots.values())

    def list_sorted_by_priority_descending(self) -> List[Snapshot]:
        return sorted(self.get_all(), key=lambda s: (-s.priority, s.source_name))

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshots)

    def __contains__(self, source_id: object) -> bool:
        with self._lock:
            return source_id in self._snapshots
