# routemerge/services/merge.py
"""
Merge engine
------------

Pure function combining the local configuration with provider snapshots.

Precedence, per kind (routers, services and middlewares are separate
namespaces):
 1. local items always win
 2. then providers by priority, highest first; equal priorities are ordered by
    provider name so the result does not depend on cache iteration order
 3. the first owner of a name keeps it; every later definition is dropped and
    reported as a Conflict carrying the losing provider's own priority

Only snapshots that are active, hold a document and carry no error take part.
Inputs are never mutated; definitions are deep-copied into the result.
"""

from __future__ import annotations

import copy
from typing import Dict, Iterable, List, Optional

from routemerge.config import LOCAL_SOURCE_NAME
from routemerge.models import Conflict, HTTPConfiguration, ITEM_KINDS, MergedConfiguration, Snapshot

LOCAL_SOURCE = LOCAL_SOURCE_NAME


def select_candidates(snapshots: Iterable[Snapshot]) -> List[Snapshot]:
    """Snapshots eligible for merging, in precedence order."""
    eligible = [s for s in snapshots if s.is_active and s.has_document and not s.last_error]
    return sorted(eligible, key=lambda s: (-s.priority, s.source_name))


def merge_configurations(local: Optional[HTTPConfiguration], snapshots: Iterable[Snapshot]) -> MergedConfiguration:
    local = local or HTTPConfiguration()
    merged = MergedConfiguration()
    owners: Dict[str, Dict[str, str]] = {attr: {} for _, attr in ITEM_KINDS}

    for _, attr in ITEM_KINDS:
        target = merged.collection(attr)
        for name, definition in local.collection(attr).items():
            target[name] = copy.deepcopy(definition)
            owners[attr][name] = LOCAL_SOURCE

    for snap in select_candidates(snapshots):
        for kind, attr in ITEM_KINDS:
            target = merged.collection(attr)
            seen = owners[attr]
            for name, definition in snap.document.collection(attr).items():
                owner = seen.get(name)
                if owner is None:
                    target[name] = copy.deepcopy(definition)
                    seen[name] = snap.source_name
                    continue
                if owner != snap.source_name:
                    merged.conflicts.append(
                        Conflict(
                            type=kind,
                            name=name,
                            source=snap.source_name,
                            overridden_by=owner,
                            source_priority=snap.priority,
                        )
                    )
    return merged
