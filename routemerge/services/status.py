# routemerge/services/status.py
"""
Status surface: per-source health view for operators.

The first entry always describes the local configuration; registry sources
follow by priority (highest first, ties by name).
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from routemerge.config import LOCAL_SOURCE_PRIORITY
from routemerge.models import HTTPConfiguration, Snapshot, Source
from routemerge.services.merge import LOCAL_SOURCE
from routemerge.utils.common import to_rfc3339

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"
INACTIVE = "inactive"


def classify_health(is_active: bool, last_error: str, last_fetched) -> str:
    if not is_active:
        return INACTIVE
    if last_error:
        return UNHEALTHY if last_fetched is None else DEGRADED
    return HEALTHY


def _source_entry(source: Source, snapshot: Optional[Snapshot]) -> Dict[str, Any]:
    # the snapshot is fresher than the registry record when the poller holds one;
    # a snapshot without a document only carries the error, the record keeps
    # the last success (e.g. persisted from before a restart)
    if snapshot is not None and snapshot.has_document:
        last_fetched = snapshot.last_fetched
        last_error = snapshot.last_error
        counts = (snapshot.router_count, snapshot.service_count, snapshot.middleware_count)
    elif snapshot is not None:
        last_fetched = snapshot.last_fetched or source.last_fetched
        last_error = snapshot.last_error
        counts = (source.router_count, source.service_count, source.middleware_count)
    else:
        last_fetched = source.last_fetched
        last_error = source.last_error
        counts = (source.router_count, source.service_count, source.middleware_count)
    return {
        "name": source.name,
        "priority": source.priority,
        "status": classify_health(source.is_active, last_error, last_fetched),
        "last_fetched": to_rfc3339(last_fetched),
        "last_error": last_error,
        "router_count": counts[0],
        "service_count": counts[1],
        "middleware_count": counts[2],
    }


def get_sources_info(
    local: Optional[HTTPConfiguration],
    sources: Iterable[Source],
    snapshots: Iterable[Snapshot] = (),
) -> List[Dict[str, Any]]:
    local = local or HTTPConfiguration()
    routers, services, middlewares = local.counts()
    info: List[Dict[str, Any]] = [
        {
            "name": LOCAL_SOURCE,
            "priority": LOCAL_SOURCE_PRIORITY,
            "status": HEALTHY,
            "router_count": routers,
            "service_count": services,
            "middleware_count": middlewares,
        }
    ]
    by_id = {s.source_id: s for s in snapshots}
    for source in sorted(sources, key=lambda s: (-s.priority, s.name)):
        info.append(_source_entry(source, by_id.get(source.id)))
    return info
