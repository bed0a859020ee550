# routemerge/metrics.py
"""
routemerge metrics
------------------
Prometheus instruments for the aggregator, kept in a private CollectorRegistry
so that importing the package twice (tests, reloads) never collides with the
default global registry.

Instruments:
 - routemerge_fetch_total{source,outcome}   provider fetches by outcome (ok | error)
 - routemerge_fetch_seconds                 provider fetch latency
 - routemerge_active_pollers                number of running pollers
 - routemerge_merge_conflicts               conflicts found by the last merge
"""

from __future__ import annotations

from typing import Tuple

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

PROM_REGISTRY = CollectorRegistry()

FETCH_TOTAL = Counter("routemerge_fetch_total", "Provider fetches", ["source", "outcome"], registry=PROM_REGISTRY)
FETCH_LATENCY = Histogram(
    "routemerge_fetch_seconds",
    "Provider fetch latency seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
    registry=PROM_REGISTRY,
)
ACTIVE_POLLERS = Gauge("routemerge_active_pollers", "Running provider pollers", registry=PROM_REGISTRY)
MERGE_CONFLICTS = Gauge("routemerge_merge_conflicts", "Conflicts detected by the last merge", registry=PROM_REGISTRY)

def record_fetch(source: str, ok: bool, elapsed: float):
    FETCH_TOTAL.labels(source=source, outcome="ok" if ok else "error").inc()
    FETCH_LATENCY.observe(elapsed)

def set_active_pollers(count: int):
    ACTIVE_POLLERS.set(count)

def set_merge_conflicts(count: int):
    MERGE_CONFLICTS.set(count)

def prometheus_payload() -> Tuple[bytes, str]:
    """Return (body, content_type) for a scrape."""
    return generate_latest(PROM_REGISTRY), CONTENT_TYPE_LATEST
