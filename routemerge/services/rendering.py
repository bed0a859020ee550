# routemerge/services/rendering.py
"""
Local configuration rendering
-----------------------------

Turns first-party routers / services / middlewares into the `http` document
shape the reverse proxy understands. The result is the `local` input of every
merge.

Features:
 - Host rule from hostnames, entry point list with web/websecure default
 - automatic `<router>-redirect-https` middleware per router asking for it
 - TLS block with certResolver and main/SAN domains (wildcards included)
 - load balancer services with optional health check
 - redirectScheme / headers / stripPrefix / addPrefix middlewares; unknown
   types and unreadable configs are skipped
"""

from __future__ import annotations

import os
import sys
import logging
from typing import Any, Dict, Iterable, List, Optional

from routemerge.models import HTTPConfiguration, LocalMiddleware, LocalRouter, LocalService

LOG = logging.getLogger("routemerge.rendering")
LOG.setLevel(os.getenv("ROUTEMERGE_RENDERING_LOG", "INFO"))
_handler = logging.StreamHandler(sys.stdout)
_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
if not LOG.handlers:
    LOG.addHandler(_handler)

DEFAULT_ENTRY_POINTS = ["web", "websecure"]
REDIRECT_HTTPS_SUFFIX = "-redirect-https"


def split_entry_points(value: str) -> List[str]:
    if not value or not value.strip():
        return list(DEFAULT_ENTRY_POINTS)
    return [p.strip() for p in value.split(",") if p.strip()]


def build_host_rule(hostnames: Iterable[str]) -> str:
    hosts = list(hostnames)
    if not hosts:
        return ""
    return "Host({})".format(", ".join(f"`{h}`" for h in hosts))


def _wildcard(hostname: str) -> Optional[str]:
    parts = hostname.split(".")
    if len(parts) < 2:
        return None
    return "*." + ".".join(parts[1:])


def build_tls_domains(hostnames: List[str]) -> List[Dict[str, Any]]:
    """
    >>> build_tls_domains(["app.example.com", "api.example.org"])
    [{'main': 'app.example.com', 'sans': ['*.example.com', 'api.example.org', '*.example.org']}]
    """
    if not hostnames:
        return []
    main = hostnames[0]
    sans: List[str] = []
    wildcard = _wildcard(main)
    if wildcard:
        sans.append(wildcard)
    for host in hostnames[1:]:
        sans.append(host)
        wildcard = _wildcard(host)
        if wildcard:
            sans.append(wildcard)
    return [{"main": main, "sans": sans}]


def redirect_middleware_name(router_name: str) -> str:
    return f"{router_name}{REDIRECT_HTTPS_SUFFIX}"


def build_router_config(router: LocalRouter, middlewares: Optional[Dict[str, LocalMiddleware]] = None) -> Optional[Dict[str, Any]]:
    """Router definition, or None when the router has no hostnames."""
    if not router.hostnames:
        return None
    middlewares = middlewares or {}

    names: List[str] = []
    if router.redirect_https:
        names.append(redirect_middleware_name(router.name))
    for name in router.middlewares:
        mw = middlewares.get(name)
        # attached middlewares that are unknown locally may come from a provider
        if mw is None or mw.is_active:
            names.append(name)

    result: Dict[str, Any] = {
        "entryPoints": split_entry_points(router.entry_points),
        "rule": build_host_rule(router.hostnames),
        "service": router.service,
    }
    if names:
        result["middlewares"] = names
    if router.tls_enabled:
        result["tls"] = {
            "certResolver": router.tls_cert_resolver,
            "domains": build_tls_domains(router.hostnames),
        }
    return result


def build_service_config(service: LocalService) -> Dict[str, Any]:
    lb: Dict[str, Any] = {
        "servers": [{"url": url} for url in service.servers],
        "passHostHeader": service.pass_host_header,
    }
    if service.health_check_enabled and service.health_check_path:
        lb["healthCheck"] = {
            "path": service.health_check_path,
            "interval": f"{service.health_check_interval}s",
        }
    return {"loadBalancer": lb}


def build_middleware_config(middleware: LocalMiddleware) -> Optional[Dict[str, Any]]:
    cfg = middleware.config
    if cfg is None:
        return None

    if middleware.type == "redirectScheme":
        return {
            "redirectScheme": {
                "scheme": cfg.get("scheme", ""),
                "port": cfg.get("port", ""),
                "permanent": bool(cfg.get("permanent", False)),
            }
        }
    if middleware.type == "headers":
        headers: Dict[str, Any] = {}
        if cfg.get("customRequestHeaders"):
            headers["customRequestHeaders"] = cfg["customRequestHeaders"]
        if cfg.get("customResponseHeaders"):
            headers["customResponseHeaders"] = cfg["customResponseHeaders"]
        if cfg.get("sslRedirect"):
            headers["sslRedirect"] = True
        return {"headers": headers}
    if middleware.type == "stripPrefix":
        return {
            "stripPrefix": {
                "prefixes": list(cfg.get("prefixes") or []),
                "forceSlash": bool(cfg.get("forceSlash", False)),
            }
        }
    if middleware.type == "addPrefix":
        return {"addPrefix": {"prefix": cfg.get("prefix", "")}}

    LOG.debug("Skipping middleware %s with unsupported type %s", middleware.name, middleware.type)
    return None


def build_local_configuration(
    routers: Iterable[LocalRouter],
    services: Iterable[LocalService],
    middlewares: Iterable[LocalMiddleware],
) -> HTTPConfiguration:
    """Render every active first-party entity into one HTTPConfiguration."""
    middlewares = list(middlewares)
    by_name = {m.name: m for m in middlewares}

    out_routers: Dict[str, Any] = {}
    out_services: Dict[str, Any] = {}
    out_middlewares: Dict[str, Any] = {}

    for service in services:
        if service.is_active:
            out_services[service.name] = build_service_config(service)

    for mw in middlewares:
        if not mw.is_active:
            continue
        rendered = build_middleware_config(mw)
        if rendered is not None:
            out_middlewares[mw.name] = rendered

    for router in routers:
        if not router.is_active:
            continue
        rendered = build_router_config(router, by_name)
        if rendered is None:
            continue
        out_routers[router.name] = rendered
        if router.redirect_https:
            out_middlewares[redirect_middleware_name(router.name)] = {
                "redirectScheme": {"scheme": "https", "port": "443", "permanent": True}
            }

    return HTTPConfiguration(routers=out_routers, services=out_services, middlewares=out_middlewares)
