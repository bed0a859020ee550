# routemerge/models.py
"""
routemerge data model

 - Source / SourceCreate / SourceUpdate: provider records kept by the registry
 - HTTPConfiguration / ProviderDocument: the `{"http": {...}}` document served by
   providers and by routemerge itself
 - Snapshot: latest fetch result for one provider (immutable, fully replaced)
 - Conflict / MergedConfiguration: merge output
 - LocalRouter / LocalService / LocalMiddleware: first-party entities rendered
   into the local configuration
"""

from __future__ import annotations

import json
import datetime
import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from routemerge.config import DEFAULT_REFRESH_INTERVAL, LOCAL_SOURCE_NAME, MIN_POLL_INTERVAL
from routemerge.errors import DocumentParseError
from routemerge.utils.common import to_rfc3339

# item kind (conflict/report name) -> collection attribute
KIND_ROUTER = "router"
KIND_SERVICE = "service"
KIND_MIDDLEWARE = "middleware"
ITEM_KINDS: Tuple[Tuple[str, str], ...] = (
    (KIND_ROUTER, "routers"),
    (KIND_SERVICE, "services"),
    (KIND_MIDDLEWARE, "middlewares"),
)

# -------------------------
# Provider documents
# -------------------------
class HTTPConfiguration(BaseModel):
    """
    The three item collections of a dynamic configuration. Item definitions are
    opaque JSON values; only their names matter to the merge.
    """
    model_config = ConfigDict(extra="ignore")

    routers: Dict[str, Any] = Field(default_factory=dict)
    services: Dict[str, Any] = Field(default_factory=dict)
    middlewares: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("routers", "services", "middlewares", mode="before")
    @classmethod
    def missing_kind_is_empty(cls, v):
        return {} if v is None else v

    def collection(self, attr: str) -> Dict[str, Any]:
        return getattr(self, attr)

    def counts(self) -> Tuple[int, int, int]:
        return len(self.routers), len(self.services), len(self.middlewares)

    def to_document(self) -> Dict[str, Any]:
        return {"http": {"routers": dict(self.routers), "services": dict(self.services), "middlewares": dict(self.middlewares)}}


class ProviderDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    http: HTTPConfiguration = Field(default_factory=HTTPConfiguration)

    @field_validator("http", mode="before")
    @classmethod
    def missing_http_is_empty(cls, v):
        return {} if v is None else v


def parse_provider_document(body: bytes) -> HTTPConfiguration:
    """
    Parse a provider response body. Raises DocumentParseError for anything that
    is not a JSON object of the expected shape. A literal `null` body parses to
    an empty configuration.
    """
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise DocumentParseError(str(e)) from e
    except RecursionError as e:
        raise DocumentParseError("document is nested too deeply") from e
    if payload is None:
        return HTTPConfiguration()
    if not isinstance(payload, dict):
        raise DocumentParseError(f"expected a JSON object, got {type(payload).__name__}")
    try:
        return ProviderDocument.model_validate(payload).http
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise DocumentParseError(problems) from e

# -------------------------
# Sources
# -------------------------
class Source(BaseModel):
    """
    External provider record. The aggregator reads the definition fields and
    writes back the denormalized status fields (last_fetched .. middleware_count).
    """
    id: int
    name: str
    url: str
    priority: int = 0
    is_active: bool = True
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL
    last_fetched: Optional[datetime.datetime] = None
    last_error: str = ""
    router_count: int = 0
    service_count: int = 0
    middleware_count: int = 0
    created_at: Optional[datetime.datetime] = None
    updated_at: Optional[datetime.datetime] = None

    def to_response(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "priority": self.priority,
            "is_active": self.is_active,
            "refresh_interval": self.refresh_interval,
            "last_fetched": to_rfc3339(self.last_fetched),
            "last_error": self.last_error,
            "router_count": self.router_count,
            "service_count": self.service_count,
            "middleware_count": self.middleware_count,
            "created_at": to_rfc3339(self.created_at),
            "updated_at": to_rfc3339(self.updated_at),
        }


def _check_url(v: str) -> str:
    v = v.strip()
    if not v.startswith(("http://", "https://")):
        raise ValueError("url must be an http:// or https:// URL")
    return v


def _check_name(v: str) -> str:
    v = v.strip()
    if v == LOCAL_SOURCE_NAME:
        raise ValueError(f"name {LOCAL_SOURCE_NAME!r} is reserved for the local configuration")
    return v


class SourceCreate(BaseModel):
    name: str
    url: str
    priority: int = 0
    refresh_interval: Optional[int] = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def name_must_not_be_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name must not be empty")
        return _check_name(v)

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        return _check_url(v)

    def interval_or_default(self, min_interval: int = MIN_POLL_INTERVAL, default_interval: int = DEFAULT_REFRESH_INTERVAL) -> int:
        """A missing interval or one below `min_interval` falls back to `default_interval`."""
        if self.refresh_interval is None or self.refresh_interval < min_interval:
            return default_interval
        return self.refresh_interval


class SourceUpdate(BaseModel):
    """Partial update; unset fields keep their current value."""
    name: Optional[str] = None
    url: Optional[str] = None
    priority: Optional[int] = None
    refresh_interval: Optional[int] = None
    is_active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def name_must_not_be_reserved(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return _check_name(v)

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return _check_url(v)

    def apply_to(self, source: Source, min_interval: int = MIN_POLL_INTERVAL) -> Source:
        changes: Dict[str, Any] = {}
        if self.name is not None:
            changes["name"] = self.name
        if self.url is not None:
            changes["url"] = self.url
        if self.priority is not None:
            changes["priority"] = self.priority
        if self.refresh_interval is not None and self.refresh_interval >= min_interval:
            changes["refresh_interval"] = self.refresh_interval
        if self.is_active is not None:
            changes["is_active"] = self.is_active
        return source.model_copy(update=changes)

# -------------------------
# Snapshots & merge output
# -------------------------
@dataclass(frozen=True)
class Snapshot:
    """
    Latest fetch result for one provider. Never mutated: every fetch produces a
    new Snapshot that replaces the previous one in the cache.
    """
    source_id: int
    source_name: str
    priority: int
    is_active: bool
    document: Optional[HTTPConfiguration] = None
    last_fetched: Optional[datetime.datetime] = None
    last_error: str = ""
    router_count: int = 0
    service_count: int = 0
    middleware_count: int = 0

    @property
    def has_document(self) -> bool:
        return self.document is not None

    @classmethod
    def from_document(cls, source: Source, document: HTTPConfiguration, fetched_at: datetime.datetime) -> "Snapshot":
        routers, services, middlewares = document.counts()
        return cls(
            source_id=source.id,
            source_name=source.name,
            priority=source.priority,
            is_active=source.is_active,
            document=document,
            last_fetched=fetched_at,
            last_error="",
            router_count=routers,
            service_count=services,
            middleware_count=middlewares,
        )

    @classmethod
    def failed(cls, source: Source, message: str) -> "Snapshot":
        return cls(
            source_id=source.id,
            source_name=source.name,
            priority=source.priority,
            is_active=source.is_active,
            last_error=message,
        )

    def with_error(self, message: str, source: Optional[Source] = None) -> "Snapshot":
        """Same document and counts, new error (and refreshed source metadata)."""
        changes: Dict[str, Any] = {"last_error": message}
        if source is not None:
            changes.update(source_name=source.name, priority=source.priority, is_active=source.is_active)
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class Conflict:
    """
    A definition dropped because a higher-precedence owner already holds the name.
    `source_priority` is the priority of the dropped (losing) source.
    """
    type: str
    name: str
    source: str
    overridden_by: str
    source_priority: int

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class MergedConfiguration:
    routers: Dict[str, Any] = field(default_factory=dict)
    services: Dict[str, Any] = field(default_factory=dict)
    middlewares: Dict[str, Any] = field(default_factory=dict)
    conflicts: List[Conflict] = field(default_factory=list)

    def collection(self, attr: str) -> Dict[str, Any]:
        return getattr(self, attr)

    def to_document(self) -> Dict[str, Any]:
        return {"http": {"routers": self.routers, "services": self.services, "middlewares": self.middlewares}}

    def to_dict(self) -> Dict[str, Any]:
        return {"config": self.to_document(), "conflicts": [c.to_dict() for c in self.conflicts]}

# -------------------------
# First-party entities
# -------------------------
class LocalService(BaseModel):
    name: str
    servers: List[str] = Field(default_factory=list, description="backend URLs")
    pass_host_header: bool = True
    health_check_enabled: bool = False
    health_check_path: str = ""
    health_check_interval: int = 10
    is_active: bool = True


class LocalMiddleware(BaseModel):
    name: str
    type: str
    config: Optional[Dict[str, Any]] = None
    is_active: bool = True

    @field_validator("config", mode="before")
    @classmethod
    def config_may_be_json_text(cls, v):
        # stored configs are JSON text; unreadable text leaves the middleware unrenderable
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except ValueError:
                return None
            return v if isinstance(v, dict) else None
        return v


class LocalRouter(BaseModel):
    name: str
    hostnames: List[str] = Field(default_factory=list)
    service: str
    entry_points: str = "web,websecure"
    middlewares: List[str] = Field(default_factory=list)
    redirect_https: bool = True
    tls_enabled: bool = False
    tls_cert_resolver: str = "letsencrypt"
    is_active: bool = True


class LocalEntities(BaseModel):
    routers: List[LocalRouter] = Field(default_factory=list)
    services: List[LocalService] = Field(default_factory=list)
    middlewares: List[LocalMiddleware] = Field(default_factory=list)
