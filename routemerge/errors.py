# routemerge/errors.py
"""Exception types raised by the aggregator and its registry."""

from __future__ import annotations

from typing import Any


class AggregatorError(Exception):
    """Base exception for routemerge."""
    pass


class RegistryError(AggregatorError):
    """The source registry could not be read or written."""
    pass


class DuplicateSourceError(RegistryError):
    def __init__(self, name: str):
        super().__init__(f"Provider with name {name!r} already exists")
        self.name = name


class SourceNotFoundError(AggregatorError):
    def __init__(self, source_id: Any):
        super().__init__(f"Provider {source_id} not found")
        self.source_id = source_id


class NoCachedResponseError(AggregatorError):
    def __init__(self, source_id: Any):
        super().__init__(f"No cached response available for provider {source_id}")
        self.source_id = source_id


class AggregatorStartupError(AggregatorError):
    """Raised when the aggregator cannot load its sources at boot."""
    pass


class DocumentParseError(AggregatorError):
    """A provider body is not a valid configuration document."""
    pass
