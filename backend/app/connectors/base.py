"""
Base connector interface.
Every upstream analytics source inherits from this class.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional, Union


@dataclass(frozen=True)
class FetchScope:
    """What to pull from a source: tenant filter, row cap and optional entity key."""
    tenant: str
    limit: int = 1000
    entity_key: Optional[str] = None


@dataclass(frozen=True)
class Unavailable:
    """A source could not be read. Returned, never raised."""
    source: str
    reason: str
    config_missing: bool = False


FetchResult = Union[List[Any], Unavailable]


class BaseConnector(ABC):
    """Abstract base class for all upstream connectors."""

    connector_type: str = "unknown"

    def __init__(self, source: str, config: dict):
        self.source = source
        self.config = config or {}

    @abstractmethod
    async def fetch_records(self, scope: FetchScope) -> FetchResult:
        """
        Pull records for a scope.
        Returns typed records already filtered to scope.tenant, or Unavailable.
        """
        ...

    async def aclose(self) -> None:
        """Release any network resources held by the connector."""
        return None
