"""
Upstream fetcher: the single entry point handlers use to read analytics data.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional

import httpx

from app.connectors import build_connectors
from app.connectors.base import BaseConnector, FetchResult, FetchScope, Unavailable
from app.settings import Settings

logger = logging.getLogger(__name__)


class UpstreamFetcher:
    """Reads tenant-scoped records from the configured analytics sources."""

    def __init__(self, settings: Settings, connectors: Optional[Dict[str, BaseConnector]] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.connectors = connectors if connectors is not None else build_connectors(settings, client=client)

    def scope(self, entity_key: Optional[str] = None, limit: Optional[int] = None) -> FetchScope:
        return FetchScope(
            tenant=self.settings.tenant_name,
            limit=limit or self.settings.upstream_limit,
            entity_key=entity_key,
        )

    async def fetch_records(self, source: str, scope: FetchScope) -> FetchResult:
        connector = self.connectors.get(source)
        if connector is None:
            return Unavailable(source, f"no connector for source '{source}'", config_missing=True)
        try:
            return await connector.fetch_records(scope)
        except Exception as e:
            # Connectors return Unavailable; anything escaping is still contained here.
            logger.error(f"Unexpected error fetching {source}: {type(e).__name__}: {e}")
            return Unavailable(source, f"{type(e).__name__}")

    async def fetch_many(self, sources: Iterable[str], scope: FetchScope) -> Dict[str, FetchResult]:
        """Fetch several sources concurrently; results keyed by source name."""
        sources = list(sources)
        results = await asyncio.gather(*(self.fetch_records(s, scope) for s in sources))
        return dict(zip(sources, results))

    async def aclose(self) -> None:
        for connector in self.connectors.values():
            await connector.aclose()
