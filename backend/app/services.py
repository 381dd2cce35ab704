"""
Process-wide services, built once at startup and passed to handlers
through `app.state.services`.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from fastapi import Request

from app.cache_backing import SQLInsightStore
from app.event_hub import EventHub
from app.insight_service import PAGES, InsightService
from app.llm_service import LLMClient, LLMConfig
from app.namespace_loader import NamespaceRegistry
from app.notifier import ChangeNotifier
from app.settings import Settings
from app.upstream import UpstreamFetcher
from cache.cache import InsightCache

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    hub: EventHub
    notifier: ChangeNotifier
    cache: InsightCache
    fetcher: UpstreamFetcher
    llm: Any
    namespaces: NamespaceRegistry
    insights: InsightService
    http_client: Optional[httpx.AsyncClient] = None
    backing: Optional[SQLInsightStore] = None

    async def start(self) -> None:
        if self.backing is not None:
            await self.cache.warm()
        logger.info(
            f"Services started: tenant={self.settings.tenant_name} namespaces={sorted(self.namespaces.definitions)}"
        )

    async def close(self) -> None:
        await self.hub.close()
        await self.cache.close()
        await self.fetcher.aclose()
        if hasattr(self.llm, "aclose"):
            await self.llm.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.backing is not None:
            self.backing.close()
        logger.info("Services closed")


def build_services(
    settings: Optional[Settings] = None,
    llm: Any = None,
    fetcher: Optional[UpstreamFetcher] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Services:
    """Wire every service from settings; tests inject a fake llm or fetcher."""
    settings = settings or Settings()
    namespaces = NamespaceRegistry(known_pages=PAGES)
    hub = EventHub(
        heartbeat_seconds=settings.hub_heartbeat_seconds,
        queue_max=settings.hub_queue_max,
        default_namespaces=settings.hub_default_namespaces,
    )
    notifier = ChangeNotifier(hub)
    backing = SQLInsightStore(settings.cache_backing_url) if settings.cache_backing_url else None
    cache = InsightCache(
        ttl_fresh=settings.cache_ttl_fresh,
        ttl_grace=settings.cache_ttl_grace,
        ttl_fail=settings.cache_ttl_fail,
        max_entries=settings.cache_max_entries,
        notifier=notifier,
        ttl_overrides=namespaces.ttl_overrides(),
        silent_namespaces=namespaces.silent_namespaces(),
        backing=backing,
    )
    owned_client = None
    if fetcher is None:
        if http_client is None:
            http_client = owned_client = httpx.AsyncClient(timeout=settings.upstream_timeout)
        fetcher = UpstreamFetcher(settings, client=http_client)
    if llm is None:
        llm = LLMClient(LLMConfig(settings))

    insights = InsightService(settings, fetcher, cache, llm, namespaces)
    return Services(
        settings=settings,
        hub=hub,
        notifier=notifier,
        cache=cache,
        fetcher=fetcher,
        llm=llm,
        namespaces=namespaces,
        insights=insights,
        http_client=owned_client,
        backing=backing,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
