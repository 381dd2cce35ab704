"""
Connector factory: maps upstream source names to configured connectors.
"""

import logging
from typing import Dict, Optional, Type

import httpx

from app.connectors.base import BaseConnector
from app.connectors.rest_api_connector import RestAPIConnector
from app.settings import Settings

logger = logging.getLogger(__name__)

CONNECTOR_REGISTRY: Dict[str, Type[BaseConnector]] = {
    "api": RestAPIConnector,
}

SOURCES = ("shipments", "products", "orders")


def source_config(settings: Settings, source: str) -> dict:
    """Connection config for one upstream source, taken from settings."""
    urls = {
        "shipments": (settings.upstream_base_url, settings.upstream_token),
        "products": (settings.products_base_url, settings.products_token),
        "orders": (settings.orders_base_url, settings.orders_token),
    }
    if source not in urls:
        raise ValueError(f"Unknown upstream source '{source}'. Available: {list(SOURCES)}")
    url, token = urls[source]
    return {
        "url": url,
        "token": token,
        "timeout": settings.upstream_timeout,
        "missing": settings.missing_for_source(source),
    }


def get_connector(
    connector_type: str,
    source: str,
    config: dict,
    client: Optional[httpx.AsyncClient] = None,
) -> BaseConnector:
    """
    Instantiate a connector by type name.

    Raises ValueError if the type is unknown.
    """
    cls = CONNECTOR_REGISTRY.get(connector_type)
    if not cls:
        raise ValueError(
            f"Unknown connector type '{connector_type}'. "
            f"Available: {sorted(CONNECTOR_REGISTRY.keys())}"
        )
    return cls(source, config, client=client)


def build_connectors(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> Dict[str, BaseConnector]:
    """One REST connector per upstream source, optionally sharing an HTTP client."""
    return {
        source: get_connector("api", source, source_config(settings, source), client=client)
        for source in SOURCES
    }
