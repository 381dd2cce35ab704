"""
Runtime configuration for the insight delivery service.

Every value is read from the environment once, when a Settings instance is
constructed. Services receive an explicit Settings object so tests can build
isolated configurations without touching os.environ.
"""

import os
import logging
from typing import Dict, List, Optional, Set

logger = logging.getLogger(__name__)

_REPORTED_MISSING: Set[str] = set()


def log_config_missing_once(name: str) -> None:
    """Log a missing configuration variable the first time it is observed."""
    if name in _REPORTED_MISSING:
        return
    _REPORTED_MISSING.add(name)
    logger.error(f"Configuration missing: {name} is not set")


def _split_csv(raw: Optional[str]) -> List[str]:
    seen: List[str] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part and part not in seen:
            seen.append(part)
    return seen


class Settings:
    """Configuration for upstream access, the LLM provider, the cache and the hub."""

    def __init__(self, env: Optional[Dict[str, str]] = None):
        env = os.environ if env is None else env

        # Analytics endpoints
        self.upstream_base_url = env.get("UPSTREAM_BASE_URL")
        self.upstream_token = env.get("UPSTREAM_TOKEN")
        self.products_base_url = env.get("PRODUCTS_BASE_URL")
        self.products_token = env.get("PRODUCTS_TOKEN") or self.upstream_token
        self.orders_base_url = env.get("ORDERS_BASE_URL")
        self.orders_token = env.get("ORDERS_TOKEN")
        self.tenant_name = env.get("TENANT_NAME", "Callahan-Smith")
        self.upstream_limit = int(env.get("UPSTREAM_LIMIT", "1000"))
        self.upstream_timeout = float(env.get("UPSTREAM_TIMEOUT", "15"))

        # LLM provider
        self.llm_api_key = env.get("LLM_API_KEY")
        self.llm_model_fast = env.get("LLM_MODEL_FAST", "gpt-3.5-turbo")
        self.llm_api_base = env.get("LLM_API_BASE")
        self.llm_timeout = float(env.get("LLM_TIMEOUT", "25"))
        self.llm_temperature = float(env.get("LLM_TEMPERATURE", "0.2"))
        self.llm_max_tokens = int(env.get("LLM_MAX_TOKENS", "600"))

        # Insight cache (seconds)
        self.cache_ttl_fresh = float(env.get("CACHE_TTL_FRESH", "1200"))
        self.cache_ttl_grace = float(env.get("CACHE_TTL_GRACE", "600"))
        self.cache_ttl_fail = float(env.get("CACHE_TTL_FAIL", "60"))
        self.cache_max_entries = int(env.get("CACHE_MAX_ENTRIES", "500"))
        self.cache_backing_url = env.get("CACHE_BACKING_URL") or None

        # Event hub
        self.hub_heartbeat_ms = int(env.get("HUB_HEARTBEAT_MS", "30000"))
        self.hub_queue_max = int(env.get("HUB_QUEUE_MAX", "100"))
        self.hub_default_namespaces = _split_csv(
            env.get("HUB_DEFAULT_NAMESPACES", "dashboard-insights,orders-insights")
        )

        self.log_level = env.get("LOG_LEVEL", "INFO").upper()

    @property
    def hub_heartbeat_seconds(self) -> float:
        return self.hub_heartbeat_ms / 1000.0

    def missing_for_source(self, source: str) -> List[str]:
        """Names of required variables that are unset for an upstream source."""
        required = {
            "shipments": [("UPSTREAM_BASE_URL", self.upstream_base_url), ("UPSTREAM_TOKEN", self.upstream_token)],
            "products": [("PRODUCTS_BASE_URL", self.products_base_url), ("PRODUCTS_TOKEN", self.products_token)],
            "orders": [("ORDERS_BASE_URL", self.orders_base_url), ("ORDERS_TOKEN", self.orders_token)],
        }.get(source, [])
        return [name for name, value in required if not value]
