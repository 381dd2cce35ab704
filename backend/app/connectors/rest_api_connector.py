"""REST analytics connector: pulls JSON rows from a token-authenticated HTTP endpoint."""
from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx

from app.connectors.base import BaseConnector, FetchResult, FetchScope, Unavailable
from app.records import RECORD_TYPES
from app.settings import log_config_missing_once

logger = logging.getLogger(__name__)


class RestAPIConnector(BaseConnector):
    connector_type = "api"

    def __init__(self, source: str, config: dict, client: Optional[httpx.AsyncClient] = None):
        super().__init__(source, config)
        self.base_url = config.get("url") or ""
        self.token = config.get("token") or ""
        self.data_path = config.get("data_path", "data")
        self.timeout = float(config.get("timeout", 15))
        self.missing = list(config.get("missing") or [])
        self.record_type = RECORD_TYPES[source]
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def _extract_rows(self, payload: Any) -> List[dict]:
        """Navigate into nested JSON using dot-separated data_path."""
        data = payload
        for key in (self.data_path or "").split("."):
            if not key:
                continue
            if isinstance(data, dict):
                data = data.get(key)
            else:
                data = None
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict)]

    async def fetch_records(self, scope: FetchScope) -> FetchResult:
        if self.missing:
            for name in self.missing:
                log_config_missing_once(name)
            return Unavailable(self.source, f"missing configuration: {', '.join(self.missing)}", config_missing=True)

        params = {"token": self.token, "brand_name": scope.tenant, "limit": scope.limit}
        if scope.entity_key:
            params["sku"] = scope.entity_key

        logger.info(f"Fetching {self.source} for tenant={scope.tenant} limit={scope.limit} entity={scope.entity_key}")
        try:
            resp = await self._get_client().get(self.base_url, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"Upstream {self.source} request failed: {type(e).__name__}: {e}")
            return Unavailable(self.source, f"{type(e).__name__}")

        if not resp.is_success:
            logger.warning(f"Upstream {self.source} responded HTTP {resp.status_code}")
            return Unavailable(self.source, f"HTTP {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError:
            logger.warning(f"Upstream {self.source} returned a non-JSON body")
            return Unavailable(self.source, "invalid JSON body")

        rows = self._extract_rows(payload)
        records = [self.record_type.from_raw(row) for row in rows]
        # Upstream is asked to filter by tenant, but the filter is re-applied here regardless.
        scoped = [r for r in records if r.tenant == scope.tenant]
        if len(scoped) != len(records):
            logger.info(f"Tenant filter on {self.source}: {len(records)} total -> {len(scoped)} for {scope.tenant}")
        return scoped

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
