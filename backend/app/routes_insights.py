"""
HTTP routes for progressive insight delivery:
FAST data, SLOW insights, per-entity analysis, the push stream and cache management.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from app.connectors.base import Unavailable
from app.helpers import fail, ok
from app.insight_models import HistoricalAnalysis, OrderAnalysis, PageInsights, StockItemSuggestion
from app.insight_service import PAGES, page_payload, record_payload, transient_record
from app.services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

CACHE_ACTIONS = {
    "GET": ["stats", "health"],
    "POST": ["cleanup", "reset-stats", "invalidate", "notify"],
    "DELETE": ["namespace=<name> invalidates one namespace", "no namespace clears the cache"],
}


class OrderSuggestionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    order_data: Optional[Dict[str, Any]] = Field(default=None, alias="orderData")


class ItemRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    item_data: Optional[Dict[str, Any]] = Field(default=None, alias="itemData")


def _preflight(path: str) -> None:
    async def options_handler() -> Response:
        return Response(status_code=200)

    router.add_api_route(path, options_handler, methods=["OPTIONS"], include_in_schema=False,
                         name=f"options:{path}")


# ── FAST / SLOW page pairs ─────────────────────────────────────────────

def _register_page(page: str) -> None:
    fast_path = f"/{page}-data-fast"
    slow_path = f"/{page}-insights"

    async def fast_handler(services: Services = Depends(get_services)):
        try:
            loaded = await services.insights.load_page(page)
        except Exception as e:
            logger.error(f"FAST {page} failed: {type(e).__name__}: {e}")
            return fail(500, "Internal server error", message=f"Failed to build {page} data")
        if isinstance(loaded, Unavailable):
            if loaded.config_missing:
                return fail(500, "Configuration missing", message=loaded.reason)
            return fail(500, "Upstream unavailable", message=loaded.reason)
        now = services.insights.now()
        return ok(page_payload(loaded, now), message=f"Fast {page} data retrieved successfully")

    async def slow_handler(services: Services = Depends(get_services)):
        try:
            record = await services.insights.page_insights(page)
        except Exception as e:
            logger.error(f"SLOW {page} failed: {type(e).__name__}: {e}")
            definition = services.insights.namespace_for_page(page)
            record = transient_record(definition.name, PageInsights.degraded_value().dump(), type(e).__name__)
        return ok(record_payload(record), message=f"{page} insights ({record.state.value.lower()})")

    router.add_api_route(fast_path, fast_handler, methods=["GET"], name=f"{page}_data_fast")
    router.add_api_route(slow_path, slow_handler, methods=["GET", "POST"], name=f"{page}_insights")
    _preflight(fast_path)
    _preflight(slow_path)


for _page in PAGES:
    _register_page(_page)


# ── Per-entity analysis ────────────────────────────────────────────────

@router.post("/order-suggestion")
async def order_suggestion(body: OrderSuggestionRequest, services: Services = Depends(get_services)):
    order = body.order_data or {}
    if not order.get("order_id"):
        return fail(400, "Invalid request", message="orderData.order_id is required")
    try:
        record = await services.insights.order_suggestion(order)
    except Exception as e:
        logger.error(f"Order suggestion for {order.get('order_id')} failed: {type(e).__name__}: {e}")
        value = OrderAnalysis.degraded_value().dump()
        value.update({"orderId": str(order["order_id"]), "suggestion": value["analysis"], "actionable": False})
        record = transient_record("order-suggestion", value, type(e).__name__)
    return ok(record_payload(record))


@router.post("/historical-sku-analysis")
async def historical_sku_analysis(body: ItemRequest, services: Services = Depends(get_services)):
    item = body.item_data or {}
    if not item.get("sku"):
        return fail(400, "Invalid request", message="itemData.sku is required")
    try:
        record = await services.insights.historical_sku_analysis(item)
    except Exception as e:
        logger.error(f"Historical analysis for {item.get('sku')} failed: {type(e).__name__}: {e}")
        value = HistoricalAnalysis.degraded_value(sku=str(item["sku"])).dump()
        record = transient_record("historical-sku-analysis", value, type(e).__name__)
    return ok(record_payload(record))


_preflight("/order-suggestion")
_preflight("/historical-sku-analysis")


def _register_stock_suggestion(kind: str) -> None:
    path = f"/{kind}-suggestion"

    async def handler(body: ItemRequest, services: Services = Depends(get_services)):
        item = body.item_data or {}
        if not item.get("sku"):
            return fail(400, "Invalid request", message=f"{kind.capitalize()} item data with SKU is required")
        try:
            record = await services.insights.stock_item_suggestion(kind, item)
        except Exception as e:
            logger.error(f"{kind.capitalize()} suggestion for {item.get('sku')} failed: {type(e).__name__}: {e}")
            value = StockItemSuggestion.degraded_value(sku=str(item["sku"]), actionable=False).dump()
            record = transient_record(f"{kind}-suggestion", value, type(e).__name__)
        return ok(record_payload(record))

    router.add_api_route(path, handler, methods=["POST"], name=f"{kind}_suggestion")
    _preflight(path)


for _kind in ("inventory", "replenishment"):
    _register_stock_suggestion(_kind)


# ── Push stream ────────────────────────────────────────────────────────

@router.get("/insights-stream")
async def insights_stream(
    request: Request,
    namespaces: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
):
    hub = services.hub
    return StreamingResponse(
        hub.connect(hub.parse_namespaces(namespaces), request.is_disconnected),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


_preflight("/insights-stream")


# ── Cache management ───────────────────────────────────────────────────

@router.get("/cache-management")
async def cache_overview(action: Optional[str] = None, services: Services = Depends(get_services)):
    cache = services.cache
    if action == "stats":
        return ok(cache.stats_snapshot())
    if action == "health":
        return ok(cache.health())
    if action:
        return fail(400, "Invalid request", message=f"Unknown action '{action}'")
    return ok({
        "cache": {"size": cache.size(), "hitRate": cache.stats.hit_rate(), "namespaces": cache.namespace_sizes()},
        "hub": services.hub.stats(),
        "availableActions": CACHE_ACTIONS,
    })


@router.post("/cache-management")
async def cache_action(
    action: Optional[str] = None,
    namespace: Optional[str] = None,
    services: Services = Depends(get_services),
):
    cache = services.cache
    if action == "cleanup":
        removed = await cache.cleanup_expired()
        return ok({"removed": removed}, message=f"Removed {removed} expired records")
    if action == "reset-stats":
        cache.reset_stats()
        return ok(cache.stats_snapshot(), message="Cache statistics reset")
    if action in ("invalidate", "notify"):
        if not namespace:
            return fail(400, "Invalid request", message="namespace is required")
        if action == "invalidate":
            removed = await cache.invalidate(namespace)
            return ok({"namespace": namespace, "removed": removed}, message=f"Invalidated {namespace}")
        recipients = services.notifier.force_broadcast(namespace)
        return ok({"namespace": namespace, "recipients": recipients}, message=f"Broadcast sent for {namespace}")
    return fail(400, "Invalid request", message=f"Unknown action '{action}'")


@router.delete("/cache-management")
async def cache_delete(namespace: Optional[str] = None, services: Services = Depends(get_services)):
    if namespace:
        removed = await services.cache.invalidate(namespace)
        return ok({"namespace": namespace, "removed": removed}, message=f"Invalidated {namespace}")
    cleared = await services.cache.clear()
    return ok({"clearedNamespaces": cleared}, message="Cache cleared")


_preflight("/cache-management")


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    return ok({
        "status": "ok",
        "subscribers": services.hub.stats()["subscriberCount"],
        "cacheSize": services.cache.size(),
        "checkedAt": datetime.now(timezone.utc).isoformat(),
    })
