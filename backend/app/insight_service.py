"""
Insight service: the FAST and SLOW halves of every page.

FAST fetches and derives, and surfaces upstream failures. SLOW fingerprints the
derived inputs and goes through the insight cache. It never raises: when data
or the model is unavailable it returns a shaped fallback value.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Union

from app.connectors.base import Unavailable
from app.insight_models import (
    HistoricalAnalysis,
    InsightValue,
    ItemAnalysis,
    OrderAnalysis,
    OrderSuggestion,
    PageInsights,
    StockItemSuggestion,
)
from app.llm_service import LLMClient
from app.metrics.kpis import DERIVERS, DerivedPage, derive
from app.metrics.sla import RULESET_VERSION
from app.namespace_loader import NamespaceDefinition, NamespaceRegistry
from app.prompts import (
    order_priority,
    order_prompt,
    order_shortfall_impact,
    page_prompt,
    sales_history_context,
    sales_history_summary,
    sku_prompt,
    stock_impact,
    stock_item_fields,
    stock_item_prompt,
    stock_priority,
    suggestion_text,
)
from app.settings import Settings
from app.upstream import UpstreamFetcher
from cache.cache import InsightCache, InsightRecord, Outcome, SlotState, fingerprint

logger = logging.getLogger(__name__)

PAGES = tuple(DERIVERS)

PAGE_SOURCES: Dict[str, Tuple[str, ...]] = {
    "dashboard": ("products", "shipments"),
    "orders": ("shipments",),
    "inventory": ("products",),
    "inbound": ("shipments",),
    "sla": ("shipments",),
    "replenishment": ("products", "shipments"),
}

# KPIs that decide whether a page's insight must be regenerated.
FINGERPRINT_KPIS: Dict[str, Tuple[str, ...]] = {
    "dashboard": ("totalOrdersToday", "atRiskOrders", "openPOs", "unfulfillableSKUs"),
    "orders": ("ordersToday", "atRiskOrders", "openPOs", "unfulfillableSKUs"),
    "inventory": ("totalActiveSKUs", "totalInventoryValue", "lowStockAlerts", "inactiveSKUs"),
    "inbound": ("todayArrivals", "thisWeekExpected", "delayedShipments", "receivingAccuracy"),
    "sla": ("overallSLACompliance", "atRiskShipments", "costOfSLABreaches"),
    "replenishment": ("criticalSKUs", "replenishmentValue", "supplierAlerts", "reorderRecommendations"),
}

ORDER_FINGERPRINT_FIELDS = (
    "order_id", "status", "sla_status", "expected_quantity", "received_quantity", "unit_cost", "supplier", "sku",
)

SALES_HISTORY_LIMIT = 20

PageLoad = Union[DerivedPage, Unavailable]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def transient_record(namespace: str, value: Dict[str, Any], kind: str, source_version: int = 0) -> InsightRecord:
    """An uncached FAILED record for fallbacks produced before the cache is involved."""
    return InsightRecord(
        namespace=namespace,
        fingerprint="",
        value=value,
        produced_at=_utcnow().timestamp(),
        source_version=source_version,
        state=SlotState.FAILED,
        error_kind=kind,
    )


class InsightService:
    def __init__(
        self,
        settings: Settings,
        fetcher: UpstreamFetcher,
        cache: InsightCache,
        llm: LLMClient,
        namespaces: NamespaceRegistry,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self.fetcher = fetcher
        self.cache = cache
        self.llm = llm
        self.namespaces = namespaces
        self.now = now

    def namespace_for_page(self, page: str) -> NamespaceDefinition:
        definition = self.namespaces.for_page(page)
        if definition is None:
            return NamespaceDefinition(name=f"{page}-insights", page=page)
        return definition

    def namespace_for_entity(self, name: str, entity: str) -> NamespaceDefinition:
        return self.namespaces.get(name) or NamespaceDefinition(name=name, entity=entity, broadcast=False)

    # -- FAST ------------------------------------------------------------------

    async def load_page(self, page: str) -> PageLoad:
        """Fetch a page's sources and derive its KPIs. Unavailable if any source failed."""
        sources = PAGE_SOURCES[page]
        results = await self.fetcher.fetch_many(sources, self.fetcher.scope())
        failed = [r for r in results.values() if isinstance(r, Unavailable)]
        if failed:
            first = failed[0]
            return Unavailable(
                first.source,
                "; ".join(f"{f.source}: {f.reason}" for f in failed),
                config_missing=any(f.config_missing for f in failed),
            )
        derived = derive(page, results, self.now())
        logger.info(f"Derived {page} KPIs from {derived.counts()}")
        return derived

    # -- SLOW ------------------------------------------------------------------

    def page_fingerprint(self, derived: DerivedPage, definition: NamespaceDefinition) -> str:
        subset = {k: derived.kpis.get(k) for k in FINGERPRINT_KPIS.get(derived.page, ())}
        return fingerprint(
            tenant=self.settings.tenant_name,
            namespace=definition.name,
            kpis={"kpis": subset, "counts": derived.counts()},
            source_version=definition.source_version,
            ruleset_version=RULESET_VERSION,
        )

    async def page_insights(self, page: str) -> InsightRecord:
        definition = self.namespace_for_page(page)
        try:
            loaded = await self.load_page(page)
        except Exception as e:
            logger.error(f"Loading {page} for insights failed: {type(e).__name__}: {e}")
            loaded = Unavailable(page, type(e).__name__)

        if isinstance(loaded, Unavailable):
            logger.warning(f"{definition.name}: upstream unavailable ({loaded.reason}); serving fallback")
            value = PageInsights.degraded_value(
                "Insights are unavailable because operational data could not be loaded."
            ).dump()
            return transient_record(definition.name, value, "upstream_unavailable", definition.source_version)

        tenant = self.settings.tenant_name
        prompt = page_prompt(loaded, tenant)

        async def produce() -> Outcome:
            result = await self.llm.ask(prompt, PageInsights)
            return Outcome(result.value.dump(), result.error.label() if result.error else None)

        return await self.cache.get_or_compute(
            definition.name,
            self.page_fingerprint(loaded, definition),
            produce,
            source_version=definition.source_version,
            fallback=lambda kind: PageInsights.degraded_value().dump(),
        )

    async def order_suggestion(self, order: Dict[str, Any]) -> InsightRecord:
        definition = self.namespace_for_entity("order-suggestion", "order_id")
        order_id = str(order["order_id"])
        priority = order_priority(order)
        impact = order_shortfall_impact(order)
        computed = {"orderId": order_id, "priority": priority, "estimatedImpact": impact}

        def shaped(analysis: InsightValue, degraded: bool) -> Dict[str, Any]:
            return OrderSuggestion(
                analysis=analysis.analysis,
                suggestion=analysis.analysis,
                recommendations=analysis.recommendations,
                actionable=bool(analysis.recommendations) and not degraded,
                degraded=degraded,
                **computed,
            ).dump()

        async def produce() -> Outcome:
            result = await self.llm.ask(order_prompt(order, priority, impact), OrderAnalysis)
            return Outcome(shaped(result.value, not result.ok), result.error.label() if result.error else None)

        fp = fingerprint(
            tenant=self.settings.tenant_name,
            namespace=definition.name,
            kpis={k: order.get(k) for k in ORDER_FINGERPRINT_FIELDS},
            entity_key=order_id,
            source_version=definition.source_version,
            ruleset_version=RULESET_VERSION,
        )
        return await self.cache.get_or_compute(
            definition.name, fp, produce,
            source_version=definition.source_version,
            fallback=lambda kind: shaped(OrderAnalysis.degraded_value(), True),
        )

    async def stock_item_suggestion(self, kind: str, item: Dict[str, Any]) -> InsightRecord:
        """Per-SKU suggestion for the inventory or replenishment page."""
        definition = self.namespace_for_entity(f"{kind}-suggestion", "sku")
        fields = stock_item_fields(item, self.now())
        priority = stock_priority(fields)
        impact = stock_impact(kind, priority, fields["total_value"])

        def shaped(analysis: InsightValue, degraded: bool) -> Dict[str, Any]:
            return StockItemSuggestion(
                sku=fields["sku"],
                analysis=analysis.analysis,
                suggestion=suggestion_text(analysis.analysis, analysis.recommendations, impact),
                recommendations=analysis.recommendations,
                priority=priority,
                actionable=bool(analysis.recommendations) and not degraded,
                estimated_impact=impact,
                degraded=degraded,
            ).dump()

        async def produce() -> Outcome:
            result = await self.llm.ask(stock_item_prompt(kind, fields, priority), ItemAnalysis)
            return Outcome(shaped(result.value, not result.ok), result.error.label() if result.error else None)

        fp = fingerprint(
            tenant=self.settings.tenant_name,
            namespace=definition.name,
            kpis=fields,
            entity_key=fields["sku"],
            source_version=definition.source_version,
            ruleset_version=RULESET_VERSION,
        )
        return await self.cache.get_or_compute(
            definition.name, fp, produce,
            source_version=definition.source_version,
            fallback=lambda _kind: shaped(ItemAnalysis.degraded_value(), True),
        )

    async def sales_history(self, sku: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """Summary of recent sales for a SKU, or a note explaining why there is none."""
        result = await self.fetcher.fetch_records("orders", self.fetcher.scope(entity_key=sku, limit=SALES_HISTORY_LIMIT))
        if isinstance(result, Unavailable):
            logger.warning(f"Sales history for {sku} unavailable: {result.reason}")
            return None, "Sales history is currently unavailable; analysis is based on the item data only."
        records = [r for r in result if r.sku in (None, sku)]
        summary = sales_history_summary(records)
        return summary, None if summary else "No sales data available"

    async def historical_sku_analysis(self, item: Dict[str, Any]) -> InsightRecord:
        definition = self.namespace_for_entity("historical-sku-analysis", "sku")
        sku = str(item["sku"])
        summary, note = await self.sales_history(sku)
        context = sales_history_context(summary, note)

        def shaped(value: HistoricalAnalysis) -> Dict[str, Any]:
            value.sku = sku
            return value.dump()

        async def produce() -> Outcome:
            result = await self.llm.ask(sku_prompt(item, context), HistoricalAnalysis)
            return Outcome(shaped(result.value), result.error.label() if result.error else None)

        fp = fingerprint(
            tenant=self.settings.tenant_name,
            namespace=definition.name,
            kpis={"history": summary, "note": note},
            entity_key=sku,
            source_version=definition.source_version,
            ruleset_version=RULESET_VERSION,
        )
        return await self.cache.get_or_compute(
            definition.name, fp, produce,
            source_version=definition.source_version,
            fallback=lambda kind: shaped(HistoricalAnalysis.degraded_value()),
        )


def record_payload(record: InsightRecord) -> Dict[str, Any]:
    """Response body for a SLOW endpoint: the value plus its cache metadata."""
    value = record.value if isinstance(record.value, dict) else {"value": record.value}
    return {
        **value,
        "producedAt": record.produced_at_iso,
        "sourceVersion": record.source_version,
        "state": record.state.value,
    }


def page_payload(derived: DerivedPage, now: datetime) -> Dict[str, Any]:
    """Response body for a FAST endpoint."""
    return {
        **derived.records,
        "kpis": derived.kpis,
        "intelligence": derived.intelligence,
        "insights": [],
        "lastUpdated": now.isoformat(),
    }
