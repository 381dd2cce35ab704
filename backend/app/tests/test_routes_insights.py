import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from app.event_hub import EventType
from app.insight_models import FALLBACK_ANALYSIS
from app.llm_service import LLMClient, LLMConfig, LLMErrorKind
from app.main import create_app
from cache.cache import SlotState
from conftest import (
    NOW,
    PAGE_PAYLOAD,
    TENANT,
    FakeClock,
    FakeCompletions,
    FakeLLM,
    FakeOpenAI,
    make_services,
    make_settings,
    product,
    shipment,
    upstream_transport,
)

TENANT_SHIPMENTS = [
    shipment(shipment_id="S-1"),
    shipment(shipment_id="S-2", purchase_order_number="PO-2", status="Pending",
             expected_arrival_date="2025-03-09", arrival_date=None, received_quantity=0),
    shipment(shipment_id="S-3", purchase_order_number="PO-3", created_date="2025-03-01"),
    shipment(shipment_id="X-1", purchase_order_number="PO-X", brand_name="Other Brand"),
]


def default_transport():
    sales = [
        {"sku": "SKU-1", "brand_name": TENANT, "month": f"2024-{m:02d}", "units_sold": 10 + m, "revenue": 100}
        for m in range(1, 10)
    ]
    return upstream_transport(shipments=TENANT_SHIPMENTS, products=[product()], sales=sales)


@pytest.fixture
def api():
    opened = []

    def build(llm=None, transport=None, **settings):
        services = make_services(llm=llm, transport=transport or default_transport(), **settings)
        client = TestClient(create_app(services))
        client.__enter__()
        opened.append(client)
        return client, services

    yield build
    for client in opened:
        client.__exit__(None, None, None)


def async_client(services):
    app = create_app(services)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


# ── FAST ───────────────────────────────────────────────────────────────


def test_fast_orders_returns_tenant_records_without_calling_llm(api):
    llm = FakeLLM()
    client, _ = api(llm=llm)

    resp = client.get("/api/orders-data-fast")

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert "timestamp" in body
    data = body["data"]
    assert len(data["orders"]) == 3
    assert data["kpis"]["ordersToday"] == 2
    assert data["insights"] == []
    assert data["lastUpdated"] == NOW.isoformat()
    assert llm.calls == 0


@pytest.mark.parametrize("page", ["dashboard", "orders", "inventory", "inbound", "sla", "replenishment"])
def test_every_page_has_fast_and_slow_endpoints(api, page):
    client, _ = api()
    fast = client.get(f"/api/{page}-data-fast")
    slow = client.get(f"/api/{page}-insights")
    assert fast.status_code == 200
    assert "kpis" in fast.json()["data"]
    assert slow.status_code == 200
    assert slow.json()["data"]["state"] == "READY"


def test_fast_reports_missing_configuration(api):
    client, _ = api(UPSTREAM_BASE_URL=None)
    resp = client.get("/api/orders-data-fast")
    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert resp.json()["error"] == "Configuration missing"


def test_fast_reports_upstream_failure(api):
    client, _ = api(transport=upstream_transport(status_code=503))
    resp = client.get("/api/inventory-data-fast")
    assert resp.status_code == 500
    assert resp.json()["error"] == "Upstream unavailable"
    assert "HTTP 503" in resp.json()["message"]


# ── SLOW ───────────────────────────────────────────────────────────────


def test_slow_caches_insight(api):
    llm = FakeLLM()
    client, _ = api(llm=llm)

    first = client.get("/api/orders-insights").json()["data"]
    second = client.post("/api/orders-insights").json()["data"]

    assert first["analysis"] == PAGE_PAYLOAD["analysis"]
    assert first["insights"][0]["dollarImpact"] == 1200
    assert first["state"] == "READY"
    assert first["sourceVersion"] == 2
    assert second["producedAt"] == first["producedAt"]
    assert llm.calls == 1


def test_slow_prompt_carries_kpis_not_records(api):
    llm = FakeLLM()
    client, _ = api(llm=llm)
    client.get("/api/orders-insights")
    prompt = llm.prompts[0]
    assert TENANT in prompt.system
    assert '"ordersToday": 2' in prompt.user
    assert "S-1" not in prompt.user


def test_slow_degrades_when_upstream_is_down(api):
    llm = FakeLLM()
    client, services = api(llm=llm, transport=upstream_transport(status_code=502))

    resp = client.get("/api/sla-insights")

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["state"] == "FAILED"
    assert data["degraded"] is True
    assert "could not be loaded" in data["analysis"]
    assert llm.calls == 0
    assert services.cache.size() == 0


def test_slow_degrades_when_model_fails(api):
    client, services = api(llm=FakeLLM(error=LLMErrorKind.UPSTREAM_STATUS))
    data = client.get("/api/dashboard-insights").json()["data"]
    assert data["state"] == "FAILED"
    assert data["analysis"] == FALLBACK_ANALYSIS
    assert services.cache.stats.failures == 1


# ── Per-entity ─────────────────────────────────────────────────────────


def test_order_suggestion(api):
    llm = FakeLLM(payload={"analysis": "Chase the supplier", "recommendations": ["Call Acme"]})
    client, _ = api(llm=llm)
    order = {"order_id": "PO-2", "status": "Delayed", "unit_cost": 100, "expected_quantity": 60,
             "received_quantity": 10, "supplier": "Acme Supply"}

    resp = client.post("/api/order-suggestion", json={"orderData": order})

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["orderId"] == "PO-2"
    assert data["priority"] == "high"
    assert data["estimatedImpact"] == 5000.0
    assert data["suggestion"] == "Chase the supplier"
    assert data["actionable"] is True

    client.post("/api/order-suggestion", json={"orderData": order})
    assert llm.calls == 1


def test_order_suggestion_requires_order_id(api):
    client, _ = api()
    resp = client.post("/api/order-suggestion", json={"orderData": {"status": "Delayed"}})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert resp.json()["error"] == "Invalid request"


def test_malformed_body_is_invalid_request(api):
    client, _ = api()
    resp = client.post("/api/order-suggestion", content="not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request"


def test_historical_analysis_uses_sales_history(api):
    llm = FakeLLM(payload={"analysis": "Demand rising", "salesTrend": "up", "recommendations": ["Reorder"]})
    client, _ = api(llm=llm)

    resp = client.post("/api/historical-sku-analysis", json={"itemData": {"sku": "SKU-1", "unit_quantity": 4}})

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["sku"] == "SKU-1"
    assert data["salesTrend"] == "up"
    assert "Sales Performance (recent 9 records): increasing" in llm.prompts[0].user


def test_historical_analysis_without_history(api):
    llm = FakeLLM(payload={"analysis": "Not enough data"})
    client, _ = api(llm=llm, transport=upstream_transport())
    resp = client.post("/api/historical-sku-analysis", json={"itemData": {"sku": "SKU-404"}})
    assert resp.status_code == 200
    assert "No sales data available" in llm.prompts[0].user


def test_historical_analysis_requires_sku(api):
    client, _ = api()
    resp = client.post("/api/historical-sku-analysis", json={"itemData": {}})
    assert resp.status_code == 400


def test_inventory_suggestion(api):
    llm = FakeLLM(payload={"analysis": "Stock covers under a week", "recommendations": ["Call Acme today"]})
    client, services = api(llm=llm)
    item = {"sku": "SKU-7", "status": "Low Stock", "on_hand": 40, "unit_cost": 150,
            "supplier": "Acme Supply", "active": True}

    resp = client.post("/api/inventory-suggestion", json={"itemData": item})

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["sku"] == "SKU-7"
    assert data["priority"] == "high"
    assert data["estimatedImpact"] == "$6,000 inventory value at risk"
    assert data["suggestion"] == (
        "Stock covers under a week\n\nRecommended Actions:\n1. Call Acme today\n\n"
        "Financial Impact: $6,000 inventory value at risk"
    )
    assert data["actionable"] is True
    assert data["state"] == "READY"
    assert "Inventory Operations Manager" in llm.prompts[0].system
    assert "- Supplier: Acme Supply" in llm.prompts[0].user
    assert services.cache.namespace_sizes() == {"inventory-suggestion": 1}


def test_stock_suggestions_are_cached_per_sku_and_kind(api):
    llm = FakeLLM(payload={"analysis": "Reorder", "recommendations": ["Raise a PO"]})
    client, services = api(llm=llm)
    item = {"sku": "SKU-8", "unit_quantity": 5, "unit_cost": 10, "supplier_name": "Beta Parts",
            "status": "Critical", "active": True}

    first = client.post("/api/replenishment-suggestion", json={"itemData": item}).json()["data"]
    client.post("/api/replenishment-suggestion", json={"itemData": item})
    assert llm.calls == 1
    assert first["priority"] == "medium"
    assert first["estimatedImpact"] == "$15 optimization potential"
    assert "- Supplier: Beta Parts" in llm.prompts[0].user
    assert "Supply Chain Planning Manager" in llm.prompts[0].system

    client.post("/api/inventory-suggestion", json={"itemData": item})
    client.post("/api/replenishment-suggestion", json={"itemData": {**item, "unit_quantity": 0}})
    assert llm.calls == 3
    assert services.cache.namespace_sizes() == {"inventory-suggestion": 1, "replenishment-suggestion": 2}


def test_stock_suggestion_degrades_when_model_fails(api):
    client, _ = api(llm=FakeLLM(error=LLMErrorKind.TIMEOUT))
    resp = client.post("/api/inventory-suggestion", json={"itemData": {"sku": "SKU-9", "status": "Out of Stock"}})
    data = resp.json()["data"]
    assert resp.status_code == 200
    assert data["state"] == "FAILED"
    assert data["degraded"] is True
    assert data["actionable"] is False
    assert data["sku"] == "SKU-9"
    assert data["analysis"] == FALLBACK_ANALYSIS


@pytest.mark.parametrize("path,label", [
    ("/api/inventory-suggestion", "Inventory"),
    ("/api/replenishment-suggestion", "Replenishment"),
])
def test_stock_suggestion_requires_sku(api, path, label):
    client, _ = api()
    resp = client.post(path, json={"itemData": {"status": "Low Stock"}})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request"
    assert resp.json()["message"] == f"{label} item data with SKU is required"
    assert client.post(path, json={}).status_code == 400


# ── HTTP surface ───────────────────────────────────────────────────────


def test_wrong_method_gets_envelope_and_allow_header(api):
    client, _ = api()
    resp = client.delete("/api/orders-data-fast")
    assert resp.status_code == 405
    assert resp.json()["error"] == "Method not allowed"
    allow = resp.headers["allow"]
    assert "GET" in allow and "OPTIONS" in allow


def test_bare_options_returns_200(api):
    client, _ = api()
    assert client.options("/api/orders-insights").status_code == 200


def test_cors_preflight_and_simple_requests(api):
    client, _ = api()
    preflight = client.options(
        "/api/orders-insights",
        headers={"Origin": "http://dashboard.test", "Access-Control-Request-Method": "POST"},
    )
    assert preflight.status_code == 200
    assert preflight.headers["access-control-allow-origin"] == "*"
    assert preflight.content == b""

    custom = client.options(
        "/api/cache-management",
        headers={"Origin": "http://dashboard.test", "Access-Control-Request-Method": "DELETE",
                 "Access-Control-Request-Headers": "X-Requested-With"},
    )
    assert custom.status_code == 200
    assert custom.content == b""

    resp = client.get("/api/health", headers={"Origin": "http://dashboard.test"})
    assert resp.headers["access-control-allow-origin"] == "*"


def test_unknown_route_gets_envelope(api):
    client, _ = api()
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.json()["success"] is False


def test_health(api):
    client, _ = api()
    data = client.get("/api/health").json()["data"]
    assert data["status"] == "ok"
    assert data["subscribers"] == 0


# ── Cache management ───────────────────────────────────────────────────


def test_cache_overview_and_stats(api):
    client, _ = api()
    client.get("/api/orders-insights")

    overview = client.get("/api/cache-management").json()["data"]
    assert overview["cache"]["namespaces"] == {"orders-insights": 1}
    assert "POST" in overview["availableActions"]

    stats = client.get("/api/cache-management", params={"action": "stats"}).json()["data"]
    assert stats["misses"] == 1
    health = client.get("/api/cache-management", params={"action": "health"}).json()["data"]
    assert health["healthy"] is True
    assert client.get("/api/cache-management", params={"action": "bogus"}).status_code == 400


def test_cache_invalidate_forces_recompute(api):
    llm = FakeLLM()
    client, _ = api(llm=llm)
    client.get("/api/orders-insights")

    resp = client.post("/api/cache-management", params={"action": "invalidate", "namespace": "orders-insights"})
    assert resp.json()["data"]["removed"] == 1
    again = client.post("/api/cache-management", params={"action": "invalidate", "namespace": "orders-insights"})
    assert again.json()["data"]["removed"] == 0

    client.get("/api/orders-insights")
    assert llm.calls == 2


def test_cache_actions(api):
    client, _ = api()
    client.get("/api/sla-insights")

    assert client.post("/api/cache-management", params={"action": "invalidate"}).status_code == 400
    notify = client.post("/api/cache-management", params={"action": "notify", "namespace": "sla-insights"})
    assert notify.json()["data"]["recipients"] == 0
    assert client.post("/api/cache-management", params={"action": "cleanup"}).json()["data"]["removed"] == 0
    reset = client.post("/api/cache-management", params={"action": "reset-stats"}).json()["data"]
    assert reset["misses"] == 0
    assert client.post("/api/cache-management", params={"action": "explode"}).status_code == 400

    cleared = client.delete("/api/cache-management").json()["data"]
    assert cleared["clearedNamespaces"] == ["sla-insights"]
    assert client.get("/api/cache-management").json()["data"]["cache"]["namespaces"] == {}


# ── Concurrency and push ───────────────────────────────────────────────


async def test_concurrent_slow_requests_share_one_model_call():
    llm = FakeLLM(delay=0.05)
    services = make_services(llm=llm, transport=default_transport())
    async with async_client(services) as client:
        responses = await asyncio.gather(*(client.get("/api/dashboard-insights") for _ in range(5)))
    await services.close()

    produced = {r.json()["data"]["producedAt"] for r in responses}
    assert len(produced) == 1
    assert llm.calls == 1
    assert services.cache.stats.coalesced == 4


async def test_model_timeout_returns_fallback_and_warns_subscribers():
    completions = FakeCompletions(hang=True)
    services = make_services(transport=default_transport(), LLM_TIMEOUT="0.05")
    services.insights.llm = LLMClient(LLMConfig(make_settings(LLM_TIMEOUT="0.05")), client=FakeOpenAI(completions))
    sub = services.hub.subscribe(["dashboard-insights"])

    async with async_client(services) as client:
        resp = await client.get("/api/dashboard-insights")

    data = resp.json()["data"]
    assert resp.status_code == 200
    assert data["state"] == "FAILED"
    assert data["analysis"] == FALLBACK_ANALYSIS
    warnings = [e for e in sub.queue if e.type == EventType.SYSTEM_MESSAGE]
    assert warnings and "timeout" in warnings[0].data["text"]
    await services.close()


async def test_stale_insight_is_served_then_refreshed_and_announced():
    llm = FakeLLM()
    clock = FakeClock()
    services = make_services(llm=llm, transport=default_transport())
    services.cache.clock = clock
    sub = services.hub.subscribe(["orders-insights"])

    async with async_client(services) as client:
        first = (await client.get("/api/orders-insights")).json()["data"]
        sub.queue.clear()
        clock.advance(15 * 60 + 60)
        stale = (await client.get("/api/orders-insights")).json()["data"]
        await asyncio.sleep(0.05)

    assert stale["producedAt"] == first["producedAt"]
    assert llm.calls == 2
    updates = [e for e in sub.queue if e.type == EventType.NAMESPACE_UPDATED]
    assert len(updates) == 1
    assert updates[0].data["namespace"] == "orders-insights"
    assert services.cache.get(
        "orders-insights", updates[0].data["payload"]["fingerprint"]
    ).state == SlotState.READY
    await services.close()


async def test_entity_insights_are_not_broadcast():
    services = make_services(transport=default_transport())
    sub = services.hub.subscribe(["order-suggestion", "inventory-suggestion", "replenishment-suggestion"])

    async with async_client(services) as client:
        await client.post("/api/order-suggestion", json={"orderData": {"order_id": "PO-9"}})
        await client.post("/api/inventory-suggestion", json={"itemData": {"sku": "SKU-1"}})
        await client.post("/api/replenishment-suggestion", json={"itemData": {"sku": "SKU-1"}})

    assert EventType.NAMESPACE_UPDATED not in [e.type for e in sub.queue]
    assert services.cache.namespace_sizes() == {
        "inventory-suggestion": 1,
        "order-suggestion": 1,
        "replenishment-suggestion": 1,
    }
    await services.close()
