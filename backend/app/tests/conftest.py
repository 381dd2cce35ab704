import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio

from app.event_hub import EventHub
from app.llm_service import LLMError, LLMErrorKind, LLMResult
from app.notifier import ChangeNotifier
from app.services import build_services
from app.settings import Settings

NOW = datetime(2025, 3, 12, 15, 0, tzinfo=timezone.utc)
TODAY = NOW.date().isoformat()
TENANT = "Callahan-Smith"

SHIPMENTS_URL = "https://analytics.test/shipments"
PRODUCTS_URL = "https://analytics.test/products"
ORDERS_URL = "https://analytics.test/orders"

PAGE_PAYLOAD = {
    "analysis": "Receiving accuracy is slipping at two suppliers.",
    "recommendations": ["Audit supplier A receipts", "Expedite open POs"],
    "insights": [
        {
            "title": "Quantity discrepancies",
            "description": "3 shipments arrived short",
            "severity": "warning",
            "dollarImpact": 1200,
            "suggestedActions": ["Open supplier claims"],
        }
    ],
}


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self):
        self.updated = []
        self.invalidated = []
        self.warnings = []

    def namespace_updated(self, namespace, payload=None):
        self.updated.append((namespace, payload))

    def namespace_invalidated(self, namespace):
        self.invalidated.append(namespace)

    def system_warning(self, text):
        self.warnings.append(text)


class FakeLLM:
    """Stands in for LLMClient.ask; counts calls and can be slow, failing or hung."""

    def __init__(self, payload=None, delay: float = 0.0, error: LLMErrorKind = None, hang: bool = False):
        self.payload = payload if payload is not None else PAGE_PAYLOAD
        self.delay = delay
        self.error = error
        self.hang = hang
        self.calls = 0
        self.prompts = []

    async def ask(self, prompt, schema, budget=None):
        self.calls += 1
        self.prompts.append(prompt)
        if self.hang:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            return LLMResult(schema.degraded_value(), LLMError(self.error))
        return LLMResult(schema.model_validate(self.payload))


class FakeCompletions:
    def __init__(self, content: str = "{}", exc: Exception = None, delay: float = 0.0, hang: bool = False):
        self.content = content
        self.exc = exc
        self.delay = delay
        self.hang = hang
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.hang:
            await asyncio.Event().wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])


class FakeOpenAI:
    def __init__(self, completions: FakeCompletions):
        self.chat = SimpleNamespace(completions=completions)
        self.closed = False

    async def close(self):
        self.closed = True


def make_settings(**overrides) -> Settings:
    env = {
        "UPSTREAM_BASE_URL": SHIPMENTS_URL,
        "UPSTREAM_TOKEN": "ship-token",
        "PRODUCTS_BASE_URL": PRODUCTS_URL,
        "PRODUCTS_TOKEN": "product-token",
        "ORDERS_BASE_URL": ORDERS_URL,
        "ORDERS_TOKEN": "orders-token",
        "TENANT_NAME": TENANT,
        "LLM_API_KEY": "test-key",
        "LLM_TIMEOUT": "2",
        "HUB_HEARTBEAT_MS": "50",
    }
    env.update({k: str(v) for k, v in overrides.items() if v is not None})
    for k, v in overrides.items():
        if v is None:
            env.pop(k, None)
    return Settings(env=env)


def shipment(**fields) -> dict:
    row = {
        "shipment_id": "S-1",
        "brand_name": TENANT,
        "created_date": TODAY,
        "purchase_order_number": "PO-1",
        "status": "completed",
        "supplier": "Acme Supply",
        "expected_arrival_date": "2025-03-10",
        "arrival_date": "2025-03-09",
        "warehouse_id": "WH-1",
        "ship_from_country": "Mexico",
        "inventory_item_id": "INV-1",
        "sku": "SKU-1",
        "expected_quantity": 100,
        "received_quantity": 100,
        "unit_cost": 10.0,
    }
    row.update(fields)
    return row


def product(**fields) -> dict:
    row = {
        "product_id": "P-1",
        "brand_name": TENANT,
        "product_name": "Widget",
        "product_sku": "SKU-1",
        "inventory_item_id": "INV-1",
        "unit_quantity": 50,
        "unit_cost": 10.0,
        "active": True,
        "supplier_name": "Acme Supply",
        "country_of_origin": "Mexico",
        "created_date": "2025-01-01",
    }
    row.update(fields)
    return row


def upstream_transport(shipments=None, products=None, sales=None, status_code: int = 200, seen=None):
    """httpx MockTransport serving the three analytics endpoints."""
    tables = {
        SHIPMENTS_URL: shipments or [],
        PRODUCTS_URL: products or [],
        ORDERS_URL: sales or [],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        base = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        if status_code != 200:
            return httpx.Response(status_code, json={"error": "boom"})
        return httpx.Response(200, json={"data": tables.get(base, [])})

    return httpx.MockTransport(handler)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def hub():
    h = EventHub(heartbeat_seconds=0.05, queue_max=5, default_namespaces=["dashboard-insights", "orders-insights"])
    yield h
    for sub in h.subscribers():
        h.unsubscribe(sub.id)


@pytest.fixture
def notifier(hub):
    return ChangeNotifier(hub)


def make_services(llm=None, transport=None, **settings):
    """Services wired to a mock upstream and a fake model, with a fixed `now`."""
    client = httpx.AsyncClient(transport=transport or upstream_transport())
    services = build_services(make_settings(**settings), llm=llm or FakeLLM(), http_client=client)
    services.insights.now = lambda: NOW
    return services
