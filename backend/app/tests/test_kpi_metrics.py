import pytest

from app.metrics.kpis import DERIVERS, derive
from app.metrics.sla import is_geopolitical_risk, order_status, sla_status
from app.records import ProductRecord, ShipmentRecord
from conftest import NOW, product, shipment


def shipments(*rows):
    return [ShipmentRecord.from_raw(r) for r in rows]


def products(*rows):
    return [ProductRecord.from_raw(r) for r in rows]


def order_rows():
    return shipments(
        shipment(shipment_id="S-1"),
        shipment(shipment_id="S-2", purchase_order_number="PO-2", status="Pending", supplier="Beta Parts",
                 expected_arrival_date="2025-03-09", arrival_date=None, expected_quantity=50, received_quantity=0),
        shipment(shipment_id="S-3", purchase_order_number="PO-3", status="Cancelled", created_date="2025-03-01",
                 expected_arrival_date="2025-03-20", arrival_date=None, expected_quantity=20, received_quantity=0),
        shipment(shipment_id="S-4", purchase_order_number=None, status="In Transit", created_date="2025-03-11",
                 expected_arrival_date="2025-03-15", arrival_date=None, expected_quantity=10, received_quantity=10),
    )


def product_rows():
    return products(
        product(product_id="P-1"),
        product(product_id="P-2", product_sku="SKU-2", unit_quantity=5, unit_cost=4),
        product(product_id="P-3", product_sku="SKU-3", unit_quantity=0, unit_cost=7, active=False),
        product(product_id="P-4", product_sku="SKU-4", unit_quantity=150, unit_cost=1, active=None),
    )


# ── SLA rules ──────────────────────────────────────────────────────────


@pytest.mark.parametrize("expected,arrival,status,want", [
    ("2025-03-10", "2025-03-09", "Completed", "on_time"),
    ("2025-03-10", "2025-03-10T08:00:00", "Delivered", "late"),
    ("2025-03-10", "2025-03-11", "completed", "late"),
    ("2025-03-10", None, "completed", "unknown"),
    (None, "2025-03-09", "completed", "unknown"),
    ("2025-03-09", None, "Pending", "breach"),
    ("2025-03-11", None, "In Transit", "at_risk"),
    ("2025-03-14", None, "pending", "on_time"),
    ("not a date", None, "pending", "unknown"),
])
def test_sla_status(expected, arrival, status, want):
    assert sla_status(expected, arrival, status, NOW) == want


@pytest.mark.parametrize("raw,want", [
    ("In Transit", "shipped"),
    ("Receiving", "processing"),
    ("Open", "pending"),
    ("Cancelled", "cancelled"),
    ("Delayed", "delayed"),
    ("DELIVERED", "completed"),
    (None, "unknown"),
    ("On Hold", "On Hold"),
])
def test_order_status(raw, want):
    assert order_status(raw) == want


def test_geopolitical_countries():
    assert is_geopolitical_risk("China")
    assert not is_geopolitical_risk("Mexico")
    assert not is_geopolitical_risk(None)


# ── Pages ──────────────────────────────────────────────────────────────


def test_orders_kpis():
    derived = derive("orders", {"shipments": order_rows()}, NOW)
    assert derived.kpis == {
        "ordersToday": 2,
        "atRiskOrders": 2,
        "openPOs": 2,
        "unfulfillableSKUs": 1,
    }
    orders = derived.records["orders"]
    assert [o["order_id"] for o in orders] == ["PO-1", "PO-2", "PO-3", "S-4"]
    assert orders[2]["status"] == "cancelled"
    assert orders[1]["sla_status"] == "breach"


def test_orders_intelligence():
    derived = derive("orders", {"shipments": order_rows()}, NOW)
    intel = derived.intelligence
    assert intel["issueClassification"]["quantityDiscrepancies"] == 2
    assert intel["issueClassification"]["cancellations"] == 1
    assert intel["supplierAnalysis"]["topAffectedSuppliers"] == ["Acme Supply", "Beta Parts"]
    assert intel["businessMetrics"] == {"todayCount": 2, "historicalAverage": 0, "totalRecords": 4}
    assert intel["inboundIntelligence"]["totalInbound"] == 4


def test_derivation_is_deterministic():
    sources = {"shipments": order_rows(), "products": product_rows()}
    for page in DERIVERS:
        assert derive(page, sources, NOW) == derive(page, sources, NOW)


def test_unknown_page_rejected():
    with pytest.raises(ValueError):
        derive("warehouse", {}, NOW)


def test_dashboard_kpis_and_anomalies():
    derived = derive("dashboard", {"shipments": order_rows(), "products": product_rows()}, NOW)
    assert derived.kpis == {
        "totalOrdersToday": 2,
        "atRiskOrders": 2,
        "openPOs": 1,
        "unfulfillableSKUs": 1,
    }
    assert derived.intelligence["anomalies"] == []
    impacts = derived.intelligence["financialImpacts"]
    assert impacts["quantityDiscrepancyImpact"] == 700
    assert impacts["cancelledShipmentsImpact"] == 200
    assert impacts["inactiveProductsValue"] == 0
    assert derived.counts() == {"products": 4, "shipments": 4}


def test_dashboard_flags_no_orders_today():
    derived = derive("dashboard", {}, NOW)
    assert derived.kpis["totalOrdersToday"] == 0
    assert [a["type"] for a in derived.intelligence["anomalies"]] == ["low_order_volume"]


def test_inventory_kpis():
    derived = derive("inventory", {"products": product_rows()}, NOW)
    assert derived.kpis == {
        "totalActiveSKUs": 2,
        "totalInventoryValue": 670,
        "lowStockAlerts": 1,
        "inactiveSKUs": 1,
        "totalSKUs": 4,
        "inStockCount": 3,
        "unfulfillableCount": 1,
        "overstockedCount": 1,
    }
    assert derived.intelligence["stockLevels"] == {"outOfStock": 1, "low": 1, "healthy": 1, "overstocked": 1}
    assert derived.intelligence["supplierBreakdown"][0]["supplierName"] == "Acme Supply"


def test_inbound_kpis():
    rows = shipments(
        shipment(shipment_id="A", created_date="2025-03-01"),
        shipment(shipment_id="B", status="In Transit", created_date="2025-03-05",
                 expected_arrival_date="2025-03-12", arrival_date=None, expected_quantity=50, received_quantity=0),
    )
    derived = derive("inbound", {"shipments": rows}, NOW)
    assert derived.kpis == {
        "todayArrivals": 1,
        "thisWeekExpected": 2,
        "averageLeadTime": 8.0,
        "delayedShipments": 0,
        "receivingAccuracy": 50,
        "onTimeDeliveryRate": 100,
    }


def test_sla_kpis():
    rows = shipments(
        shipment(shipment_id="A"),
        shipment(shipment_id="B", arrival_date="2025-03-12"),
        shipment(shipment_id="C", status="In Transit", expected_arrival_date="2025-03-13", arrival_date=None),
    )
    derived = derive("sla", {"shipments": rows}, NOW)
    assert derived.kpis == {
        "overallSLACompliance": 33,
        "averageDeliveryPerformance": 0.5,
        "atRiskShipments": 1,
        "costOfSLABreaches": 150,
    }
    assert derived.intelligence["slaStatusBreakdown"] == {"late": 1, "on_time": 2}


def test_sla_kpis_without_data():
    derived = derive("sla", {"shipments": []}, NOW)
    assert derived.kpis["overallSLACompliance"] is None
    assert derived.kpis["averageDeliveryPerformance"] is None
    assert derived.kpis["costOfSLABreaches"] == 0


def test_replenishment_kpis():
    rows = shipments(
        shipment(shipment_id="S-2", status="Pending", supplier="Beta Parts"),
        shipment(shipment_id="S-9", status="Delayed", supplier="Old Co", created_date="2024-01-01"),
    )
    derived = derive("replenishment", {"products": product_rows(), "shipments": rows}, NOW)
    assert derived.kpis == {
        "criticalSKUs": 1,
        "replenishmentValue": 100,
        "supplierAlerts": 1,
        "reorderRecommendations": 1,
    }
    assert derived.intelligence["supplierAlertList"] == ["Beta Parts"]
    first = derived.intelligence["reorderList"][0]
    assert first["sku"] == "SKU-2"
    assert first["suggestedOrder"] == 25


def test_geopolitical_bucket():
    rows = shipments(
        shipment(shipment_id="G-1", ship_from_country="China", status="Delayed"),
        shipment(shipment_id="G-2", ship_from_country="Mexico"),
    )
    intel = derive("orders", {"shipments": rows}, NOW).intelligence["inboundIntelligence"]
    assert intel["geopoliticalRisks"] == {"riskCountries": ["China"], "affectedShipments": 1}
    assert intel["delayedShipments"]["count"] == 1


def test_missing_fields_do_not_break_any_page():
    sparse_shipment = ShipmentRecord.from_raw({"shipment_id": "X", "brand_name": "Callahan-Smith"})
    sparse_product = ProductRecord.from_raw({"product_id": "Y", "brand_name": "Callahan-Smith"})
    sources = {"shipments": [sparse_shipment], "products": [sparse_product]}
    for page in DERIVERS:
        derived = derive(page, sources, NOW)
        assert derived.page == page
    orders = derive("orders", sources, NOW).records["orders"][0]
    assert orders["sla_status"] == "unknown"
    assert orders["expected_quantity"] == 0.0
