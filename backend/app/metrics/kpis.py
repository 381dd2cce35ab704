"""
Per-page KPI derivation.

Each deriver is a pure function of the fetched records and a reference
`now`: the same inputs always give the same output. Values are plain
python ints, floats, strings, lists and dicts so they serialize as-is.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from app.metrics.intelligence import (
    UNKNOWN,
    as_int,
    as_money,
    business_metrics,
    percentage,
    products_frame,
    quantity_mismatch,
    records_out,
    shipment_intelligence,
    shipments_frame,
    status_contains,
    supplier_impact,
)
from app.metrics.sla import GEOPOLITICAL_RISK_COUNTRIES, parse_timestamp

logger = logging.getLogger(__name__)

SHIPMENT_COLUMNS = [
    "shipment_id", "purchase_order_number", "status", "sla_status", "supplier",
    "sku", "expected_quantity", "received_quantity", "unit_cost", "created_date",
    "expected_arrival_date", "arrival_date", "warehouse_id", "ship_from_country",
]
PRODUCT_COLUMNS = [
    "product_id", "product_name", "product_sku", "inventory_item_id", "unit_quantity",
    "unit_cost", "active", "supplier_name", "country_of_origin",
]
ORDER_COLUMNS = [
    "order_id", "status", "sla_status", "created_date", "expected_arrival_date",
    "arrival_date", "supplier", "sku", "expected_quantity", "received_quantity",
    "unit_cost", "warehouse_id", "ship_from_country", "shipment_id",
]


@dataclass
class DerivedPage:
    """FAST-path output for one page."""
    page: str
    records: Dict[str, List[Dict[str, Any]]]
    kpis: Dict[str, Any]
    intelligence: Dict[str, Any] = field(default_factory=dict)

    def counts(self) -> Dict[str, int]:
        return {name: len(rows) for name, rows in sorted(self.records.items())}


def _days(later: Optional[datetime], earlier: Optional[datetime]) -> Optional[float]:
    if later is None or earlier is None:
        return None
    return (later - earlier).total_seconds() / 86400.0


def inbound_intelligence(df: pd.DataFrame, now: datetime) -> Dict[str, Any]:
    """Delay, value-at-risk and geopolitical picture for a set of shipments."""
    total = len(df)
    if df.empty:
        return {
            "totalInbound": 0,
            "delayedShipments": {"count": 0, "percentage": 0.0},
            "avgDelayDays": 0.0,
            "valueAtRisk": 0,
            "geopoliticalRisks": None,
        }

    delayed = (df["order_status"] == "delayed") | df["sla_status"].isin(["breach", "late"])
    delayed_rows = df.loc[delayed]

    delays = []
    for expected, arrival in zip(delayed_rows["expected_arrival_date"], delayed_rows["arrival_date"]):
        exp = parse_timestamp(expected)
        if exp is None:
            delays.append(0.0)
            continue
        diff = _days(parse_timestamp(arrival) or now, exp)
        delays.append(max(0.0, diff))
    avg_delay = sum(delays) / len(delays) if delays else 0.0

    value_at_risk = (delayed_rows["expected_quantity"] * delayed_rows["unit_cost"]).sum()

    risky = df.loc[df["ship_from_country"].isin(GEOPOLITICAL_RISK_COUNTRIES)]
    geo = None
    if not risky.empty:
        geo = {
            "riskCountries": sorted(set(risky["ship_from_country"])),
            "affectedShipments": len(risky),
        }

    return {
        "totalInbound": total,
        "delayedShipments": {"count": len(delayed_rows), "percentage": percentage(len(delayed_rows), total)},
        "avgDelayDays": round(avg_delay, 1),
        "valueAtRisk": as_money(value_at_risk),
        "geopoliticalRisks": geo,
    }


# -- dashboard -----------------------------------------------------------------

def _financial_impacts(products: pd.DataFrame, shipments: pd.DataFrame) -> Dict[str, int]:
    mismatch = quantity_mismatch(shipments)
    cancelled = shipments["status_l"] == "cancelled"

    discrepancy = ((shipments["expected_quantity"] - shipments["received_quantity"]).abs()
                   * shipments["unit_cost"])[mismatch].sum()
    cancelled_value = (shipments["expected_quantity"] * shipments["unit_cost"])[cancelled].sum()
    inactive_value = (products["unit_cost"] * products["unit_quantity"].clip(upper=10))[products["inactive"]].sum()
    at_risk_value = (shipments["received_quantity"] * shipments["unit_cost"])[mismatch | cancelled].sum()

    return {
        "quantityDiscrepancyImpact": as_money(discrepancy),
        "cancelledShipmentsImpact": as_money(cancelled_value),
        "inactiveProductsValue": as_money(inactive_value),
        "atRiskInventoryValue": as_money(at_risk_value),
        "totalFinancialRisk": as_money(discrepancy + cancelled_value + inactive_value),
    }


def _warehouse_inventory(products: pd.DataFrame, shipments: pd.DataFrame) -> List[Dict[str, Any]]:
    known = shipments.loc[shipments["warehouse_id"] != UNKNOWN]
    out = []
    for warehouse_id, group in known.groupby("warehouse_id", sort=True):
        item_ids = set(group["inventory_item_id"].dropna())
        costs = group.loc[group["unit_cost"] > 0, "unit_cost"]
        out.append({
            "warehouseId": str(warehouse_id),
            "totalInventory": as_int(group["received_quantity"].sum()),
            "productCount": as_int(products["inventory_item_id"].isin(item_ids).sum()),
            "averageCost": as_money(costs.mean()) if len(costs) else 0,
        })
    return out


def derive_dashboard(sources: Dict[str, list], now: datetime) -> DerivedPage:
    products = products_frame(sources.get("products", []))
    shipments = shipments_frame(sources.get("shipments", []), now)
    today = now.date().isoformat()

    mismatch = quantity_mismatch(shipments)
    cancelled = shipments["status_l"] == "cancelled"
    open_mask = (shipments["purchase_order_number"].notna()
                 & ~shipments["status_l"].isin(["completed", "cancelled"]))
    workflow_mask = shipments["status_l"].isin(["receiving", "completed"])

    kpis = {
        "totalOrdersToday": as_int((shipments["created_day"] == today).sum()) if len(shipments) else 0,
        "atRiskOrders": as_int((mismatch | cancelled).sum()),
        "openPOs": as_int(shipments.loc[open_mask, "purchase_order_number"].nunique()),
        "unfulfillableSKUs": as_int(products["inactive"].sum()),
    }

    dollar_impact = ((shipments["expected_quantity"] - shipments["received_quantity"]).abs()
                     * shipments["unit_cost"])[mismatch].sum()
    quick_overview = {
        "topIssues": kpis["atRiskOrders"],
        "whatsWorking": as_int((~mismatch & ~cancelled).sum()),
        "dollarImpact": as_money(dollar_impact),
        "completedWorkflows": as_int(shipments.loc[workflow_mask, "purchase_order_number"].nunique()),
    }

    anomalies = []
    if kpis["unfulfillableSKUs"] > 100:
        anomalies.append({
            "id": "anomaly-1",
            "type": "high_unfulfillable_skus",
            "title": "High Unfulfillable SKUs",
            "description": f"{kpis['unfulfillableSKUs']} SKUs cannot be fulfilled",
            "severity": "critical",
        })
    if kpis["totalOrdersToday"] == 0:
        anomalies.append({
            "id": "anomaly-2",
            "type": "low_order_volume",
            "title": "Low Order Volume",
            "description": "No orders detected today",
            "severity": "info",
        })

    intelligence = {
        "financialImpacts": _financial_impacts(products, shipments),
        "quickOverview": quick_overview,
        "warehouseInventory": _warehouse_inventory(products, shipments),
        "anomalies": anomalies,
        **shipment_intelligence(shipments, now),
    }
    return DerivedPage(
        page="dashboard",
        records={
            "products": records_out(products, PRODUCT_COLUMNS),
            "shipments": records_out(shipments, SHIPMENT_COLUMNS),
        },
        kpis=kpis,
        intelligence=intelligence,
    )


# -- orders --------------------------------------------------------------------

def derive_orders(sources: Dict[str, list], now: datetime) -> DerivedPage:
    df = shipments_frame(sources.get("shipments", []), now)
    df["order_id"] = df["purchase_order_number"].where(df["purchase_order_number"].notna(), df["shipment_id"])
    today = now.date().isoformat()

    at_risk = (
        (df["order_status"] == "delayed")
        | df["sla_status"].isin(["at_risk", "breach"])
        | quantity_mismatch(df)
    )
    open_mask = df["order_id"].notna() & ~df["order_status"].isin(["completed", "cancelled"])

    kpis = {
        "ordersToday": as_int((df["created_day"] == today).sum()) if len(df) else 0,
        "atRiskOrders": as_int(at_risk.sum()),
        "openPOs": as_int(df.loc[open_mask, "order_id"].nunique()),
        "unfulfillableSKUs": as_int(((df["received_quantity"] == 0) & (df["order_status"] != "pending")).sum()),
    }
    intelligence = {
        "inboundIntelligence": inbound_intelligence(df, now),
        **shipment_intelligence(df, now),
    }
    return DerivedPage(
        page="orders",
        records={"orders": records_out(df.assign(status=df["order_status"]), ORDER_COLUMNS, limit=500)},
        kpis=kpis,
        intelligence=intelligence,
    )


# -- inventory -----------------------------------------------------------------

def _supplier_breakdown(df: pd.DataFrame) -> List[Dict[str, Any]]:
    if df.empty:
        return []
    df = df.assign(value=df["unit_quantity"] * df["unit_cost"])
    portfolio = float(df["value"].sum())
    rows = []
    for supplier, group in df.groupby("supplier_name", sort=True):
        countries = sorted(c for c in set(group["country_of_origin"]) if c != UNKNOWN)
        total = float(group["value"].sum())
        rows.append({
            "supplierName": str(supplier),
            "skuCount": len(group),
            "totalValue": as_money(total),
            "countries": countries,
            "concentrationRisk": int(round(total / portfolio * 100)) if portfolio else 0,
        })
    rows.sort(key=lambda r: (-r["totalValue"], r["supplierName"]))
    return rows[:15]


def derive_inventory(sources: Dict[str, list], now: datetime) -> DerivedPage:
    df = products_frame(sources.get("products", []))
    qty = df["unit_quantity"]

    kpis = {
        "totalActiveSKUs": as_int(df["is_active"].sum()),
        "totalInventoryValue": as_money((qty * df["unit_cost"]).sum()),
        "lowStockAlerts": as_int(((qty > 0) & (qty < 10)).sum()),
        "inactiveSKUs": as_int(df["inactive"].sum()),
        "totalSKUs": len(df),
        "inStockCount": as_int((qty > 0).sum()),
        "unfulfillableCount": as_int((qty == 0).sum()),
        "overstockedCount": as_int((qty > 100).sum()),
    }
    stock_levels = {
        "outOfStock": kpis["unfulfillableCount"],
        "low": kpis["lowStockAlerts"],
        "healthy": as_int(((qty >= 10) & (qty <= 100)).sum()),
        "overstocked": kpis["overstockedCount"],
    }
    issues = df["inactive"] | (qty == 0)
    intelligence = {
        "supplierBreakdown": _supplier_breakdown(df),
        "stockLevels": stock_levels,
        "supplierAnalysis": supplier_impact(df, issues, supplier_col="supplier_name"),
        "issueClassification": {
            "outOfStock": kpis["unfulfillableCount"],
            "lowStock": kpis["lowStockAlerts"],
            "inactive": kpis["inactiveSKUs"],
            "totalIssues": as_int((issues | ((qty > 0) & (qty < 10))).sum()),
            "totalRecords": len(df),
        },
        "businessMetrics": business_metrics(df, now),
    }
    return DerivedPage(
        page="inventory",
        records={"products": records_out(df, PRODUCT_COLUMNS)},
        kpis=kpis,
        intelligence=intelligence,
    )


# -- inbound -------------------------------------------------------------------

def derive_inbound(sources: Dict[str, list], now: datetime) -> DerivedPage:
    records = list(sources.get("shipments", []))
    df = shipments_frame(records, now)
    today = now.date()
    week_start = today - timedelta(days=(today.weekday() + 1) % 7)
    week_end = week_start + timedelta(days=6)

    today_arrivals = 0
    week_expected = 0
    lead_times = []
    delayed = 0
    dated = 0
    on_time = 0
    for r in records:
        expected = parse_timestamp(r.expected_arrival_date)
        arrival = parse_timestamp(r.arrival_date)
        created = parse_timestamp(r.created_date)
        if (arrival and arrival.date() == today) or (expected and expected.date() == today):
            today_arrivals += 1
        if expected and week_start <= expected.date() <= week_end:
            week_expected += 1
        lead = _days(arrival, created)
        if lead is not None and 0 <= lead <= 365:
            lead_times.append(lead)
        if expected and arrival:
            dated += 1
            if arrival > expected:
                delayed += 1
            else:
                on_time += 1

    with_qty = df.loc[df["expected_quantity"] > 0]
    accurate = as_int((with_qty["expected_quantity"] == with_qty["received_quantity"]).sum())

    kpis = {
        "todayArrivals": today_arrivals,
        "thisWeekExpected": week_expected,
        "averageLeadTime": round(sum(lead_times) / len(lead_times), 1) if lead_times else 0.0,
        "delayedShipments": delayed,
        "receivingAccuracy": int(round(accurate / len(with_qty) * 100)) if len(with_qty) else 100,
        "onTimeDeliveryRate": int(round(on_time / dated * 100)) if dated else 100,
    }
    intelligence = {
        "inboundIntelligence": inbound_intelligence(df, now),
        **shipment_intelligence(df, now),
    }
    return DerivedPage(
        page="inbound",
        records={"shipments": records_out(df, SHIPMENT_COLUMNS)},
        kpis=kpis,
        intelligence=intelligence,
    )


# -- sla -----------------------------------------------------------------------

def _supplier_scorecard(records: list, df: pd.DataFrame) -> List[Dict[str, Any]]:
    if df.empty:
        return []
    on_time = []
    for r in records:
        expected = parse_timestamp(r.expected_arrival_date)
        arrival = parse_timestamp(r.arrival_date)
        on_time.append(bool(expected and arrival and arrival <= expected))
    df = df.assign(on_time=on_time, accurate=~quantity_mismatch(df))

    rows = []
    for supplier, group in df.groupby("supplier", sort=True):
        compliance = int(round(group["on_time"].mean() * 100))
        accuracy = int(round(group["accurate"].mean() * 100))
        rows.append({
            "supplier": str(supplier),
            "shipments": len(group),
            "slaCompliance": compliance,
            "quantityAccuracy": accuracy,
            "performanceScore": int(round(compliance * 0.6 + accuracy * 0.4)),
        })
    rows.sort(key=lambda r: (-r["performanceScore"], r["supplier"]))
    return rows[:10]


def derive_sla(sources: Dict[str, list], now: datetime) -> DerivedPage:
    records = list(sources.get("shipments", []))
    df = shipments_frame(records, now)

    compliant = 0
    performance = []
    at_risk = 0
    breach_cost = 0.0
    for r in records:
        expected = parse_timestamp(r.expected_arrival_date)
        arrival = parse_timestamp(r.arrival_date)
        expected_qty = r.expected_quantity or 0.0
        received_qty = r.received_quantity or 0.0
        if expected and arrival:
            if arrival <= expected and expected_qty == received_qty:
                compliant += 1
            performance.append(_days(arrival, expected))
            if arrival > expected or expected_qty != received_qty:
                breach_cost += (r.unit_cost or 50.0) * expected_qty * 0.15
        status = (r.status or "").lower()
        in_flight = "transit" in status or "processing" in status or "pending" in status
        if in_flight and expected and _days(expected, now) <= 2:
            at_risk += 1

    kpis = {
        "overallSLACompliance": int(round(compliant / len(records) * 100)) if records else None,
        "averageDeliveryPerformance": round(sum(performance) / len(performance), 1) if performance else None,
        "atRiskShipments": at_risk,
        "costOfSLABreaches": as_money(breach_cost),
    }
    breakdown = {str(k): int(v) for k, v in sorted(df["sla_status"].value_counts().items())}
    intelligence = {
        "slaStatusBreakdown": breakdown,
        "supplierScorecard": _supplier_scorecard(records, df),
        **shipment_intelligence(df, now),
    }
    return DerivedPage(
        page="sla",
        records={"shipments": records_out(df, SHIPMENT_COLUMNS)},
        kpis=kpis,
        intelligence=intelligence,
    )


# -- replenishment -------------------------------------------------------------

def derive_replenishment(sources: Dict[str, list], now: datetime) -> DerivedPage:
    products = products_frame(sources.get("products", []))
    shipments = shipments_frame(sources.get("shipments", []), now)
    qty = products["unit_quantity"]
    active = products["is_active"]

    critical = active & (qty >= 0) & (qty < 10)
    low = active & (qty >= 0) & (qty < 20)
    out_of_stock = active & (qty == 0)
    suggested = (30 - qty).clip(lower=0)
    reorder_value = (suggested * products["unit_cost"])[low].sum()

    cutoff = now - timedelta(days=60)
    recent = pd.Series(
        [bool(ts and ts >= cutoff) for ts in map(parse_timestamp, shipments["created_date"])],
        index=shipments.index, dtype=bool,
    )
    troubled = (
        recent
        & status_contains(shipments, "delay|exception|pending|problem")
        & (shipments["supplier"] != UNKNOWN)
    )
    alert_suppliers = sorted(set(shipments.loc[troubled, "supplier"]))

    kpis = {
        "criticalSKUs": as_int(critical.sum()),
        "replenishmentValue": as_money(reorder_value),
        "supplierAlerts": len(alert_suppliers),
        "reorderRecommendations": max(as_int(critical.sum()), as_int(out_of_stock.sum()), 1),
    }

    reorder = products.loc[low].assign(suggested=suggested[low])
    reorder = reorder.sort_values(["unit_quantity", "product_sku"], kind="mergesort", na_position="last").head(10)
    reorder_list = [
        {
            "sku": row.product_sku,
            "productName": row.product_name,
            "unitQuantity": as_int(row.unit_quantity),
            "suggestedOrder": as_int(row.suggested),
            "reorderValue": as_money(row.suggested * row.unit_cost),
        }
        for row in reorder.itertuples(index=False)
    ]

    intelligence = {
        "reorderList": reorder_list,
        "supplierAlertList": alert_suppliers,
        **shipment_intelligence(shipments, now),
    }
    return DerivedPage(
        page="replenishment",
        records={
            "products": records_out(products, PRODUCT_COLUMNS),
            "shipments": records_out(shipments, SHIPMENT_COLUMNS),
        },
        kpis=kpis,
        intelligence=intelligence,
    )


DERIVERS: Dict[str, Callable[[Dict[str, list], datetime], DerivedPage]] = {
    "dashboard": derive_dashboard,
    "orders": derive_orders,
    "inventory": derive_inventory,
    "inbound": derive_inbound,
    "sla": derive_sla,
    "replenishment": derive_replenishment,
}


def derive(page: str, sources: Dict[str, list], now: datetime) -> DerivedPage:
    try:
        fn = DERIVERS[page]
    except KeyError:
        raise ValueError(f"Unknown page '{page}'. Available: {sorted(DERIVERS)}")
    return fn(sources, now)
