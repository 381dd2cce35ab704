"""
Prompt builders for the insight namespaces.

Prompts only ever see derived KPIs, compact intelligence summaries and the one
entity being analysed, never raw record dumps.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.llm_service import Prompt
from app.metrics.kpis import DerivedPage
from app.metrics.sla import parse_timestamp
from app.records import SalesRecord

_PAGE_ROLES = {
    "dashboard": "a Chief Operating Officer reviewing brand-wide warehouse operations",
    "orders": "an Order Operations Manager focused on fulfilment risk and purchase order health",
    "inventory": "an Inventory Planning Director focused on stock health and supplier concentration",
    "inbound": "an Inbound Logistics Manager focused on receiving efficiency and supplier delivery",
    "sla": "a Supply Chain SLA Analyst focused on delivery compliance and breach cost",
    "replenishment": "a Replenishment Planner focused on stockout prevention and reorder value",
}

_PAGE_RESPONSE_SHAPE = """{
  "analysis": "2-3 sentence summary of the most important operational finding",
  "recommendations": ["Specific action 1", "Specific action 2", "Specific action 3"],
  "insights": [
    {
      "title": "Short title",
      "description": "What is happening and why it matters, with numbers",
      "severity": "info | warning | critical",
      "dollarImpact": 0,
      "suggestedActions": ["Action 1", "Action 2"]
    }
  ]
}"""


def _compact(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, default=str)


def page_prompt(derived: DerivedPage, tenant: str) -> Prompt:
    role = _PAGE_ROLES.get(derived.page, "an operations analyst")
    system = (
        f"You are {role} for the brand {tenant}. "
        "Base every statement on the figures provided; do not invent data. "
        "Respond with a single JSON object and nothing else, using exactly this shape:\n"
        f"{_PAGE_RESPONSE_SHAPE}"
    )
    user = (
        f"Page: {derived.page}\n"
        f"Record counts: {_compact(derived.counts())}\n"
        f"KPIs: {_compact(derived.kpis)}\n"
        f"Derived intelligence: {_compact(derived.intelligence)}\n\n"
        "Provide 3-5 insights ordered by business impact."
    )
    return Prompt(system=system, user=user)


def order_priority(order: Dict[str, Any]) -> str:
    """high: cancelled, or delayed/breached and worth over 5000; medium: delayed or over 1000."""
    status = str(order.get("status") or "").lower()
    sla = str(order.get("sla_status") or "").lower()
    value = order_value(order)
    delayed = "delayed" in status or "breach" in sla or "late" in sla
    if "cancelled" in status or (delayed and value > 5000):
        return "high"
    if delayed or value > 1000:
        return "medium"
    return "low"


def _num(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def order_value(order: Dict[str, Any]) -> float:
    return _num(order.get("unit_cost")) * _num(order.get("expected_quantity"))


def order_shortfall_impact(order: Dict[str, Any]) -> float:
    shortfall = _num(order.get("expected_quantity")) - _num(order.get("received_quantity"))
    return round(_num(order.get("unit_cost")) * shortfall, 2)


def order_prompt(order: Dict[str, Any], priority: str, impact: float) -> Prompt:
    system = (
        "You are an Order Analysis Specialist. Analyse one order and give a 2-3 sentence "
        "analysis plus 1-2 specific, actionable recommendations. "
        'Respond only with JSON: {"analysis": "...", "recommendations": ["...", "..."]}'
    )
    user = (
        "Analyse this specific order:\n"
        f"- Order ID: {order.get('order_id')}\n"
        f"- Status: {order.get('status') or 'unknown'}\n"
        f"- SLA status: {order.get('sla_status') or 'unknown'}\n"
        f"- Supplier: {order.get('supplier') or 'unknown'}\n"
        f"- SKU: {order.get('sku') or 'unknown'}\n"
        f"- Expected quantity: {order.get('expected_quantity')}\n"
        f"- Received quantity: {order.get('received_quantity')}\n"
        f"- Unit cost: {order.get('unit_cost')}\n"
        f"- Expected arrival: {order.get('expected_arrival_date') or order.get('expected_date') or 'unknown'}\n"
        f"- Computed priority: {priority}\n"
        f"- Shortfall impact: ${impact:,.2f}"
    )
    return Prompt(system=system, user=user)


_STOCK_ROLES = {
    "inventory": (
        "You are a Senior Inventory Operations Manager. Assess the business impact of this "
        "item's stock position in terms of financial exposure and fulfilment risk."
    ),
    "replenishment": (
        "You are a Senior Supply Chain Planning Manager. Assess this item's replenishment "
        "needs, weighing stockout risk against supplier lead time."
    ),
}

_IMPACT_LABELS = {
    "inventory": ("inventory value at risk", "optimization potential", "improvement opportunity"),
    "replenishment": ("stockout risk", "optimization potential", "efficiency improvement"),
}


def stock_item_fields(item: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Normalised view of an inventory or replenishment item as sent by the client."""
    on_hand = _num(item.get("on_hand") or item.get("unit_quantity"))
    committed = _num(item.get("committed"))
    available = _num(item.get("available")) if item.get("available") is not None else max(0.0, on_hand - committed)
    unit_cost = _num(item.get("unit_cost"))
    if item.get("days_since_created") is not None:
        days = int(_num(item.get("days_since_created")))
    else:
        created = parse_timestamp(item.get("created_date"))
        days = max(0, (now - created).days) if created else 0
    return {
        "sku": str(item.get("sku") or item.get("product_sku") or ""),
        "product_name": item.get("product_name") or "Unknown Product",
        "status": item.get("status") or "unknown",
        "supplier": item.get("supplier") or item.get("supplier_name") or "Unknown supplier",
        "on_hand": on_hand,
        "committed": committed,
        "available": available,
        "unit_cost": unit_cost,
        "total_value": round(_num(item.get("total_value")) or on_hand * unit_cost),
        "days_in_system": days,
        "turnover": round(365 / days, 1) if days > 0 else 0.0,
        "active": item.get("active") is True,
    }


def stock_priority(fields: Dict[str, Any]) -> str:
    """high: out of stock, or low/critical and worth over 5000; medium: low, inactive or over 1000."""
    status = str(fields["status"]).lower()
    value = fields["total_value"]
    low = "low stock" in status or "critical" in status
    if "out of stock" in status or (low and value > 5000):
        return "high"
    if low or not fields["active"] or value > 1000:
        return "medium"
    return "low"


def stock_impact(kind: str, priority: str, value: float) -> str:
    at_risk, potential, opportunity = _IMPACT_LABELS[kind]
    if priority == "high":
        return f"${value:,.0f} {at_risk}"
    if priority == "medium":
        return f"${value * 0.3:,.0f} {potential}"
    return f"${value * 0.1:,.0f} {opportunity}"


def stock_item_prompt(kind: str, fields: Dict[str, Any], priority: str) -> Prompt:
    system = (
        f"{_STOCK_ROLES[kind]} Give a 3-4 sentence analysis using the actual figures, then 2-3 "
        "actions naming who to contact and what to do today. Avoid generic advice such as "
        "'monitor inventory levels'. "
        'Respond only with JSON: {"analysis": "...", "recommendations": ["...", "..."]}'
    )
    user = (
        f"Analyse this {kind} item:\n"
        f"- SKU: {fields['sku']}\n"
        f"- Product: {fields['product_name']}\n"
        f"- Status: {fields['status']}\n"
        f"- Supplier: {fields['supplier']}\n"
        f"- Stock: {fields['on_hand']:g} on hand, {fields['committed']:g} committed, "
        f"{fields['available']:g} available\n"
        f"- Unit cost: ${fields['unit_cost']:,.2f}\n"
        f"- Total value: ${fields['total_value']:,.0f}\n"
        f"- Days in system: {fields['days_in_system']} (about {fields['turnover']}x annual turnover)\n"
        f"- Active: {'yes' if fields['active'] else 'no'}\n"
        f"- Computed priority: {priority}"
    )
    return Prompt(system=system, user=user)


def suggestion_text(analysis: str, recommendations: List[str], impact: str) -> str:
    actions = "\n".join(f"{i}. {r}" for i, r in enumerate(recommendations, 1))
    return f"{analysis}\n\nRecommended Actions:\n{actions}\n\nFinancial Impact: {impact}"


def sales_history_summary(records: List[SalesRecord]) -> Optional[Dict[str, Any]]:
    """Trend figures over the most recent (up to 12) sales periods; None when there is no history."""
    dated = sorted(records, key=lambda r: r.month or "", reverse=True)
    if not dated:
        return None
    recent = dated[:12]
    total_units = sum(r.units_sold or 0 for r in recent)
    total_revenue = sum(r.revenue or 0 for r in recent)
    latest = dated[0]
    baseline = dated[min(len(dated) - 1, 5)]
    latest_units = latest.units_sold or 0
    baseline_units = baseline.units_sold or 0
    if latest_units > baseline_units:
        trend = "increasing"
    elif latest_units < baseline_units:
        trend = "decreasing"
    else:
        trend = "stable"
    return {
        "periods": len(recent),
        "trend": trend,
        "avgUnitsPerPeriod": round(total_units / len(recent), 1),
        "revenuePerUnit": round(total_revenue / total_units, 2) if total_units else 0.0,
        "totalUnits": total_units,
        "mostRecentPeriod": latest.month or "unknown",
    }


def sales_history_context(summary: Optional[Dict[str, Any]], note: Optional[str] = None) -> str:
    if summary is None:
        return note or "No sales data available"
    return (
        f"Sales Performance (recent {summary['periods']} records): {summary['trend']} demand trend, "
        f"averaging {summary['avgUnitsPerPeriod']} units per period, "
        f"${summary['revenuePerUnit']} revenue per unit, total period: {summary['totalUnits']:g} units sold, "
        f"most recent sale: {summary['mostRecentPeriod']}"
    )


def sku_prompt(item: Dict[str, Any], history: str) -> Prompt:
    system = (
        "You are a Senior Demand Planning Analyst specialising in sales trend analysis and "
        "inventory forecasting. Interpret the sales history to judge demand direction, "
        "forecast near-term demand and assess inventory risk. Respond only with JSON:\n"
        "{\n"
        '  "analysis": "Historical sales pattern interpretation",\n'
        '  "salesTrend": "Direction and intensity of the sales trend",\n'
        '  "demandForecast": "Expected demand for the coming periods",\n'
        '  "riskAssessment": "Inventory risk given the trend and current stock",\n'
        '  "recommendations": ["Action 1", "Action 2", "Action 3"]\n'
        "}"
    )
    user = (
        "SKU under review:\n"
        f"- SKU: {item.get('sku')}\n"
        f"- Name: {item.get('name') or item.get('product_name') or 'unknown'}\n"
        f"- On hand: {item.get('unit_quantity', item.get('quantity', 'unknown'))}\n"
        f"- Unit cost: {item.get('unit_cost', 'unknown')}\n"
        f"- Supplier: {item.get('supplier') or item.get('supplier_name') or 'unknown'}\n\n"
        f"{history}\n\n"
        "Based on this sales history and the current inventory position, provide trend analysis, "
        "a demand forecast and strategic recommendations."
    )
    return Prompt(system=system, user=user)
