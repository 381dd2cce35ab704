"""
Record frames and the cross-page intelligence every KPI page carries:
supplier impact, issue classification and operational business metrics.

Frames are pandas DataFrames built from typed records. Null numerics become
0.0 and null categoricals become "unknown" so aggregations never see NaN.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence

import pandas as pd

from app.metrics.sla import day_of, order_status, sla_status
from app.records import ProductRecord, ShipmentRecord

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"

_SHIPMENT_NUMERIC = ("expected_quantity", "received_quantity", "unit_cost")
_SHIPMENT_CATEGORICAL = ("status", "supplier", "warehouse_id", "ship_from_country")
_PRODUCT_NUMERIC = ("unit_quantity", "unit_cost")
_PRODUCT_CATEGORICAL = ("supplier_name", "country_of_origin")


def _fill(df: pd.DataFrame, numeric: Sequence[str], categorical: Sequence[str]) -> pd.DataFrame:
    for col in numeric:
        df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0).astype(float)
    for col in categorical:
        df[col] = df[col].astype(object).where(df[col].notna(), UNKNOWN)
    return df


def shipments_frame(records: Iterable[ShipmentRecord], now: datetime) -> pd.DataFrame:
    """One row per shipment, with SLA status, order status and day columns added."""
    records = list(records)
    df = pd.DataFrame([r.to_dict() for r in records], columns=list(ShipmentRecord.FIELDS))
    df = _fill(df, _SHIPMENT_NUMERIC, _SHIPMENT_CATEGORICAL)
    df["status_l"] = df["status"].str.lower()
    df["sla_status"] = [
        sla_status(r.expected_arrival_date, r.arrival_date, r.status, now) for r in records
    ]
    df["order_status"] = [order_status(r.status) for r in records]
    df["created_day"] = [day_of(r.created_date) for r in records]
    df["expected_day"] = [day_of(r.expected_arrival_date) for r in records]
    df["arrival_day"] = [day_of(r.arrival_date) for r in records]
    return df


def products_frame(records: Iterable[ProductRecord]) -> pd.DataFrame:
    records = list(records)
    df = pd.DataFrame([r.to_dict() for r in records], columns=list(ProductRecord.FIELDS))
    df = _fill(df, _PRODUCT_NUMERIC, _PRODUCT_CATEGORICAL)
    # Unknown activity is not counted as inactive.
    df["inactive"] = pd.Series([r.active is False for r in records], index=df.index, dtype=bool)
    df["is_active"] = pd.Series([r.active is True for r in records], index=df.index, dtype=bool)
    df["created_day"] = [day_of(r.created_date) for r in records]
    return df


def as_int(value: Any) -> int:
    return int(value)


def as_money(value: Any) -> int:
    return int(round(float(value)))


def percentage(part: float, whole: float, digits: int = 1) -> float:
    if not whole:
        return 0.0
    return round(float(part) / float(whole) * 100.0, digits)


def quantity_mismatch(df: pd.DataFrame) -> pd.Series:
    return df["expected_quantity"] != df["received_quantity"]


def status_contains(df: pd.DataFrame, pattern: str) -> pd.Series:
    return df["status_l"].str.contains(pattern, regex=True).astype(bool)


def sla_issue(df: pd.DataFrame) -> pd.Series:
    return df["sla_status"].isin(["at_risk", "breach"])


def supplier_impact(df: pd.DataFrame, issue_mask: pd.Series, supplier_col: str = "supplier") -> Dict[str, Any]:
    """Top three suppliers by issue count; ties ordered by name."""
    if df.empty:
        return {"topAffectedSuppliers": [], "supplierIssueCounts": {}, "totalAffectedSuppliers": 0}
    affected = df.loc[issue_mask & (df[supplier_col] != UNKNOWN), supplier_col]
    counts = affected.value_counts()
    ranked = sorted(((str(k), int(v)) for k, v in counts.items()), key=lambda kv: (-kv[1], kv[0]))
    top = ranked[:3]
    return {
        "topAffectedSuppliers": [name for name, _ in top],
        "supplierIssueCounts": {name: count for name, count in top},
        "totalAffectedSuppliers": len(ranked),
    }


def classify_shipment_issues(df: pd.DataFrame) -> Dict[str, int]:
    mismatch = quantity_mismatch(df)
    sla = sla_issue(df)
    delays = status_contains(df, "delay|overdue")
    cancellations = status_contains(df, "cancel")
    return {
        "quantityDiscrepancies": as_int(mismatch.sum()),
        "slaIssues": as_int(sla.sum()),
        "delays": as_int(delays.sum()),
        "cancellations": as_int(cancellations.sum()),
        "totalIssues": as_int((mismatch | sla | delays | cancellations).sum()),
        "totalRecords": len(df),
    }


def business_metrics(df: pd.DataFrame, now: datetime, day_col: str = "created_day") -> Dict[str, Any]:
    today = now.date().isoformat()
    return {
        "todayCount": as_int((df[day_col] == today).sum()) if len(df) else 0,
        "historicalAverage": int(round(len(df) / 30)),
        "totalRecords": len(df),
    }


def shipment_intelligence(df: pd.DataFrame, now: datetime) -> Dict[str, Any]:
    """The intelligence block shared by every shipment-backed page."""
    issues = quantity_mismatch(df) | sla_issue(df) | status_contains(df, "delay|overdue|cancel")
    return {
        "supplierAnalysis": supplier_impact(df, issues),
        "issueClassification": classify_shipment_issues(df),
        "businessMetrics": business_metrics(df, now),
    }


def records_out(df: pd.DataFrame, columns: List[str], limit: int = 500) -> List[Dict[str, Any]]:
    """Plain-python row dicts for the FAST response body."""
    rows = df.loc[:, columns].head(limit).to_dict(orient="records")
    return [{k: _plain(v) for k, v in row.items()} for row in rows]


def _plain(value: Any) -> Any:
    if value is None:
        return None
    if hasattr(value, "item"):
        value = value.item()
    if isinstance(value, float) and value != value:
        return None
    return value
