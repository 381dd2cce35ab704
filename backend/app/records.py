"""
Typed record shapes for upstream analytics rows.

Rows arrive as loosely typed JSON. Each record class normalizes the fields the
KPI derivation reads and keeps everything else untouched in `extra`.
Records are frozen: nothing downstream mutates what was fetched.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _opt_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return bool(value)
    lowered = str(value).strip().lower()
    if lowered in ("true", "1", "yes", "t"):
        return True
    if lowered in ("false", "0", "no", "f"):
        return False
    return None


def _split_known(raw: Dict[str, Any], known: tuple) -> Dict[str, Any]:
    return {k: v for k, v in raw.items() if k not in known}


@dataclass(frozen=True)
class ShipmentRecord:
    """One inbound shipment line from the warehouse analytics endpoint."""
    shipment_id: Optional[str]
    brand_name: Optional[str]
    created_date: Optional[str]
    purchase_order_number: Optional[str]
    status: Optional[str]
    supplier: Optional[str]
    expected_arrival_date: Optional[str]
    arrival_date: Optional[str]
    warehouse_id: Optional[str]
    ship_from_country: Optional[str]
    inventory_item_id: Optional[str]
    sku: Optional[str]
    expected_quantity: Optional[float]
    received_quantity: Optional[float]
    unit_cost: Optional[float]
    notes: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    FIELDS = (
        "shipment_id", "brand_name", "created_date", "purchase_order_number", "status",
        "supplier", "expected_arrival_date", "arrival_date", "warehouse_id",
        "ship_from_country", "inventory_item_id", "sku", "expected_quantity",
        "received_quantity", "unit_cost", "notes",
    )

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "ShipmentRecord":
        return cls(
            shipment_id=_opt_str(raw.get("shipment_id")),
            brand_name=_opt_str(raw.get("brand_name")),
            created_date=_opt_str(raw.get("created_date")),
            purchase_order_number=_opt_str(raw.get("purchase_order_number")),
            status=_opt_str(raw.get("status")),
            supplier=_opt_str(raw.get("supplier")),
            expected_arrival_date=_opt_str(raw.get("expected_arrival_date")),
            arrival_date=_opt_str(raw.get("arrival_date")),
            warehouse_id=_opt_str(raw.get("warehouse_id")),
            ship_from_country=_opt_str(raw.get("ship_from_country")),
            inventory_item_id=_opt_str(raw.get("inventory_item_id")),
            sku=_opt_str(raw.get("sku")),
            expected_quantity=_opt_float(raw.get("expected_quantity")),
            received_quantity=_opt_float(raw.get("received_quantity")),
            unit_cost=_opt_float(raw.get("unit_cost")),
            notes=_opt_str(raw.get("notes")),
            extra=_split_known(raw, cls.FIELDS),
        )

    @property
    def tenant(self) -> Optional[str]:
        return self.brand_name

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("extra", None)
        return data


@dataclass(frozen=True)
class ProductRecord:
    """One catalog product from the product analytics endpoint."""
    product_id: Optional[str]
    brand_name: Optional[str]
    product_name: Optional[str]
    product_sku: Optional[str]
    inventory_item_id: Optional[str]
    unit_quantity: Optional[float]
    unit_cost: Optional[float]
    active: Optional[bool]
    supplier_name: Optional[str]
    country_of_origin: Optional[str]
    created_date: Optional[str]
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    FIELDS = (
        "product_id", "brand_name", "product_name", "product_sku", "inventory_item_id",
        "unit_quantity", "unit_cost", "active", "supplier_name", "country_of_origin",
        "created_date",
    )

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "ProductRecord":
        return cls(
            product_id=_opt_str(raw.get("product_id")),
            brand_name=_opt_str(raw.get("brand_name")),
            product_name=_opt_str(raw.get("product_name")),
            product_sku=_opt_str(raw.get("product_sku")),
            inventory_item_id=_opt_str(raw.get("inventory_item_id")),
            unit_quantity=_opt_float(raw.get("unit_quantity")),
            unit_cost=_opt_float(raw.get("unit_cost")),
            active=_opt_bool(raw.get("active")),
            supplier_name=_opt_str(raw.get("supplier_name")),
            country_of_origin=_opt_str(raw.get("country_of_origin")),
            created_date=_opt_str(raw.get("created_date")),
            extra=_split_known(raw, cls.FIELDS),
        )

    @property
    def tenant(self) -> Optional[str]:
        return self.brand_name

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("extra", None)
        return data


@dataclass(frozen=True)
class SalesRecord:
    """One period of sales history for a SKU."""
    sku: Optional[str]
    brand_name: Optional[str]
    month: Optional[str]
    units_sold: Optional[float]
    revenue: Optional[float]
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    FIELDS = ("sku", "brand_name", "month", "units_sold", "revenue")

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "SalesRecord":
        return cls(
            sku=_opt_str(raw.get("sku")),
            brand_name=_opt_str(raw.get("brand_name")),
            month=_opt_str(raw.get("month")),
            units_sold=_opt_float(raw.get("units_sold")),
            revenue=_opt_float(raw.get("revenue")),
            extra=_split_known(raw, cls.FIELDS),
        )

    @property
    def tenant(self) -> Optional[str]:
        return self.brand_name

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("extra", None)
        return data


RECORD_TYPES = {
    "shipments": ShipmentRecord,
    "products": ProductRecord,
    "orders": SalesRecord,
}
