"""
SLA and status rules shared by every page that reads shipments.

The rule set is versioned: any change to a rule below, or to the
geopolitical country set, must bump RULESET_VERSION so cached insights
computed under the old rules stop matching.
"""

from datetime import date, datetime, timezone
from typing import Optional

RULESET_VERSION = 3

GEOPOLITICAL_RISK_COUNTRIES = frozenset({"China", "Russia", "Iran", "North Korea", "Myanmar"})

SLA_ON_TIME = "on_time"
SLA_LATE = "late"
SLA_AT_RISK = "at_risk"
SLA_BREACH = "breach"
SLA_UNKNOWN = "unknown"

_COMPLETED_MARKERS = ("completed", "delivered")
_PENDING_MARKERS = ("pending", "processing", "open", "transit", "shipped", "receiving")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO date or datetime into an aware UTC datetime; None if unparseable."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(text[:10]), datetime.min.time())
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def day_of(value: Optional[str]) -> Optional[str]:
    """YYYY-MM-DD prefix of a timestamp string."""
    if not value:
        return None
    return str(value)[:10]


def is_completed(status: Optional[str]) -> bool:
    lowered = (status or "").lower()
    return any(marker in lowered for marker in _COMPLETED_MARKERS)


def is_pending(status: Optional[str]) -> bool:
    lowered = (status or "").lower()
    return any(marker in lowered for marker in _PENDING_MARKERS)


def sla_status(expected_date: Optional[str], arrival_date: Optional[str], status: Optional[str],
               now: datetime) -> str:
    """
    Classify one shipment against its expected arrival date.

    completed:  on_time iff arrival <= expected, else late
    pending:    days over expected > 2 -> breach, > 0 -> at_risk, else on_time
    no expected date -> unknown
    """
    expected = parse_timestamp(expected_date)
    if expected is None:
        return SLA_UNKNOWN
    arrival = parse_timestamp(arrival_date)

    if is_completed(status):
        if arrival is None:
            return SLA_UNKNOWN
        return SLA_ON_TIME if arrival <= expected else SLA_LATE

    if is_pending(status) or arrival is None:
        days_over = (now - expected).total_seconds() / 86400.0
        if days_over > 2:
            return SLA_BREACH
        if days_over > 0:
            return SLA_AT_RISK
        return SLA_ON_TIME

    return SLA_ON_TIME if arrival <= expected else SLA_LATE


def order_status(status: Optional[str]) -> str:
    """Map a shipment status onto the order vocabulary."""
    if not status:
        return "unknown"
    lowered = status.lower()
    if "completed" in lowered or "delivered" in lowered:
        return "completed"
    if "shipped" in lowered or "transit" in lowered:
        return "shipped"
    if "receiving" in lowered or "processing" in lowered:
        return "processing"
    if "pending" in lowered or "open" in lowered:
        return "pending"
    if "cancelled" in lowered:
        return "cancelled"
    if "delayed" in lowered or "late" in lowered:
        return "delayed"
    return status


def is_geopolitical_risk(country: Optional[str]) -> bool:
    return bool(country) and country in GEOPOLITICAL_RISK_COUNTRIES
