"""
Insight value models.

Every namespace's insight is a pydantic model carrying `analysis` and
`recommendations`. LLM output is validated into one of these before it goes
anywhere else; `degraded()` builds the fallback arm of the same shape.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

FALLBACK_ANALYSIS = "Analysis Unavailable - Unable to connect to AI service. Please try again or contact support."
FALLBACK_RECOMMENDATIONS = [
    "Retry the analysis in a few minutes",
    "Review the KPI figures directly while AI insights are unavailable",
]


def _as_text(item: Any) -> str:
    if isinstance(item, dict):
        for key in ("title", "action", "recommendation", "description", "text"):
            if item.get(key):
                return str(item[key])
        return "; ".join(f"{k}: {v}" for k, v in item.items())
    return str(item)


class InsightValue(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    analysis: str = ""
    recommendations: List[str] = Field(default_factory=list)
    degraded: bool = False

    @field_validator("recommendations", mode="before")
    @classmethod
    def _coerce_recommendations(cls, value):
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        return [_as_text(v) for v in value if v not in (None, "")]

    @field_validator("analysis", mode="before")
    @classmethod
    def _coerce_analysis(cls, value):
        if value is None:
            return ""
        if isinstance(value, (list, dict)):
            return _as_text(value) if isinstance(value, dict) else " ".join(_as_text(v) for v in value)
        return str(value)

    @classmethod
    def degraded_value(cls, text: Optional[str] = None, **fields) -> "InsightValue":
        """Fallback instance: best-effort text in `analysis`, default recommendations."""
        return cls(
            analysis=(text or FALLBACK_ANALYSIS).strip(),
            recommendations=list(FALLBACK_RECOMMENDATIONS),
            degraded=True,
            **fields,
        )

    def dump(self) -> dict:
        return self.model_dump(by_alias=True)


class InsightItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = ""
    description: str = ""
    severity: str = "info"
    dollar_impact: float = Field(default=0, alias="dollarImpact")
    suggested_actions: List[str] = Field(default_factory=list, alias="suggestedActions")

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, value):
        lowered = str(value or "info").lower()
        return lowered if lowered in ("info", "warning", "critical") else "info"

    @field_validator("dollar_impact", mode="before")
    @classmethod
    def _impact(cls, value):
        try:
            return float(value or 0)
        except (TypeError, ValueError):
            return 0.0

    @field_validator("suggested_actions", mode="before")
    @classmethod
    def _actions(cls, value):
        if value is None:
            return []
        if isinstance(value, (str, dict)):
            value = [value]
        return [_as_text(v) for v in value]


class PageInsights(InsightValue):
    """SLOW-path value for a page namespace."""
    insights: List[InsightItem] = Field(default_factory=list)


class OrderAnalysis(InsightValue):
    """What the model is asked to return for one order."""


class OrderSuggestion(InsightValue):
    order_id: str = Field(default="", alias="orderId")
    suggestion: str = ""
    priority: str = "low"
    actionable: bool = True
    estimated_impact: Optional[float] = Field(default=None, alias="estimatedImpact")


class ItemAnalysis(InsightValue):
    """What the model is asked to return for one inventory or replenishment item."""


class StockItemSuggestion(InsightValue):
    sku: str = ""
    suggestion: str = ""
    priority: str = "low"
    actionable: bool = True
    estimated_impact: str = Field(default="", alias="estimatedImpact")


class HistoricalAnalysis(InsightValue):
    sku: str = ""
    sales_trend: str = Field(default="", alias="salesTrend")
    demand_forecast: str = Field(default="", alias="demandForecast")
    risk_assessment: str = Field(default="", alias="riskAssessment")

    @field_validator("sales_trend", "demand_forecast", "risk_assessment", mode="before")
    @classmethod
    def _text(cls, value):
        if value is None:
            return ""
        return _as_text(value) if isinstance(value, dict) else str(value)
