"""
Metric status thresholds shared by every metric handler.

Every metric handler classifies its value through get_metric_status();
no route inlines its own cutoffs. Adding a metric means adding a row to
METRIC_THRESHOLDS.

Two kinds of rule:
  band   good inside [target_min, target_max]; okay within TOLERANCE of the
         band width outside it (lower edge clamped at 0); else bad
  floor  higher is better; good ≥ good_at, okay ≥ okay_at, else bad

Status values are plain class constants (not Enum) so they serialize to
bare strings in JSON responses.
"""

from dataclasses import dataclass
from typing import Optional

TOLERANCE = 0.2
STABLE_DIRECTION_THRESHOLD = 0.1


class MetricStatus:
    GOOD = "good"
    OKAY = "okay"
    BAD = "bad"
    NO_DATA = "no_data"

    ALL = frozenset({GOOD, OKAY, BAD, NO_DATA})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL


@dataclass(frozen=True)
class MetricThreshold:
    name: str
    target_min: float
    target_max: float
    unit: str
    kind: str = "band"               # 'band' | 'floor'
    good_at: Optional[float] = None  # floor only
    okay_at: Optional[float] = None  # floor only
    lower_is_better: bool = False
    description: str = ""


OPPORTUNITY_TO_QUOTE_TIME = "Opportunity to Quote Time"
QUOTE_TO_ORDER = "Quote to Order"
ORDER_TO_CASH_TIME = "Order to Cash Time"
INVOICE_TO_PAYMENT = "Invoice to Payment"
ACTIVE_PRICE_BOOKS = "Active Price Books"
PRODUCT_CATALOGUE = "Product Catalogue"
CREDIT_MEMO_RATIO = "Credit Memos to Invoice Ratio"
AUTO_RENEWED = "Auto-renewed"


METRIC_THRESHOLDS: dict[str, MetricThreshold] = {
    t.name: t
    for t in [
        MetricThreshold(OPPORTUNITY_TO_QUOTE_TIME, 0, 3, "days", lower_is_better=True,
                        description="Average days from opportunity creation to first primary quote"),
        MetricThreshold(QUOTE_TO_ORDER, 0, 5, "days", lower_is_better=True,
                        description="Average days from quote creation to order"),
        MetricThreshold(ORDER_TO_CASH_TIME, 10, 15, "days", lower_is_better=True,
                        description="Average days from order to invoice"),
        MetricThreshold(INVOICE_TO_PAYMENT, 15, 25, "days", lower_is_better=True,
                        description="Average days from invoice to payment"),
        MetricThreshold(ACTIVE_PRICE_BOOKS, 2, 5, "count",
                        description="Number of active price books"),
        MetricThreshold(PRODUCT_CATALOGUE, 500, 1000, "count",
                        description="Number of products in the catalogue"),
        MetricThreshold(CREDIT_MEMO_RATIO, 5, 10, "%", lower_is_better=True,
                        description="Credit memos issued per 100 invoices"),
        MetricThreshold(AUTO_RENEWED, 70, 85, "%", kind="floor", good_at=75, okay_at=70,
                        description="Share of renewal opportunities with an auto-renew quote"),
    ]
}


def get_threshold(metric_name: str) -> MetricThreshold:
    return METRIC_THRESHOLDS[metric_name]


def get_metric_status(metric_name: str, value: Optional[float], has_data: bool = True) -> str:
    """Classify a metric value. Raises KeyError for unknown metrics."""
    threshold = get_threshold(metric_name)
    if not has_data or value is None:
        return MetricStatus.NO_DATA

    if threshold.kind == "floor":
        if value >= threshold.good_at:
            return MetricStatus.GOOD
        if value >= threshold.okay_at:
            return MetricStatus.OKAY
        return MetricStatus.BAD

    if threshold.target_min <= value <= threshold.target_max:
        return MetricStatus.GOOD

    margin = (threshold.target_max - threshold.target_min) * TOLERANCE
    okay_min = max(0, threshold.target_min - margin)
    okay_max = threshold.target_max + margin
    if okay_min <= value <= okay_max:
        return MetricStatus.OKAY
    return MetricStatus.BAD


def get_trend_direction(change_percent: Optional[float]) -> str:
    if change_percent is None or abs(change_percent) < STABLE_DIRECTION_THRESHOLD:
        return "stable"
    return "up" if change_percent > 0 else "down"


def threshold_fields(metric_name: str) -> dict:
    """target_min / target_max for a response envelope."""
    t = get_threshold(metric_name)
    return {"target_min": t.target_min, "target_max": t.target_max}
