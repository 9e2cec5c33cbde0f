"""
Variance domain types.

Plain dataclasses passed between the assembler, analyzer, aggregator and the
collaborator adapters. Nothing here talks to the database.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ── Enumerations ───────────────────────────────────────────────────────────


class DetectionType(str, Enum):
    MISSING = "missing"
    SURPLUS = "surplus"
    CONSUMPTION_ANOMALY = "consumption_anomaly"
    THEFT_SUSPECTED = "theft_suspected"
    RECONCILIATION_NEEDED = "reconciliation_needed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]


SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class TrendIndicator(str, Enum):
    INCREASING = "increasing"
    STABLE = "stable"
    DECREASING = "decreasing"


class DetectionStatus(str, Enum):
    """Review state of a persisted detection."""

    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"
    IGNORED = "ignored"


class BrandAlertType(str, Enum):
    HIGH_RISK = "high_risk"
    INCREASING_TREND = "increasing_trend"
    HIGH_LOSS_VALUE = "high_loss_value"
    NEW_BRAND_VARIANCE = "new_brand_variance"


# ── Collaborator records ───────────────────────────────────────────────────


@dataclass
class UnitRecord:
    """What the unit catalog knows about one bottle."""

    unit_id: uuid.UUID
    organization_id: uuid.UUID
    current_quantity: float
    brand: str | None = None
    product: str | None = None
    cost_price: float | None = None
    status: str = "active"
    location_id: uuid.UUID | None = None
    last_scanned: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class SaleLine:
    name: str
    quantity: float


@dataclass
class SaleRecord:
    """One normalized POS transaction."""

    date: datetime
    items: list[SaleLine] = field(default_factory=list)


@dataclass
class SaleEvent:
    """A sale line attributed to a specific unit."""

    date: datetime
    quantity: float
    item_name: str


@dataclass
class ScanObservation:
    timestamp: datetime
    quantity: float | None = None


@dataclass
class HistoricalSample:
    date: date
    avg_consumption: float


# ── Analysis inputs / outputs ──────────────────────────────────────────────


@dataclass
class ConsumptionSnapshot:
    """Everything the analyzer needs for one unit. Built fresh every run."""

    unit: UnitRecord
    window_start: datetime
    window_end: datetime
    sales: list[SaleEvent] = field(default_factory=list)
    scans: list[ScanObservation] = field(default_factory=list)
    history: list[HistoricalSample] = field(default_factory=list)

    @property
    def current_quantity(self) -> float:
        return self.unit.current_quantity

    @property
    def total_pos_sales(self) -> float:
        return sum(sale.quantity for sale in self.sales)


@dataclass(frozen=True)
class VarianceResult:
    unit_id: uuid.UUID
    organization_id: uuid.UUID
    detection_type: DetectionType
    severity: Severity
    expected_quantity: float
    actual_quantity: float
    variance_amount: float
    pos_sales_count: int
    rfid_scan_count: int
    confidence_score: float
    detected_at: datetime
    brand: str | None = None
    product: str | None = None
    location_id: uuid.UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def brand_key(self) -> tuple[str, str] | None:
        if not self.brand:
            return None
        return (self.brand, self.product or "")


@dataclass(frozen=True)
class BrandVarianceResult:
    brand: str
    product: str
    total_bottles: int
    bottles_with_variance: int
    total_variance_amount: float
    average_variance_amount: float
    highest_severity: Severity
    detection_types: dict[str, int]
    estimated_loss_value: float
    risk_score: float
    trend_indicator: TrendIndicator
    last_detection_date: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.brand, self.product)


@dataclass(frozen=True)
class BrandAlert:
    brand: str
    product: str
    alert_type: BrandAlertType
    severity: Severity
    risk_score: float
    estimated_loss_value: float
    trend_indicator: TrendIndicator
    affected_bottles: int
    total_bottles: int
    last_detection: datetime
    created_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "brand": self.brand,
            "product": self.product,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "risk_score": self.risk_score,
            "estimated_loss_value": self.estimated_loss_value,
            "trend_indicator": self.trend_indicator.value,
            "affected_bottles": self.affected_bottles,
            "total_bottles": self.total_bottles,
            "last_detection": self.last_detection.isoformat(),
            "created_at": self.created_at.isoformat(),
        }
