"""
Brand Alerts — turns brand risk profiles into investigator-facing alerts.

Alert Types:
  - high_risk:           risk score ≥ 70
  - increasing_trend:    most detections fall in the recent part of the window
  - high_loss_value:     estimated loss ≥ configured dollar threshold
  - new_brand_variance:  brand + product not present in the previous run

Alerts are published to Redis pub/sub (``variance:{organization_id}``) for
real-time delivery; persistence of brand alerts is left to consumers.
"""

import json
import uuid
from collections.abc import Iterable

import redis.asyncio as aioredis
import structlog

from core.config import get_settings
from variance.models import (
    BrandAlert,
    BrandAlertType,
    BrandVarianceResult,
    Severity,
    TrendIndicator,
    utcnow,
)

logger = structlog.get_logger()

HIGH_RISK_SCORE = 70.0
DEFAULT_HIGH_LOSS_VALUE = 500.0

RISK_SEVERITY_THRESHOLDS = {
    "critical": 85.0,
    "high": 70.0,
    "medium": 50.0,
}


def classify_risk_severity(risk_score: float) -> Severity:
    """Map a 0–100 brand risk score onto the alert severity scale."""
    if risk_score >= RISK_SEVERITY_THRESHOLDS["critical"]:
        return Severity.CRITICAL
    elif risk_score >= RISK_SEVERITY_THRESHOLDS["high"]:
        return Severity.HIGH
    elif risk_score >= RISK_SEVERITY_THRESHOLDS["medium"]:
        return Severity.MEDIUM
    return Severity.LOW


def _alert_types_for(
    brand: BrandVarianceResult,
    previous_keys: set[tuple[str, str]] | None,
    high_loss_value: float,
) -> list[BrandAlertType]:
    types = []
    if brand.risk_score >= HIGH_RISK_SCORE:
        types.append(BrandAlertType.HIGH_RISK)
    if brand.trend_indicator == TrendIndicator.INCREASING:
        types.append(BrandAlertType.INCREASING_TREND)
    if brand.estimated_loss_value >= high_loss_value:
        types.append(BrandAlertType.HIGH_LOSS_VALUE)
    if previous_keys is not None and brand.key not in previous_keys:
        types.append(BrandAlertType.NEW_BRAND_VARIANCE)
    return types


def build_brand_alerts(
    brand_results: Iterable[BrandVarianceResult],
    previous_keys: Iterable[tuple[str, str]] | None = None,
    high_loss_value: float = DEFAULT_HIGH_LOSS_VALUE,
) -> list[BrandAlert]:
    """One alert per triggered type per brand, in the brands' risk order."""
    previous = set(previous_keys) if previous_keys is not None else None
    created_at = utcnow()
    alerts = []
    for brand in brand_results:
        for alert_type in _alert_types_for(brand, previous, high_loss_value):
            alerts.append(
                BrandAlert(
                    brand=brand.brand,
                    product=brand.product,
                    alert_type=alert_type,
                    severity=classify_risk_severity(brand.risk_score),
                    risk_score=brand.risk_score,
                    estimated_loss_value=brand.estimated_loss_value,
                    trend_indicator=brand.trend_indicator,
                    affected_bottles=brand.bottles_with_variance,
                    total_bottles=brand.total_bottles,
                    last_detection=brand.last_detection_date,
                    created_at=created_at,
                )
            )
    return alerts


async def publish_brand_alerts(alerts: list[BrandAlert], organization_id: uuid.UUID) -> int:
    """
    Publish brand alerts to Redis pub/sub for real-time delivery.
    Returns number of subscribers notified.
    """
    if not alerts:
        return 0

    settings = get_settings()
    redis = aioredis.from_url(settings.redis_url)
    try:
        channel = f"variance:{organization_id}"
        total_subs = 0
        for alert in alerts:
            payload = json.dumps({"type": "brand_alert", "payload": alert.to_payload()})
            total_subs += await redis.publish(channel, payload)
        logger.info(
            "variance.brand_alerts_published",
            organization_id=str(organization_id),
            alert_count=len(alerts),
            subscribers=total_subs,
        )
        return total_subs
    finally:
        await redis.aclose()
