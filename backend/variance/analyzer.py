"""
Unit Variance Analyzer — expected vs. actual quantity for one bottle.

Depletion model:
  expected = max(0, current_quantity − attributed POS sales)
  variance = |expected − actual|, actual being the current physical quantity

The result carries a severity (highest configured threshold tier met by
variance / expected), a detection type (sign of actual − expected, with
consumption anomalies taking precedence) and a 0–1 confidence score built
from how well POS, RFID and history corroborate each other.

Pure functions only: no I/O, no clock reads (callers pass ``now``).
"""

from datetime import datetime, timedelta

from variance.config import DetectionConfig
from variance.models import (
    ConsumptionSnapshot,
    DetectionType,
    Severity,
    VarianceResult,
)

MATERIALITY_FLOOR = 0.1  # units; smaller variances are measurement noise
ACCEPTANCE_CONFIDENCE_FLOOR = 0.6
EXPECTED_QUANTITY_FLOOR = 0.1  # keeps variance % finite near zero expected stock
RECENT_SCAN_HOURS = 24
HISTORY_FULL_SAMPLES = 7
HIGH_VARIANCE_PERCENTAGE = 0.5

FACTOR_NO_POS_SALES = "no POS sales recorded for missing inventory"
FACTOR_NO_RFID_SCANS = "no recent RFID scans"
FACTOR_HIGH_VARIANCE = "high variance percentage"


# ── Classification ─────────────────────────────────────────────────────────


def classify_severity(variance_percentage: float, config: DetectionConfig) -> Severity:
    """Highest threshold tier met or exceeded; ``low`` when none is."""
    if variance_percentage >= config.critical_threshold:
        return Severity.CRITICAL
    elif variance_percentage >= config.high_threshold:
        return Severity.HIGH
    elif variance_percentage >= config.medium_threshold:
        return Severity.MEDIUM
    return Severity.LOW


def classify_detection_type(expected: float, actual: float, total_pos_sales: float) -> DetectionType:
    """Sign-based classification of actual − expected."""
    if actual < expected:
        return DetectionType.THEFT_SUSPECTED if total_pos_sales > 0 else DetectionType.MISSING
    elif actual > expected:
        return DetectionType.SURPLUS
    return DetectionType.RECONCILIATION_NEEDED


def compute_anomaly_score(current_consumption: float, historical_average: float) -> float:
    """
    Relative deviation of one unit's attributed sales from the baseline.

    The baseline is an organization-wide daily total, not a per-unit figure.
    In an organization with many bottles the average dwarfs any single
    bottle's sales and the score approaches 1.0, so under the default
    sensitivity of 0.5 most results are typed ``consumption_anomaly``.
    """
    return abs(current_consumption - historical_average) / max(historical_average, 1.0)


# ── Confidence ─────────────────────────────────────────────────────────────


def calculate_confidence(snapshot: ConsumptionSnapshot, config: DetectionConfig, now: datetime) -> float:
    """
    Weighted corroboration score, capped at 1.0.

      POS:      weight × 0.8 with attributed sales, × 0.2 without
      RFID:     weight × 0.9 if scanned in the last 24h, × 0.5 if only older
                scans, × 0.1 with none
      History:  weight × 0.8 with ≥7 daily samples, × 0.4 with 1–6, else 0
    """
    pos_term = config.pos_weight * (0.8 if snapshot.sales else 0.2)

    if not snapshot.scans:
        rfid_term = config.rfid_weight * 0.1
    else:
        recent_cutoff = now - timedelta(hours=RECENT_SCAN_HOURS)
        if any(scan.timestamp >= recent_cutoff for scan in snapshot.scans):
            rfid_term = config.rfid_weight * 0.9
        else:
            rfid_term = config.rfid_weight * 0.5

    samples = len(snapshot.history)
    if samples >= HISTORY_FULL_SAMPLES:
        history_term = config.history_weight * 0.8
    elif samples > 0:
        history_term = config.history_weight * 0.4
    else:
        history_term = 0.0

    score = pos_term + rfid_term + history_term
    return round(max(0.0, min(1.0, score)), 4)


# ── Analysis ───────────────────────────────────────────────────────────────


def analyze_snapshot(
    snapshot: ConsumptionSnapshot,
    config: DetectionConfig,
    now: datetime,
    materiality_floor: float = MATERIALITY_FLOOR,
) -> VarianceResult | None:
    """
    Analyze one unit. Returns None when the unit has too few attributed
    sales for the configured minimum or the variance is below materiality.

    The acceptance floor is applied by the caller, not here, so raw
    low-confidence results stay inspectable.
    """
    if len(snapshot.sales) < config.minimum_sales_for_analysis:
        return None

    total_pos_sales = snapshot.total_pos_sales
    actual = snapshot.current_quantity
    expected = max(0.0, actual - total_pos_sales)
    variance_amount = abs(expected - actual)

    if variance_amount < materiality_floor:
        return None

    variance_percentage = variance_amount / max(expected, EXPECTED_QUANTITY_FLOOR)
    severity = classify_severity(variance_percentage, config)
    detection_type = classify_detection_type(expected, actual, total_pos_sales)

    historical_average = None
    anomaly_score = None
    if snapshot.history:
        historical_average = sum(s.avg_consumption for s in snapshot.history) / len(snapshot.history)
    if config.enable_anomaly_detection and historical_average is not None:
        anomaly_score = compute_anomaly_score(total_pos_sales, historical_average)
        if anomaly_score > config.anomaly_sensitivity:
            detection_type = DetectionType.CONSUMPTION_ANOMALY

    factors = []
    if not snapshot.sales:
        factors.append(FACTOR_NO_POS_SALES)
    if not snapshot.scans:
        factors.append(FACTOR_NO_RFID_SCANS)
    if variance_percentage > HIGH_VARIANCE_PERCENTAGE:
        factors.append(FACTOR_HIGH_VARIANCE)

    metadata = {
        "time_range": {
            "start": snapshot.window_start.isoformat(),
            "end": snapshot.window_end.isoformat(),
        },
        "total_pos_sales": round(total_pos_sales, 4),
        "variance_percentage": round(variance_percentage, 4),
        "contributing_factors": factors,
    }
    if historical_average is not None:
        metadata["historical_average"] = round(historical_average, 4)
    if anomaly_score is not None:
        metadata["anomaly_score"] = round(anomaly_score, 4)

    unit = snapshot.unit
    return VarianceResult(
        unit_id=unit.unit_id,
        organization_id=unit.organization_id,
        detection_type=detection_type,
        severity=severity,
        expected_quantity=round(expected, 4),
        actual_quantity=round(actual, 4),
        variance_amount=round(variance_amount, 4),
        pos_sales_count=len(snapshot.sales),
        rfid_scan_count=len(snapshot.scans),
        confidence_score=calculate_confidence(snapshot, config, now),
        detected_at=now,
        brand=unit.brand,
        product=unit.product,
        location_id=unit.location_id,
        metadata=metadata,
    )


def is_accepted(result: VarianceResult | None, floor: float = ACCEPTANCE_CONFIDENCE_FLOOR) -> bool:
    return result is not None and result.confidence_score >= floor
