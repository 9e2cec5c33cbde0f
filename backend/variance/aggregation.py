"""
Brand Aggregator — rolls unit-level variance results up to brand + product.

For each (brand, product) key among the results:
  variance_rate  = bottles with variance / total active bottles of the brand
  risk_score     = min(100, variance_rate×40 + severity_rank×15 + avg_confidence×45)
  estimated_loss = Σ |variance_amount| × unit cost (missing cost counts as 0)

The trend indicator is a coarse ratio, not a regression: the share of the
group's detections inside the last 7 days of the analysis window.
  ≥ 70% → increasing, ≤ 30% → decreasing, otherwise stable.

Output is sorted by risk score, highest first. Results without a brand are
left out, so Σ bottles_with_variance equals the number of branded results.
"""

import uuid
from collections import Counter, defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta

from variance.models import BrandVarianceResult, Severity, TrendIndicator, VarianceResult

TREND_RECENT_DAYS = 7
TREND_INCREASING_SHARE = 0.7
TREND_DECREASING_SHARE = 0.3

RISK_RATE_WEIGHT = 40
RISK_SEVERITY_WEIGHT = 15
RISK_CONFIDENCE_WEIGHT = 45


def calculate_risk_score(variance_rate: float, highest_severity: Severity, average_confidence: float) -> float:
    score = (
        variance_rate * RISK_RATE_WEIGHT
        + highest_severity.rank * RISK_SEVERITY_WEIGHT
        + average_confidence * RISK_CONFIDENCE_WEIGHT
    )
    return round(max(0.0, min(100.0, score)), 2)


def determine_trend(detected_at: Iterable[datetime], window_end: datetime) -> TrendIndicator:
    timestamps = list(detected_at)
    if not timestamps:
        return TrendIndicator.STABLE
    recent_cutoff = window_end - timedelta(days=TREND_RECENT_DAYS)
    recent_share = sum(1 for ts in timestamps if ts >= recent_cutoff) / len(timestamps)
    if recent_share >= TREND_INCREASING_SHARE:
        return TrendIndicator.INCREASING
    if recent_share <= TREND_DECREASING_SHARE:
        return TrendIndicator.DECREASING
    return TrendIndicator.STABLE


def group_by_brand(results: Iterable[VarianceResult]) -> dict[tuple[str, str], list[VarianceResult]]:
    groups: dict[tuple[str, str], list[VarianceResult]] = defaultdict(list)
    for result in results:
        key = result.brand_key
        if key is not None:
            groups[key].append(result)
    return dict(groups)


def aggregate_brand_variance(
    results: Iterable[VarianceResult],
    total_units_by_brand: Mapping[str, int],
    unit_costs: Mapping[uuid.UUID, float],
    window_start: datetime,
    window_end: datetime,
) -> list[BrandVarianceResult]:
    """
    Build one BrandVarianceResult per (brand, product) key.

    ``total_units_by_brand`` holds active-unit counts per brand; a brand
    missing from it (or with fewer units than showed variance, e.g. bottles
    deactivated since) falls back to the variant count so the rate stays ≤ 1.
    """
    brand_results = []

    for (brand, product), group in group_by_brand(results).items():
        variant_count = len(group)
        total_units = max(int(total_units_by_brand.get(brand, 0) or 0), variant_count)
        variance_rate = variant_count / total_units

        highest_severity = max((r.severity for r in group), key=lambda s: s.rank)
        avg_confidence = sum(r.confidence_score for r in group) / variant_count
        total_variance = sum(r.variance_amount for r in group)
        estimated_loss = sum(abs(r.variance_amount) * float(unit_costs.get(r.unit_id) or 0.0) for r in group)

        brand_results.append(
            BrandVarianceResult(
                brand=brand,
                product=product,
                total_bottles=total_units,
                bottles_with_variance=variant_count,
                total_variance_amount=round(total_variance, 4),
                average_variance_amount=round(total_variance / variant_count, 4),
                highest_severity=highest_severity,
                detection_types=dict(Counter(r.detection_type.value for r in group)),
                estimated_loss_value=round(estimated_loss, 2),
                risk_score=calculate_risk_score(variance_rate, highest_severity, avg_confidence),
                trend_indicator=determine_trend((r.detected_at for r in group), window_end),
                last_detection_date=max(r.detected_at for r in group),
                metadata={
                    "time_range": {"start": window_start.isoformat(), "end": window_end.isoformat()},
                    "affected_bottle_ids": [str(r.unit_id) for r in group],
                    "average_confidence": round(avg_confidence, 4),
                    "variance_rate": round(variance_rate, 4),
                },
            )
        )

    brand_results.sort(key=lambda b: (-b.risk_score, b.brand, b.product))
    return brand_results
