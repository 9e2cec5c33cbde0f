"""
Tests for VarianceDetectionEngine — orchestration, batching and failure isolation.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest

from conftest import NOW, ORG_ID
from variance.config import DetectionConfig
from variance.engine import VarianceDetectionEngine, chunked, coerce_organization_id
from variance.models import DetectionType, Severity, VarianceResult


def _result(unit_id, brand="Jameson", product="Irish Whiskey", days_ago=0, confidence=0.8) -> VarianceResult:
    return VarianceResult(
        unit_id=unit_id,
        organization_id=ORG_ID,
        detection_type=DetectionType.SURPLUS,
        severity=Severity.HIGH,
        expected_quantity=2.0,
        actual_quantity=3.0,
        variance_amount=1.0,
        pos_sales_count=1,
        rfid_scan_count=1,
        confidence_score=confidence,
        detected_at=NOW - timedelta(days=days_ago),
        brand=brand,
        product=product,
    )


# ── Helpers ────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_coerce_string_id(self):
        assert coerce_organization_id(str(ORG_ID)) == ORG_ID

    def test_coerce_rejects_other_types(self):
        with pytest.raises(TypeError):
            coerce_organization_id(42)

    def test_coerce_rejects_malformed_string(self):
        with pytest.raises(ValueError):
            coerce_organization_id("not-a-uuid")

    def test_chunked(self):
        assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert chunked([], 3) == []

    def test_batch_size_must_be_positive(self, sources):
        with pytest.raises(ValueError):
            sources.engine(batch_size=0)

    def test_default_config_exposed(self):
        assert VarianceDetectionEngine.get_default_config().thresholds == (0.1, 0.2, 0.3, 0.5)


# ── Single unit ────────────────────────────────────────────────────────────


class TestAnalyzeUnit:
    async def test_accepted_result_is_persisted_with_actor(self, sources):
        unit = sources.add_unit(current_quantity=5, sold=1)
        actor_id = uuid.uuid4()

        result = await sources.engine().analyze_unit(unit.unit_id, ORG_ID, actor_id=actor_id)

        assert result.severity == Severity.MEDIUM
        assert result.confidence_score == pytest.approx(0.68)
        assert sources.sink.stored == [(result, actor_id)]

    async def test_low_confidence_result_not_returned_or_stored(self, sources):
        unit = sources.add_unit(current_quantity=5, sold=1, scanned_hours_ago=None)

        assert await sources.engine().analyze_unit(unit.unit_id, ORG_ID) is None
        assert sources.sink.stored == []

    async def test_acceptance_floor_is_configurable(self, sources):
        unit = sources.add_unit(current_quantity=5, sold=1, scanned_hours_ago=None)

        result = await sources.engine(acceptance_floor=0.3).analyze_unit(unit.unit_id, ORG_ID)

        assert result.confidence_score == pytest.approx(0.36)

    async def test_string_organization_id(self, sources):
        unit = sources.add_unit(current_quantity=5, sold=1)
        assert await sources.engine().analyze_unit(unit.unit_id, str(ORG_ID)) is not None

    async def test_invalid_organization_id_type_raises(self, sources):
        with pytest.raises(TypeError):
            await sources.engine().analyze_unit(uuid.uuid4(), 1234)

    async def test_unknown_unit(self, sources):
        assert await sources.engine().analyze_unit(uuid.uuid4(), ORG_ID) is None

    async def test_persistence_failure_still_returns_result(self, sources):
        unit = sources.add_unit(current_quantity=5, sold=1)
        sources.sink.fail_writes = True

        result = await sources.engine().analyze_unit(unit.unit_id, ORG_ID)

        assert result is not None
        assert result.unit_id == unit.unit_id

    async def test_uses_organization_config(self, sources):
        unit = sources.add_unit(current_quantity=5, sold=1)
        sources.config.configs[ORG_ID] = DetectionConfig(
            low_threshold=0.01, medium_threshold=0.02, high_threshold=0.05, critical_threshold=0.2
        )

        result = await sources.engine().analyze_unit(unit.unit_id, ORG_ID)

        assert result.severity == Severity.CRITICAL

    async def test_organization_baseline_marks_single_bottle_as_anomaly(self, sources):
        # Thirty daily samples of 40 bottles sold across the whole bar.
        sources.add_history(days=30, avg_consumption=40.0)
        quiet = sources.add_unit(current_quantity=5, sold=1)
        busy = sources.add_unit(current_quantity=5, sold=3)
        engine = sources.engine()

        quiet_result = await engine.analyze_unit(quiet.unit_id, ORG_ID)
        busy_result = await engine.analyze_unit(busy.unit_id, ORG_ID)

        assert quiet_result.metadata["anomaly_score"] == pytest.approx(0.975)
        assert busy_result.metadata["anomaly_score"] == pytest.approx(0.925)
        assert quiet_result.detection_type == DetectionType.CONSUMPTION_ANOMALY
        assert busy_result.detection_type == DetectionType.CONSUMPTION_ANOMALY

    async def test_config_source_failure_falls_back_to_defaults(self, sources):
        unit = sources.add_unit(current_quantity=5, sold=1)
        sources.config.error = ConnectionError("settings unavailable")

        result = await sources.engine().analyze_unit(unit.unit_id, ORG_ID)

        assert result.severity == Severity.MEDIUM


# ── Organization ───────────────────────────────────────────────────────────


class TestAnalyzeOrganization:
    async def test_collects_accepted_results(self, sources):
        variant = sources.add_unit(current_quantity=5, sold=1)
        sources.add_unit(current_quantity=1)  # no sales, no variance
        sources.add_unit(current_quantity=3, sold=1, scanned_hours_ago=None)  # low confidence
        sources.add_unit(current_quantity=2, sold=1, status="missing")  # inactive

        results = await sources.engine().analyze_organization(ORG_ID)

        assert [r.unit_id for r in results] == [variant.unit_id]
        assert len(sources.sink.stored) == 1

    async def test_batches_limit_concurrency(self, sources):
        for _ in range(7):
            sources.add_unit(current_quantity=5, sold=1)

        in_flight = 0
        peak = 0
        original_get_unit = sources.catalog.get_unit

        async def slow_get_unit(unit_id, organization_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return await original_get_unit(unit_id, organization_id)

        sources.catalog.get_unit = slow_get_unit

        results = await sources.engine(batch_size=3).analyze_organization(ORG_ID)

        assert len(results) == 7
        assert peak == 3

    async def test_slow_unit_times_out_alone(self, sources):
        slow = sources.add_unit(current_quantity=5, sold=1)
        fast = sources.add_unit(current_quantity=5, sold=1)
        original_get_unit = sources.catalog.get_unit

        async def get_unit(unit_id, organization_id):
            if unit_id == slow.unit_id:
                await asyncio.sleep(1)
            return await original_get_unit(unit_id, organization_id)

        sources.catalog.get_unit = get_unit

        results = await sources.engine(unit_timeout_seconds=0.05).analyze_organization(ORG_ID)

        assert [r.unit_id for r in results] == [fast.unit_id]

    async def test_slow_persistence_keeps_result(self, sources):
        unit = sources.add_unit(current_quantity=5, sold=1)
        original_store = sources.sink.store_variance_result

        async def slow_store(result, organization_id, actor_id=None):
            await asyncio.sleep(0.2)
            await original_store(result, organization_id, actor_id=actor_id)

        sources.sink.store_variance_result = slow_store

        results = await sources.engine(unit_timeout_seconds=0.05).analyze_organization(ORG_ID)

        assert [r.unit_id for r in results] == [unit.unit_id]
        assert len(sources.sink.stored) == 1

    async def test_fetch_timeout_on_single_unit_returns_none(self, sources):
        unit = sources.add_unit(current_quantity=5, sold=1)
        original_get_unit = sources.catalog.get_unit

        async def get_unit(unit_id, organization_id):
            await asyncio.sleep(1)
            return await original_get_unit(unit_id, organization_id)

        sources.catalog.get_unit = get_unit

        assert await sources.engine(unit_timeout_seconds=0.05).analyze_unit(unit.unit_id, ORG_ID) is None
        assert sources.sink.stored == []

    async def test_failing_unit_does_not_abort_batch(self, sources):
        broken = sources.add_unit(current_quantity=5, sold=1)
        healthy = sources.add_unit(current_quantity=5, sold=1)
        engine = sources.engine()
        original_assemble = engine.assembler.assemble

        async def assemble(unit_id, organization_id, config):
            if unit_id == broken.unit_id:
                raise RuntimeError("corrupt snapshot")
            return await original_assemble(unit_id, organization_id, config)

        engine.assembler.assemble = assemble

        results = await engine.analyze_organization(ORG_ID)

        assert [r.unit_id for r in results] == [healthy.unit_id]

    async def test_catalog_listing_failure_returns_empty(self, sources):
        sources.add_unit(current_quantity=5, sold=1)
        sources.catalog.fail_listing = True

        assert await sources.engine().analyze_organization(ORG_ID) == []

    async def test_config_loaded_once_per_run(self, sources):
        for _ in range(4):
            sources.add_unit(current_quantity=5, sold=1)
        calls = 0
        original = sources.config.get_detection_config

        async def counting_get(organization_id):
            nonlocal calls
            calls += 1
            return await original(organization_id)

        sources.config.get_detection_config = counting_get

        await sources.engine(batch_size=2).analyze_organization(ORG_ID)

        assert calls == 1

    async def test_empty_organization(self, sources):
        assert await sources.engine().analyze_organization(ORG_ID) == []


# ── Brands ─────────────────────────────────────────────────────────────────


class TestAnalyzeBrandVariance:
    async def test_fresh_run_aggregates_by_brand(self, sources):
        sources.add_unit(current_quantity=5, sold=1, brand="Jameson", product="Irish Whiskey", cost_price=25.0)
        sources.add_unit(current_quantity=2, sold=5, brand="Jameson", product="Irish Whiskey", cost_price=25.0)
        sources.add_unit(current_quantity=1, brand="Jameson", product="Irish Whiskey")
        sources.add_unit(current_quantity=4, sold=1, brand="Patron", product="Silver", cost_price=None)

        brands = await sources.engine().analyze_brand_variance(ORG_ID)

        assert [b.key for b in brands] == [("Jameson", "Irish Whiskey"), ("Patron", "Silver")]
        jameson, patron = brands
        assert jameson.total_bottles == 3
        assert jameson.bottles_with_variance == 2
        assert jameson.total_variance_amount == 3.0
        assert jameson.estimated_loss_value == 75.0
        assert jameson.highest_severity == Severity.CRITICAL
        assert patron.estimated_loss_value == 0.0
        assert all(b.trend_indicator.value == "increasing" for b in brands)

    async def test_aggregation_consistency(self, sources):
        for brand in ("Jameson", "Jameson", "Patron", "Tito's", None):
            sources.add_unit(current_quantity=5, sold=1, brand=brand)
        engine = sources.engine()

        results = await engine.analyze_organization(ORG_ID)
        brands = await engine.analyze_brand_variance(ORG_ID, results=results)

        branded = [r for r in results if r.brand]
        assert len(results) == 5
        assert sum(b.bottles_with_variance for b in brands) == len(branded)
        assert all(0 <= b.risk_score <= 100 for b in brands)

    async def test_given_results_not_reanalyzed(self, sources):
        unit_id = uuid.uuid4()
        brands = await sources.engine().analyze_brand_variance(ORG_ID, results=[_result(unit_id)])

        assert len(brands) == 1
        assert brands[0].total_bottles == 1
        assert sources.sink.stored == []

    async def test_lookback_reads_persisted_history(self, sources):
        ids = [uuid.uuid4() for _ in range(4)]
        sources.sink.history = [
            _result(ids[0], days_ago=1),
            _result(ids[1], days_ago=10),
            _result(ids[2], days_ago=12),
            _result(ids[3], days_ago=40),
        ]

        brands = await sources.engine().analyze_brand_variance(ORG_ID, lookback_days=30)

        assert len(brands) == 1
        assert brands[0].bottles_with_variance == 3
        assert brands[0].trend_indicator.value == "stable"

    async def test_lookback_history_failure(self, sources):
        async def broken(organization_id, since):
            raise ConnectionError("store down")

        sources.sink.load_variance_results = broken

        assert await sources.engine().analyze_brand_variance(ORG_ID, lookback_days=7) == []

    async def test_brand_count_failure_falls_back_to_variant_count(self, sources):
        async def broken(organization_id, brand):
            raise ConnectionError("catalog down")

        sources.catalog.count_active_units = broken

        brands = await sources.engine().analyze_brand_variance(ORG_ID, results=[_result(uuid.uuid4())])

        assert brands[0].total_bottles == 1
        assert brands[0].metadata["variance_rate"] == 1.0

    async def test_no_branded_results(self, sources):
        results = [_result(uuid.uuid4(), brand=None)]
        assert await sources.engine().analyze_brand_variance(ORG_ID, results=results) == []
