"""
Variance Detection Engine — the invocation surface for reporting and workers.

  analyze_unit(unit_id, org_id)        → VarianceResult | None
  analyze_organization(org_id)         → list[VarianceResult]
  analyze_brand_variance(org_id)       → list[BrandVarianceResult] (risk desc)
  get_default_config()                 → DetectionConfig

Concurrency:
  Active units are analyzed in fixed-size batches. Members of a batch run
  concurrently; batches run one after another so the store never sees more
  than ``batch_size`` unit analyses at once. Each unit's data fetch has its
  own timeout, and a failure or timeout for one unit only drops that unit.
  Persisting an accepted result happens outside the timeout and never
  drops the result.

Brand aggregation runs after every unit of the run has finished.
"""

import asyncio
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

import structlog

from variance.aggregation import TREND_RECENT_DAYS, aggregate_brand_variance
from variance.analyzer import (
    ACCEPTANCE_CONFIDENCE_FLOOR,
    MATERIALITY_FLOOR,
    analyze_snapshot,
    is_accepted,
)
from variance.assembler import DEFAULT_HISTORY_DAYS, ConsumptionDataAssembler
from variance.config import DetectionConfig, get_default_config
from variance.matching import SaleMatcher
from variance.models import BrandVarianceResult, VarianceResult, utcnow
from variance.sources import (
    ConfigSource,
    HistoricalMetricsFeed,
    ResultSink,
    SalesFeed,
    ScanFeed,
    UnitCatalog,
)

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 10
DEFAULT_UNIT_TIMEOUT_SECONDS = 5.0


def coerce_organization_id(organization_id: uuid.UUID | str) -> uuid.UUID:
    """Accept a UUID or its string form; anything else is a caller bug."""
    if isinstance(organization_id, uuid.UUID):
        return organization_id
    if isinstance(organization_id, str):
        return uuid.UUID(organization_id)
    raise TypeError(f"organization_id must be a UUID or str, got {type(organization_id).__name__}")


def chunked(items: Sequence, size: int) -> list[Sequence]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class VarianceDetectionEngine:
    def __init__(
        self,
        catalog: UnitCatalog,
        sales_feed: SalesFeed,
        scan_feed: ScanFeed,
        history_feed: HistoricalMetricsFeed,
        result_sink: ResultSink,
        config_source: ConfigSource,
        matcher: SaleMatcher | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        unit_timeout_seconds: float | None = DEFAULT_UNIT_TIMEOUT_SECONDS,
        acceptance_floor: float = ACCEPTANCE_CONFIDENCE_FLOOR,
        materiality_floor: float = MATERIALITY_FLOOR,
        history_days: int = DEFAULT_HISTORY_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.catalog = catalog
        self.result_sink = result_sink
        self.config_source = config_source
        self.batch_size = batch_size
        self.unit_timeout_seconds = unit_timeout_seconds
        self.acceptance_floor = acceptance_floor
        self.materiality_floor = materiality_floor
        self.clock = clock
        self.assembler = ConsumptionDataAssembler(
            catalog,
            sales_feed,
            scan_feed,
            history_feed,
            matcher=matcher,
            history_days=history_days,
            clock=clock,
        )

    @staticmethod
    def get_default_config() -> DetectionConfig:
        return get_default_config()

    async def load_config(self, organization_id: uuid.UUID) -> DetectionConfig:
        try:
            return await self.config_source.get_detection_config(organization_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("variance.config_unavailable", organization_id=str(organization_id), error=str(exc))
            return get_default_config()

    # ── Single unit ─────────────────────────────────────────────────────

    async def analyze_unit(
        self,
        unit_id: uuid.UUID,
        organization_id: uuid.UUID | str,
        config: DetectionConfig | None = None,
        actor_id: uuid.UUID | None = None,
    ) -> VarianceResult | None:
        """
        Analyze one unit and persist the result if it clears the acceptance
        floor. Missing or partial upstream data yields None or a
        lower-confidence result, never an exception.
        """
        organization_id = coerce_organization_id(organization_id)
        if config is None:
            config = await self.load_config(organization_id)

        try:
            snapshot = await asyncio.wait_for(
                self.assembler.assemble(unit_id, organization_id, config),
                timeout=self.unit_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "variance.unit_timeout",
                unit_id=str(unit_id),
                organization_id=str(organization_id),
                timeout_seconds=self.unit_timeout_seconds,
            )
            return None
        if snapshot is None:
            return None

        result = analyze_snapshot(snapshot, config, now=self.clock(), materiality_floor=self.materiality_floor)
        if result is None:
            return None
        if not is_accepted(result, self.acceptance_floor):
            logger.debug(
                "variance.below_confidence_floor",
                unit_id=str(unit_id),
                confidence=result.confidence_score,
                floor=self.acceptance_floor,
            )
            return None

        await self._persist(result, organization_id, actor_id)
        return result

    async def _persist(self, result: VarianceResult, organization_id: uuid.UUID, actor_id: uuid.UUID | None) -> None:
        try:
            await self.result_sink.store_variance_result(result, organization_id, actor_id=actor_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "variance.persist_failed",
                organization_id=str(organization_id),
                unit_id=str(result.unit_id),
                error=str(exc),
            )

    async def _analyze_unit_safely(
        self,
        unit_id: uuid.UUID,
        organization_id: uuid.UUID,
        config: DetectionConfig,
        actor_id: uuid.UUID | None,
    ) -> VarianceResult | None:
        try:
            return await self.analyze_unit(unit_id, organization_id, config=config, actor_id=actor_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "variance.unit_failed",
                unit_id=str(unit_id),
                organization_id=str(organization_id),
                error=str(exc),
                exc_info=True,
            )
        return None

    # ── Organization ────────────────────────────────────────────────────

    async def analyze_organization(
        self,
        organization_id: uuid.UUID | str,
        actor_id: uuid.UUID | None = None,
    ) -> list[VarianceResult]:
        organization_id = coerce_organization_id(organization_id)
        log = logger.bind(organization_id=str(organization_id))

        try:
            unit_ids = await self.catalog.list_active_unit_ids(organization_id)
        except Exception as exc:  # noqa: BLE001
            log.error("variance.unit_listing_failed", error=str(exc))
            return []

        config = await self.load_config(organization_id)
        log.info("variance.organization_start", unit_count=len(unit_ids), batch_size=self.batch_size)

        results: list[VarianceResult] = []
        for batch_number, batch in enumerate(chunked(unit_ids, self.batch_size), start=1):
            batch_results = await asyncio.gather(
                *(self._analyze_unit_safely(unit_id, organization_id, config, actor_id) for unit_id in batch)
            )
            accepted = [r for r in batch_results if r is not None]
            results.extend(accepted)
            log.debug("variance.batch_complete", batch=batch_number, size=len(batch), results=len(accepted))

        log.info("variance.organization_complete", unit_count=len(unit_ids), result_count=len(results))
        return results

    # ── Brands ──────────────────────────────────────────────────────────

    async def analyze_brand_variance(
        self,
        organization_id: uuid.UUID | str,
        results: list[VarianceResult] | None = None,
        lookback_days: int | None = None,
    ) -> list[BrandVarianceResult]:
        """
        Brand-level risk profiles, highest risk first.

        With ``lookback_days`` the persisted detections of that window are
        aggregated; with ``results`` the given set is; otherwise a fresh
        organization pass is run first.
        """
        organization_id = coerce_organization_id(organization_id)
        now = self.clock()

        if lookback_days is not None:
            window_start = now - timedelta(days=lookback_days)
            try:
                results = await self.result_sink.load_variance_results(organization_id, since=window_start)
            except Exception as exc:  # noqa: BLE001
                logger.error("variance.history_unavailable", organization_id=str(organization_id), error=str(exc))
                return []
        else:
            if results is None:
                results = await self.analyze_organization(organization_id)
            window_start = min((r.detected_at for r in results), default=now)
            window_start = min(window_start, now - timedelta(days=TREND_RECENT_DAYS))

        branded = [r for r in results if r.brand_key is not None]
        if not branded:
            return []

        brands = sorted({r.brand for r in branded})
        counts = await asyncio.gather(
            *(self.catalog.count_active_units(organization_id, brand) for brand in brands),
            return_exceptions=True,
        )
        total_units_by_brand = {}
        for brand, count in zip(brands, counts):
            if isinstance(count, BaseException):
                logger.warning("variance.brand_count_failed", brand=brand, error=str(count))
                continue
            total_units_by_brand[brand] = count

        try:
            unit_costs = await self.catalog.get_unit_costs(organization_id, [r.unit_id for r in branded])
        except Exception as exc:  # noqa: BLE001
            logger.warning("variance.unit_costs_unavailable", organization_id=str(organization_id), error=str(exc))
            unit_costs = {}

        brand_results = aggregate_brand_variance(
            branded,
            total_units_by_brand,
            unit_costs,
            window_start=window_start,
            window_end=now,
        )
        logger.info(
            "variance.brand_analysis_complete",
            organization_id=str(organization_id),
            brand_count=len(brand_results),
            result_count=len(branded),
        )
        return brand_results
