"""
SQL-backed collaborators for the variance engine.

Each adapter opens its own short-lived AsyncSession from the factory it was
given; unit analyses in a batch run concurrently and an AsyncSession must
never be shared between tasks.
"""

import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings, get_settings
from db.models import (
    ActivityLog,
    Bottle,
    MenuItem,
    Organization,
    PerformanceMetric,
    PosTransaction,
    ScanEvent,
    VarianceDetection,
)
from variance.config import SETTINGS_KEY, DetectionConfig, get_default_config, load_detection_config
from variance.engine import VarianceDetectionEngine, coerce_organization_id
from variance.errors import ConfigurationError, OrganizationNotFoundError
from variance.matching import ExactItemSaleMatcher, SaleMatcher
from variance.models import (
    DetectionStatus,
    DetectionType,
    HistoricalSample,
    SaleLine,
    SaleRecord,
    ScanObservation,
    Severity,
    UnitRecord,
    VarianceResult,
    utcnow,
)
from variance.sources import (
    ConfigSource,
    HistoricalMetricsFeed,
    ResultSink,
    SalesFeed,
    ScanFeed,
    UnitCatalog,
)

logger = structlog.get_logger()

# Reviewed-away detections do not feed brand history.
EXCLUDED_HISTORY_STATUSES = (DetectionStatus.FALSE_POSITIVE.value, DetectionStatus.IGNORED.value)


class _SessionAdapter:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory


# ── Reads ──────────────────────────────────────────────────────────────────


class SqlUnitCatalog(_SessionAdapter, UnitCatalog):
    async def list_active_unit_ids(self, organization_id: uuid.UUID) -> list[uuid.UUID]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Bottle.bottle_id)
                .where(Bottle.organization_id == organization_id, Bottle.status == "active")
                .order_by(Bottle.created_at, Bottle.rfid_tag)
            )
            return [row.bottle_id for row in result.all()]

    async def get_unit(self, unit_id: uuid.UUID, organization_id: uuid.UUID) -> UnitRecord | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Bottle).where(Bottle.bottle_id == unit_id, Bottle.organization_id == organization_id)
            )
            bottle = result.scalar_one_or_none()
            if bottle is None:
                return None
            return UnitRecord(
                unit_id=bottle.bottle_id,
                organization_id=bottle.organization_id,
                current_quantity=float(bottle.current_quantity or 0.0),
                brand=bottle.brand,
                product=bottle.product,
                cost_price=bottle.cost_price,
                status=bottle.status,
                location_id=bottle.location_id,
                last_scanned=bottle.last_scanned,
            )

    async def count_active_units(self, organization_id: uuid.UUID, brand: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(Bottle.bottle_id)).where(
                    Bottle.organization_id == organization_id,
                    Bottle.brand == brand,
                    Bottle.status == "active",
                )
            )
            return int(result.scalar() or 0)

    async def get_unit_costs(
        self, organization_id: uuid.UUID, unit_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, float]:
        ids = list(unit_ids)
        if not ids:
            return {}
        async with self.session_factory() as db:
            result = await db.execute(
                select(Bottle.bottle_id, Bottle.cost_price).where(
                    Bottle.organization_id == organization_id,
                    Bottle.bottle_id.in_(ids),
                    Bottle.cost_price.is_not(None),
                )
            )
            return {row.bottle_id: float(row.cost_price) for row in result.all()}


def _parse_sale_lines(items) -> list[SaleLine]:
    lines = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            quantity = float(item.get("quantity") or 0)
        except (TypeError, ValueError):
            continue
        lines.append(SaleLine(name=str(item.get("name") or ""), quantity=quantity))
    return lines


class SqlSalesFeed(_SessionAdapter, SalesFeed):
    async def get_sales_in_window(self, organization_id: uuid.UUID, since: datetime) -> list[SaleRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PosTransaction.transaction_date, PosTransaction.items)
                .where(
                    PosTransaction.organization_id == organization_id,
                    PosTransaction.transaction_date >= since,
                )
                .order_by(PosTransaction.transaction_date)
            )
            return [
                SaleRecord(date=row.transaction_date, items=_parse_sale_lines(row.items)) for row in result.all()
            ]


class SqlScanFeed(_SessionAdapter, ScanFeed):
    async def get_scans_in_window(
        self, unit_id: uuid.UUID, organization_id: uuid.UUID, since: datetime
    ) -> list[ScanObservation]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScanEvent.scanned_at, ScanEvent.quantity)
                .where(
                    ScanEvent.organization_id == organization_id,
                    ScanEvent.bottle_id == unit_id,
                    ScanEvent.scanned_at >= since,
                )
                .order_by(ScanEvent.scanned_at)
            )
            return [ScanObservation(timestamp=row.scanned_at, quantity=row.quantity) for row in result.all()]


class SqlHistoricalMetricsFeed(_SessionAdapter, HistoricalMetricsFeed):
    async def get_daily_consumption_samples(
        self, organization_id: uuid.UUID, days: int = 30
    ) -> list[HistoricalSample]:
        """
        Daily consumption totals (summed across locations) for the last ``days`` days.

        These are organization-wide figures; the analyzer compares their mean
        with a single bottle's sales, see ``compute_anomaly_score``.
        """
        cutoff = utcnow().date() - timedelta(days=days)
        async with self.session_factory() as db:
            result = await db.execute(
                select(
                    PerformanceMetric.date,
                    func.sum(PerformanceMetric.total_bottles_sold).label("consumption"),
                )
                .where(
                    PerformanceMetric.organization_id == organization_id,
                    PerformanceMetric.date >= cutoff,
                )
                .group_by(PerformanceMetric.date)
                .order_by(PerformanceMetric.date)
            )
            return [
                HistoricalSample(date=row.date, avg_consumption=float(row.consumption or 0.0))
                for row in result.all()
            ]


def _ingredient_unit_ids(ingredients) -> list[uuid.UUID]:
    unit_ids = []
    for ingredient in ingredients or []:
        if not isinstance(ingredient, dict):
            continue
        try:
            unit_ids.append(uuid.UUID(str(ingredient.get("bottle_id"))))
        except ValueError:
            continue
    return unit_ids


class SqlMenuItemMapping(_SessionAdapter):
    """Menu item name → bottles poured, from the organization's active menu items."""

    async def get_item_units(self, organization_id: uuid.UUID) -> dict[str, list[uuid.UUID]]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MenuItem.name, MenuItem.ingredients).where(
                    MenuItem.organization_id == organization_id,
                    MenuItem.is_active.is_(True),
                )
            )
            item_units: dict[str, list[uuid.UUID]] = {}
            for row in result.all():
                unit_ids = _ingredient_unit_ids(row.ingredients)
                if unit_ids:
                    item_units.setdefault(row.name, []).extend(unit_ids)
            return item_units


async def load_item_sale_matcher(
    session_factory: async_sessionmaker[AsyncSession],
    organization_id: uuid.UUID,
) -> ExactItemSaleMatcher | None:
    """Exact matcher from the organization's menu items, or None when it has no mapping."""
    item_units = await SqlMenuItemMapping(session_factory).get_item_units(organization_id)
    if not item_units:
        return None
    logger.info("variance.item_mapping_loaded", organization_id=str(organization_id), item_count=len(item_units))
    return ExactItemSaleMatcher(item_units)


# ── Writes─────────────────────────────────────────────────────────────────


def detection_to_result(row: VarianceDetection) -> VarianceResult:
    return VarianceResult(
        unit_id=row.bottle_id,
        organization_id=row.organization_id,
        detection_type=DetectionType(row.detection_type),
        severity=Severity(row.severity),
        expected_quantity=float(row.expected_quantity or 0.0),
        actual_quantity=float(row.actual_quantity or 0.0),
        variance_amount=float(row.variance_amount or 0.0),
        pos_sales_count=row.pos_sales_count or 0,
        rfid_scan_count=row.rfid_scan_count or 0,
        confidence_score=float(row.confidence_score),
        detected_at=row.detected_at,
        brand=row.brand,
        product=row.product,
        location_id=row.location_id,
        metadata=dict(row.detection_metadata or {}),
    )


class SqlResultSink(_SessionAdapter, ResultSink):
    async def store_variance_result(
        self,
        result: VarianceResult,
        organization_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
    ) -> None:
        async with self.session_factory() as db:
            detection = VarianceDetection(
                detection_id=uuid.uuid4(),
                organization_id=organization_id,
                bottle_id=result.unit_id,
                location_id=result.location_id,
                brand=result.brand,
                product=result.product,
                detection_type=result.detection_type.value,
                severity=result.severity.value,
                detected_at=result.detected_at,
                expected_quantity=result.expected_quantity,
                actual_quantity=result.actual_quantity,
                variance_amount=result.variance_amount,
                pos_sales_count=result.pos_sales_count,
                rfid_scan_count=result.rfid_scan_count,
                confidence_score=result.confidence_score,
                status=DetectionStatus.OPEN.value,
                detection_metadata=dict(result.metadata),
            )
            db.add(detection)
            db.add(
                ActivityLog(
                    organization_id=organization_id,
                    actor_id=actor_id,
                    action="variance_detected",
                    resource_type="variance_detection",
                    resource_id=detection.detection_id,
                    activity_metadata={
                        "bottle_id": str(result.unit_id),
                        "detection_type": result.detection_type.value,
                        "severity": result.severity.value,
                    },
                    created_at=utcnow(),
                )
            )
            await db.commit()

    async def load_variance_results(self, organization_id: uuid.UUID, since: datetime) -> list[VarianceResult]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(VarianceDetection)
                .where(
                    VarianceDetection.organization_id == organization_id,
                    VarianceDetection.detected_at >= since,
                    VarianceDetection.status.not_in(EXCLUDED_HISTORY_STATUSES),
                    VarianceDetection.bottle_id.is_not(None),
                )
                .order_by(VarianceDetection.detected_at)
            )
            return [detection_to_result(row) for row in result.scalars().all()]


class SqlConfigSource(_SessionAdapter, ConfigSource):
    async def get_detection_config(self, organization_id: uuid.UUID) -> DetectionConfig:
        async with self.session_factory() as db:
            organization = await db.get(Organization, organization_id)
            if organization is None:
                logger.warning("variance.config_org_not_found", organization_id=str(organization_id))
                return get_default_config()
            blob = (organization.settings or {}).get(SETTINGS_KEY)

        try:
            return load_detection_config(blob)
        except ConfigurationError as exc:
            logger.warning("variance.config_invalid", organization_id=str(organization_id), error=str(exc))
            return get_default_config()

    async def save_detection_config(
        self,
        organization_id: uuid.UUID,
        config: DetectionConfig,
        actor_id: uuid.UUID | None = None,
    ) -> None:
        async with self.session_factory() as db:
            organization = await db.get(Organization, organization_id)
            if organization is None:
                raise OrganizationNotFoundError(f"Organization {organization_id} not found")

            settings = dict(organization.settings or {})
            settings[SETTINGS_KEY] = config.to_settings()
            organization.settings = settings
            db.add(
                ActivityLog(
                    organization_id=organization_id,
                    actor_id=actor_id,
                    action="variance_config_updated",
                    resource_type="organization",
                    resource_id=organization_id,
                    activity_metadata={SETTINGS_KEY: settings[SETTINGS_KEY]},
                    created_at=utcnow(),
                )
            )
            await db.commit()
        logger.info("variance.config_saved", organization_id=str(organization_id))


# ── Wiring ─────────────────────────────────────────────────────────────────


def build_sql_detection_engine(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    matcher: SaleMatcher | None = None,
) -> VarianceDetectionEngine:
    """Engine backed by the relational store, tuned from application settings."""
    settings = settings or get_settings()
    return VarianceDetectionEngine(
        catalog=SqlUnitCatalog(session_factory),
        sales_feed=SqlSalesFeed(session_factory),
        scan_feed=SqlScanFeed(session_factory),
        history_feed=SqlHistoricalMetricsFeed(session_factory),
        result_sink=SqlResultSink(session_factory),
        config_source=SqlConfigSource(session_factory),
        matcher=matcher,
        batch_size=settings.variance_batch_size,
        unit_timeout_seconds=settings.variance_unit_timeout_seconds,
        acceptance_floor=settings.variance_acceptance_floor,
        materiality_floor=settings.variance_materiality_floor,
        history_days=settings.variance_history_days,
    )


async def build_organization_detection_engine(
    session_factory: async_sessionmaker[AsyncSession],
    organization_id: uuid.UUID | str,
    settings: Settings | None = None,
) -> VarianceDetectionEngine:
    """
    Store-backed engine for one organization. Sales are attributed through the
    organization's menu-item mapping when it has one, by substring otherwise.
    """
    matcher = await load_item_sale_matcher(session_factory, coerce_organization_id(organization_id))
    return build_sql_detection_engine(session_factory, settings=settings, matcher=matcher)
