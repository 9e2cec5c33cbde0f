"""
Consumption Data Assembler — gathers the three observations for one bottle.

For a unit it collects, inside the configured analysis window:
  - POS sale lines attributed to it (via a SaleMatcher)
  - RFID scan events
and, independent of the window, up to 30 days of daily consumption samples
for the organization.

Read-only. Returns None when the unit is missing, inactive, or the catalog
is unreachable. A failing sales/scan/history feed does not abort the
snapshot; that source is simply empty and costs confidence downstream.
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from variance.config import DetectionConfig
from variance.matching import SaleMatcher, SubstringSaleMatcher
from variance.models import ConsumptionSnapshot, utcnow
from variance.sources import HistoricalMetricsFeed, SalesFeed, ScanFeed, UnitCatalog

logger = structlog.get_logger()

DEFAULT_HISTORY_DAYS = 30


class ConsumptionDataAssembler:
    def __init__(
        self,
        catalog: UnitCatalog,
        sales_feed: SalesFeed,
        scan_feed: ScanFeed,
        history_feed: HistoricalMetricsFeed,
        matcher: SaleMatcher | None = None,
        history_days: int = DEFAULT_HISTORY_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.sales_feed = sales_feed
        self.scan_feed = scan_feed
        self.history_feed = history_feed
        self.matcher = matcher or SubstringSaleMatcher()
        self.history_days = history_days
        self.clock = clock

    async def assemble(
        self,
        unit_id: uuid.UUID,
        organization_id: uuid.UUID,
        config: DetectionConfig,
    ) -> ConsumptionSnapshot | None:
        log = logger.bind(unit_id=str(unit_id), organization_id=str(organization_id))

        try:
            unit = await self.catalog.get_unit(unit_id, organization_id)
        except Exception as exc:  # noqa: BLE001
            log.warning("variance.unit_lookup_failed", error=str(exc))
            return None

        if unit is None:
            log.info("variance.unit_not_found")
            return None
        if not unit.is_active:
            log.info("variance.unit_inactive", status=unit.status)
            return None

        now = self.clock()
        cutoff = now - timedelta(hours=config.analysis_window_hours)

        sales, scans, history = await asyncio.gather(
            self.sales_feed.get_sales_in_window(organization_id, cutoff),
            self.scan_feed.get_scans_in_window(unit_id, organization_id, cutoff),
            self.history_feed.get_daily_consumption_samples(organization_id, days=self.history_days),
            return_exceptions=True,
        )

        if isinstance(sales, BaseException):
            log.warning("variance.source_unavailable", source="sales", error=str(sales))
            sales = []
        if isinstance(scans, BaseException):
            log.warning("variance.source_unavailable", source="scans", error=str(scans))
            scans = []
        if isinstance(history, BaseException):
            log.warning("variance.source_unavailable", source="history", error=str(history))
            history = []

        return ConsumptionSnapshot(
            unit=unit,
            window_start=cutoff,
            window_end=now,
            sales=self.matcher.attribute(sales, unit),
            scans=list(scans),
            history=list(history),
        )
