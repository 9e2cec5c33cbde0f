"""
External collaborator contracts for the variance engine.

The engine never touches tables directly; it reads units, sales, scans and
consumption baselines and writes detections through these interfaces.
variance.store provides the SQLAlchemy implementations; tests supply fakes.

Every read may raise on infrastructure failure. The assembler and engine
decide how a failure degrades the analysis, not the adapter.
"""

import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime

from variance.config import DetectionConfig
from variance.models import HistoricalSample, SaleRecord, ScanObservation, UnitRecord, VarianceResult


class UnitCatalog(ABC):
    @abstractmethod
    async def list_active_unit_ids(self, organization_id: uuid.UUID) -> list[uuid.UUID]:
        """Ids of every unit with status ``active``."""

    @abstractmethod
    async def get_unit(self, unit_id: uuid.UUID, organization_id: uuid.UUID) -> UnitRecord | None:
        """The unit, or None if it does not exist in this organization."""

    @abstractmethod
    async def count_active_units(self, organization_id: uuid.UUID, brand: str) -> int:
        """Active units of ``brand`` regardless of whether they showed variance."""

    @abstractmethod
    async def get_unit_costs(
        self, organization_id: uuid.UUID, unit_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, float]:
        """Cost price per unit; units without a cost are omitted."""


class SalesFeed(ABC):
    @abstractmethod
    async def get_sales_in_window(self, organization_id: uuid.UUID, since: datetime) -> list[SaleRecord]: ...


class ScanFeed(ABC):
    @abstractmethod
    async def get_scans_in_window(
        self, unit_id: uuid.UUID, organization_id: uuid.UUID, since: datetime
    ) -> list[ScanObservation]: ...


class HistoricalMetricsFeed(ABC):
    @abstractmethod
    async def get_daily_consumption_samples(
        self, organization_id: uuid.UUID, days: int = 30
    ) -> list[HistoricalSample]: ...


class ResultSink(ABC):
    @abstractmethod
    async def store_variance_result(
        self,
        result: VarianceResult,
        organization_id: uuid.UUID,
        actor_id: uuid.UUID | None = None,
    ) -> None:
        """Persist an accepted result. Raises on failure."""

    @abstractmethod
    async def load_variance_results(self, organization_id: uuid.UUID, since: datetime) -> list[VarianceResult]:
        """Previously persisted results detected at or after ``since``."""


class ConfigSource(ABC):
    @abstractmethod
    async def get_detection_config(self, organization_id: uuid.UUID) -> DetectionConfig:
        """Stored config, or the default when none (or an invalid one) is stored."""

    @abstractmethod
    async def save_detection_config(
        self,
        organization_id: uuid.UUID,
        config: DetectionConfig,
        actor_id: uuid.UUID | None = None,
    ) -> None: ...
