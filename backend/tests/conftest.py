"""
Test Configuration — in-memory collaborators, a file-backed SQLite store,
and an API client wired to it.

Unit analyses run concurrently and each SQL collaborator opens its own
session, so store-backed tests use a SQLite file per test rather than a
shared in-memory connection.
"""

import uuid
from datetime import date, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from api.deps import get_session_factory
from api.main import app
from db.session import Base, build_session_factory, create_engine_for_url
from variance.config import DetectionConfig, get_default_config
from variance.engine import VarianceDetectionEngine
from variance.matching import ExactItemSaleMatcher
from variance.models import (
    HistoricalSample,
    SaleLine,
    SaleRecord,
    ScanObservation,
    UnitRecord,
    VarianceResult,
)
from variance.sources import (
    ConfigSource,
    HistoricalMetricsFeed,
    ResultSink,
    SalesFeed,
    ScanFeed,
    UnitCatalog,
)

ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
NOW = datetime(2026, 3, 10, 12, 0, 0)


# ── In-memory collaborators ────────────────────────────────────────────────


class InMemoryCatalog(UnitCatalog):
    def __init__(self):
        self.units: dict[uuid.UUID, UnitRecord] = {}
        self.fail_listing = False
        self.fail_units: set[uuid.UUID] = set()

    async def list_active_unit_ids(self, organization_id):
        if self.fail_listing:
            raise ConnectionError("catalog unreachable")
        return [u.unit_id for u in self.units.values() if u.organization_id == organization_id and u.is_active]

    async def get_unit(self, unit_id, organization_id):
        if unit_id in self.fail_units:
            raise ConnectionError("catalog unreachable")
        unit = self.units.get(unit_id)
        if unit is None or unit.organization_id != organization_id:
            return None
        return unit

    async def count_active_units(self, organization_id, brand):
        return sum(
            1
            for u in self.units.values()
            if u.organization_id == organization_id and u.brand == brand and u.is_active
        )

    async def get_unit_costs(self, organization_id, unit_ids):
        ids = set(unit_ids)
        return {
            u.unit_id: u.cost_price
            for u in self.units.values()
            if u.unit_id in ids and u.cost_price is not None
        }


class InMemorySalesFeed(SalesFeed):
    def __init__(self):
        self.sales: list[SaleRecord] = []
        self.error: Exception | None = None

    async def get_sales_in_window(self, organization_id, since):
        if self.error:
            raise self.error
        return [s for s in self.sales if s.date >= since]


class InMemoryScanFeed(ScanFeed):
    def __init__(self):
        self.scans: dict[uuid.UUID, list[ScanObservation]] = {}
        self.error: Exception | None = None

    async def get_scans_in_window(self, unit_id, organization_id, since):
        if self.error:
            raise self.error
        return [s for s in self.scans.get(unit_id, []) if s.timestamp >= since]


class InMemoryHistoryFeed(HistoricalMetricsFeed):
    def __init__(self):
        self.samples: list[HistoricalSample] = []
        self.error: Exception | None = None

    async def get_daily_consumption_samples(self, organization_id, days=30):
        if self.error:
            raise self.error
        return list(self.samples)


class InMemoryResultSink(ResultSink):
    def __init__(self):
        self.stored: list[tuple[VarianceResult, uuid.UUID | None]] = []
        self.history: list[VarianceResult] = []
        self.fail_writes = False

    async def store_variance_result(self, result, organization_id, actor_id=None):
        if self.fail_writes:
            raise ConnectionError("sink unreachable")
        self.stored.append((result, actor_id))

    async def load_variance_results(self, organization_id, since):
        rows = self.history + [r for r, _ in self.stored]
        return [r for r in rows if r.organization_id == organization_id and r.detected_at >= since]


class InMemoryConfigSource(ConfigSource):
    def __init__(self):
        self.configs: dict[uuid.UUID, DetectionConfig] = {}
        self.error: Exception | None = None

    async def get_detection_config(self, organization_id):
        if self.error:
            raise self.error
        return self.configs.get(organization_id, get_default_config())

    async def save_detection_config(self, organization_id, config, actor_id=None):
        self.configs[organization_id] = config


class FakeSources:
    """One organization's worth of collaborators plus helpers to populate them."""

    def __init__(self):
        self.catalog = InMemoryCatalog()
        self.sales = InMemorySalesFeed()
        self.scans = InMemoryScanFeed()
        self.history = InMemoryHistoryFeed()
        self.sink = InMemoryResultSink()
        self.config = InMemoryConfigSource()
        self.item_units: dict[str, list[uuid.UUID]] = {}

    def add_unit(
        self,
        current_quantity: float = 1.0,
        brand: str | None = "Grey Goose",
        product: str | None = "Vodka",
        cost_price: float | None = 20.0,
        status: str = "active",
        sold: float = 0.0,
        scanned_hours_ago: float | None = 1,
    ) -> UnitRecord:
        unit = UnitRecord(
            unit_id=uuid.uuid4(),
            organization_id=ORG_ID,
            current_quantity=current_quantity,
            brand=brand,
            product=product,
            cost_price=cost_price,
            status=status,
        )
        self.catalog.units[unit.unit_id] = unit
        if sold:
            self.add_sale(unit, sold)
        if scanned_hours_ago is not None:
            self.add_scan(unit, hours_ago=scanned_hours_ago)
        return unit

    def add_sale(self, unit: UnitRecord, quantity: float, hours_ago: float = 1) -> None:
        item_name = f"pour {unit.unit_id}"
        self.item_units.setdefault(item_name, []).append(unit.unit_id)
        self.sales.sales.append(
            SaleRecord(date=NOW - timedelta(hours=hours_ago), items=[SaleLine(name=item_name, quantity=quantity)])
        )

    def add_scan(self, unit: UnitRecord, hours_ago: float = 1) -> None:
        self.scans.scans.setdefault(unit.unit_id, []).append(
            ScanObservation(timestamp=NOW - timedelta(hours=hours_ago), quantity=unit.current_quantity)
        )

    def add_history(self, days: int, avg_consumption: float) -> None:
        for offset in range(1, days + 1):
            self.history.samples.append(
                HistoricalSample(date=NOW.date() - timedelta(days=offset), avg_consumption=avg_consumption)
            )

    def engine(self, **kwargs) -> VarianceDetectionEngine:
        kwargs.setdefault("matcher", ExactItemSaleMatcher(self.item_units))
        kwargs.setdefault("clock", lambda: NOW)
        return VarianceDetectionEngine(
            self.catalog,
            self.sales,
            self.scans,
            self.history,
            self.sink,
            self.config,
            **kwargs,
        )


@pytest.fixture
def sources():
    return FakeSources()


# ── SQL store ──────────────────────────────────────────────────────────────


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh SQLite file database with every table created."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'variance.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
async def seeded_org(session_factory):
    """
    One organization with a location and three bottles:
      - jameson_low:  5 units on hand, one "Jameson Neat" sale, scanned 1h ago
      - grey_goose:   1 unit, no matching sales, scanned 1h ago
      - patron:       inactive
    plus seven days of consumption metrics.
    """
    from db.models import Bottle, Location, Organization, PerformanceMetric, PosTransaction, ScanEvent

    now = datetime.utcnow()
    organization = Organization(organization_id=ORG_ID, name="The Tap Room", slug="tap-room", settings={})
    location = Location(organization_id=ORG_ID, name="Main Bar", code="MAIN")

    async with session_factory() as db:
        db.add_all([organization, location])
        await db.flush()

        jameson_low = Bottle(
            organization_id=ORG_ID,
            location_id=location.location_id,
            rfid_tag="RFID-0001",
            brand="Jameson",
            product="Irish Whiskey",
            bottle_type="whiskey",
            cost_price=25.0,
            current_quantity=5.0,
            created_at=now - timedelta(days=3),
        )
        grey_goose = Bottle(
            organization_id=ORG_ID,
            location_id=location.location_id,
            rfid_tag="RFID-0002",
            brand="Grey Goose",
            product="Vodka",
            bottle_type="vodka",
            cost_price=30.0,
            current_quantity=1.0,
            created_at=now - timedelta(days=2),
        )
        patron = Bottle(
            organization_id=ORG_ID,
            location_id=location.location_id,
            rfid_tag="RFID-0003",
            brand="Patron",
            product="Silver",
            bottle_type="tequila",
            cost_price=40.0,
            current_quantity=3.0,
            status="depleted",
            created_at=now - timedelta(days=1),
        )
        db.add_all([jameson_low, grey_goose, patron])
        await db.flush()

        db.add(
            PosTransaction(
                organization_id=ORG_ID,
                external_transaction_id="txn-1",
                transaction_date=now - timedelta(hours=2),
                items=[{"name": "Jameson Neat", "quantity": 1}, {"name": "House Lager", "quantity": 2}],
                total_amount=18.0,
            )
        )
        db.add_all(
            [
                ScanEvent(organization_id=ORG_ID, bottle_id=jameson_low.bottle_id, scanned_at=now - timedelta(hours=1)),
                ScanEvent(organization_id=ORG_ID, bottle_id=grey_goose.bottle_id, scanned_at=now - timedelta(hours=1)),
            ]
        )
        db.add_all(
            [
                PerformanceMetric(
                    organization_id=ORG_ID,
                    location_id=location.location_id,
                    date=date.today() - timedelta(days=offset),
                    total_bottles_sold=1.0,
                )
                for offset in range(1, 8)
            ]
        )
        await db.commit()

        return {
            "organization_id": ORG_ID,
            "location_id": location.location_id,
            "jameson_low": jameson_low.bottle_id,
            "grey_goose": grey_goose.bottle_id,
            "patron": patron.bottle_id,
        }


@pytest.fixture
async def client(session_factory):
    """Async test client whose engine and sessions point at the test store."""
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
