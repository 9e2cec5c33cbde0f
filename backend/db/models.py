"""
BottleOps Database Models

Tables backing the variance detection engine's collaborators.
Multi-tenant via organization_id on all tables.

Tables:
  1. organizations        - Tenants (+ settings blob holding varianceDetection config)
  2. locations            - Bars / storage areas inside an organization
  3. bottles              - Trackable units, one RFID tag each
  4. pos_transactions     - Normalized POS sales (items JSON: [{name, quantity}])
  5. scan_events          - RFID reads produced by scan sessions
  6. performance_metrics  - Daily consumption rollups (historical baseline)
  7. variance_detections  - Accepted variance results + review status
  8. activity_logs        - Audit trail; actor_id is explicit and nullable
  9. menu_items           - POS menu items with their bottle ingredients (exact sale mapping)
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


DETECTION_TYPES = "('missing', 'surplus', 'consumption_anomaly', 'theft_suspected', 'reconciliation_needed')"
SEVERITY_LEVELS = "('low', 'medium', 'high', 'critical')"
DETECTION_STATUSES = "('open', 'investigating', 'resolved', 'false_positive', 'ignored')"

# ─── 1. Organizations ──────────────────────────────────────────────────────


class Organization(Base):
    __tablename__ = "organizations"

    organization_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)
    settings = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_organization_status"),
    )

    locations = relationship("Location", back_populates="organization", cascade="all, delete-orphan")
    bottles = relationship("Bottle", back_populates="organization", cascade="all, delete-orphan")


# ─── 2. Locations ──────────────────────────────────────────────────────────


class Location(Base):
    __tablename__ = "locations"

    location_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    name = Column(String(255), nullable=False)
    code = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_locations_organization", "organization_id"),)

    organization = relationship("Organization", back_populates="locations")


# ─── 3. Bottles (trackable units) ──────────────────────────────────────────


class Bottle(Base):
    __tablename__ = "bottles"

    bottle_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    location_id = Column(GUID(), ForeignKey("locations.location_id"), nullable=True)
    rfid_tag = Column(String(64), nullable=False, unique=True)
    brand = Column(String(255), nullable=False)
    product = Column(String(255), nullable=False)
    bottle_type = Column(String(30), nullable=False, default="other")
    size = Column(String(20), nullable=False, default="750ml")
    cost_price = Column(Float)
    retail_price = Column(Float)
    current_quantity = Column(Float, nullable=False, default=1.0)  # partial bottles allowed
    status = Column(String(20), nullable=False, default="active")
    last_scanned = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_bottles_organization_status", "organization_id", "status"),
        Index("ix_bottles_organization_brand", "organization_id", "brand"),
        CheckConstraint("status IN ('active', 'depleted', 'missing', 'damaged')", name="ck_bottle_status"),
        CheckConstraint("current_quantity >= 0", name="ck_bottle_quantity_non_negative"),
    )

    organization = relationship("Organization", back_populates="bottles")


# ─── 4. POS Transactions ───────────────────────────────────────────────────


class PosTransaction(Base):
    __tablename__ = "pos_transactions"

    transaction_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    external_transaction_id = Column(String(255), nullable=False)
    transaction_date = Column(DateTime, nullable=False)
    items = Column(JSON, nullable=False, default=list)  # [{"name": "Grey Goose Martini", "quantity": 1}]
    total_amount = Column(Float)
    staff_member = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_pos_transactions_org_date", "organization_id", "transaction_date"),
        UniqueConstraint("organization_id", "external_transaction_id", name="uq_pos_transaction_external"),
    )


# ─── 5. RFID Scan Events ───────────────────────────────────────────────────


class ScanEvent(Base):
    __tablename__ = "scan_events"

    scan_event_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    bottle_id = Column(GUID(), ForeignKey("bottles.bottle_id"), nullable=False)
    session_id = Column(GUID(), nullable=True)
    scanned_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    quantity = Column(Float)  # observed fill level, when the reader reports one

    __table_args__ = (Index("ix_scan_events_bottle_time", "organization_id", "bottle_id", "scanned_at"),)


# ─── 6. Performance Metrics (daily rollups) ────────────────────────────────


class PerformanceMetric(Base):
    __tablename__ = "performance_metrics"

    metric_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    location_id = Column(GUID(), ForeignKey("locations.location_id"), nullable=True)
    date = Column(Date, nullable=False)
    total_bottles_sold = Column(Float, nullable=False, default=0.0)
    total_bottles_missing = Column(Integer, nullable=False, default=0)
    theft_incidents = Column(Integer, nullable=False, default=0)
    variance_detections = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_performance_metrics_org_date", "organization_id", "date"),
        UniqueConstraint("organization_id", "date", "location_id", name="uq_performance_metric_day"),
    )


# ─── 7. Variance Detections ────────────────────────────────────────────────


class VarianceDetection(Base):
    __tablename__ = "variance_detections"

    detection_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    bottle_id = Column(GUID(), ForeignKey("bottles.bottle_id"), nullable=True)
    location_id = Column(GUID(), ForeignKey("locations.location_id"), nullable=True)
    brand = Column(String(255))
    product = Column(String(255))
    detection_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    detected_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expected_quantity = Column(Float)
    actual_quantity = Column(Float)
    variance_amount = Column(Float)
    pos_sales_count = Column(Integer, nullable=False, default=0)
    rfid_scan_count = Column(Integer, nullable=False, default=0)
    confidence_score = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default="open")
    notes = Column(Text)
    resolved_at = Column(DateTime)
    resolved_by = Column(GUID(), nullable=True)
    detection_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_variance_detections_org_detected", "organization_id", "detected_at"),
        Index("ix_variance_detections_org_status", "organization_id", "status"),
        Index("ix_variance_detections_bottle", "bottle_id"),
        CheckConstraint(f"detection_type IN {DETECTION_TYPES}", name="ck_variance_detection_type"),
        CheckConstraint(f"severity IN {SEVERITY_LEVELS}", name="ck_variance_severity"),
        CheckConstraint(f"status IN {DETECTION_STATUSES}", name="ck_variance_status"),
        CheckConstraint("confidence_score >= 0 AND confidence_score <= 1", name="ck_variance_confidence_range"),
    )


# ─── 8. Activity Logs ──────────────────────────────────────────────────────


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    activity_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    actor_id = Column(GUID(), nullable=True)  # None for scheduled / automated writes
    action = Column(String(100), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(GUID(), nullable=True)
    activity_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_activity_logs_org_time", "organization_id", "created_at"),)


# ─── 9. Menu Items ─────────────────────────────────────────────────────────


class MenuItem(Base):
    __tablename__ = "menu_items"

    menu_item_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    organization_id = Column(GUID(), ForeignKey("organizations.organization_id"), nullable=False)
    external_item_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    price = Column(Float)
    ingredients = Column(JSON, nullable=False, default=list)  # [{"bottle_id": "...", "quantity_oz": 1.5}]
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_menu_items_organization", "organization_id"),
        UniqueConstraint("organization_id", "external_item_id", name="uq_menu_item_external"),
    )
