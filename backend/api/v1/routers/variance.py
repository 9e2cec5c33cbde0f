"""
Variance Router — detection runs, brand risk, configuration and review.

Endpoints:
  GET   /api/v1/variance/config/default
  GET   /api/v1/organizations/{organization_id}/variance/config
  PUT   /api/v1/organizations/{organization_id}/variance/config
  POST  /api/v1/organizations/{organization_id}/variance/units/{unit_id}/analyze
  POST  /api/v1/organizations/{organization_id}/variance/analyze
  GET   /api/v1/organizations/{organization_id}/variance/brands
  POST  /api/v1/organizations/{organization_id}/variance/brands/analyze
  GET   /api/v1/organizations/{organization_id}/variance/brands/alerts
  GET   /api/v1/organizations/{organization_id}/variance/detections
  PATCH /api/v1/organizations/{organization_id}/variance/detections/{detection_id}
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_actor_id, get_config_source, get_db, get_detection_engine
from core.config import get_settings
from variance.alerts import build_brand_alerts
from variance.config import get_default_config, load_detection_config
from variance.engine import VarianceDetectionEngine
from variance.errors import (
    ConfigurationError,
    DetectionNotFoundError,
    InvalidStatusTransitionError,
    OrganizationNotFoundError,
)
from variance.lifecycle import list_detections, update_detection_status
from variance.models import (
    BrandAlertType,
    DetectionStatus,
    DetectionType,
    Severity,
    TrendIndicator,
    utcnow,
)
from variance.store import SqlConfigSource

logger = structlog.get_logger()

defaults_router = APIRouter(prefix="/api/v1/variance", tags=["variance"])
router = APIRouter(prefix="/api/v1/organizations/{organization_id}/variance", tags=["variance"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class VarianceResultResponse(BaseModel):
    unit_id: UUID
    organization_id: UUID
    detection_type: DetectionType
    severity: Severity
    expected_quantity: float
    actual_quantity: float
    variance_amount: float
    pos_sales_count: int
    rfid_scan_count: int
    confidence_score: float
    detected_at: datetime
    brand: str | None
    product: str | None
    location_id: UUID | None
    metadata: dict[str, Any]

    model_config = {"from_attributes": True}


class BrandVarianceResponse(BaseModel):
    brand: str
    product: str
    total_bottles: int
    bottles_with_variance: int
    total_variance_amount: float
    average_variance_amount: float
    highest_severity: Severity
    detection_types: dict[str, int]
    estimated_loss_value: float
    risk_score: float
    trend_indicator: TrendIndicator
    last_detection_date: datetime
    metadata: dict[str, Any]

    model_config = {"from_attributes": True}


class BrandAlertResponse(BaseModel):
    brand: str
    product: str
    alert_type: BrandAlertType
    severity: Severity
    risk_score: float
    estimated_loss_value: float
    trend_indicator: TrendIndicator
    affected_bottles: int
    total_bottles: int
    last_detection: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class DetectionResponse(BaseModel):
    detection_id: UUID
    organization_id: UUID
    bottle_id: UUID | None
    location_id: UUID | None
    brand: str | None
    product: str | None
    detection_type: DetectionType
    severity: Severity
    detected_at: datetime
    expected_quantity: float | None
    actual_quantity: float | None
    variance_amount: float | None
    pos_sales_count: int
    rfid_scan_count: int
    confidence_score: float
    status: DetectionStatus
    notes: str | None
    resolved_at: datetime | None
    resolved_by: UUID | None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="detection_metadata")

    model_config = {"from_attributes": True}


class DetectionStatusUpdate(BaseModel):
    status: DetectionStatus
    notes: str | None = None


# ─── Configuration ──────────────────────────────────────────────────────────


@defaults_router.get("/config/default")
async def get_default_detection_config() -> dict[str, Any]:
    """Default detection configuration, camelCase as stored."""
    return get_default_config().to_settings()


@router.get("/config")
async def get_detection_config(
    organization_id: UUID,
    config_source: SqlConfigSource = Depends(get_config_source),
) -> dict[str, Any]:
    config = await config_source.get_detection_config(organization_id)
    return config.to_settings()


@router.put("/config")
async def put_detection_config(
    organization_id: UUID,
    payload: dict[str, Any],
    config_source: SqlConfigSource = Depends(get_config_source),
    actor_id: UUID | None = Depends(get_actor_id),
) -> dict[str, Any]:
    """Validate and store an organization's detection configuration."""
    try:
        config = load_detection_config(payload)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    try:
        await config_source.save_detection_config(organization_id, config, actor_id=actor_id)
    except OrganizationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return config.to_settings()


# ─── Analysis ───────────────────────────────────────────────────────────────


@router.post("/units/{unit_id}/analyze", response_model=VarianceResultResponse | None)
async def analyze_unit(
    organization_id: UUID,
    unit_id: UUID,
    engine: VarianceDetectionEngine = Depends(get_detection_engine),
    actor_id: UUID | None = Depends(get_actor_id),
):
    """Analyze one bottle. ``null`` means no material, confident variance."""
    return await engine.analyze_unit(unit_id, organization_id, actor_id=actor_id)


@router.post("/analyze", response_model=list[VarianceResultResponse])
async def analyze_organization(
    organization_id: UUID,
    engine: VarianceDetectionEngine = Depends(get_detection_engine),
    actor_id: UUID | None = Depends(get_actor_id),
):
    """Analyze every active bottle in the organization."""
    results = await engine.analyze_organization(organization_id, actor_id=actor_id)
    logger.info("variance.api_organization_run", organization_id=str(organization_id), result_count=len(results))
    return results


@router.get("/brands", response_model=list[BrandVarianceResponse])
async def get_brand_variance(
    organization_id: UUID,
    lookback_days: int = Query(7, ge=1, le=365),
    engine: VarianceDetectionEngine = Depends(get_detection_engine),
):
    """Brand risk profiles from stored detections in the window, highest risk first."""
    return await engine.analyze_brand_variance(organization_id, lookback_days=lookback_days)


@router.post("/brands/analyze", response_model=list[BrandVarianceResponse])
async def analyze_brand_variance(
    organization_id: UUID,
    engine: VarianceDetectionEngine = Depends(get_detection_engine),
):
    """Run a fresh organization pass, store its detections and aggregate them by brand."""
    return await engine.analyze_brand_variance(organization_id)


@router.get("/brands/alerts", response_model=list[BrandAlertResponse])
async def get_brand_alerts(
    organization_id: UUID,
    lookback_days: int = Query(7, ge=1, le=365),
    engine: VarianceDetectionEngine = Depends(get_detection_engine),
):
    """Brand alerts for the window, flagging brands absent from the window before it."""
    brands = await engine.analyze_brand_variance(organization_id, lookback_days=lookback_days)

    previous_results = await engine.result_sink.load_variance_results(
        organization_id, since=utcnow() - timedelta(days=lookback_days * 2)
    )
    window_start = utcnow() - timedelta(days=lookback_days)
    previous_keys = {
        r.brand_key for r in previous_results if r.brand_key is not None and r.detected_at < window_start
    }
    return build_brand_alerts(
        brands,
        previous_keys=previous_keys,
        high_loss_value=get_settings().variance_high_loss_alert_value,
    )


# ─── Review ─────────────────────────────────────────────────────────────────


@router.get("/detections", response_model=list[DetectionResponse])
async def get_detections(
    organization_id: UUID,
    status: DetectionStatus | None = None,
    severity: Severity | None = None,
    detection_type: DetectionType | None = None,
    days: int | None = Query(None, ge=1, le=365),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """List stored detections with filters, newest first."""
    since = utcnow() - timedelta(days=days) if days else None
    return await list_detections(
        db,
        organization_id,
        status=status,
        severity=severity,
        detection_type=detection_type,
        since=since,
        limit=limit,
    )


@router.patch("/detections/{detection_id}", response_model=DetectionResponse)
async def patch_detection(
    organization_id: UUID,
    detection_id: UUID,
    update: DetectionStatusUpdate,
    db: AsyncSession = Depends(get_db),
    actor_id: UUID | None = Depends(get_actor_id),
):
    """Move a detection through the review workflow."""
    try:
        return await update_detection_status(
            db,
            organization_id,
            detection_id,
            update.status,
            actor_id=actor_id,
            notes=update.notes,
        )
    except DetectionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidStatusTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
