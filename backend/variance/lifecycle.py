"""
Detection Review Lifecycle — investigator workflow over persisted detections.

Status transitions:
  open          → investigating | resolved | false_positive | ignored
  investigating → open | resolved | false_positive | ignored
  resolved | false_positive | ignored → open   (reopen)

Closing a detection stamps resolved_at / resolved_by; reopening clears them.
Every change is written to activity_logs with the acting user (None for
automated changes).
"""

import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ActivityLog, VarianceDetection
from variance.errors import DetectionNotFoundError, InvalidStatusTransitionError
from variance.models import DetectionStatus, DetectionType, Severity, utcnow

logger = structlog.get_logger()

CLOSED_STATUSES = {DetectionStatus.RESOLVED, DetectionStatus.FALSE_POSITIVE, DetectionStatus.IGNORED}

ALLOWED_TRANSITIONS: dict[DetectionStatus, set[DetectionStatus]] = {
    DetectionStatus.OPEN: {DetectionStatus.INVESTIGATING} | CLOSED_STATUSES,
    DetectionStatus.INVESTIGATING: {DetectionStatus.OPEN} | CLOSED_STATUSES,
    DetectionStatus.RESOLVED: {DetectionStatus.OPEN},
    DetectionStatus.FALSE_POSITIVE: {DetectionStatus.OPEN},
    DetectionStatus.IGNORED: {DetectionStatus.OPEN},
}


def can_transition(current: DetectionStatus, requested: DetectionStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, set())


async def list_detections(
    db: AsyncSession,
    organization_id: uuid.UUID,
    status: DetectionStatus | None = None,
    severity: Severity | None = None,
    detection_type: DetectionType | None = None,
    since: datetime | None = None,
    limit: int = 100,
) -> list[VarianceDetection]:
    """Stored detections for an organization, newest first."""
    query = select(VarianceDetection).where(VarianceDetection.organization_id == organization_id)
    if status:
        query = query.where(VarianceDetection.status == DetectionStatus(status).value)
    if severity:
        query = query.where(VarianceDetection.severity == Severity(severity).value)
    if detection_type:
        query = query.where(VarianceDetection.detection_type == DetectionType(detection_type).value)
    if since:
        query = query.where(VarianceDetection.detected_at >= since)

    query = query.order_by(VarianceDetection.detected_at.desc()).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def update_detection_status(
    db: AsyncSession,
    organization_id: uuid.UUID,
    detection_id: uuid.UUID,
    status: DetectionStatus,
    actor_id: uuid.UUID | None = None,
    notes: str | None = None,
) -> VarianceDetection:
    """Move a detection to a new review status and record who did it."""
    result = await db.execute(
        select(VarianceDetection).where(
            VarianceDetection.detection_id == detection_id,
            VarianceDetection.organization_id == organization_id,
        )
    )
    detection = result.scalar_one_or_none()
    if detection is None:
        raise DetectionNotFoundError(f"Variance detection {detection_id} not found")

    current = DetectionStatus(detection.status)
    requested = DetectionStatus(status)
    if not can_transition(current, requested):
        raise InvalidStatusTransitionError(current.value, requested.value)

    now = utcnow()
    detection.status = requested.value
    detection.updated_at = now
    if notes is not None:
        detection.notes = notes
    if requested in CLOSED_STATUSES:
        detection.resolved_at = now
        detection.resolved_by = actor_id
    else:
        detection.resolved_at = None
        detection.resolved_by = None

    db.add(
        ActivityLog(
            organization_id=organization_id,
            actor_id=actor_id,
            action=f"variance_{requested.value}",
            resource_type="variance_detection",
            resource_id=detection.detection_id,
            activity_metadata={"from_status": current.value, "to_status": requested.value, "notes": notes},
            created_at=now,
        )
    )
    await db.commit()

    logger.info(
        "variance.detection_status_changed",
        organization_id=str(organization_id),
        detection_id=str(detection_id),
        from_status=current.value,
        to_status=requested.value,
    )
    return detection
