"""Organization fan-out for Celery beat jobs."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select

from workers.celery_app import celery_app

logger = structlog.get_logger()

DEFAULT_ACTIVE_STATUSES = ("active", "trial")


async def list_organization_ids(session_factory, statuses: tuple[str, ...]) -> list[str]:
    from db.models import Organization

    async with session_factory() as db:
        result = await db.execute(
            select(Organization.organization_id)
            .where(Organization.status.in_(statuses))
            .order_by(Organization.created_at)
        )
        return [str(row.organization_id) for row in result.all()]


@celery_app.task(
    name="workers.scheduler.dispatch_active_tenants",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_tenants(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
):
    """
    Send an organization-scoped task once per organization whose status
    is in ``statuses`` (active and trial by default).
    """
    from core.config import get_settings
    from db.session import build_session_factory, create_engine_for_url

    run_id = self.request.id or "manual"
    payload = dict(task_kwargs or {})
    selected_statuses = tuple(statuses or DEFAULT_ACTIVE_STATUSES)

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    async def _dispatch():
        engine = create_engine_for_url(get_settings().database_url)
        try:
            organization_ids = await list_organization_ids(build_session_factory(engine), selected_statuses)

            for organization_id in organization_ids:
                kwargs = dict(payload)
                kwargs["organization_id"] = organization_id
                celery_app.send_task(task_name, kwargs=kwargs)

            summary = {
                "status": "success",
                "task_name": task_name,
                "organization_count": len(organization_ids),
                "dispatched_count": len(organization_ids),
                "statuses": list(selected_statuses),
                "triggered_at": datetime.now(timezone.utc).isoformat(),
                "run_id": run_id,
            }
            logger.info("scheduler.dispatch_complete", **summary)
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_dispatch())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
