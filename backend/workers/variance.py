"""
Variance Scan Worker

Runs one organization's full variance pass on a schedule:
  1. Snapshot the brands detected in the previous week (for new-brand alerts)
  2. Analyze every active bottle; accepted results are persisted
  3. Aggregate the run by brand and publish brand alerts to Redis

A publish failure happens after detections are stored, so it is logged and
never retried; a retry would store every detection twice.
"""

from datetime import timedelta

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()

PREVIOUS_BRANDS_LOOKBACK_DAYS = 7


async def run_variance_pipeline(engine, organization_id, high_loss_value: float) -> dict:
    """Organization pass → brand aggregation → alert publishing."""
    from variance.alerts import build_brand_alerts, publish_brand_alerts
    from variance.engine import coerce_organization_id

    organization_id = coerce_organization_id(organization_id)
    since = engine.clock() - timedelta(days=PREVIOUS_BRANDS_LOOKBACK_DAYS)
    previous = await engine.result_sink.load_variance_results(organization_id, since=since)
    previous_keys = {r.brand_key for r in previous if r.brand_key is not None}

    results = await engine.analyze_organization(organization_id)
    brands = await engine.analyze_brand_variance(organization_id, results=results)
    alerts = build_brand_alerts(brands, previous_keys=previous_keys, high_loss_value=high_loss_value)
    try:
        subscribers = await publish_brand_alerts(alerts, organization_id)
        alerts_published = True
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "variance.alert_publish_failed",
            organization_id=str(organization_id),
            alert_count=len(alerts),
            error=str(exc),
        )
        subscribers = 0
        alerts_published = False

    return {
        "status": "success",
        "organization_id": str(organization_id),
        "detections": len(results),
        "brands": len(brands),
        "alerts": len(alerts),
        "subscribers": subscribers,
        "alerts_published": alerts_published,
    }


@celery_app.task(
    name="workers.variance.run_variance_scan",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def run_variance_scan(self, organization_id: str):
    """Scheduled variance scan for one organization."""
    import asyncio

    logger.info("variance.scan_started", organization_id=organization_id)

    async def _scan():
        from core.config import get_settings
        from db.session import build_session_factory, create_engine_for_url
        from variance.store import build_organization_detection_engine

        settings = get_settings()
        db_engine = create_engine_for_url(settings.database_url)
        try:
            detection_engine = await build_organization_detection_engine(
                build_session_factory(db_engine), organization_id, settings=settings
            )
            return await run_variance_pipeline(
                detection_engine,
                organization_id,
                high_loss_value=settings.variance_high_loss_alert_value,
            )
        finally:
            await db_engine.dispose()

    try:
        summary = asyncio.run(_scan())
        logger.info("variance.scan_completed", **summary)
        return summary
    except Exception as exc:  # noqa: BLE001
        logger.error("variance.scan_failed", organization_id=organization_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
