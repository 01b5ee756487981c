"""
Restock Workers — analysis runs and recovery.

Workers:
  1. run_restock_analysis: one RunAnalysis for a restock order
  2. recover_abandoned_analyses: fail runs stuck past the grace period

Schedule: recovery every 15 minutes (see celery_app.beat_schedule)
Queue: restock
"""

import asyncio
from datetime import datetime, timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError

from db.session import build_engine, build_session_factory
from workers.celery_app import celery_app

logger = structlog.get_logger()


def _analysis_summary(analysis) -> dict:
    return {
        "analysis_id": str(analysis.id),
        "restock_order_id": analysis.restock_order_id,
        "period_days": analysis.period_days,
        "analytics_date": analysis.analytics_date.isoformat(),
        "status": analysis.status,
        "ai_model": analysis.ai_model,
        "confidence_score": analysis.confidence_score,
        "summary": analysis.analysis_summary,
    }


@celery_app.task(
    name="workers.restock.run_restock_analysis",
    bind=True,
    max_retries=2,
    default_retry_delay=120,
    acks_late=True,
)
def run_restock_analysis(self, restock_order_id: str, period_days: int = 30, product_ids: list[str] | None = None):
    """
    Run the restock recommendation pipeline for one restock order.

    A repeated dispatch for the same order, period and day returns the
    existing analysis. Storage errors are retried; the interrupted run
    stays in processing until the recovery task fails it.
    """
    run_id = self.request.id or "manual"
    logger.info(
        "restock.worker.started",
        restock_order_id=restock_order_id,
        period_days=period_days,
        run_id=run_id,
    )

    async def _run():
        from core.config import get_restock_policy, get_settings
        from restock.ai_client import AIClassificationClient
        from restock.analysis import RestockAnalysisService

        settings = get_settings()
        engine = build_engine(settings)
        try:
            session_factory = build_session_factory(engine)
            ai_client = AIClassificationClient(settings) if settings.ai_enabled else None
            service = RestockAnalysisService(session_factory, ai_client, get_restock_policy(settings))
            analysis = await service.run_analysis(restock_order_id, period_days, product_ids=product_ids)
            return _analysis_summary(analysis)
        finally:
            await engine.dispose()

    try:
        result = asyncio.run(_run())
    except SQLAlchemyError as exc:
        logger.error("restock.worker.storage_error", restock_order_id=restock_order_id, error=str(exc))
        raise self.retry(exc=exc)

    logger.info("restock.worker.completed", run_id=run_id, **result)
    return result


@celery_app.task(
    name="workers.restock.recover_abandoned_analyses",
    bind=True,
    max_retries=1,
    default_retry_delay=60,
)
def recover_abandoned_analyses(self, grace_minutes: int | None = None):
    """Fail analyses abandoned in pending/processing. Never resumes them."""

    async def _recover():
        from core.config import get_restock_policy, get_settings
        from restock.analysis import RestockAnalysisService

        settings = get_settings()
        engine = build_engine(settings)
        try:
            session_factory = build_session_factory(engine)
            service = RestockAnalysisService(session_factory, policy=get_restock_policy(settings))
            grace = timedelta(minutes=grace_minutes) if grace_minutes is not None else None
            return await service.recover_abandoned_analyses(datetime.utcnow(), grace)
        finally:
            await engine.dispose()

    try:
        recovered = asyncio.run(_recover())
    except Exception as exc:
        logger.error("restock.worker.recovery_failed", error=str(exc))
        raise

    logger.info("restock.worker.recovery_completed", recovered=len(recovered))
    return {"status": "success", "recovered": [str(analysis_id) for analysis_id in recovered]}
