"""
Lead Ingestion Celery Tasks

Beat-scheduled lead processing passes and inbox stats reporting.
"""
import logging
from celery import current_task
from backend.tasks.celery_app import celery_app
from backend.tasks.db_session_manager import get_celery_db_session, get_task_session_factory
from backend.core.config import get_settings
from backend.services.lead_ingestion_job import run_lead_processing_pass
from backend.services.lead_stats_service import get_lead_stats_service
from backend.services.system_metrics import get_system_metrics_service

logger = logging.getLogger(__name__)


@celery_app.task(name="backend.tasks.lead_ingestion_tasks.process_meta_leads", bind=True)
def process_meta_leads(self, batch_size: int = None):
    """
    Run one lead processing pass: stale recovery, processing, stats.

    Overlapping runs are safe; each lead can only be claimed once.

    Returns:
        Dict with the pass summary
    """
    task_id = current_task.request.id if current_task else "manual"
    try:
        logger.info(f"Starting lead processing pass (task_id: {task_id})")
        result = run_lead_processing_pass(session_factory=get_task_session_factory(), batch_size=batch_size)
        return {
            "status": "completed",
            "task_id": task_id,
            **result,
        }

    except Exception as e:
        logger.error(f"Lead processing pass failed: {e}", exc_info=True)
        return {
            "status": "failed",
            "task_id": task_id,
            "success": False,
            "error": str(e),
        }


@celery_app.task(name="backend.tasks.lead_ingestion_tasks.report_lead_inbox_stats", bind=True)
def report_lead_inbox_stats(self):
    """Publish inbox depth gauges and log a summary"""
    task_id = current_task.request.id if current_task else "manual"
    try:
        settings = get_settings()
        with get_celery_db_session(read_only=True) as db:
            stats = get_lead_stats_service().get_processing_stats(
                db,
                recent_errors_limit=settings.lead_recent_errors_limit,
            )

        counts = {key: value for key, value in stats.items() if isinstance(value, int)}
        get_system_metrics_service().update_inbox_depth(counts)

        if stats["failed"]:
            logger.warning(f"Lead inbox has {stats['failed']} failed leads awaiting operator action")
        logger.info(f"Lead inbox stats: {counts}")

        return {"status": "completed", "task_id": task_id, "stats": counts}

    except Exception as e:
        logger.error(f"Lead inbox stats report failed: {e}")
        return {"status": "failed", "task_id": task_id, "error": str(e)}
