"""
Lead Processing Pass

One scheduled run of the lead pipeline: release stale locks, process a
batch of pending leads, then report inbox stats. Shared by the HTTP
scheduler trigger and the Celery beat task.
"""
import logging
import time
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from backend.core.config import Settings, get_settings
from backend.db.models import utc_now
from backend.integrations.meta_lead_client import MetaLeadClient
from backend.services.lead_inbox_service import get_lead_inbox_service
from backend.services.lead_processor import LeadProcessor
from backend.services.lead_stats_service import get_lead_stats_service
from backend.services.system_metrics import get_system_metrics_service

logger = logging.getLogger(__name__)


def run_lead_processing_pass(
    session_factory: Optional[Callable[[], Session]] = None,
    settings: Optional[Settings] = None,
    batch_size: Optional[int] = None,
    processor: Optional[LeadProcessor] = None,
    clock: Callable = utc_now,
) -> Dict[str, Any]:
    """
    Recover stale leads, process pending ones and collect stats.

    Per-lead failures are part of the summary. Infrastructure errors (database
    unreachable and the like) propagate to the caller.
    """
    if session_factory is None:
        from backend.db.database import SessionLocal
        session_factory = SessionLocal

    settings = settings or get_settings()
    batch_size = batch_size or settings.lead_batch_size
    lead_client = None
    if processor is None:
        lead_client = MetaLeadClient(settings)
        processor = LeadProcessor(
            session_factory=session_factory,
            settings=settings,
            lead_client=lead_client,
            clock=clock,
        )
    metrics = get_system_metrics_service()
    start = time.monotonic()

    try:
        recovered = _recover(session_factory, settings, clock)
        results = processor.process_pending_leads(batch_size)
        stats = _collect_stats(session_factory, settings, clock)
    except Exception:
        metrics.track_processing_pass("error")
        raise
    finally:
        if lead_client is not None:
            lead_client.close()

    metrics.track_processing_pass("success")
    metrics.track_stale_recoveries(recovered)
    metrics.update_inbox_depth({key: value for key, value in stats.items() if isinstance(value, int)})

    duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        f"Lead processing pass: {results['processed']} processed, {results['succeeded']} succeeded, "
        f"{results['failed']} failed, {recovered} recovered in {duration_ms}ms",
        extra={"duration_ms": duration_ms},
    )

    return {
        "success": True,
        **results,
        "recovered": recovered,
        "stats": stats,
        "durationMs": duration_ms,
        "timestamp": clock().isoformat(),
    }


def _recover(session_factory: Callable[[], Session], settings: Settings, clock: Callable) -> int:
    db = session_factory()
    try:
        result = get_lead_inbox_service().recover_stale_processing_leads(
            db, settings.lead_stale_processing_seconds, clock()
        )
    finally:
        db.close()
    return result["recovered"]


def _collect_stats(session_factory: Callable[[], Session], settings: Settings, clock: Callable) -> Dict[str, Any]:
    db = session_factory()
    try:
        return get_lead_stats_service().get_processing_stats(
            db,
            by_platform=True,
            recent_errors_limit=settings.lead_recent_errors_limit,
            now=clock(),
        )
    finally:
        db.close()
