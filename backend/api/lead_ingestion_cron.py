"""
Scheduler trigger for lead processing

Called on a fixed interval by an external scheduler (or manually) to run
one pass of stale-lock recovery, lead processing and stats. GET and POST
behave identically since some schedulers can only POST.
"""
import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from backend.core.config import Settings, get_settings
from backend.core.webhook_security import extract_bearer_token, verify_shared_secret
from backend.db.models import utc_now
from backend.services.lead_ingestion_job import run_lead_processing_pass

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["scheduler"])


def get_session_factory() -> Callable[[], Session]:
    """Session factory for handlers that open one session per unit of work"""
    from backend.db.database import SessionLocal
    return SessionLocal


def require_scheduler_secret(
    authorization: Optional[str] = Header(None),
    x_cron_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Accept the shared secret as a Bearer token or an X-Cron-Secret header"""
    provided = extract_bearer_token(authorization) or x_cron_secret
    if not verify_shared_secret(provided, settings):
        logger.warning("Unauthorized scheduler request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.api_route("/process-meta-leads", methods=["GET", "POST"])
def process_meta_leads(
    batch_size: Optional[int] = Query(None, ge=1, le=1000),
    settings: Settings = Depends(get_settings),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    _: None = Depends(require_scheduler_secret),
):
    """
    Run one lead processing pass.

    Returns the pass summary, or a 500 with {success: false, error} when the
    pass could not run (database unavailable and the like).
    """
    try:
        return run_lead_processing_pass(
            session_factory=session_factory,
            settings=settings,
            batch_size=batch_size,
        )
    except Exception as e:
        logger.error(f"Lead processing pass failed: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": str(e) or e.__class__.__name__,
                "timestamp": utc_now().isoformat(),
            },
        )
