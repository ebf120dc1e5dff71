"""
Meta lead operator endpoints

Lets operators inspect failed leads, put them back in the queue, and check
the health of an organization's lead intake.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from backend.api.lead_ingestion_cron import require_scheduler_secret
from backend.db.database import get_db
from backend.services.lead_inbox_service import get_lead_inbox_service
from backend.services.lead_stats_service import get_lead_stats_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/integrations/meta",
    tags=["meta-leads"],
    dependencies=[Depends(require_scheduler_secret)],
)


class RetryLeadsRequest(BaseModel):
    """Retry a single failed lead, or every failed lead of an organization"""
    lead_id: Optional[int] = Field(None, description="Failed lead to requeue")
    action: Optional[str] = Field(None, description="'retry-all' to requeue all failed leads")
    organization_id: Optional[str] = Field(None, description="Required for retry-all")

    @model_validator(mode="after")
    def _check_target(self) -> "RetryLeadsRequest":
        if self.action is not None:
            if self.action != "retry-all":
                raise ValueError("action must be 'retry-all'")
            if not self.organization_id:
                raise ValueError("organization_id is required for retry-all")
        elif self.lead_id is None:
            raise ValueError("Either lead_id or action is required")
        return self


@router.get("/failed-leads")
def list_failed_leads(
    organization_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """List failed leads with their last error, newest first"""
    leads, total = get_lead_inbox_service().get_failed_leads(db, organization_id, limit, offset)
    stats = get_lead_stats_service().get_processing_stats(
        db,
        organization_id=organization_id,
        recent_errors_limit=0,
    )
    stats.pop("recent_errors", None)

    return {
        "leads": [lead.to_dict() for lead in leads],
        "total": total,
        "stats": stats,
        "pagination": {
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(leads) < total,
        },
    }


@router.post("/failed-leads")
def retry_failed_leads(request: RetryLeadsRequest, db: Session = Depends(get_db)):
    """Requeue failed leads with a fresh retry budget"""
    inbox = get_lead_inbox_service()

    if request.action == "retry-all":
        count = inbox.retry_all_failed_leads(db, request.organization_id)
        return {"success": True, "message": f"Queued {count} leads for retry", "count": count}

    if not inbox.retry_failed_lead(db, request.lead_id, request.organization_id):
        raise HTTPException(status_code=404, detail="Failed lead not found")
    return {"success": True, "message": "Lead queued for retry", "count": 1}


@router.get("/health")
def integration_health(
    organization_id: str = Query(...),
    db: Session = Depends(get_db),
):
    """Lead intake health for one organization"""
    return get_lead_stats_service().get_integration_health(db, organization_id)
