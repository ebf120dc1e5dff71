"""
Lead Processing Stats

Read-only reporting over the lead inbox: counts per state (optionally per
platform and organization), the most recent errors, and a simple health
summary for an organization's integration.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from backend.db.models import LeadEvent, LeadState, as_utc, utc_now

logger = logging.getLogger(__name__)

# Error rate thresholds for integration health
DEGRADED_ERROR_RATE = 0.2
DOWN_ERROR_RATE = 0.5


def _empty_counts() -> Dict[str, int]:
    counts = {state.value: 0 for state in LeadState}
    counts["total"] = 0
    return counts


class LeadStatsService:
    """Inbox statistics for operators and the scheduler response"""

    def get_processing_stats(
        self,
        db: Session,
        organization_id: Optional[str] = None,
        by_platform: bool = False,
        recent_errors_limit: int = 20,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Count leads by state and list recent errors.

        Returns:
            Dict with total, one key per state, recent_errors and, when
            by_platform is set, a by_platform breakdown
        """
        now = now or utc_now()

        query = db.query(LeadEvent.source_platform, LeadEvent.state, func.count(LeadEvent.id))
        if organization_id:
            query = query.filter(LeadEvent.organization_id == organization_id)
        rows = query.group_by(LeadEvent.source_platform, LeadEvent.state).all()

        stats = _empty_counts()
        platforms: Dict[str, Dict[str, int]] = {}
        for platform, state, count in rows:
            if state in stats:
                stats[state] += count
            stats["total"] += count
            platform_counts = platforms.setdefault(platform, _empty_counts())
            if state in platform_counts:
                platform_counts[state] += count
            platform_counts["total"] += count

        if by_platform:
            stats["by_platform"] = platforms

        stats["recent_errors"] = self.get_recent_errors(db, organization_id, recent_errors_limit, now)
        return stats

    def get_recent_errors(
        self,
        db: Session,
        organization_id: Optional[str] = None,
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Latest leads carrying an error, failed or waiting for a retry"""
        if limit <= 0:
            return []
        now = now or utc_now()

        query = db.query(LeadEvent).filter(
            LeadEvent.last_error.isnot(None),
            or_(
                LeadEvent.state == LeadState.FAILED.value,
                LeadEvent.state == LeadState.PENDING.value,
            ),
        )
        if organization_id:
            query = query.filter(LeadEvent.organization_id == organization_id)
        leads = query.order_by(LeadEvent.updated_at.desc(), LeadEvent.id.desc()).limit(limit).all()

        errors = []
        for lead in leads:
            created_at = as_utc(lead.created_at)
            errors.append({
                "id": lead.id,
                "organization_id": lead.organization_id,
                "external_lead_id": lead.external_lead_id,
                "state": lead.state,
                "attempts": lead.retry_count,
                "last_error": lead.last_error,
                "age_seconds": int((now - created_at).total_seconds()) if created_at else None,
            })
        return errors

    def get_integration_health(
        self,
        db: Session,
        organization_id: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Health summary of an organization's lead intake.

        Status is "down" above a 50% failure rate over the last 24 hours,
        "degraded" above 20%, else "healthy".
        """
        now = now or utc_now()
        base = db.query(LeadEvent).filter(LeadEvent.organization_id == organization_id)

        def count_since(delta: timedelta, state: Optional[str] = None) -> int:
            query = base.filter(LeadEvent.created_at >= now - delta)
            if state:
                query = query.filter(LeadEvent.state == state)
            return query.count()

        total_24h = count_since(timedelta(hours=24))
        failed_24h = count_since(timedelta(hours=24), LeadState.FAILED.value)
        error_rate = failed_24h / total_24h if total_24h else 0.0

        if error_rate > DOWN_ERROR_RATE:
            status = "down"
        elif error_rate > DEGRADED_ERROR_RATE:
            status = "degraded"
        else:
            status = "healthy"

        last_completed = (
            base.filter(LeadEvent.state == LeadState.COMPLETED.value)
            .order_by(LeadEvent.processed_at.desc())
            .first()
        )
        last_processed_at = as_utc(last_completed.processed_at) if last_completed else None

        return {
            "organization_id": organization_id,
            "status": status,
            "error_rate": round(error_rate, 4),
            "leads_last_hour": count_since(timedelta(hours=1)),
            "leads_last_24h": total_24h,
            "leads_last_7d": count_since(timedelta(days=7)),
            "failed_last_24h": failed_24h,
            "pending": base.filter(LeadEvent.state == LeadState.PENDING.value).count(),
            "last_processed_at": last_processed_at.isoformat() if last_processed_at else None,
            "checked_at": now.isoformat(),
        }


_lead_stats_service: Optional[LeadStatsService] = None


def get_lead_stats_service() -> LeadStatsService:
    """Get the lead stats service instance"""
    global _lead_stats_service
    if _lead_stats_service is None:
        _lead_stats_service = LeadStatsService()
    return _lead_stats_service
