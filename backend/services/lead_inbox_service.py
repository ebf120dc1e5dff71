"""
Lead Inbox Service

Durable queue of inbound leads. Every state change is a single conditional
UPDATE so that concurrent workers, schedulers and the stale-lock recovery
can never move the same lead twice:

    pending -> processing            claim (exactly one winner)
    processing -> completed          only by the worker holding the lock
    processing -> pending | failed   failure handling, by the lock holder
    processing -> pending            stale recovery, lock expired

Requeued leads wait out an exponential backoff (next_attempt_at) before
they can be claimed again.
    failed -> pending                operator retry
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.db.models import LeadEvent, LeadSourcePlatform, LeadState, utc_now

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


class LeadLockLostError(Exception):
    """The worker no longer holds the processing lock for a lead"""

    def __init__(self, lead_id: int, worker_id: str):
        self.lead_id = lead_id
        self.worker_id = worker_id
        super().__init__(f"Lead {lead_id} is no longer locked by {worker_id}")


def _truncate_error(error: str) -> str:
    error = error or "Unknown error"
    return error if len(error) <= MAX_ERROR_LENGTH else error[:MAX_ERROR_LENGTH - 3] + "..."


def retry_backoff_seconds(retry_count: int, base_seconds: float, max_seconds: float) -> float:
    """Delay before attempt number retry_count + 1: base, 2x base, 4x base, ... capped"""
    if retry_count <= 0 or base_seconds <= 0:
        return 0.0
    return min(base_seconds * (2 ** (retry_count - 1)), max_seconds)


class LeadInboxService:
    """Persistence and state machine for LeadEvent rows"""

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest_lead(
        self,
        db: Session,
        organization_id: str,
        external_lead_id: str,
        page_id: str,
        form_id: Optional[str] = None,
        raw_fields: Optional[Iterable[Sequence[str]]] = None,
        ad_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        source_platform: str = LeadSourcePlatform.META.value,
    ) -> Tuple[LeadEvent, bool]:
        """
        Store an inbound lead as pending, deduplicating on the external id.

        Returns:
            (lead, is_new). A repeated delivery returns the existing row untouched,
            whatever its state.
        """
        existing = self.get_by_external_id(db, organization_id, external_lead_id, source_platform)
        if existing is not None:
            logger.info(f"Duplicate delivery for lead {external_lead_id} (state {existing.state}), ignoring")
            return existing, False

        lead = LeadEvent(
            organization_id=organization_id,
            source_platform=source_platform,
            source_page_id=page_id,
            source_form_id=form_id or None,
            external_lead_id=external_lead_id,
            ad_id=ad_id,
            campaign_id=campaign_id,
            raw_fields=[[str(k), "" if v is None else str(v)] for k, v in (raw_fields or [])],
            payload=payload,
            state=LeadState.PENDING.value,
            retry_count=0,
        )

        try:
            db.add(lead)
            db.commit()
        except IntegrityError:
            # Concurrent delivery of the same lead won the insert
            db.rollback()
            existing = self.get_by_external_id(db, organization_id, external_lead_id, source_platform)
            if existing is None:
                raise
            return existing, False

        logger.info(f"Stored lead {external_lead_id} for org {organization_id} as pending (id {lead.id})")
        return lead, True

    def get_by_external_id(
        self,
        db: Session,
        organization_id: str,
        external_lead_id: str,
        source_platform: str = LeadSourcePlatform.META.value,
    ) -> Optional[LeadEvent]:
        return (
            db.query(LeadEvent)
            .filter(
                LeadEvent.organization_id == organization_id,
                LeadEvent.source_platform == source_platform,
                LeadEvent.external_lead_id == external_lead_id,
            )
            .first()
        )

    # ------------------------------------------------------------------
    # Claiming and completion
    # ------------------------------------------------------------------

    def select_pending_ids(
        self,
        db: Session,
        limit: int,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[int]:
        """Ids of pending leads whose retry backoff has elapsed, oldest first"""
        now = now or utc_now()
        query = db.query(LeadEvent.id).filter(
            LeadEvent.state == LeadState.PENDING.value,
            or_(LeadEvent.next_attempt_at.is_(None), LeadEvent.next_attempt_at <= now),
        )
        if organization_id:
            query = query.filter(LeadEvent.organization_id == organization_id)
        rows = query.order_by(LeadEvent.created_at, LeadEvent.id).limit(limit).all()
        return [row[0] for row in rows]

    def claim_lead(self, db: Session, lead_id: int, worker_id: str, now: Optional[datetime] = None) -> bool:
        """
        Atomically move a lead from pending to processing.

        Returns:
            True only for the caller whose update matched the pending row
        """
        now = now or utc_now()
        updated = (
            db.query(LeadEvent)
            .filter(LeadEvent.id == lead_id, LeadEvent.state == LeadState.PENDING.value)
            .update(
                {
                    LeadEvent.state: LeadState.PROCESSING.value,
                    LeadEvent.locked_at: now,
                    LeadEvent.locked_by: worker_id,
                    LeadEvent.next_attempt_at: None,
                    LeadEvent.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        return updated == 1

    def mark_completed(
        self,
        db: Session,
        lead_id: int,
        worker_id: str,
        contact_id: Optional[str],
        opportunity_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> None:
        """
        Complete a lead in the caller's transaction.

        Raises:
            LeadLockLostError: The lead was recovered or re-claimed meanwhile;
                the caller must roll back its contact work
        """
        now = now or utc_now()
        updated = (
            db.query(LeadEvent)
            .filter(
                LeadEvent.id == lead_id,
                LeadEvent.state == LeadState.PROCESSING.value,
                LeadEvent.locked_by == worker_id,
            )
            .update(
                {
                    LeadEvent.state: LeadState.COMPLETED.value,
                    LeadEvent.contact_id: contact_id,
                    LeadEvent.opportunity_id: opportunity_id,
                    LeadEvent.processed_at: now,
                    LeadEvent.last_error: None,
                    LeadEvent.locked_at: None,
                    LeadEvent.locked_by: None,
                    LeadEvent.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            raise LeadLockLostError(lead_id, worker_id)

    def record_failure(
        self,
        db: Session,
        lead_id: int,
        worker_id: str,
        error: str,
        retryable: bool,
        max_retries: int,
        now: Optional[datetime] = None,
        backoff_base_seconds: float = 0,
        backoff_max_seconds: float = 3600,
    ) -> Optional[str]:
        """
        Record a failed processing attempt.

        Non-retryable errors fail the lead immediately. Retryable errors send
        it back to pending with one more retry counted, until the budget is
        spent; the final failure keeps the count it reached. A requeued lead
        is not claimable again until its backoff delay has passed.

        Returns:
            The new state, or None if the worker no longer holds the lock
        """
        now = now or utc_now()
        lead = db.query(LeadEvent).filter(LeadEvent.id == lead_id).first()
        if lead is None or lead.state != LeadState.PROCESSING.value or lead.locked_by != worker_id:
            logger.warning(f"Not recording failure for lead {lead_id}: lock no longer held by {worker_id}")
            return None

        values = {
            LeadEvent.last_error: _truncate_error(error),
            LeadEvent.locked_at: None,
            LeadEvent.locked_by: None,
            LeadEvent.updated_at: now,
        }
        if retryable and lead.retry_count < max_retries:
            new_state = LeadState.PENDING.value
            retry_count = lead.retry_count + 1
            delay = retry_backoff_seconds(retry_count, backoff_base_seconds, backoff_max_seconds)
            values[LeadEvent.retry_count] = retry_count
            values[LeadEvent.next_attempt_at] = now + timedelta(seconds=delay) if delay else None
        else:
            new_state = LeadState.FAILED.value
        values[LeadEvent.state] = new_state

        updated = (
            db.query(LeadEvent)
            .filter(
                LeadEvent.id == lead_id,
                LeadEvent.state == LeadState.PROCESSING.value,
                LeadEvent.locked_by == worker_id,
            )
            .update(values, synchronize_session=False)
        )
        db.commit()
        if updated != 1:
            return None
        return new_state

    # ------------------------------------------------------------------
    # Recovery and operator actions
    # ------------------------------------------------------------------

    def recover_stale_processing_leads(
        self,
        db: Session,
        stale_after_seconds: int,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """
        Return leads stuck in processing (crashed or timed-out workers) to pending.

        The retry count and last error are left alone: a stale lock is not
        evidence of a failed attempt.
        """
        now = now or utc_now()
        threshold = now - timedelta(seconds=stale_after_seconds)
        recovered = (
            db.query(LeadEvent)
            .filter(
                LeadEvent.state == LeadState.PROCESSING.value,
                LeadEvent.locked_at < threshold,
            )
            .update(
                {
                    LeadEvent.state: LeadState.PENDING.value,
                    LeadEvent.locked_at: None,
                    LeadEvent.locked_by: None,
                    LeadEvent.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        if recovered:
            logger.warning(f"Recovered {recovered} leads stuck in processing for over {stale_after_seconds}s")
        return {"recovered": recovered}

    def get_failed_leads(
        self,
        db: Session,
        organization_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[LeadEvent], int]:
        query = db.query(LeadEvent).filter(LeadEvent.state == LeadState.FAILED.value)
        if organization_id:
            query = query.filter(LeadEvent.organization_id == organization_id)
        total = query.count()
        leads = query.order_by(LeadEvent.updated_at.desc(), LeadEvent.id.desc()).offset(offset).limit(limit).all()
        return leads, total

    def retry_failed_lead(self, db: Session, lead_id: int, organization_id: Optional[str] = None) -> bool:
        """Operator retry: failed -> pending with a fresh retry budget"""
        query = db.query(LeadEvent).filter(
            LeadEvent.id == lead_id,
            LeadEvent.state == LeadState.FAILED.value,
        )
        if organization_id:
            query = query.filter(LeadEvent.organization_id == organization_id)
        updated = query.update(self._retry_values(), synchronize_session=False)
        db.commit()
        if updated:
            logger.info(f"Lead {lead_id} queued for retry")
        return updated == 1

    def retry_all_failed_leads(self, db: Session, organization_id: str) -> int:
        updated = (
            db.query(LeadEvent)
            .filter(
                LeadEvent.organization_id == organization_id,
                LeadEvent.state == LeadState.FAILED.value,
            )
            .update(self._retry_values(), synchronize_session=False)
        )
        db.commit()
        logger.info(f"Queued {updated} failed leads for retry in org {organization_id}")
        return updated

    def _retry_values(self) -> Dict:
        return {
            LeadEvent.state: LeadState.PENDING.value,
            LeadEvent.retry_count: 0,
            LeadEvent.last_error: None,
            LeadEvent.locked_at: None,
            LeadEvent.locked_by: None,
            LeadEvent.next_attempt_at: None,
            LeadEvent.updated_at: utc_now(),
        }


_lead_inbox_service: Optional[LeadInboxService] = None


def get_lead_inbox_service() -> LeadInboxService:
    """Get the lead inbox service instance"""
    global _lead_inbox_service
    if _lead_inbox_service is None:
        _lead_inbox_service = LeadInboxService()
    return _lead_inbox_service
