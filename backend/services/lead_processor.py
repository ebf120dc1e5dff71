"""
Lead Processor

Works the pending leads in the inbox: picks a batch, then claims and turns
each lead into a contact, an opportunity and an attribution record in its routed
pipeline stage. Leads are processed independently in a thread pool, each
with its own database session, so one bad lead never holds up or rolls
back the others.

Failure policy:
- No routing rule for the lead's page/form: terminal, the lead is failed
  without spending retries.
- Anything else is treated as transient: the lead goes back to pending
  with its retry count raised and an exponential backoff delay, until the
  retry budget is spent.
- A lead that exceeds the per-lead timeout stays in processing and is
  picked up again by stale-lock recovery.
"""
import logging
import os
import socket
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from backend.core.config import Settings, get_settings
from backend.db.models import LeadEvent, LeadState, MetaPageConnection, utc_now
from backend.integrations.meta_lead_client import MetaLeadClient, parse_lead_fields
from backend.services.contact_store import ContactStore
from backend.services.field_mapping_service import FieldMappingService, get_field_mapping_service
from backend.services.lead_inbox_service import LeadInboxService, LeadLockLostError, get_lead_inbox_service
from backend.services.lead_normalizer import normalize
from backend.services.lead_routing_service import LeadRoutingService, get_lead_routing_service
from backend.services.system_metrics import get_system_metrics_service

logger = logging.getLogger(__name__)


class LeadProcessingError(Exception):
    """Base class for lead processing errors"""
    retryable = True


class NoRoutingRuleError(LeadProcessingError):
    """No active routing rule covers the lead's page and form"""
    retryable = False

    def __init__(self, page_id: str, form_id: Optional[str]):
        self.page_id = page_id
        self.form_id = form_id
        super().__init__(f"No routing rule configured for page {page_id} and form {form_id or '(none)'}")


class LeadOutcome(str, Enum):
    """Result of a single lead processing attempt"""
    COMPLETED = "completed"
    DUPLICATE = "duplicate"  # Already attributed, completed without new CRM writes
    REQUEUED = "requeued"
    FAILED = "failed"
    LOCK_LOST = "lock_lost"
    TIMED_OUT = "timed_out"


def new_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def empty_summary() -> Dict[str, int]:
    return {
        "processed": 0,
        "succeeded": 0,
        "failed": 0,
        "requeued": 0,
        "duplicates": 0,
        "lock_lost": 0,
        "timed_out": 0,
    }


class LeadProcessor:
    """Batch processor for pending inbox leads"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        settings: Optional[Settings] = None,
        contact_store: Optional[ContactStore] = None,
        lead_client: Optional[MetaLeadClient] = None,
        clock: Callable = utc_now,
        inbox: Optional[LeadInboxService] = None,
        routing: Optional[LeadRoutingService] = None,
        field_mappings: Optional[FieldMappingService] = None,
    ):
        if session_factory is None:
            from backend.db.database import SessionLocal
            session_factory = SessionLocal

        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.contact_store = contact_store or ContactStore(self.settings.lead_default_phone_country_code)
        self.lead_client = lead_client
        self.clock = clock
        self.inbox = inbox or get_lead_inbox_service()
        self.routing = routing or get_lead_routing_service()
        self.field_mappings = field_mappings or get_field_mapping_service()
        self.metrics = get_system_metrics_service()

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def process_pending_leads(
        self,
        batch_size: int,
        max_retries: Optional[int] = None,
        per_lead_timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
        organization_id: Optional[str] = None,
    ) -> Dict[str, int]:
        """
        Process up to batch_size pending leads, oldest first.

        Each lead is claimed by the worker thread right before it is worked
        on, so a lead waiting for a free thread stays pending and its lock
        age always measures real processing time. No new claims are made once
        the pass has used up its time budget.

        Returns:
            Summary counts. processed is the number of leads claimed by this
            pass; every claimed lead lands in exactly one of succeeded, failed,
            lock_lost or timed_out. requeued is the part of failed that went
            back to pending, duplicates the part of succeeded that was already
            attributed.
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        max_retries = self.settings.lead_max_retries if max_retries is None else max_retries
        per_lead_timeout = per_lead_timeout or self.settings.lead_processing_timeout_seconds
        max_workers = max_workers or self.settings.lead_processor_max_workers
        worker_id = new_worker_id()
        summary = empty_summary()

        candidates = self._select_candidates(batch_size, organization_id)
        if not candidates:
            return summary

        logger.info(f"Worker {worker_id} picked {len(candidates)} pending leads")
        self._run_batch(candidates, worker_id, max_retries, per_lead_timeout, max_workers, summary)

        logger.info(
            f"Lead batch done: {summary['processed']} claimed, {summary['succeeded']} succeeded, "
            f"{summary['failed']} failed ({summary['requeued']} requeued), {summary['timed_out']} timed out"
        )
        return summary

    def _select_candidates(self, batch_size: int, organization_id: Optional[str]) -> List[int]:
        db = self.session_factory()
        try:
            return self.inbox.select_pending_ids(db, batch_size, organization_id, now=self.clock())
        finally:
            db.close()

    def _claim(self, lead_id: int, worker_id: str) -> bool:
        db = self.session_factory()
        try:
            return self.inbox.claim_lead(db, lead_id, worker_id, self.clock())
        finally:
            db.close()

    def _run_batch(
        self,
        lead_ids: List[int],
        worker_id: str,
        max_retries: int,
        per_lead_timeout: float,
        max_workers: int,
        summary: Dict[str, int],
    ) -> None:
        workers = max(1, min(max_workers, len(lead_ids)))
        rounds = -(-len(lead_ids) // workers)
        claim_window = min(per_lead_timeout * rounds, self.settings.lead_batch_time_budget_seconds)
        claim_deadline = time.monotonic() + claim_window
        batch_deadline = claim_deadline + per_lead_timeout
        started: Dict[int, float] = {}
        lock = threading.Lock()

        def run(lead_id: int) -> Optional[LeadOutcome]:
            if time.monotonic() >= claim_deadline:
                return None
            # Another worker may have taken the lead since it was selected
            if not self._claim(lead_id, worker_id):
                return None
            with lock:
                started[lead_id] = time.monotonic()
            return self.process_lead(lead_id, worker_id, max_retries)

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lead-processor")
        try:
            futures: Dict[Future, int] = {executor.submit(run, lead_id): lead_id for lead_id in lead_ids}
            pending = set(futures)

            while pending:
                now = time.monotonic()
                with lock:
                    deadlines = [started[futures[f]] + per_lead_timeout for f in pending if futures[f] in started]
                next_deadline = min(deadlines + [batch_deadline])

                done, pending = wait(pending, timeout=max(0.0, next_deadline - now), return_when=FIRST_COMPLETED)
                for future in done:
                    outcome = self._future_outcome(future, futures[future])
                    if outcome is not None:
                        self._tally(summary, outcome)

                now = time.monotonic()
                expired = set()
                unclaimed = set()
                with lock:
                    for future in pending:
                        lead_started = started.get(futures[future])
                        if lead_started is None:
                            if now >= batch_deadline:
                                unclaimed.add(future)
                        elif now >= batch_deadline or now - lead_started >= per_lead_timeout:
                            expired.add(future)
                for future in expired:
                    future.cancel()
                    logger.warning(f"Lead {futures[future]} exceeded {per_lead_timeout}s, leaving it for stale recovery")
                    self.metrics.track_lead_outcome("meta", LeadOutcome.TIMED_OUT.value)
                    self._tally(summary, LeadOutcome.TIMED_OUT)
                for future in unclaimed:
                    # Never claimed, so the lead is still pending for the next pass
                    future.cancel()
                pending -= expired | unclaimed
        finally:
            # Hung workers are abandoned; their leads stay locked until recovery
            executor.shutdown(wait=False, cancel_futures=True)

    def _future_outcome(self, future: Future, lead_id: int) -> Optional[LeadOutcome]:
        try:
            return future.result()
        except Exception as e:
            logger.error(f"Unexpected error processing lead {lead_id}: {e}", exc_info=True)
            return LeadOutcome.FAILED

    @staticmethod
    def _tally(summary: Dict[str, int], outcome: LeadOutcome) -> None:
        summary["processed"] += 1
        if outcome in (LeadOutcome.COMPLETED, LeadOutcome.DUPLICATE):
            summary["succeeded"] += 1
            if outcome == LeadOutcome.DUPLICATE:
                summary["duplicates"] += 1
        elif outcome in (LeadOutcome.FAILED, LeadOutcome.REQUEUED):
            summary["failed"] += 1
            if outcome == LeadOutcome.REQUEUED:
                summary["requeued"] += 1
        elif outcome == LeadOutcome.LOCK_LOST:
            summary["lock_lost"] += 1
        elif outcome == LeadOutcome.TIMED_OUT:
            summary["timed_out"] += 1

    # ------------------------------------------------------------------
    # Single lead
    # ------------------------------------------------------------------

    def process_lead(self, lead_id: int, worker_id: str, max_retries: Optional[int] = None) -> LeadOutcome:
        """
        Process one claimed lead in its own session and transaction.

        Never raises: failures are recorded on the lead and reported as the outcome.
        """
        max_retries = self.settings.lead_max_retries if max_retries is None else max_retries
        start = time.monotonic()
        platform = "meta"
        db = self.session_factory()
        try:
            lead = db.query(LeadEvent).filter(LeadEvent.id == lead_id).first()
            if lead is None or lead.state != LeadState.PROCESSING.value or lead.locked_by != worker_id:
                logger.warning(f"Lead {lead_id} is no longer claimed by {worker_id}, skipping")
                outcome = LeadOutcome.LOCK_LOST
            else:
                platform = lead.source_platform
                outcome = self._process_claimed_lead(db, lead, worker_id)
        except LeadLockLostError as e:
            db.rollback()
            logger.warning(f"{e}; discarding contact changes")
            outcome = LeadOutcome.LOCK_LOST
        except Exception as e:
            db.rollback()
            outcome = self._handle_failure(db, lead_id, worker_id, e, max_retries)
        finally:
            db.close()

        self.metrics.track_lead_outcome(platform, outcome.value, time.monotonic() - start)
        return outcome

    def _process_claimed_lead(self, db: Session, lead: LeadEvent, worker_id: str) -> LeadOutcome:
        attribution = self.contact_store.find_attribution(
            db, lead.organization_id, lead.external_lead_id, lead.source_platform
        )
        if attribution is not None:
            self.inbox.mark_completed(
                db, lead.id, worker_id, attribution.contact_id, attribution.opportunity_id, self.clock()
            )
            db.commit()
            logger.info(f"Lead {lead.external_lead_id} already attributed to contact {attribution.contact_id}")
            return LeadOutcome.DUPLICATE

        raw_fields = self._ensure_raw_fields(db, lead)

        rule = self.routing.match_route(db, lead.organization_id, lead.source_page_id, lead.source_form_id)
        if rule is None:
            raise NoRoutingRuleError(lead.source_page_id, lead.source_form_id)

        mappings = self.field_mappings.get_effective_mappings(
            db, rule, include_defaults=self.settings.lead_apply_default_field_mappings
        )
        normalized = normalize(raw_fields, mappings, self.settings.lead_default_phone_country_code)

        attachment = self.contact_store.attach_lead(db, lead, rule, normalized)
        self.inbox.mark_completed(
            db, lead.id, worker_id, attachment.contact.id, attachment.opportunity.id, self.clock()
        )
        db.commit()

        logger.info(
            f"Lead {lead.external_lead_id} routed to pipeline {rule.target_pipeline_id} "
            f"stage {rule.target_stage_id} (contact {attachment.contact.id})"
        )
        return LeadOutcome.COMPLETED

    def _ensure_raw_fields(self, db: Session, lead: LeadEvent) -> List[Tuple[str, str]]:
        """Hydrate leads whose webhook carried no answers from the Graph API"""
        if lead.raw_fields or self.lead_client is None:
            return lead.field_pairs()

        connection = (
            db.query(MetaPageConnection)
            .filter(MetaPageConnection.page_id == lead.source_page_id, MetaPageConnection.is_active.is_(True))
            .first()
        )
        if connection is None or not connection.page_access_token:
            raise LeadProcessingError(f"No page access token available for page {lead.source_page_id}")
        if connection.organization_id != lead.organization_id:
            raise LeadProcessingError(
                f"Page {lead.source_page_id} belongs to organization {connection.organization_id}, "
                f"not {lead.organization_id}"
            )

        data = self.lead_client.fetch_lead(lead.external_lead_id, connection.page_access_token)
        pairs = parse_lead_fields(data.get("field_data"))

        lead.raw_fields = [[key, value] for key, value in pairs]
        lead.source_form_id = lead.source_form_id or data.get("form_id")
        lead.ad_id = lead.ad_id or data.get("ad_id")
        lead.campaign_id = lead.campaign_id or data.get("campaign_id")
        # Fetched answers are kept even if routing or the CRM writes fail
        db.commit()
        return pairs

    def _handle_failure(
        self,
        db: Session,
        lead_id: int,
        worker_id: str,
        error: Exception,
        max_retries: int,
    ) -> LeadOutcome:
        retryable = getattr(error, "retryable", True)
        message = str(error) or error.__class__.__name__
        if retryable:
            logger.warning(f"Transient failure processing lead {lead_id}: {message}")
        else:
            logger.error(f"Lead {lead_id} cannot be processed: {message}")

        try:
            new_state = self.inbox.record_failure(
                db, lead_id, worker_id, message, retryable, max_retries, self.clock(),
                backoff_base_seconds=self.settings.lead_retry_backoff_seconds,
                backoff_max_seconds=self.settings.lead_retry_backoff_max_seconds,
            )
        except Exception as e:
            db.rollback()
            logger.error(f"Could not record failure for lead {lead_id}, leaving it for stale recovery: {e}")
            return LeadOutcome.FAILED

        if new_state is None:
            return LeadOutcome.LOCK_LOST
        if new_state == LeadState.PENDING.value:
            return LeadOutcome.REQUEUED
        return LeadOutcome.FAILED
