"""
Lead Ingestion Prometheus Metrics

Metrics for the lead ingestion pipeline covering:
- Inbound webhook deliveries and signature checks
- Per-lead processing outcomes and latency
- Stale-lock recoveries
- Inbox depth by state
"""

import logging
import time
from typing import Dict, Optional
from prometheus_client import Counter, Histogram, Gauge, REGISTRY, generate_latest

logger = logging.getLogger(__name__)

# ============================================================================
# Ingestion
# ============================================================================

LEAD_WEBHOOK_EVENTS = Counter(
    'lead_webhook_events_total',
    'Inbound lead webhook events by outcome',
    ['platform', 'outcome']  # stored, duplicate, unknown_page, ignored
)

LEAD_WEBHOOK_SIGNATURE_VALIDATIONS = Counter(
    'lead_webhook_signature_validations_total',
    'Lead webhook signature validation results',
    ['platform', 'validation_result']
)

# ============================================================================
# Processing
# ============================================================================

LEAD_PROCESSING_OUTCOMES = Counter(
    'lead_processing_outcomes_total',
    'Lead processing attempts by outcome',
    ['platform', 'outcome']  # completed, duplicate, requeued, failed, timed_out, lock_lost
)

LEAD_PROCESSING_LATENCY = Histogram(
    'lead_processing_latency_seconds',
    'Time spent processing a single lead',
    ['platform', 'outcome'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, float('inf')]
)

LEAD_STALE_RECOVERIES = Counter(
    'lead_stale_recoveries_total',
    'Leads returned to pending after their processing lock went stale'
)

LEAD_PROCESSING_PASSES = Counter(
    'lead_processing_passes_total',
    'Scheduled lead processing passes by result',
    ['result']  # success, error
)

# ============================================================================
# Inbox state
# ============================================================================

LEAD_INBOX_DEPTH = Gauge(
    'lead_inbox_depth',
    'Current number of inbox leads by state',
    ['state']
)


class SystemMetricsService:
    """Service for recording lead ingestion metrics"""

    def __init__(self):
        self.start_time = time.time()
        logger.info("Lead metrics service initialized")

    def track_webhook_event(self, platform: str, outcome: str, count: int = 1):
        if count > 0:
            LEAD_WEBHOOK_EVENTS.labels(platform=platform, outcome=outcome).inc(count)

    def track_signature_validation(self, platform: str, validation_result: str):
        LEAD_WEBHOOK_SIGNATURE_VALIDATIONS.labels(
            platform=platform,
            validation_result=validation_result
        ).inc()

    def track_lead_outcome(self, platform: str, outcome: str, duration_seconds: Optional[float] = None):
        """Track a single lead processing attempt"""
        LEAD_PROCESSING_OUTCOMES.labels(platform=platform, outcome=outcome).inc()
        if duration_seconds is not None:
            LEAD_PROCESSING_LATENCY.labels(platform=platform, outcome=outcome).observe(duration_seconds)

    def track_stale_recoveries(self, count: int):
        if count > 0:
            LEAD_STALE_RECOVERIES.inc(count)

    def track_processing_pass(self, result: str):
        LEAD_PROCESSING_PASSES.labels(result=result).inc()

    def update_inbox_depth(self, counts: Dict[str, int]):
        """Publish the latest per-state counts from a stats report"""
        for state, value in counts.items():
            LEAD_INBOX_DEPTH.labels(state=state).set(value)

    def get_prometheus_metrics(self) -> bytes:
        """Metrics in Prometheus exposition format"""
        return generate_latest(REGISTRY)


_system_metrics_service: Optional[SystemMetricsService] = None


def get_system_metrics_service() -> SystemMetricsService:
    """Get the global system metrics service instance"""
    global _system_metrics_service
    if _system_metrics_service is None:
        _system_metrics_service = SystemMetricsService()
    return _system_metrics_service
