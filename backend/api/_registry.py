"""
Centralized router registry for all API endpoints
"""
from . import (
    lead_ingestion_cron,  # Scheduler trigger for lead processing
    meta_webhooks,  # Meta lead ads webhook receiver
    meta_failed_leads,  # Operator endpoints for failed leads
    monitoring_metrics,  # Prometheus scrape endpoint
)

ROUTERS = [
    lead_ingestion_cron.router,
    meta_webhooks.router,
    meta_failed_leads.router,
    monitoring_metrics.router,
]
