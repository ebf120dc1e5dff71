import os
from celery import Celery
from backend.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "lead_ingestion",
    broker=settings.get_celery_broker_url(),
    backend=settings.get_celery_result_backend(),
    include=[
        "backend.tasks.lead_ingestion_tasks",  # Scheduled lead processing passes
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=1800,  # 30 minutes
    task_track_started=True,
    task_time_limit=settings.lead_task_soft_time_limit_seconds + 120,
    task_soft_time_limit=settings.lead_task_soft_time_limit_seconds,  # Above the pass time budget

    worker_concurrency=int(os.getenv('CELERY_WORKER_CONCURRENCY', '2')),
    worker_prefetch_multiplier=1,  # A pass already works a whole batch
    worker_max_tasks_per_child=int(os.getenv('CELERY_MAX_TASKS_PER_CHILD', '100')),

    # Task acknowledgment configuration for reliability
    task_acks_late=True,  # Acknowledge tasks only after completion
    task_reject_on_worker_lost=True,  # Reject tasks if worker dies

    task_routes={
        'backend.tasks.lead_ingestion_tasks.*': {'queue': 'lead_ingestion'},
    },

    task_default_queue='default',
    task_default_exchange='default',
    task_default_routing_key='default',
    task_create_missing_queues=True,
)

celery_app.conf.task_queues = {
    'default': {
        'exchange': 'default',
        'routing_key': 'default',
        'durable': True,
        'auto_delete': False,
    },
    'lead_ingestion': {
        'exchange': 'lead_ingestion',
        'routing_key': 'lead_ingestion',
        'durable': True,
        'auto_delete': False,
    },
}

celery_app.conf.beat_schedule = {
    # Recover stale leads, process pending ones, publish stats
    'process-meta-leads': {
        'task': 'backend.tasks.lead_ingestion_tasks.process_meta_leads',
        'schedule': float(settings.lead_processing_interval_seconds),
        'options': {'queue': 'lead_ingestion', 'expires': settings.lead_processing_interval_seconds},
    },

    # Refresh inbox depth gauges between passes
    'report-lead-inbox-stats': {
        'task': 'backend.tasks.lead_ingestion_tasks.report_lead_inbox_stats',
        'schedule': 60.0 * 5,  # Every 5 minutes
        'options': {'queue': 'lead_ingestion', 'expires': 240},
    },
}
