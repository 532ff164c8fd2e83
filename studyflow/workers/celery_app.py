"""
Celery application instance and configuration.
"""

from celery import Celery
from celery.schedules import crontab

from studyflow.core.config import settings
from studyflow.core.logging import setup_logging

# Create Celery application
celery_app = Celery(
    "studyflow",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

# Configure Celery
celery_app.conf.update(
    task_serializer=settings.CELERY_TASK_SERIALIZER,
    result_serializer=settings.CELERY_RESULT_SERIALIZER,
    accept_content=settings.celery_accept_content_list,
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=settings.CELERY_ENABLE_UTC,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    result_expires=3600,  # 1 hour
    worker_hijack_root_logger=False,  # structlog owns the root logger
)

# Celery Beat Schedule (Periodic Tasks)
celery_app.conf.beat_schedule = {
    'process-pipeline-queue': {
        'task': 'pipeline.process_queue',
        'schedule': settings.QUEUE_POLL_INTERVAL_SECONDS,
        'options': {'queue': 'pipeline'},
    },
    'recover-stale-jobs': {
        'task': 'pipeline.recover_stale_jobs',
        'schedule': settings.RECOVERY_SWEEP_INTERVAL_SECONDS,
        'options': {'queue': 'pipeline'},
    },
    'get-queue-stats': {
        'task': 'pipeline.get_queue_stats',
        'schedule': crontab(minute='*/15'),  # Every 15 minutes
        'options': {'queue': 'monitoring'},
    },
}

# Task routing
celery_app.conf.task_routes = {
    'pipeline.*': {'queue': 'pipeline'},
}

setup_logging()

# Auto-discover tasks from studyflow.tasks
celery_app.autodiscover_tasks(['studyflow.tasks'], related_name='pipeline_tasks')
