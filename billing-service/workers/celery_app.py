"""
Celery application configuration
"""

from celery import Celery  # type: ignore[import-untyped]
from celery.signals import task_prerun, task_postrun, task_retry  # type: ignore[import-untyped]
from celery.schedules import crontab  # type: ignore[import-untyped]
import logging

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration

from config.settings import settings

logger = logging.getLogger(__name__)

if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.service_name}@{settings.version}",
        integrations=[CeleryIntegration()],
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )

# Create Celery app
celery_app = Celery(
    "billing-webhook-worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["workers.tasks", "workers.cleanup_tasks"],
)

# Configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=settings.celery_task_time_limit,
    task_soft_time_limit=settings.celery_task_soft_time_limit,
    worker_prefetch_multiplier=1,  # Only fetch one task at a time
    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=True,  # Requeue if worker dies
    # Countdown tasks wait days on the broker; keep them from being redelivered early
    broker_transport_options={
        "visibility_timeout": settings.upgrade_reminder_delay_seconds + 3600
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Purge old processed webhook event ids once per day at 3 AM
    "purge-processed-webhook-events": {
        "task": "cleanup.purge_processed_webhook_events",
        "schedule": crontab(hour=3, minute=0),
        "args": (settings.processed_event_retention_days,),
        "options": {"expires": 3600},
    },
}


# Task signals
@task_prerun.connect
def task_prerun_handler(
    sender=None, task_id=None, task=None, args=None, kwargs=None, **extra
):
    """Called before task execution"""
    logger.info(f"Task {task.name} [{task_id}] starting")


@task_postrun.connect
def task_postrun_handler(
    sender=None, task_id=None, task=None, args=None, kwargs=None, retval=None, **extra
):
    """Called after task execution"""
    logger.info(f"Task {task.name} [{task_id}] completed")


@task_retry.connect
def task_retry_handler(sender=None, request=None, reason=None, einfo=None, **extra):
    """Called when a task is scheduled for retry"""
    logger.warning(f"Task {sender.name} [{request.id}] retrying: {reason}")
