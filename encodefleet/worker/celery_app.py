"""Celery app bootstrap (AWS SQS broker): the beat-driven alternative to the orchestrator threads."""

from __future__ import annotations

from datetime import timedelta

from celery import Celery

from encodefleet.core.config import get_settings


settings = get_settings()

QUEUE_PREFIX = (settings.CELERY_QUEUE_PREFIX or "encodefleet-").strip()
# The SQS transport prefixes queue names, so the real queue is "<prefix>control".
DEFAULT_QUEUE = "control"

celery_app = Celery(
    "encodefleet",
    broker=(settings.CELERY_BROKER_URL or "sqs://").strip(),
    include=["encodefleet.worker.tasks"],
)

transport_options: dict = {
    "region": (settings.AWS_REGION or "").strip(),
    "queue_name_prefix": QUEUE_PREFIX,
    "visibility_timeout": int(settings.CELERY_VISIBILITY_TIMEOUT),
    "polling_interval": float(settings.CELERY_POLLING_INTERVAL),
    "wait_time_seconds": int(settings.CELERY_WAIT_TIME_SECONDS),
}

default_queue_url = (settings.SQS_DEFAULT_QUEUE_URL or "").strip()
if default_queue_url:
    transport_options["predefined_queues"] = {
        DEFAULT_QUEUE: {"url": default_queue_url},
    }

celery_app.conf.update(
    broker_transport_options=transport_options,
    task_default_queue=DEFAULT_QUEUE,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
)

# =============================================================================
# Celery Beat Schedule - control loop ticks
# =============================================================================

# Ticks expire after one interval.
celery_app.conf.beat_schedule = {
    "dispatch-tick": {
        "task": "encodefleet.worker.tasks.dispatch_tick",
        "schedule": timedelta(seconds=settings.DISPATCH_INTERVAL_SECONDS),
        "options": {"queue": DEFAULT_QUEUE, "expires": settings.DISPATCH_INTERVAL_SECONDS},
    },
    "autoscale-tick": {
        "task": "encodefleet.worker.tasks.autoscale_tick",
        "schedule": timedelta(seconds=settings.AUTOSCALE_INTERVAL_SECONDS),
        "options": {"queue": DEFAULT_QUEUE, "expires": settings.AUTOSCALE_INTERVAL_SECONDS},
    },
}
