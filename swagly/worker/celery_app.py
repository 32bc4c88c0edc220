"""
Celery Application Configuration
"""
from celery import Celery
from swagly.config import settings

# Create Celery app
celery_app = Celery(
    "swagly_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "swagly.worker.tasks"
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes max
    task_soft_time_limit=540,  # 9 minutes soft limit
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,  # Results expire after 1 hour
)

# Task routing
celery_app.conf.task_routes = {
    "swagly.worker.tasks.flag_stale_claims": {"queue": "reconciliation"},
    "swagly.worker.tasks.*": {"queue": "default"},
}

# Periodic reconciliation sweep
celery_app.conf.beat_schedule = {
    "flag-stale-claims": {
        "task": "swagly.worker.tasks.flag_stale_claims",
        "schedule": 300.0,
    },
}
