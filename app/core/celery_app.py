"""
Celery application: broker and result backend from settings.
Tasks are in app.workers.tasks (auto-release, call sweeps, notification dispatch).
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "app",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.workers.tasks.auto_release",
        "app.workers.tasks.calls",
        "app.workers.tasks.notifications",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=600,
    result_expires=86400,
    beat_schedule={
        "process-auto-release": {
            "task": "app.workers.tasks.auto_release.process_auto_release",
            "schedule": crontab(minute="*/5"),
        },
        "process-missed-calls": {
            "task": "app.workers.tasks.calls.process_missed_calls",
            "schedule": 30.0,
        },
        "process-stale-calls": {
            "task": "app.workers.tasks.calls.process_stale_calls",
            "schedule": 60.0,
        },
        "dispatch-notifications": {
            "task": "app.workers.tasks.notifications.dispatch_pending",
            "schedule": 5.0,
        },
    },
)
