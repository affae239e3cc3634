"""
Celery Application — Background jobs for the BQ cost engine.
Runs batch factor calculation, price snapshots and popularity aggregation
off the API process.

Beat schedule:
  aggregate_library_popularity — daily 02:00 UTC
"""
import os
from celery import Celery
from celery.schedules import crontab

BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

celery_app = Celery(
    "bqcost",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["bqcost.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=300,   # 5 minutes soft limit
    task_time_limit=600,        # 10 minutes hard limit
    result_expires=3600,        # Results expire after 1 hour
    # ── Beat schedule ────────────────────────────────────────────────────────
    beat_schedule={
        "aggregate-library-popularity-daily": {
            "task": "tasks.aggregate_library_popularity",
            "schedule": crontab(hour=2, minute=0),
            "options": {"expires": 3600},
        },
    },
)
