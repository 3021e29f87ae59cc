"""Celery application instance.

Usage:
    celery -A deid_export.celery_app worker -Q research_exports --concurrency=1
    celery -A deid_export.celery_app worker -Q omop_exports --concurrency=1
    celery -A deid_export.celery_app worker -Q maintenance
    celery -A deid_export.celery_app beat
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from deid_export.config import settings
from deid_export.log import configure_logging

app = Celery(
    "deid_export",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # One export at a time per worker process
    worker_concurrency=1,
    task_routes={
        "deid_export.tasks.research_export.*": {"queue": "research_exports"},
        "deid_export.tasks.omop_export.*": {"queue": "omop_exports"},
        "deid_export.tasks.maintenance.*": {"queue": "maintenance"},
    },
    beat_schedule={
        "omop-nightly-export": {
            "task": "deid_export.tasks.omop_export.schedule_nightly_omop_export",
            "schedule": crontab(hour=settings.OMOP_NIGHTLY_HOUR_UTC, minute=0),
        },
        "reap-stale-exports": {
            "task": "deid_export.tasks.maintenance.reap_stale_exports",
            "schedule": crontab(minute="*/10"),
        },
    },
)


@worker_process_init.connect
def _init_worker_logging(**kwargs):
    configure_logging()


app.autodiscover_tasks(["deid_export.tasks"])

# Explicit imports to ensure tasks are always registered
import deid_export.tasks.research_export  # noqa: F401, E402
import deid_export.tasks.omop_export  # noqa: F401, E402
import deid_export.tasks.maintenance  # noqa: F401, E402
