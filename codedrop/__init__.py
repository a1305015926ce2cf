from celery import Celery

from .config import CELERY_BROKER_URL, CELERY_RESULT_BACKEND

celery_app = Celery(
    "codedrop",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=["codedrop.cleanup"],
)

celery_app.conf.beat_schedule = {
    # Every 10 minutes purge downloaded or fully expired entries
    "purge-stale-entries": {
        "task": "codedrop.cleanup.purge_stale",
        "schedule": 600.0,
    },
}
