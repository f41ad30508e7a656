"""
Celery tasks for background processing.

Tasks are defined here and imported by both the API (to enqueue) and
the worker (to execute).

Strava work is routed to the "strava" queue. Run that queue with a single
worker process (-c 1) so one in-process request scheduler owns the rate
window.
"""
from celery import Celery, signals
from core.config import settings
from core.logging import setup_logging
from celerybeat_schedule import beat_schedule

# Create Celery app instance
celery_app = Celery(
    "event_scoring",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=60 * 60,  # a throttled batch sync can wait out several rate windows
    task_soft_time_limit=55 * 60,
    task_routes={"tasks.strava.*": {"queue": "strava"}},
    beat_schedule=beat_schedule,
)


@signals.setup_logging.connect
def configure_worker_logging(**kwargs):
    """Use the application JSON logging instead of Celery's default handlers."""
    setup_logging()


# Import tasks to register them
from . import strava_tasks  # noqa: E402

__all__ = ["celery_app"]
