"""
Celery worker entry point.

The API package is mounted at /api in the worker image; its Celery app and
tasks are reused as-is.

    celery -A main worker -Q strava -c 1     # Strava sync queue (one scheduler)
    celery -A main beat                      # periodic sweep / batch sync / re-drive
"""
import sys

sys.path.insert(0, "/api")

from tasks import celery_app  # noqa: E402
from services.strava_rate_limiter import read_status  # noqa: E402


@celery_app.task(name="worker.health_check")
def health_check():
    """Liveness probe; also reports this worker's view of the Strava request window."""
    return {"status": "ok", "strava_window": read_status()}
