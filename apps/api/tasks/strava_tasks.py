"""
Celery tasks for Strava synchronization.

These tasks run in the background worker to prevent blocking the API. All of
them share the worker process's request scheduler (get_scheduler()), which
throttles upstream calls; a task that hits the rate window simply waits.
"""
import logging
from typing import Dict, List, Optional

from celery import Task
from sqlalchemy.orm import Session

from core.database import get_db_sync
from core.exceptions import CredentialNotFound, RefreshFailed
from services.activity_cache import ActivityResponseCacheService
from services.activity_store import ActivityStore
from services.strava_sync import StravaSyncEngine
from services.strava_webhook import WebhookProcessor
from tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.strava.sync_user", bind=True)
def sync_user_task(self: Task, user_id: str) -> Dict:
    """
    Incremental sync for one user.

    Returns the SyncResult as a dict, or {"status": "error", ...} when the
    user's Strava credential is missing or cannot be refreshed.
    """
    db: Session = get_db_sync()
    try:
        result = StravaSyncEngine(db).sync_user(user_id)
        return result.to_dict()
    except (CredentialNotFound, RefreshFailed) as e:
        logger.warning(f"Sync for user {user_id} skipped: {e}")
        return {"status": "error", "user_id": user_id, "error": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.strava.sync_all_users", bind=True)
def sync_all_users_task(self: Task, user_ids: Optional[List[str]] = None) -> Dict:
    """Batch sync. Per-user failures are counted; users whose refresh fails are skipped."""
    db: Session = get_db_sync()
    try:
        targets = user_ids or ActivityStore(db).list_connected_user_ids()
        logger.info(f"Starting batch Strava sync for {len(targets)} users")
        batch = StravaSyncEngine(db).sync_users(targets)
        logger.info(
            f"Batch Strava sync finished: {batch.succeeded} ok, {batch.failed} failed, "
            f"{len(batch.skipped_users)} skipped"
        )
        return batch.to_dict()
    finally:
        db.close()


@celery_app.task(name="tasks.strava.process_webhook_event", bind=True)
def process_webhook_event_task(self: Task, event_id: str) -> Dict:
    db: Session = get_db_sync()
    try:
        outcome = WebhookProcessor(db).process_by_id(event_id)
        return {"event_id": event_id, "outcome": outcome or "not_found"}
    finally:
        db.close()


@celery_app.task(name="tasks.strava.redrive_webhook_events", bind=True)
def redrive_webhook_events_task(self: Task, limit: int = 100) -> Dict:
    db: Session = get_db_sync()
    try:
        return WebhookProcessor(db).redrive(limit=limit)
    finally:
        db.close()


@celery_app.task(name="tasks.strava.sweep_activity_cache")
def sweep_activity_cache_task() -> Dict:
    db: Session = get_db_sync()
    try:
        deleted = ActivityResponseCacheService(db).sweep()
        return {"deleted": deleted}
    finally:
        db.close()
