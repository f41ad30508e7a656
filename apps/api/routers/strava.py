"""
Strava Integration Router

Operational endpoints for the Strava sync pipeline: request window usage,
activity cache maintenance and on-demand user syncs. The sync itself runs
in the Celery worker.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import NotFoundError, ServiceUnavailableError, ValidationError
from models import User
from schemas import (
    CacheStatsResponse,
    CleanCacheResponse,
    RateLimitStatusResponse,
    SyncQueuedResponse,
    SyncStateResponse,
)
from services.activity_cache import ActivityResponseCacheService
from services.activity_store import ActivityStore
from services.strava_rate_limiter import read_status
from tasks.strava_tasks import sync_user_task

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/strava", tags=["strava"])


@router.get("/rate-limit-status", response_model=RateLimitStatusResponse)
def get_rate_limit_status():
    """Requests used in the current window, as last reported by the sync worker."""
    return read_status()


@router.get("/cache-stats", response_model=CacheStatsResponse)
def get_cache_stats(db: Session = Depends(get_db)):
    return ActivityResponseCacheService(db).stats()


@router.post("/clean-cache", response_model=CleanCacheResponse)
def clean_cache(db: Session = Depends(get_db)):
    """Delete expired activity payloads now instead of waiting for the hourly sweep."""
    deleted = ActivityResponseCacheService(db).sweep()
    return {"deleted": deleted}


def _get_connected_user(db: Session, user_id: str) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("User", user_id)
    if not user.strava_refresh_token:
        raise ValidationError("User has not connected Strava", field="strava")
    return user


@router.post("/sync/{user_id}", response_model=SyncQueuedResponse, status_code=status.HTTP_202_ACCEPTED)
def trigger_sync(user_id: str, db: Session = Depends(get_db)):
    """Queue an incremental sync for one user."""
    user = _get_connected_user(db, user_id)
    try:
        task = sync_user_task.delay(user.id)
    except Exception as e:
        logger.error(f"Failed to enqueue sync for user {user.id}: {e}")
        raise ServiceUnavailableError("Sync queue unavailable")
    logger.info(f"Queued Strava sync for user {user.id} (task {task.id})")
    return SyncQueuedResponse(user_id=user.id, task_id=task.id)


@router.get("/sync/{user_id}", response_model=SyncStateResponse)
def get_sync_state(user_id: str, db: Session = Depends(get_db)):
    """Watermark and outcome of the user's last sync run."""
    state = ActivityStore(db).get_sync_state(user_id)
    if state is None:
        if db.query(User).filter(User.id == user_id).first() is None:
            raise NotFoundError("User", user_id)
        return SyncStateResponse(user_id=user_id)
    return state
