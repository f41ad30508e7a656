"""
Strava Activity Response Cache

Stores Strava activity detail payloads for 24 hours to cut upstream calls
(e.g. the same activity fetched by a backfill sync and by a webhook).

The cache is advisory: correctness never depends on a hit. Database errors
are logged and reported as misses / no-ops.

Usage:
    cache = ActivityResponseCacheService(db)
    payload, hit = cache.get(activity_id)
    if not hit:
        payload = fetch(...)
        cache.put(activity_id, payload)
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import Clock, as_utc, utc_now
from core.config import settings
from models import ActivityResponseCache

logger = logging.getLogger(__name__)


class ActivityResponseCacheService:
    def __init__(self, db: Session, now: Clock = utc_now, ttl: Optional[timedelta] = None):
        self.db = db
        self._now = now
        self.ttl = ttl or timedelta(hours=settings.ACTIVITY_CACHE_TTL_HOURS)

    def get(self, activity_id: int) -> Tuple[Optional[Dict[str, Any]], bool]:
        """Return (payload, True) on a fresh hit, (None, False) when absent or expired."""
        try:
            row = (
                self.db.query(ActivityResponseCache)
                .filter(ActivityResponseCache.activity_id == int(activity_id))
                .first()
            )
        except SQLAlchemyError as e:
            logger.warning(f"Activity cache read failed for {activity_id}: {e}")
            self.db.rollback()
            return None, False

        if row is None or as_utc(row.expires_at) <= self._now():
            logger.debug(f"Activity cache MISS for {activity_id}")
            return None, False

        logger.debug(f"Activity cache HIT for {activity_id}")
        return row.payload, True

    def put(self, activity_id: int, payload: Dict[str, Any]) -> bool:
        """Store or overwrite the payload; expires_at = now + TTL. Last writer wins."""
        now = self._now()
        try:
            row = (
                self.db.query(ActivityResponseCache)
                .filter(ActivityResponseCache.activity_id == int(activity_id))
                .first()
            )
            if row is None:
                row = ActivityResponseCache(activity_id=int(activity_id))
                self.db.add(row)
            row.payload = payload
            row.cached_at = now
            row.expires_at = now + self.ttl
            self.db.commit()
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Failed to cache activity {activity_id}: {e}")
            self.db.rollback()
            return False

    def invalidate(self, activity_id: int) -> bool:
        """Drop the entry for an activity (used after an upstream update/delete)."""
        try:
            deleted = (
                self.db.query(ActivityResponseCache)
                .filter(ActivityResponseCache.activity_id == int(activity_id))
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to invalidate cached activity {activity_id}: {e}")
            self.db.rollback()
            return False
        if deleted:
            logger.info(f"Invalidated cache for activity {activity_id}")
        return bool(deleted)

    def sweep(self) -> int:
        """Delete every expired entry. Returns the number of rows removed."""
        try:
            deleted = (
                self.db.query(ActivityResponseCache)
                .filter(ActivityResponseCache.expires_at <= self._now())
                .delete(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Activity cache sweep failed: {e}")
            self.db.rollback()
            return 0
        logger.info(f"Cleaned up {deleted} expired activity cache entries")
        return int(deleted)

    def stats(self) -> Dict[str, int]:
        now: datetime = self._now()
        total = self.db.query(ActivityResponseCache).count()
        valid = (
            self.db.query(ActivityResponseCache)
            .filter(ActivityResponseCache.expires_at > now)
            .count()
        )
        return {"total": total, "valid": valid, "expired": total - valid}
