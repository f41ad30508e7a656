"""
Strava Webhook Service

Turns inbound Strava push events into point updates, bypassing the sync
watermark:

- activity create/update: fetch detail (an update drops the cached payload
  first), normalize, score, upsert.
- activity delete: remove scored rows, rebuild best efforts from the user's
  remaining activities, delete the activity row.

Every event is stored before processing. Failures leave the row with
processed=False and an error_message so it can be re-driven; an event is
never silently dropped.

Transport concerns (subscription handshake, signatures) live outside this
module.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from core.clock import Clock, utc_now
from core.exceptions import NotSupportedActivityKind, StravaSyncError
from core.logging import log_fields
from models import StravaWebhookEvent
from services.activity_cache import ActivityResponseCacheService
from services.activity_store import ActivityStore
from services.strava_rate_limiter import HIGHEST_PRIORITY
from services.strava_sync import StravaSyncEngine

logger = logging.getLogger(__name__)

MAX_REDRIVE_ATTEMPTS = 5
# Pending events older than this are assumed lost (worker killed, task dropped).
STALE_PENDING_AFTER = timedelta(minutes=10)


class StravaWebhookPayload(BaseModel):
    object_type: str
    object_id: int
    aspect_type: Literal["create", "update", "delete"]
    owner_id: int
    subscription_id: Optional[int] = None
    event_time: Optional[int] = None
    updates: Dict[str, Any] = Field(default_factory=dict)


def record_webhook_event(db: Session, payload: StravaWebhookPayload) -> StravaWebhookEvent:
    """Persist the raw event as pending (processed=None) before any work happens."""
    event = StravaWebhookEvent(
        subscription_id=payload.subscription_id,
        object_type=payload.object_type,
        aspect_type=payload.aspect_type,
        object_id=payload.object_id,
        owner_id=payload.owner_id,
        event_time=datetime.fromtimestamp(payload.event_time, tz=timezone.utc) if payload.event_time else None,
        raw_payload=payload.model_dump(),
        processed=None,
        attempts=0,
    )
    db.add(event)
    db.commit()
    logger.info(
        f"Recorded Strava webhook: {payload.object_type}.{payload.aspect_type} {payload.object_id}",
        extra=log_fields(webhook_event_id=event.id, owner_id=payload.owner_id),
    )
    return event


class WebhookProcessor:
    def __init__(self, db: Session, sync_engine: Optional[StravaSyncEngine] = None, now: Clock = utc_now):
        self.db = db
        self.store = ActivityStore(db)
        self.cache = ActivityResponseCacheService(db, now=now)
        self._sync_engine = sync_engine
        self._now = now

    @property
    def sync_engine(self) -> StravaSyncEngine:
        # Built lazily: deletes never need the scheduler.
        if self._sync_engine is None:
            self._sync_engine = StravaSyncEngine(self.db, cache=self.cache, store=self.store, now=self._now)
        return self._sync_engine

    def process(self, event: StravaWebhookEvent) -> str:
        """Handle one stored event. Returns an outcome label; failures are recorded on the row."""
        attempts = (event.attempts or 0) + 1
        try:
            outcome = self._handle(event)
        except Exception as e:
            # Domain errors are expected; anything else also gets a traceback.
            logger.error(
                f"Webhook event {event.id} failed: {e}",
                extra=log_fields(webhook_event_id=event.id, object_id=event.object_id, attempts=attempts),
                exc_info=not isinstance(e, (StravaSyncError, ValueError)),
            )
            self.db.rollback()
            event.attempts = attempts
            event.processed = False
            event.error_message = str(e)[:1000]
            self.db.commit()
            return "failed"

        event.attempts = attempts
        event.processed = True
        event.error_message = None
        event.processed_at = self._now()
        self.db.commit()
        return outcome

    def _handle(self, event: StravaWebhookEvent) -> str:
        if event.object_type != "activity":
            logger.info(f"Ignoring webhook for object_type={event.object_type}")
            return "ignored"

        user_id = self.store.get_user_id_for_athlete(event.owner_id)
        if user_id is None:
            raise ValueError(f"No user linked to Strava athlete {event.owner_id}")

        if event.aspect_type == "delete":
            return self._delete(event.object_id)

        if event.aspect_type == "update":
            self.cache.invalidate(event.object_id)

        details = self.sync_engine.fetch_activity_detail(
            user_id,
            event.object_id,
            priority=HIGHEST_PRIORITY,
            use_cache=event.aspect_type == "create",
        )
        try:
            result = self.sync_engine.ingestor.ingest(details, user_id)
        except NotSupportedActivityKind as e:
            logger.info(f"Webhook activity skipped: {e}")
            return "skipped"
        logger.info(
            f"Webhook {event.aspect_type} ingested activity {event.object_id}",
            extra=log_fields(user_id=user_id, scored_events=len(result.scored)),
        )
        return "ingested"

    def _delete(self, activity_id: int) -> str:
        affected = self.store.delete_scored_for_activity(activity_id)
        self.store.rebuild_best_efforts_after_delete(activity_id)
        self.store.delete_activity(activity_id)
        self.cache.invalidate(activity_id)
        logger.info(f"Deleted activity {activity_id} ({len(affected)} scored rows)")
        return "deleted"

    def process_by_id(self, event_id: str) -> Optional[str]:
        event = self.db.query(StravaWebhookEvent).filter(StravaWebhookEvent.id == event_id).first()
        if event is None:
            logger.warning(f"Webhook event {event_id} not found")
            return None
        return self.process(event)

    def redrive(
        self,
        limit: int = 100,
        max_attempts: int = MAX_REDRIVE_ATTEMPTS,
        stale_after: timedelta = STALE_PENDING_AFTER,
    ) -> Dict[str, int]:
        """
        Re-process failed events, oldest first, up to `max_attempts` tries each.

        Events still pending (processed=None) after `stale_after` are picked up
        too: their task never finished.
        """
        stale_before = self._now() - stale_after
        events: List[StravaWebhookEvent] = (
            self.db.query(StravaWebhookEvent)
            .filter(
                StravaWebhookEvent.attempts < max_attempts,
                or_(
                    StravaWebhookEvent.processed.is_(False),
                    and_(StravaWebhookEvent.processed.is_(None), StravaWebhookEvent.created_at < stale_before),
                ),
            )
            .order_by(StravaWebhookEvent.created_at, StravaWebhookEvent.id)
            .limit(limit)
            .all()
        )
        counts = {"attempted": 0, "succeeded": 0, "failed": 0}
        for event in events:
            counts["attempted"] += 1
            if self.process(event) == "failed":
                counts["failed"] += 1
            else:
                counts["succeeded"] += 1
        if events:
            logger.info(f"Re-drove {counts['attempted']} webhook events", extra=log_fields(**counts))
        return counts
