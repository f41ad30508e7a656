"""
Strava Sync Engine

Incremental, idempotent sync of one user's Strava history:

1. Read the watermark (default: SYNC_DEFAULT_LOOKBACK_DAYS back).
2. Page through /athlete/activities strictly after the watermark, at most
   SYNC_MAX_PAGES pages of SYNC_PAGE_SIZE.
3. Skip unsupported kinds from the summary, before any detail fetch.
4. Fetch detail through the activity cache, falling back to the scheduler.
5. Upsert the activity, its best efforts, and one scored row per event
   whose date range contains the activity's local day.
6. Advance the watermark once the full page set has been walked.

Per-activity failures of any kind are logged, counted and skipped: the run
is reported as "partial" and the watermark still moves, so one permanently
broken activity (deleted, private) cannot pin every later run to the same
window. Webhook updates cover activities that change later.
sync_user always returns counters.
Only credential failures (the whole run cannot proceed) are raised, so a
batch can skip that user.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from core.clock import Clock, utc_now
from core.config import settings
from core.exceptions import (
    CredentialNotFound,
    NotSupportedActivityKind,
    PersistenceError,
    RefreshFailed,
    StravaSyncError,
)
from core.logging import log_fields
from services.activity_cache import ActivityResponseCacheService
from services.activity_normalizer import NormalizedActivity, is_supported_kind, normalize_activity, parse_strava_datetime
from services.activity_store import ActivityStore
from services.rules_engine import ScoredActivityResult, score_activity
from services.strava_rate_limiter import (
    DEFAULT_PRIORITY,
    RequestKind,
    RequestScheduler,
    get_scheduler,
)

logger = logging.getLogger(__name__)

CancelCheck = Union[Callable[[], bool], threading.Event, None]


def _cancel_check(should_cancel: CancelCheck) -> Callable[[], bool]:
    if should_cancel is None:
        return lambda: False
    if isinstance(should_cancel, threading.Event):
        return should_cancel.is_set
    return should_cancel


@dataclass
class SyncResult:
    user_id: str
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    cancelled: bool = False
    pages: int = 0
    status: str = "success"
    watermark: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["watermark"] = self.watermark.isoformat() if self.watermark else None
        return data


@dataclass
class BatchSyncResult:
    users: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_users: List[str] = field(default_factory=list)
    synced: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IngestResult:
    activity_id: int
    created: bool
    best_efforts: int = 0
    scored: List[ScoredActivityResult] = field(default_factory=list)


class ActivityIngestor:
    """
    Normalize, store and score a single activity payload.

    Shared by the backfill sync and the webhook path. The activity row is
    committed first; best-effort and scoring write failures are logged and
    leave it in place.
    """

    def __init__(self, store: ActivityStore):
        self.store = store

    def ingest(self, payload: Dict[str, Any], user_id: str) -> IngestResult:
        if not is_supported_kind(payload):
            raise NotSupportedActivityKind(payload.get("id"), payload.get("sport_type") or payload.get("type"))

        activity = normalize_activity(payload, user_id)
        created = self.store.upsert_activity(activity)
        result = IngestResult(activity_id=activity.id, created=created)
        result.best_efforts = self._store_best_efforts(activity)
        result.scored = self.score_for_events(activity)
        return result

    def _store_best_efforts(self, activity: NormalizedActivity) -> int:
        stored = 0
        for record in activity.best_efforts:
            try:
                self.store.upsert_best_effort(activity.user_id, activity.id, record)
                stored += 1
            except PersistenceError as e:
                logger.warning(
                    f"Best effort {record.effort_name} for activity {activity.id} not stored: {e}",
                    extra=log_fields(user_id=activity.user_id, activity_id=activity.id),
                )
        return stored

    def score_for_events(self, activity: NormalizedActivity) -> List[ScoredActivityResult]:
        scored = []
        for event in self.store.get_events_for_user(activity.user_id):
            if not event.contains(activity.activity_date):
                continue
            context = self.store.build_rule_context(activity.user_id, event, activity.activity_date)
            result = score_activity(activity, event.rules, context, event.event_id)
            try:
                self.store.upsert_scored_activity(result)
            except PersistenceError as e:
                logger.error(
                    f"Scoring activity {activity.id} for event {event.event_id} failed: {e}",
                    extra=log_fields(user_id=activity.user_id, activity_id=activity.id, event_id=event.event_id),
                )
                continue
            scored.append(result)
            logger.debug(
                f"Scored activity {activity.id} for event {event.event_id}: {result.final_points} points"
                + (f" (blocked: {result.block_reason})" if result.blocked else "")
            )
        return scored


class StravaSyncEngine:
    def __init__(
        self,
        db: Session,
        scheduler: Optional[RequestScheduler] = None,
        cache: Optional[ActivityResponseCacheService] = None,
        store: Optional[ActivityStore] = None,
        now: Clock = utc_now,
        max_pages: Optional[int] = None,
        page_size: Optional[int] = None,
        lookback_days: Optional[int] = None,
    ):
        self.db = db
        self.scheduler = scheduler or get_scheduler()
        self.cache = cache or ActivityResponseCacheService(db, now=now)
        self.store = store or ActivityStore(db)
        self.ingestor = ActivityIngestor(self.store)
        self._now = now
        self.max_pages = max_pages or settings.SYNC_MAX_PAGES
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.lookback = timedelta(days=lookback_days or settings.SYNC_DEFAULT_LOOKBACK_DAYS)

    def fetch_activity_detail(
        self,
        user_id: str,
        activity_id: int,
        priority: int = DEFAULT_PRIORITY,
        use_cache: bool = True,
    ) -> Dict[str, Any]:
        if use_cache:
            payload, hit = self.cache.get(activity_id)
            if hit:
                return payload
        payload = self.scheduler.call(user_id, RequestKind.FETCH_ACTIVITY, activity_id=activity_id, priority=priority)
        self.cache.put(activity_id, payload)
        return payload

    def sync_user(self, user_id: str, should_cancel: CancelCheck = None) -> SyncResult:
        cancelled = _cancel_check(should_cancel)
        run_started = self._now()
        result = SyncResult(user_id=user_id)

        watermark = self.store.get_watermark(user_id) or (run_started - self.lookback)
        after_ts = int(watermark.timestamp())
        latest_start: Optional[datetime] = None
        page_cap_hit = False

        logger.info(
            f"Starting Strava sync for user {user_id} after {watermark.isoformat()}",
            extra=log_fields(user_id=user_id, after=after_ts),
        )

        try:
            for page in range(1, self.max_pages + 1):
                if cancelled():
                    result.cancelled = True
                    break

                summaries = self.scheduler.call(
                    user_id,
                    RequestKind.LIST_ACTIVITIES,
                    priority=DEFAULT_PRIORITY,
                    after_timestamp=after_ts,
                    page=page,
                    per_page=self.page_size,
                )
                result.pages = page

                for summary in summaries:
                    if cancelled():
                        result.cancelled = True
                        break
                    started = parse_strava_datetime(summary.get("start_date"))
                    if started and (latest_start is None or started > latest_start):
                        latest_start = started
                    self._sync_one(user_id, summary, result)

                if result.cancelled or len(summaries) < self.page_size:
                    break
            else:
                page_cap_hit = True
        except (CredentialNotFound, RefreshFailed) as e:
            result.status = "failed"
            result.errors += 1
            self._record(user_id, result, None, run_started, error=str(e))
            raise
        except Exception as e:
            # Listing failed after retries; the window will be re-covered next run.
            logger.error(f"Strava sync for user {user_id} aborted: {e}", extra=log_fields(user_id=user_id),
                         exc_info=not isinstance(e, StravaSyncError))
            result.status = "failed"
            result.errors += 1
            self._record(user_id, result, None, run_started, error=str(e))
            return result

        if result.cancelled:
            result.status = "cancelled"
            self._record(user_id, result, None, run_started)
        else:
            # A full last page at the cap means more history remains; resume after the newest one seen.
            new_watermark = latest_start if (page_cap_hit and latest_start) else run_started
            error = None
            if result.errors:
                result.status = "partial"
                error = f"{result.errors} activities failed and were skipped"
            self._record(user_id, result, new_watermark, run_started, error=error)

        logger.info(
            f"Strava sync for user {user_id} finished: {result.status}",
            extra=log_fields(**result.to_dict()),
        )
        return result

    def _sync_one(self, user_id: str, summary: Dict[str, Any], result: SyncResult) -> None:
        activity_id = summary.get("id")
        if not activity_id:
            result.skipped += 1
            return
        if not is_supported_kind(summary):
            result.skipped += 1
            return
        try:
            details = self.fetch_activity_detail(user_id, int(activity_id))
            self.ingestor.ingest(details, user_id)
            result.synced += 1
        except NotSupportedActivityKind as e:
            logger.info(f"Skipping activity {activity_id}: {e}")
            result.skipped += 1
        except (CredentialNotFound, RefreshFailed):
            raise
        except Exception as e:
            # Anything else (upstream, storage, a malformed rule config) costs this activity only.
            logger.warning(
                f"Failed to sync activity {activity_id} for user {user_id}: {e}",
                extra=log_fields(user_id=user_id, activity_id=activity_id),
                exc_info=True,
            )
            result.errors += 1
            self.db.rollback()

    def _record(
        self,
        user_id: str,
        result: SyncResult,
        new_watermark: Optional[datetime],
        attempted_at: datetime,
        error: Optional[str] = None,
    ) -> None:
        try:
            self.store.set_watermark(
                user_id,
                new_watermark,
                attempted_at=attempted_at,
                status=result.status,
                synced_count=result.synced,
                error=error,
            )
        except PersistenceError as e:
            logger.error(f"Could not record sync state for user {user_id}: {e}")
            if new_watermark is not None:
                result.status = "partial"
            return
        result.watermark = new_watermark or self.store.get_watermark(user_id)

    def sync_users(self, user_ids: Sequence[str], should_cancel: CancelCheck = None) -> BatchSyncResult:
        """
        Sync several users. A user whose credential is missing or cannot be
        refreshed is skipped; nothing a single user does aborts the batch.
        """
        cancelled = _cancel_check(should_cancel)
        batch = BatchSyncResult()
        for user_id in user_ids:
            if cancelled():
                break
            batch.users += 1
            try:
                result = self.sync_user(user_id, should_cancel=cancelled)
            except (CredentialNotFound, RefreshFailed) as e:
                logger.warning(f"Skipping user {user_id} for this run: {e}")
                batch.skipped_users.append(user_id)
                batch.failed += 1
                continue
            except Exception:
                logger.exception(f"Sync failed for user {user_id}")
                batch.failed += 1
                continue
            batch.synced += result.synced
            batch.errors += result.errors
            if result.status in ("success", "partial", "cancelled"):
                batch.succeeded += 1
            else:
                batch.failed += 1
        return batch
