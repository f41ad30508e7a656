"""
Activity Store

The storage collaborator used by the sync engine and the webhook path.
Every write is keyed by a natural uniqueness constraint so repeating it
only changes the final state:

- StravaActivity      by strava_activity_id
- BestEffort          by (user_id, effort_name), fastest elapsed_time wins
- ScoredActivity      by (user_id, event_id, activity_date), later overwrites
- SyncWatermark       by user_id

Write failures, and failures of the reads the sync and webhook paths depend
on, roll back the session and raise PersistenceError. Reads used
by the rules engine are bundled into a RuleContext.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.cache import invalidate_event_cache
from core.clock import as_utc
from core.exceptions import PersistenceError
from models import (
    BestEffort,
    Event,
    EventParticipant,
    ScoredActivity,
    StravaActivity,
    SyncWatermark,
    User,
)
from services.activity_normalizer import BestEffortRecord, NormalizedActivity, extract_best_efforts
from services.completion import ParticipantDays
from services.rules_engine import EventRuleSpec, RuleContext, ScoredActivityResult

logger = logging.getLogger(__name__)


@dataclass
class EventWindow:
    event_id: str
    start_date: date
    end_date: date
    team_id: Optional[str] = None
    rules: List[EventRuleSpec] = field(default_factory=list)

    def contains(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


class ActivityStore:
    def __init__(self, db: Session):
        self.db = db

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(operation, e) from e

    @contextmanager
    def _reading(self, operation: str):
        """Reads fail like writes: rolled back and raised as PersistenceError."""
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(operation, e) from e

    def _dialect_insert(self, table):
        if self.db.get_bind().dialect.name == "sqlite":
            return sqlite_insert(table)
        return pg_insert(table)

    # --- users -------------------------------------------------------------

    def get_user_id_for_athlete(self, strava_athlete_id: int) -> Optional[str]:
        with self._reading("get_user_id_for_athlete"):
            row = self.db.query(User.id).filter(User.strava_athlete_id == int(strava_athlete_id)).first()
        return row[0] if row else None

    def list_connected_user_ids(self) -> List[str]:
        rows = (
            self.db.query(User.id)
            .filter(User.strava_access_token.isnot(None))
            .order_by(User.created_at, User.id)
            .all()
        )
        return [r[0] for r in rows]

    # --- activities --------------------------------------------------------

    def upsert_activity(self, activity: NormalizedActivity) -> bool:
        """Insert or update the activity row. Returns True when a new row was created."""
        try:
            row = (
                self.db.query(StravaActivity)
                .filter(StravaActivity.strava_activity_id == activity.id)
                .first()
            )
            created = row is None
            if created:
                row = StravaActivity(strava_activity_id=activity.id)
                self.db.add(row)

            row.user_id = activity.user_id
            row.name = activity.name
            row.sport_type = activity.sport_kind
            row.distance_m = activity.distance_meters
            row.moving_time_s = activity.moving_time_seconds
            row.elapsed_time_s = activity.elapsed_time_seconds
            row.total_elevation_gain = activity.total_elevation_gain
            row.average_speed = activity.average_speed
            row.start_date = activity.start_time_utc
            row.start_date_local = activity.start_time_local
            row.timezone = activity.timezone
            row.best_efforts = activity.raw.get("best_efforts")
            row.raw_data = activity.raw
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("upsert_activity", e) from e

        if created:
            logger.info(f"Stored new activity {activity.id} for user {activity.user_id}")
        return created

    def delete_activity(self, strava_activity_id: int) -> Optional[str]:
        """Delete the activity row. Returns the owning user id, if the row existed."""
        row = (
            self.db.query(StravaActivity)
            .filter(StravaActivity.strava_activity_id == int(strava_activity_id))
            .first()
        )
        if row is None:
            return None
        user_id = row.user_id
        self.db.delete(row)
        self._commit("delete_activity")
        return user_id

    # --- best efforts ------------------------------------------------------

    def upsert_best_effort(self, user_id: str, strava_activity_id: int, record: BestEffortRecord) -> None:
        """
        Keep the fastest elapsed_time per (user, effort name).

        A single INSERT ... ON CONFLICT DO UPDATE ... WHERE statement: the
        stored row is replaced only when the new time is strictly faster.
        """
        table = BestEffort.__table__
        stmt = self._dialect_insert(table).values(
            user_id=user_id,
            effort_name=record.effort_name,
            strava_activity_id=int(strava_activity_id),
            elapsed_time=record.elapsed_time,
            moving_time=record.moving_time,
            distance=record.distance,
            start_date_local=record.start_date_local,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.user_id, table.c.effort_name],
            set_={
                "strava_activity_id": stmt.excluded.strava_activity_id,
                "elapsed_time": stmt.excluded.elapsed_time,
                "moving_time": stmt.excluded.moving_time,
                "distance": stmt.excluded.distance,
                "start_date_local": stmt.excluded.start_date_local,
                "updated_at": func.now(),
            },
            where=stmt.excluded.elapsed_time < table.c.elapsed_time,
        )
        try:
            self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("upsert_best_effort", e) from e

    def delete_best_effort(self, user_id: str, effort_name: str) -> int:
        deleted = (
            self.db.query(BestEffort)
            .filter(BestEffort.user_id == user_id, BestEffort.effort_name == effort_name)
            .delete(synchronize_session=False)
        )
        self._commit("delete_best_effort")
        return int(deleted)

    def get_best_efforts(self, user_id: str) -> Dict[str, BestEffort]:
        # Rows are written with Core upserts; refresh anything already in the identity map.
        rows = self.db.query(BestEffort).filter(BestEffort.user_id == user_id).populate_existing().all()
        return {r.effort_name: r for r in rows}

    def rebuild_best_efforts_after_delete(self, strava_activity_id: int) -> int:
        """
        Drop best efforts that came from a deleted activity and recompute each
        affected distance from the user's remaining activities.

        Returns the number of distances that were rebuilt from another activity.
        """
        with self._reading("rebuild_best_efforts_after_delete"):
            affected: List[Tuple[str, str]] = [
                (r.user_id, r.effort_name)
                for r in self.db.query(BestEffort)
                .filter(BestEffort.strava_activity_id == int(strava_activity_id))
                .all()
            ]
        if not affected:
            return 0

        rebuilt = 0
        for user_id, effort_name in affected:
            self.delete_best_effort(user_id, effort_name)
            with self._reading("rebuild_best_efforts_after_delete"):
                remaining = (
                    self.db.query(StravaActivity)
                    .filter(
                        StravaActivity.user_id == user_id,
                        StravaActivity.strava_activity_id != int(strava_activity_id),
                        StravaActivity.best_efforts.isnot(None),
                    )
                    .all()
                )
            candidates = [
                (record, a.strava_activity_id)
                for a in remaining
                for record in extract_best_efforts(a.best_efforts)
                if record.effort_name == effort_name
            ]
            if candidates:
                record, source_id = min(candidates, key=lambda c: c[0].elapsed_time)
                self.upsert_best_effort(user_id, source_id, record)
                rebuilt += 1

        logger.info(f"Rebuilt {rebuilt}/{len(affected)} best efforts after deleting activity {strava_activity_id}")
        return rebuilt

    # --- events & scoring --------------------------------------------------

    def get_event(self, event_id: str) -> Optional[Event]:
        return self.db.query(Event).filter(Event.id == event_id).first()

    def get_events_for_user(self, user_id: str) -> List[EventWindow]:
        with self._reading("get_events_for_user"):
            rows = (
                self.db.query(EventParticipant, Event)
                .join(Event, Event.id == EventParticipant.event_id)
                .filter(EventParticipant.user_id == user_id)
                .order_by(Event.start_date, Event.id)
                .all()
            )
            return [
                EventWindow(
                    event_id=event.id,
                    start_date=event.start_date,
                    end_date=event.end_date,
                    team_id=participant.team_id,
                    rules=[EventRuleSpec.from_model(r) for r in event.rules],
                )
                for participant, event in rows
            ]

    def _team_member_ids(self, event_id: str, team_id: str) -> List[str]:
        rows = (
            self.db.query(EventParticipant.user_id)
            .filter(EventParticipant.event_id == event_id, EventParticipant.team_id == team_id)
            .all()
        )
        return [r[0] for r in rows]

    def _valid_scored(self, event_id: str):
        return self.db.query(ScoredActivity).filter(
            ScoredActivity.event_id == event_id,
            ScoredActivity.blocked.is_(False),
        )

    def build_rule_context(self, user_id: str, event: EventWindow, activity_date: date) -> RuleContext:
        """Load the history the daily-increase and participant rules compare against."""
        with self._reading("build_rule_context"):
            return self._load_rule_context(user_id, event, activity_date)

    def _load_rule_context(self, user_id: str, event: EventWindow, activity_date: date) -> RuleContext:
        previous = (
            self._valid_scored(event.event_id)
            .filter(ScoredActivity.user_id == user_id, ScoredActivity.activity_date < activity_date)
            .order_by(ScoredActivity.activity_date.desc())
            .first()
        )

        team_today_km = 0.0
        team_previous_km = None
        if event.team_id:
            members = self._team_member_ids(event.event_id, event.team_id)
            team_today_km = float(
                self._valid_scored(event.event_id)
                .with_entities(func.coalesce(func.sum(ScoredActivity.distance_km), 0.0))
                .filter(
                    ScoredActivity.user_id.in_(members),
                    ScoredActivity.user_id != user_id,
                    ScoredActivity.activity_date == activity_date,
                )
                .scalar()
            )
            prev_day = (
                self._valid_scored(event.event_id)
                .with_entities(func.max(ScoredActivity.activity_date))
                .filter(ScoredActivity.user_id.in_(members), ScoredActivity.activity_date < activity_date)
                .scalar()
            )
            if prev_day is not None:
                team_previous_km = float(
                    self._valid_scored(event.event_id)
                    .with_entities(func.sum(ScoredActivity.distance_km))
                    .filter(ScoredActivity.user_id.in_(members), ScoredActivity.activity_date == prev_day)
                    .scalar()
                )

        participants_q = (
            self._valid_scored(event.event_id)
            .with_entities(func.count(func.distinct(ScoredActivity.user_id)))
            .filter(ScoredActivity.activity_date == activity_date, ScoredActivity.user_id != user_id)
        )
        if event.team_id:
            participants_q = participants_q.filter(
                ScoredActivity.user_id.in_(self._team_member_ids(event.event_id, event.team_id))
            )

        return RuleContext(
            previous_distance_km=previous.distance_km if previous else None,
            team_id=event.team_id,
            team_today_km=team_today_km,
            team_previous_km=team_previous_km,
            participants_today=int(participants_q.scalar() or 0),
        )

    def upsert_scored_activity(self, result: ScoredActivityResult) -> ScoredActivity:
        """One row per (user, event, day): a later activity on the same day overwrites the earlier one."""
        try:
            row = (
                self.db.query(ScoredActivity)
                .filter(
                    ScoredActivity.user_id == result.user_id,
                    ScoredActivity.event_id == result.event_id,
                    ScoredActivity.activity_date == result.activity_date,
                )
                .first()
            )
            if row is None:
                row = ScoredActivity(
                    user_id=result.user_id,
                    event_id=result.event_id,
                    activity_date=result.activity_date,
                )
                self.db.add(row)

            row.strava_activity_id = result.activity_id
            row.distance_km = result.distance_km
            row.moving_time_s = result.moving_time_s
            row.pace_min_per_km = round(result.pace_min_per_km, 3) if result.pace_min_per_km else None
            row.base_points = result.base_points
            row.final_points = result.final_points
            row.bonus_applied = result.applied_bonus.bonus_type if result.applied_bonus else None
            row.bonus_multiplier = result.multiplier
            row.bonus_message = result.applied_bonus.message if result.applied_bonus else None
            row.rejected_bonuses = [b.to_dict() for b in result.rejected_bonuses]
            row.blocked = result.blocked
            row.block_reason = result.block_reason
            row.rule_log = [r.to_dict() for r in result.rule_log]
            self.db.flush()
            self._refresh_participant_totals(result.user_id, result.event_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("upsert_scored_activity", e) from e

        invalidate_event_cache(result.event_id)
        return row

    def delete_scored_for_activity(self, strava_activity_id: int) -> List[Tuple[str, str]]:
        """Remove scored rows produced by an activity. Returns the affected (user_id, event_id) pairs."""
        rows = (
            self.db.query(ScoredActivity)
            .filter(ScoredActivity.strava_activity_id == int(strava_activity_id))
            .all()
        )
        affected = sorted({(r.user_id, r.event_id) for r in rows})
        if not rows:
            return []
        try:
            for r in rows:
                self.db.delete(r)
            self.db.flush()
            for user_id, event_id in affected:
                self._refresh_participant_totals(user_id, event_id)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("delete_scored_for_activity", e) from e

        for event_id in {e for _, e in affected}:
            invalidate_event_cache(event_id)
        return affected

    def _refresh_participant_totals(self, user_id: str, event_id: str) -> None:
        total_km, total_points, count = (
            self._valid_scored(event_id)
            .with_entities(
                func.coalesce(func.sum(ScoredActivity.distance_km), 0.0),
                func.coalesce(func.sum(ScoredActivity.final_points), 0.0),
                func.count(ScoredActivity.id),
            )
            .filter(ScoredActivity.user_id == user_id)
            .one()
        )
        participant = (
            self.db.query(EventParticipant)
            .filter(EventParticipant.event_id == event_id, EventParticipant.user_id == user_id)
            .first()
        )
        if participant is None:
            return
        participant.total_km = round(float(total_km), 3)
        participant.total_points = round(float(total_points), 3)
        participant.activity_count = int(count)

    def get_scored_activities(self, event_id: str, user_id: Optional[str] = None) -> List[ScoredActivity]:
        q = self.db.query(ScoredActivity).filter(ScoredActivity.event_id == event_id)
        if user_id:
            q = q.filter(ScoredActivity.user_id == user_id)
        return q.order_by(ScoredActivity.activity_date).all()

    def load_participant_days(self, event_id: str, user_ids: Optional[Sequence[str]] = None) -> List[ParticipantDays]:
        """Participants with their valid (non-blocked) scored days, for completion and ranking."""
        q = (
            self.db.query(EventParticipant, User)
            .join(User, User.id == EventParticipant.user_id)
            .filter(EventParticipant.event_id == event_id)
        )
        if user_ids:
            q = q.filter(EventParticipant.user_id.in_(list(user_ids)))
        participants = q.all()

        days: Dict[str, Set[date]] = {}
        for user_id, day in (
            self._valid_scored(event_id)
            .with_entities(ScoredActivity.user_id, ScoredActivity.activity_date)
            .all()
        ):
            days.setdefault(user_id, set()).add(day)

        return [
            ParticipantDays(
                user_id=p.user_id,
                active_dates=sorted(days.get(p.user_id, ())),
                display_name=u.display_name,
                team_id=p.team_id,
                total_km=p.total_km or 0.0,
                total_points=p.total_points or 0.0,
            )
            for p, u in participants
        ]

    # --- watermark ---------------------------------------------------------

    def get_watermark(self, user_id: str) -> Optional[datetime]:
        with self._reading("get_watermark"):
            row = self.db.query(SyncWatermark).filter(SyncWatermark.user_id == user_id).first()
        return as_utc(row.last_synced_at) if row else None

    def get_sync_state(self, user_id: str) -> Optional[SyncWatermark]:
        return self.db.query(SyncWatermark).filter(SyncWatermark.user_id == user_id).first()

    def set_watermark(
        self,
        user_id: str,
        synced_at: Optional[datetime],
        *,
        attempted_at: Optional[datetime] = None,
        status: str = "success",
        synced_count: int = 0,
        error: Optional[str] = None,
    ) -> None:
        """
        Record a sync run. `synced_at=None` records the attempt without moving
        the watermark (failed or cancelled runs).
        """
        row = self.db.query(SyncWatermark).filter(SyncWatermark.user_id == user_id).first()
        if row is None:
            row = SyncWatermark(user_id=user_id)
            self.db.add(row)
        if synced_at is not None:
            row.last_synced_at = synced_at
        row.last_attempt_at = attempted_at or synced_at or row.last_attempt_at
        row.last_status = status
        row.last_error = error[:1000] if error else None
        row.last_synced_count = int(synced_count)
        self._commit("set_watermark")
