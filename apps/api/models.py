from sqlalchemy import Column, Integer, BigInteger, Boolean, Float, Date, DateTime, ForeignKey, Text, String, Index, UniqueConstraint, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "app_user"

    id = Column(String(36), primary_key=True, default=_uuid)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    display_name = Column(Text, nullable=True)
    email = Column(Text, unique=True, nullable=True)

    # --- STRAVA CONNECTION ---
    # Tokens are Fernet-encrypted at rest (services/token_encryption.py).
    strava_athlete_id = Column(BigInteger, unique=True, nullable=True, index=True)
    strava_access_token = Column(Text, nullable=True)
    strava_refresh_token = Column(Text, nullable=True)
    # Expiry of strava_access_token as last reported by Strava.
    strava_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    participations = relationship("EventParticipant", back_populates="user")


class StravaActivity(Base):
    """One normalized Strava activity, keyed by the upstream activity id."""

    __tablename__ = "strava_activity"

    id = Column(String(36), primary_key=True, default=_uuid)
    strava_activity_id = Column(BigInteger, unique=True, nullable=False)
    user_id = Column(String(36), ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(Text, nullable=True)
    sport_type = Column(Text, nullable=True)
    distance_m = Column(Float, nullable=False, default=0.0)
    moving_time_s = Column(Integer, nullable=False, default=0)
    elapsed_time_s = Column(Integer, nullable=True)
    total_elevation_gain = Column(Float, nullable=True)
    average_speed = Column(Float, nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    # Wall-clock time at the athlete's location; drives event days and time windows.
    start_date_local = Column(DateTime(timezone=False), nullable=False)
    timezone = Column(Text, nullable=True)
    # Raw best_efforts list as reported, kept to rebuild BestEffort rows on delete.
    best_efforts = Column(JSONType, nullable=True)
    raw_data = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_strava_activity_user_start", "user_id", "start_date_local"),
    )


class BestEffort(Base):
    """
    Fastest known time for a named distance (e.g. "5k") per user.

    Invariant: at most one row per (user_id, effort_name), holding the
    minimum elapsed_time seen across the user's activities.
    """

    __tablename__ = "best_effort"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False)
    effort_name = Column(Text, nullable=False)
    strava_activity_id = Column(BigInteger, nullable=False, index=True)
    elapsed_time = Column(Integer, nullable=False)
    moving_time = Column(Integer, nullable=True)
    distance = Column(Float, nullable=True)
    start_date_local = Column(DateTime(timezone=False), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "effort_name", name="uq_best_effort_user_effort"),
    )


class Event(Base):
    __tablename__ = "event"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(Text, nullable=False)
    # Inclusive calendar range, compared against activity local start dates.
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    rules = relationship("EventRule", back_populates="event", order_by="EventRule.position")
    participants = relationship("EventParticipant", back_populates="event")


class EventParticipant(Base):
    __tablename__ = "event_participant"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("event.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id = Column(String(36), nullable=True, index=True)
    # Derived aggregates, recomputed after every scored upsert.
    total_km = Column(Float, nullable=False, default=0.0)
    total_points = Column(Float, nullable=False, default=0.0)
    activity_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    event = relationship("Event", back_populates="participants")
    user = relationship("User", back_populates="participations")

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_event_participant"),
    )


class EventRule(Base):
    """A configured rule for an event. rule_type values: see services/rules_engine.RuleType."""

    __tablename__ = "event_rule"

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("event.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_type = Column(Text, nullable=False)
    config = Column(JSONType, nullable=False, default=dict)
    # Evaluation order of blocking rules within the event.
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    event = relationship("Event", back_populates="rules")


class ScoredActivity(Base):
    """
    Points earned for one calendar day in one event.

    One row per (user_id, event_id, activity_date): a later activity on the
    same day overwrites the earlier one.
    """

    __tablename__ = "scored_activity"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("app_user.id", ondelete="CASCADE"), nullable=False)
    event_id = Column(String(36), ForeignKey("event.id", ondelete="CASCADE"), nullable=False)
    activity_date = Column(Date, nullable=False)
    strava_activity_id = Column(BigInteger, nullable=False, index=True)
    distance_km = Column(Float, nullable=False, default=0.0)
    moving_time_s = Column(Integer, nullable=True)
    pace_min_per_km = Column(Float, nullable=True)
    base_points = Column(Float, nullable=False, default=0.0)
    final_points = Column(Float, nullable=False, default=0.0)
    bonus_applied = Column(Text, nullable=True)
    bonus_multiplier = Column(Float, nullable=False, default=1.0)
    bonus_message = Column(Text, nullable=True)
    rejected_bonuses = Column(JSONType, nullable=True)
    blocked = Column(Boolean, nullable=False, default=False)
    block_reason = Column(Text, nullable=True)
    rule_log = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "event_id", "activity_date", name="uq_scored_activity_user_event_day"),
        Index("ix_scored_activity_event_day", "event_id", "activity_date"),
    )


class SyncWatermark(Base):
    """Lower bound of the next incremental sync, plus bookkeeping for the last run."""

    __tablename__ = "sync_watermark"

    user_id = Column(String(36), ForeignKey("app_user.id", ondelete="CASCADE"), primary_key=True)
    # Only advanced after a full page set completes.
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(Text, nullable=True)  # "success" | "partial" | "failed" | "cancelled"
    last_error = Column(Text, nullable=True)
    last_synced_count = Column(Integer, nullable=False, default=0)


class ActivityResponseCache(Base):
    """Cached Strava activity detail payloads (advisory; see services/activity_cache.py)."""

    __tablename__ = "strava_activity_cache"

    activity_id = Column(BigInteger, primary_key=True, autoincrement=False)
    payload = Column(JSONType, nullable=False)
    cached_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


class StravaWebhookEvent(Base):
    """
    Inbound Strava push notification.

    processed is None while pending, True once handled, False on failure
    (error_message explains why; the event can be re-driven).
    """

    __tablename__ = "strava_webhook_event"

    id = Column(String(36), primary_key=True, default=_uuid)
    subscription_id = Column(BigInteger, nullable=True)
    object_type = Column(Text, nullable=False)
    aspect_type = Column(Text, nullable=False)  # create | update | delete
    object_id = Column(BigInteger, nullable=False, index=True)
    owner_id = Column(BigInteger, nullable=False)
    event_time = Column(DateTime(timezone=True), nullable=True)
    raw_payload = Column(JSONType, nullable=True)
    processed = Column(Boolean, nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
