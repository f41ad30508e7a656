from pydantic import BaseModel, ConfigDict
from datetime import datetime, date
from typing import Optional, List, Dict, Any


class RateLimitStatusResponse(BaseModel):
    """Strava request window usage of the sync worker's scheduler."""
    used: int
    limit: int
    percentage: float
    queued: int = 0
    processed: int = 0
    failed: int = 0
    running: bool = False


class CacheStatsResponse(BaseModel):
    total: int
    valid: int
    expired: int


class CleanCacheResponse(BaseModel):
    deleted: int


class SyncQueuedResponse(BaseModel):
    user_id: str
    task_id: Optional[str] = None
    status: str = "queued"


class SyncStateResponse(BaseModel):
    user_id: str
    last_synced_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    last_synced_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class WebhookAcceptedResponse(BaseModel):
    event_id: str
    status: str


class WebhookEventResponse(BaseModel):
    id: str
    object_type: str
    aspect_type: str
    object_id: int
    owner_id: int
    event_time: Optional[datetime] = None
    processed: Optional[bool] = None
    error_message: Optional[str] = None
    attempts: int = 0
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RedriveResponse(BaseModel):
    attempted: int
    succeeded: int
    failed: int


class BadgeResponse(BaseModel):
    badge_type: str
    name: str

    model_config = ConfigDict(from_attributes=True)


class PenaltyResponse(BaseModel):
    missed_days: int
    penalty_amount: float
    currency: str

    model_config = ConfigDict(from_attributes=True)


class LeaderboardEntryResponse(BaseModel):
    rank: int
    user_id: str
    display_name: Optional[str] = None
    team_id: Optional[str] = None
    active_days: int
    total_days: int
    required_days: int
    completion_percentage: float
    is_complete: bool
    total_km: float = 0.0
    total_points: float = 0.0
    current_streak: int = 0
    longest_streak: int = 0
    badge: Optional[BadgeResponse] = None
    penalty: Optional[PenaltyResponse] = None

    model_config = ConfigDict(from_attributes=True)


class LeaderboardResponse(BaseModel):
    event_id: str
    event_name: str
    start_date: date
    end_date: date
    total_days: int
    entries: List[LeaderboardEntryResponse]


class CompletionResponse(LeaderboardEntryResponse):
    event_id: str
    missed_days: int


class ScoredActivityResponse(BaseModel):
    activity_date: date
    strava_activity_id: int
    distance_km: float
    pace_min_per_km: Optional[float] = None
    base_points: float
    final_points: float
    bonus_applied: Optional[str] = None
    bonus_multiplier: float = 1.0
    bonus_message: Optional[str] = None
    rejected_bonuses: Optional[List[Dict[str, Any]]] = None
    blocked: bool
    block_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
