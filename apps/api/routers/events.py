"""
Event Router

Leaderboards and per-participant completion for challenge events.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.database import get_db
from core.exceptions import NotFoundError
from schemas import CompletionResponse, LeaderboardResponse, ScoredActivityResponse
from services.activity_store import ActivityStore
from services.leaderboard import get_event_leaderboard, get_user_completion

router = APIRouter(prefix="/v1/events", tags=["events"])


@router.get("/{event_id}/leaderboard", response_model=LeaderboardResponse)
def event_leaderboard(
    event_id: str,
    fresh: bool = Query(False, description="Bypass the leaderboard cache"),
    db: Session = Depends(get_db),
):
    return get_event_leaderboard(db, event_id, use_cache=not fresh)


@router.get("/{event_id}/completion/{user_id}", response_model=CompletionResponse)
def user_completion(event_id: str, user_id: str, db: Session = Depends(get_db)):
    return get_user_completion(db, event_id, user_id)


@router.get("/{event_id}/activities", response_model=List[ScoredActivityResponse])
def scored_activities(event_id: str, user_id: Optional[str] = None, db: Session = Depends(get_db)):
    """Scored rows for the event by day, with the applied and rejected bonuses."""
    store = ActivityStore(db)
    if store.get_event(event_id) is None:
        raise NotFoundError("Event", event_id)
    return store.get_scored_activities(event_id, user_id=user_id)
