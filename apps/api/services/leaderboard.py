"""
Event leaderboard and per-user completion, loaded from scored history.

Responses are cached in Redis (core/cache.py) for LEADERBOARD_CACHE_TTL
seconds; scoring writes invalidate the event's keys.
"""
import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from core.cache import completion_cache_key, get_cache, leaderboard_cache_key, set_cache
from core.config import settings
from core.exceptions import NotFoundError
from models import Event
from services.activity_store import ActivityStore
from services.completion import LeaderboardEntry, build_leaderboard
from services.rules_engine import EventRuleSpec, RuleType, find_rule_config
from schemas import CompletionResponse, LeaderboardEntryResponse, LeaderboardResponse

logger = logging.getLogger(__name__)


def _event_entries(store: ActivityStore, event: Event) -> List[LeaderboardEntry]:
    rules = [EventRuleSpec.from_model(r) for r in event.rules]
    return build_leaderboard(
        store.load_participant_days(event.id),
        event.start_date,
        event.end_date,
        min_active_days_config=find_rule_config(rules, RuleType.MIN_ACTIVE_DAYS),
        penalty_config=find_rule_config(rules, RuleType.PENALTY),
    )


def _get_event(store: ActivityStore, event_id: str) -> Event:
    event = store.get_event(event_id)
    if event is None:
        raise NotFoundError("Event", event_id)
    return event


def get_event_leaderboard(db: Session, event_id: str, use_cache: bool = True) -> Dict[str, Any]:
    key = leaderboard_cache_key(event_id)
    if use_cache:
        cached = get_cache(key)
        if cached is not None:
            logger.debug(f"Leaderboard cache HIT for event {event_id}")
            return cached

    store = ActivityStore(db)
    event = _get_event(store, event_id)
    entries = _event_entries(store, event)
    response = LeaderboardResponse(
        event_id=event.id,
        event_name=event.name,
        start_date=event.start_date,
        end_date=event.end_date,
        total_days=entries[0].total_days if entries else (event.end_date - event.start_date).days + 1,
        entries=[LeaderboardEntryResponse.model_validate(e) for e in entries],
    ).model_dump(mode="json")

    set_cache(key, response, ttl=settings.LEADERBOARD_CACHE_TTL)
    return response


def get_user_completion(db: Session, event_id: str, user_id: str) -> Dict[str, Any]:
    key = completion_cache_key(event_id, user_id)
    cached = get_cache(key)
    if cached is not None:
        return cached

    store = ActivityStore(db)
    event = _get_event(store, event_id)
    # Rank needs the whole field, so the full board is built and the user picked out.
    entry = next((e for e in _event_entries(store, event) if e.user_id == user_id), None)
    if entry is None:
        raise NotFoundError("Participant", f"{user_id} in event {event_id}")

    response = CompletionResponse(
        event_id=event.id,
        missed_days=max(entry.total_days - entry.active_days, 0),
        **LeaderboardEntryResponse.model_validate(entry).model_dump(),
    ).model_dump(mode="json")
    set_cache(key, response, ttl=settings.LEADERBOARD_CACHE_TTL)
    return response
