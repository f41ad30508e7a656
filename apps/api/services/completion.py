"""
Completion & Leaderboard Ranking

Aggregates scored days into per-user completion figures and a stable
ranking. Everything here is derived on demand from ScoredActivity rows and
never persisted as a source of truth.

    required_days = max(ceil(total_days * min_percentage / 100) - grace_days, 1)
    is_complete   = active_days >= required_days

Ranking sorts by completion_percentage desc, then active_days desc, using
standard competition ranking (1, 2, 2, 4).
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

DEFAULT_MIN_PERCENTAGE = 66.67


@dataclass(frozen=True)
class CompletionResult:
    active_days: int
    total_days: int
    required_days: int
    grace_days: int
    completion_percentage: float
    missed_days: int
    is_complete: bool


@dataclass(frozen=True)
class StreakResult:
    current_streak: int
    longest_streak: int
    total_active_days: int


@dataclass(frozen=True)
class PenaltyResult:
    missed_days: int
    penalty_amount: float
    currency: str


@dataclass(frozen=True)
class Badge:
    badge_type: str
    name: str


@dataclass(frozen=True)
class LeaderboardEntry:
    user_id: str
    active_days: int
    total_days: int
    required_days: int
    completion_percentage: float
    is_complete: bool
    rank: int = 0
    display_name: Optional[str] = None
    team_id: Optional[str] = None
    total_km: float = 0.0
    total_points: float = 0.0
    current_streak: int = 0
    longest_streak: int = 0
    badge: Optional[Badge] = None
    penalty: Optional[PenaltyResult] = None
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)


def event_total_days(start_date: date, end_date: date) -> int:
    """Inclusive number of calendar days in an event."""
    return (end_date - start_date).days + 1


def compute_completion(
    active_days: int,
    total_event_days: int,
    min_percentage: Optional[float] = None,
    grace_days: int = 0,
) -> CompletionResult:
    min_percentage = DEFAULT_MIN_PERCENTAGE if min_percentage is None else float(min_percentage)
    grace_days = int(grace_days or 0)

    # 10 * 70 / 100 is 7.000000000000001 in floats; strip the noise before ceil.
    base_required = math.ceil(round(total_event_days * min_percentage / 100, 9))
    required_days = max(base_required - grace_days, 1)
    percentage = round(active_days / total_event_days * 100, 2) if total_event_days > 0 else 0.0

    return CompletionResult(
        active_days=active_days,
        total_days=total_event_days,
        required_days=required_days,
        grace_days=grace_days,
        completion_percentage=percentage,
        missed_days=max(total_event_days - active_days, 0),
        is_complete=active_days >= required_days,
    )


def completion_from_config(active_days: int, total_event_days: int, config: Optional[Mapping[str, Any]]) -> CompletionResult:
    """Apply a min_active_days rule config ({min_percentage, grace_days})."""
    config = config or {}
    min_percentage = config.get("min_percentage")
    grace_days = config.get("grace_days")
    return compute_completion(
        active_days,
        total_event_days,
        min_percentage=DEFAULT_MIN_PERCENTAGE if min_percentage in (None, "") else float(min_percentage),
        grace_days=0 if grace_days in (None, "") else int(grace_days),
    )


def rank_entries(entries: Iterable[LeaderboardEntry]) -> List[LeaderboardEntry]:
    ordered = sorted(entries, key=lambda e: (-e.completion_percentage, -e.active_days))
    ranked: List[LeaderboardEntry] = []
    current_rank = 1
    for index, entry in enumerate(ordered):
        if index > 0:
            prev = ordered[index - 1]
            if (prev.completion_percentage, prev.active_days) != (entry.completion_percentage, entry.active_days):
                current_rank = index + 1
        ranked.append(replace(entry, rank=current_rank))
    return ranked


def calculate_streak(active_dates: Iterable[date]) -> StreakResult:
    dates = sorted(set(active_dates))
    if not dates:
        return StreakResult(0, 0, 0)

    longest = run = 1
    for prev, curr in zip(dates, dates[1:]):
        if curr - prev == timedelta(days=1):
            run += 1
            longest = max(longest, run)
        else:
            run = 1

    # current = the run that ends at the latest active day
    return StreakResult(current_streak=run, longest_streak=longest, total_active_days=len(dates))


def calculate_penalty(total_days: int, active_days: int, config: Mapping[str, Any]) -> PenaltyResult:
    missed = max(total_days - active_days, 0)
    per_day = float(config.get("penalty_per_day") or 0)
    return PenaltyResult(missed_days=missed, penalty_amount=missed * per_day, currency=config.get("currency") or "VND")


def determine_badge(completion_percentage: float) -> Optional[Badge]:
    if completion_percentage >= 100:
        return Badge("perfect_completion", "Perfect")
    if completion_percentage >= 90:
        return Badge("excellent_completion", "Iron")
    if completion_percentage >= 66.67:
        return Badge("good_completion", "Persistent")
    if completion_percentage >= 50:
        return Badge("basic_completion", "Starter")
    return None


@dataclass
class ParticipantDays:
    """Input row for build_leaderboard: one participant and their valid scored days."""
    user_id: str
    active_dates: Sequence[date]
    display_name: Optional[str] = None
    team_id: Optional[str] = None
    total_km: float = 0.0
    total_points: float = 0.0


def build_leaderboard(
    participants: Iterable[ParticipantDays],
    start_date: date,
    end_date: date,
    min_active_days_config: Optional[Mapping[str, Any]] = None,
    penalty_config: Optional[Mapping[str, Any]] = None,
) -> List[LeaderboardEntry]:
    total_days = event_total_days(start_date, end_date)
    entries = []
    for p in participants:
        dates = {d for d in p.active_dates if start_date <= d <= end_date}
        completion = completion_from_config(len(dates), total_days, min_active_days_config)
        streak = calculate_streak(dates)
        entries.append(
            LeaderboardEntry(
                user_id=p.user_id,
                display_name=p.display_name,
                team_id=p.team_id,
                active_days=completion.active_days,
                total_days=total_days,
                required_days=completion.required_days,
                completion_percentage=completion.completion_percentage,
                is_complete=completion.is_complete,
                total_km=round(p.total_km, 3),
                total_points=round(p.total_points, 3),
                current_streak=streak.current_streak,
                longest_streak=streak.longest_streak,
                badge=determine_badge(completion.completion_percentage),
                penalty=calculate_penalty(total_days, completion.active_days, penalty_config) if penalty_config else None,
            )
        )
    return rank_entries(entries)
