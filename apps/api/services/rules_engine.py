"""
Rules Engine

Scores one NormalizedActivity for one event under the event's configured rules.

Two rule families:

Blocking rules (evaluated in declaration order; the first failure zeroes the
score and is recorded as block_reason):
    min_distance, pace_range, time_range,
    daily_increase_individual, daily_increase_team, min_participants

Bonus rules (mutually exclusive; ONLY the highest-priority eligible bonus
applies, the rest are recorded as rejected):
    holiday_bonus (3) > lucky_distance (2) > multiplier_day (1)

base_points is the distance in km; final_points = base_points * multiplier of
the applied bonus, or 0 when blocked. A holiday run on a multiplier weekday
gets x3, never x3 and x2.

The engine is pure: history-dependent rules read a RuleContext preloaded by
the caller (services/activity_store.py), so scoring is safe to call from any
number of threads.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from services.activity_normalizer import NormalizedActivity

logger = logging.getLogger(__name__)


class RuleType(str, Enum):
    # Blocking
    MIN_DISTANCE = "min_distance"
    PACE_RANGE = "pace_range"
    TIME_RANGE = "time_range"
    DAILY_INCREASE_INDIVIDUAL = "daily_increase_individual"
    DAILY_INCREASE_TEAM = "daily_increase_team"
    MIN_PARTICIPANTS = "min_participants"
    # Bonus
    HOLIDAY_BONUS = "holiday_bonus"
    LUCKY_DISTANCE = "lucky_distance"
    MULTIPLIER_DAY = "multiplier_day"
    # Event-level, consumed by services/completion.py
    MIN_ACTIVE_DAYS = "min_active_days"
    PENALTY = "penalty"


# Older events were configured with the Tet-specific name.
RULE_TYPE_ALIASES = {"tet_bonus": RuleType.HOLIDAY_BONUS.value}

BLOCKING_RULES = frozenset({
    RuleType.MIN_DISTANCE,
    RuleType.PACE_RANGE,
    RuleType.TIME_RANGE,
    RuleType.DAILY_INCREASE_INDIVIDUAL,
    RuleType.DAILY_INCREASE_TEAM,
    RuleType.MIN_PARTICIPANTS,
})

# Higher wins.
BONUS_PRIORITY = {
    RuleType.HOLIDAY_BONUS: 3,
    RuleType.LUCKY_DISTANCE: 2,
    RuleType.MULTIPLIER_DAY: 1,
}

EVENT_LEVEL_RULES = frozenset({RuleType.MIN_ACTIVE_DAYS, RuleType.PENALTY})

DEFAULT_MIN_DISTANCE_KM = 2.0
DEFAULT_LUCKY_TOLERANCE_KM = 0.1

WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def _parse_rule_type(raw: str) -> Optional[RuleType]:
    raw = RULE_TYPE_ALIASES.get(raw, raw)
    try:
        return RuleType(raw)
    except ValueError:
        return None


@dataclass(frozen=True)
class EventRuleSpec:
    rule_type: str
    config: Mapping[str, Any] = field(default_factory=dict)
    rule_id: Optional[str] = None

    @property
    def kind(self) -> Optional[RuleType]:
        return _parse_rule_type(self.rule_type)

    @property
    def priority(self) -> int:
        """Bonus priority derived from the rule type; 0 for non-bonus rules."""
        return BONUS_PRIORITY.get(self.kind, 0)

    @classmethod
    def from_model(cls, rule) -> "EventRuleSpec":
        return cls(rule_type=rule.rule_type, config=dict(rule.config or {}), rule_id=rule.id)


@dataclass(frozen=True)
class RuleResult:
    rule_type: str
    passed: bool
    message: str
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"rule_type": self.rule_type, "rule_id": self.rule_id, "passed": self.passed, "message": self.message}


@dataclass(frozen=True)
class BonusResult:
    bonus_type: str
    multiplier: float
    message: str
    priority: int
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bonus_type": self.bonus_type,
            "rule_id": self.rule_id,
            "multiplier": self.multiplier,
            "priority": self.priority,
            "message": self.message,
        }


@dataclass(frozen=True)
class RuleContext:
    """
    Previously scored history for the same user/team/event.

    Only non-blocked rows count as "valid" history. Team and participant
    figures exclude the activity being scored; the engine adds it.
    """
    previous_distance_km: Optional[float] = None
    team_id: Optional[str] = None
    team_today_km: float = 0.0
    team_previous_km: Optional[float] = None
    participants_today: int = 0


@dataclass(frozen=True)
class ScoredActivityResult:
    activity_id: int
    user_id: str
    event_id: Optional[str]
    activity_date: date
    distance_km: float
    moving_time_s: int
    pace_min_per_km: Optional[float]
    base_points: float
    final_points: float
    applied_bonus: Optional[BonusResult]
    rejected_bonuses: Tuple[BonusResult, ...]
    blocked: bool
    block_reason: Optional[str]
    rule_log: Tuple[RuleResult, ...]

    @property
    def multiplier(self) -> float:
        return self.applied_bonus.multiplier if self.applied_bonus else 1.0


# --- Blocking rules -------------------------------------------------------


def _cfg_float(config: Mapping[str, Any], key: str, default: float) -> float:
    value = config.get(key)
    return default if value is None or value == "" else float(value)


def _parse_hhmm(value: str) -> time:
    hours, minutes = str(value).split(":")[:2]
    return time(int(hours), int(minutes))


def _in_time_window(moment: datetime, start: time, end: time) -> bool:
    """Inclusive, minute resolution. A window with start > end wraps past midnight."""
    current = moment.time().replace(second=0, microsecond=0)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def check_min_distance(activity: NormalizedActivity, config: Mapping[str, Any]) -> Tuple[bool, str]:
    min_km = _cfg_float(config, "min_km", DEFAULT_MIN_DISTANCE_KM)
    distance_km = activity.distance_km
    if distance_km >= min_km:
        return True, f"Distance {distance_km:.2f}km meets minimum {min_km}km"
    return False, f"Distance {distance_km:.2f}km is below minimum {min_km}km"


def check_pace_range(activity: NormalizedActivity, config: Mapping[str, Any]) -> Tuple[bool, str]:
    pace = activity.pace_min_per_km
    if pace is None:
        return False, "No pace data available"
    min_pace = _cfg_float(config, "min_pace", 0.0)
    max_pace = _cfg_float(config, "max_pace", math.inf)
    if min_pace <= pace <= max_pace:
        return True, f"Pace {pace:.2f} min/km is within range ({min_pace}-{max_pace})"
    return False, f"Pace {pace:.2f} min/km is outside allowed range ({min_pace}-{max_pace})"


def check_time_range(activity: NormalizedActivity, config: Mapping[str, Any]) -> Tuple[bool, str]:
    if not config.get("start_time") or not config.get("end_time"):
        return True, "No time restriction"
    start, end = _parse_hhmm(config["start_time"]), _parse_hhmm(config["end_time"])
    stamp = activity.start_time_local.strftime("%H:%M")
    window = f"{config['start_time']}-{config['end_time']}"
    if _in_time_window(activity.start_time_local, start, end):
        return True, f"Activity time {stamp} is within allowed range ({window})"
    return False, f"Activity time {stamp} is outside allowed range ({window})"


def check_daily_increase_individual(
    activity: NormalizedActivity, config: Mapping[str, Any], context: RuleContext
) -> Tuple[bool, str]:
    increase_km = float(config.get("increase_km") or 0)
    if context.previous_distance_km is None:
        return True, "First activity - automatically passed"
    increase = activity.distance_km - context.previous_distance_km
    if increase >= increase_km:
        return True, f"Increased by {increase:.2f}km (required: {increase_km}km)"
    return False, f"Failed to increase by {increase_km}km. Only increased by {increase:.2f}km"


def check_daily_increase_team(
    activity: NormalizedActivity, config: Mapping[str, Any], context: RuleContext
) -> Tuple[bool, str]:
    team_increase_km = float(config.get("team_increase_km") or 0)
    if not context.team_id:
        return False, "User not in a team"
    if context.team_previous_km is None:
        return True, "First day - automatically passed"
    today_total = context.team_today_km + activity.distance_km
    increase = today_total - context.team_previous_km
    if increase >= team_increase_km:
        return True, f"Team increased by {increase:.2f}km (required: {team_increase_km}km)"
    return False, f"Team failed to increase by {team_increase_km}km. Only increased by {increase:.2f}km"


def check_min_participants(
    activity: NormalizedActivity, config: Mapping[str, Any], context: RuleContext
) -> Tuple[bool, str]:
    """
    Pass when at least `min_participants` people (this user included) have a
    valid activity on the same day.

    Counted within the user's team when they have one. A participant without
    a team is counted against the whole event; the rule does not fail with
    "not in a team".
    """
    required = int(config.get("min_participants") or 1)
    count = context.participants_today + 1
    if count >= required:
        return True, f"{count} participants ran today (required: {required})"
    return False, f"Only {count} participants ran today (required: {required})"


# --- Bonus rules ----------------------------------------------------------


def check_holiday_bonus(activity: NormalizedActivity, config: Mapping[str, Any]) -> Tuple[bool, float, str]:
    raw_date = config.get("holiday_date") or config.get("tet_date")
    if not raw_date:
        return False, 1.0, "No holiday date configured"
    holiday = date.fromisoformat(str(raw_date)[:10])
    name = config.get("name") or "Holiday bonus"
    multiplier = _cfg_float(config, "multiplier", 3.0)

    if activity.activity_date != holiday:
        return False, 1.0, "Not the holiday"

    window = config.get("time_range") or {}
    if window.get("start") and window.get("end"):
        if not _in_time_window(activity.start_time_local, _parse_hhmm(window["start"]), _parse_hhmm(window["end"])):
            return False, 1.0, f"Outside holiday window ({window['start']} - {window['end']})"

    min_km = _cfg_float(config, "min_km", 0.0)
    if activity.distance_km < min_km:
        return False, 1.0, f"Holiday bonus needs {min_km}km ({activity.distance_km:.2f}km)"

    return True, multiplier, f"{name}! x{multiplier:g} points"


def check_lucky_distance(activity: NormalizedActivity, config: Mapping[str, Any]) -> Tuple[bool, float, str]:
    tolerance = _cfg_float(config, "tolerance", DEFAULT_LUCKY_TOLERANCE_KM)
    distance_km = activity.distance_km
    for lucky in config.get("lucky_distances") or []:
        target = float(lucky["distance"])
        if abs(distance_km - target) <= tolerance:
            multiplier = _cfg_float(lucky, "multiplier", 2.0)
            label = lucky.get("name") or f"{target:g}km"
            return True, multiplier, f"Lucky distance {label} ({distance_km:.2f}km ~ {target:g}km) x{multiplier:g} points"
    return False, 1.0, "No lucky distance matched"


def check_multiplier_day(activity: NormalizedActivity, config: Mapping[str, Any]) -> Tuple[bool, float, str]:
    # 0 = Sunday ... 6 = Saturday
    day_of_week = (activity.activity_date.weekday() + 1) % 7
    target = config.get("multiplier_day")
    multiplier = _cfg_float(config, "multiplier", 2.0)
    if target is not None and day_of_week == int(target):
        return True, multiplier, f"{WEEKDAY_NAMES[day_of_week]} x{multiplier:g} points"
    return False, 1.0, "Not a multiplier day - normal points"


_STATELESS_BLOCKING = {
    RuleType.MIN_DISTANCE: check_min_distance,
    RuleType.PACE_RANGE: check_pace_range,
    RuleType.TIME_RANGE: check_time_range,
}

_HISTORY_BLOCKING = {
    RuleType.DAILY_INCREASE_INDIVIDUAL: check_daily_increase_individual,
    RuleType.DAILY_INCREASE_TEAM: check_daily_increase_team,
    RuleType.MIN_PARTICIPANTS: check_min_participants,
}

_BONUS_CHECKS = {
    RuleType.HOLIDAY_BONUS: check_holiday_bonus,
    RuleType.LUCKY_DISTANCE: check_lucky_distance,
    RuleType.MULTIPLIER_DAY: check_multiplier_day,
}


def find_rule_config(rules: Iterable[EventRuleSpec], rule_type: RuleType) -> Optional[Dict[str, Any]]:
    """Config of the first rule of `rule_type`, or None when the event does not use it."""
    for rule in rules:
        if rule.kind == rule_type:
            return dict(rule.config)
    return None


def select_bonus(eligible: Sequence[BonusResult]) -> Tuple[Optional[BonusResult], Tuple[BonusResult, ...]]:
    """
    Pick the single bonus to apply: highest priority, then highest multiplier,
    then declaration order. Everything else is rejected.
    """
    if not eligible:
        return None, ()
    ranked = sorted(eligible, key=lambda b: (-b.priority, -b.multiplier))
    return ranked[0], tuple(ranked[1:])


def score_activity(
    activity: NormalizedActivity,
    rules: Iterable[EventRuleSpec],
    context: Optional[RuleContext] = None,
    event_id: Optional[str] = None,
) -> ScoredActivityResult:
    context = context or RuleContext()
    base_points = round(activity.distance_km, 3)
    rule_log: List[RuleResult] = []
    bonus_rules: List[Tuple[RuleType, EventRuleSpec]] = []
    block_reason: Optional[str] = None

    for rule in rules:
        kind = rule.kind
        if kind is None:
            logger.warning(f"Ignoring unknown rule type {rule.rule_type!r} (event {event_id})")
            rule_log.append(RuleResult(rule.rule_type, True, "Unknown rule type", rule.rule_id))
            continue
        if kind in EVENT_LEVEL_RULES:
            continue
        if kind in BONUS_PRIORITY:
            bonus_rules.append((kind, rule))
            continue

        if kind in _STATELESS_BLOCKING:
            passed, message = _STATELESS_BLOCKING[kind](activity, rule.config)
        else:
            passed, message = _HISTORY_BLOCKING[kind](activity, rule.config, context)
        rule_log.append(RuleResult(kind.value, passed, message, rule.rule_id))
        if not passed:
            block_reason = message
            break

    if block_reason is not None:
        return ScoredActivityResult(
            activity_id=activity.id,
            user_id=activity.user_id,
            event_id=event_id,
            activity_date=activity.activity_date,
            distance_km=base_points,
            moving_time_s=activity.moving_time_seconds,
            pace_min_per_km=activity.pace_min_per_km,
            base_points=base_points,
            final_points=0.0,
            applied_bonus=None,
            rejected_bonuses=(),
            blocked=True,
            block_reason=block_reason,
            rule_log=tuple(rule_log),
        )

    eligible: List[BonusResult] = []
    for kind, rule in bonus_rules:
        passed, multiplier, message = _BONUS_CHECKS[kind](activity, rule.config)
        rule_log.append(RuleResult(kind.value, passed, message, rule.rule_id))
        if passed:
            eligible.append(BonusResult(kind.value, multiplier, message, BONUS_PRIORITY[kind], rule.rule_id))

    applied, rejected = select_bonus(eligible)
    multiplier = applied.multiplier if applied else 1.0

    return ScoredActivityResult(
        activity_id=activity.id,
        user_id=activity.user_id,
        event_id=event_id,
        activity_date=activity.activity_date,
        distance_km=base_points,
        moving_time_s=activity.moving_time_seconds,
        pace_min_per_km=activity.pace_min_per_km,
        base_points=base_points,
        final_points=round(base_points * multiplier, 3),
        applied_bonus=applied,
        rejected_bonuses=rejected,
        blocked=False,
        block_reason=None,
        rule_log=tuple(rule_log),
    )
