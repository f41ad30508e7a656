"""
Activity Normalizer

Converts a Strava activity payload (summary or detail) into an immutable
NormalizedActivity, the only input the rules engine reads.

Pace convention used everywhere: minutes per kilometre,
moving_time / 60 / distance_km.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from core.config import settings


# Map Strava effort names to our standardized categories
STRAVA_EFFORT_MAP = {
    '400m': '400m',
    '1/2 mile': '800m',
    '1k': '1k',
    '1 mile': 'mile',
    'mile': 'mile',
    '2 mile': '2mile',
    '5k': '5k',
    '10k': '10k',
    '15k': '15k',
    '10 mile': '10_mile',
    '10-mile': '10_mile',
    '20k': '20k',
    'half marathon': 'half_marathon',
    'half-marathon': 'half_marathon',
    '25k': '25k',
    '30k': '30k',
    'marathon': 'marathon',
    '50k': '50k',
    '100k': '100k',
}


def normalize_effort_name(name: Optional[str]) -> Optional[str]:
    """Convert Strava effort name to our standardized category."""
    if not name:
        return None
    return STRAVA_EFFORT_MAP.get(name.lower().strip())


def parse_strava_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO8601 string as Strava sends it ("2024-01-15T06:30:00Z")."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_local_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse start_date_local.

    Strava suffixes local times with "Z" although they are wall-clock times
    at the athlete's location, so the offset is discarded.
    """
    parsed = parse_strava_datetime(value)
    return parsed.replace(tzinfo=None) if parsed else None


@dataclass(frozen=True)
class BestEffortRecord:
    effort_name: str
    elapsed_time: int
    moving_time: Optional[int] = None
    distance: Optional[float] = None
    start_date_local: Optional[datetime] = None


@dataclass(frozen=True)
class NormalizedActivity:
    id: int
    user_id: str
    sport_kind: Optional[str]
    distance_meters: float
    moving_time_seconds: int
    start_time_local: datetime
    best_efforts: Tuple[BestEffortRecord, ...] = ()
    name: Optional[str] = None
    elapsed_time_seconds: Optional[int] = None
    start_time_utc: Optional[datetime] = None
    timezone: Optional[str] = None
    total_elevation_gain: Optional[float] = None
    average_speed: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def distance_km(self) -> float:
        return self.distance_meters / 1000.0

    @property
    def pace_min_per_km(self) -> Optional[float]:
        return pace_min_per_km(self.moving_time_seconds, self.distance_km)

    @property
    def activity_date(self) -> date:
        """Calendar day of the run at the athlete's location."""
        return self.start_time_local.date()


def pace_min_per_km(moving_time_s: Optional[int], distance_km: Optional[float]) -> Optional[float]:
    if not moving_time_s or not distance_km or distance_km <= 0:
        return None
    return moving_time_s / 60.0 / distance_km


def activity_kind(payload: Dict[str, Any]) -> Optional[str]:
    # sport_type is the newer, more specific field (e.g. "TrailRun").
    return payload.get("sport_type") or payload.get("type")


def is_supported_kind(payload: Dict[str, Any]) -> bool:
    """Cheap filter on a summary payload, before any detail fetch."""
    kinds = settings.supported_activity_kinds
    return activity_kind(payload) in kinds or payload.get("type") in kinds


def extract_best_efforts(efforts: Optional[List[Dict[str, Any]]]) -> Tuple[BestEffortRecord, ...]:
    """Standardized best efforts from a Strava `best_efforts` list; unknown names are dropped."""
    records = []
    for effort in efforts or []:
        name = normalize_effort_name(effort.get("name"))
        elapsed = effort.get("elapsed_time")
        if not name or not elapsed:
            continue
        records.append(
            BestEffortRecord(
                effort_name=name,
                elapsed_time=int(elapsed),
                moving_time=int(effort["moving_time"]) if effort.get("moving_time") else None,
                distance=float(effort["distance"]) if effort.get("distance") else None,
                start_date_local=parse_local_datetime(effort.get("start_date_local")),
            )
        )
    return tuple(records)


def normalize_activity(payload: Dict[str, Any], user_id: str) -> NormalizedActivity:
    """
    Build a NormalizedActivity from a Strava payload.

    Raises ValueError when the payload lacks an id or a start time.
    """
    if not payload.get("id"):
        raise ValueError("Strava activity payload has no id")

    start_local = parse_local_datetime(payload.get("start_date_local"))
    start_utc = parse_strava_datetime(payload.get("start_date"))
    if start_local is None:
        if start_utc is None:
            raise ValueError(f"Strava activity {payload.get('id')} has no start date")
        start_local = start_utc.replace(tzinfo=None)

    return NormalizedActivity(
        id=int(payload["id"]),
        user_id=user_id,
        sport_kind=activity_kind(payload),
        distance_meters=float(payload.get("distance") or 0.0),
        moving_time_seconds=int(payload.get("moving_time") or 0),
        start_time_local=start_local,
        best_efforts=extract_best_efforts(payload.get("best_efforts")),
        name=payload.get("name"),
        elapsed_time_seconds=payload.get("elapsed_time"),
        start_time_utc=start_utc,
        timezone=payload.get("timezone"),
        total_elevation_gain=payload.get("total_elevation_gain"),
        average_speed=payload.get("average_speed"),
        raw=payload,
    )
