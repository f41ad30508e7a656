"""
Strava HTTP client.

Thin wrappers over the Strava REST API. Every function here performs exactly
ONE upstream HTTP call and must only be invoked from the request scheduler
(services/strava_rate_limiter.py), which owns the global rate window.

Errors are mapped onto the domain hierarchy in core.exceptions:
- 429            -> RateLimitExceeded (retry_after_s from the Retry-After header)
- other >= 400   -> UpstreamHTTPError(status)
- network errors -> UpstreamHTTPError(0), retryable
"""
import logging
from typing import Any, Dict, List, Optional

import requests

from core.config import settings
from core.exceptions import RateLimitExceeded, UpstreamHTTPError

logger = logging.getLogger(__name__)


def _error_message(r: requests.Response) -> str:
    try:
        payload = r.json()
    except ValueError:
        return (r.text or "")[:200]
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or payload)[:200]
    return str(payload)[:200]


def _check_response(r: requests.Response, what: str) -> None:
    if r.status_code == 429:
        retry_after = int(r.headers.get("Retry-After", 900))
        logger.warning(f"Strava 429 on {what} (Retry-After {retry_after}s)")
        raise RateLimitExceeded(f"429 Rate limited for {what}", retry_after_s=retry_after)
    if r.status_code >= 400:
        raise UpstreamHTTPError(r.status_code, _error_message(r))


def _get(path: str, access_token: str, params: Optional[Dict[str, Any]] = None) -> Any:
    url = f"{settings.STRAVA_API_BASE}{path}"
    headers = {"Authorization": f"Bearer {access_token}"}
    try:
        r = requests.get(url, headers=headers, params=params, timeout=settings.STRAVA_REQUEST_TIMEOUT_S)
    except requests.exceptions.RequestException as e:
        raise UpstreamHTTPError(0, f"request error on {path}: {e}") from e
    _check_response(r, path)
    return r.json()


def list_activities(
    access_token: str,
    after_timestamp: Optional[int] = None,
    page: int = 1,
    per_page: int = 30,
) -> List[Dict]:
    """
    One page of activity summaries from /athlete/activities.

    With `after`, Strava returns activities that started strictly after the
    timestamp, oldest first.
    """
    params: Dict[str, Any] = {"page": int(page), "per_page": int(per_page)}
    if after_timestamp is not None and after_timestamp > 0:
        params["after"] = int(after_timestamp)

    activities = _get("/athlete/activities", access_token, params=params)
    return activities if isinstance(activities, list) else []


def get_activity(access_token: str, activity_id: int) -> Dict:
    """
    Detailed activity record including best efforts.

    Strava omits `best_efforts` unless include_all_efforts is enabled.
    """
    details = _get(f"/activities/{int(activity_id)}", access_token, params={"include_all_efforts": "true"})
    if not isinstance(details, dict):
        raise UpstreamHTTPError(502, f"unexpected payload for activity {activity_id}")
    return details


def get_athlete(access_token: str) -> Dict:
    return _get("/athlete", access_token)


def refresh_access_token(refresh_token: str) -> Dict:
    """
    Exchange a refresh token for a new access token from Strava.

    Returns dict with: access_token, refresh_token, expires_at, expires_in, token_type
    """
    data = {
        "client_id": settings.STRAVA_CLIENT_ID,
        "client_secret": settings.STRAVA_CLIENT_SECRET,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    try:
        r = requests.post(settings.STRAVA_OAUTH_TOKEN_URL, json=data, timeout=settings.STRAVA_REQUEST_TIMEOUT_S)
    except requests.exceptions.RequestException as e:
        raise UpstreamHTTPError(0, f"request error on token refresh: {e}") from e
    _check_response(r, "token refresh")
    return r.json()
