"""
Tests for the Strava HTTP wrappers: request shape and error mapping.
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.exceptions import RateLimitExceeded, UpstreamHTTPError
from services import strava_service


def _response(status_code=200, payload=None, headers=None):
    r = MagicMock()
    r.status_code = status_code
    r.headers = headers or {}
    r.json.return_value = payload
    r.text = ""
    return r


class TestListActivities:
    def test_sends_after_and_paging(self):
        with patch("services.strava_service.requests.get", return_value=_response(payload=[{"id": 1}])) as get:
            result = strava_service.list_activities("tok", after_timestamp=1704067200, page=2, per_page=30)

        assert result == [{"id": 1}]
        _, kwargs = get.call_args
        assert kwargs["params"] == {"page": 2, "per_page": 30, "after": 1704067200}
        assert kwargs["headers"] == {"Authorization": "Bearer tok"}

    def test_omits_empty_after(self):
        with patch("services.strava_service.requests.get", return_value=_response(payload=[])) as get:
            strava_service.list_activities("tok")
        assert "after" not in get.call_args[1]["params"]

    def test_non_list_payload_is_empty(self):
        with patch("services.strava_service.requests.get", return_value=_response(payload={"message": "?"})):
            assert strava_service.list_activities("tok") == []


class TestErrorMapping:
    def test_429_raises_rate_limit_with_retry_after(self):
        r = _response(429, {"message": "Rate Limit Exceeded"}, headers={"Retry-After": "120"})
        with patch("services.strava_service.requests.get", return_value=r):
            with pytest.raises(RateLimitExceeded) as exc:
                strava_service.get_activity("tok", 5)
        assert exc.value.retry_after_s == 120

    def test_404_is_not_retryable(self):
        with patch("services.strava_service.requests.get", return_value=_response(404, {"message": "Record Not Found"})):
            with pytest.raises(UpstreamHTTPError) as exc:
                strava_service.get_activity("tok", 5)
        assert exc.value.status_code == 404
        assert exc.value.retryable is False
        assert "Record Not Found" in str(exc.value)

    def test_network_error_is_status_zero(self):
        with patch("services.strava_service.requests.get", side_effect=requests.exceptions.ConnectionError("reset")):
            with pytest.raises(UpstreamHTTPError) as exc:
                strava_service.get_athlete("tok")
        assert exc.value.status_code == 0
        assert exc.value.retryable is True

    def test_refresh_failure_maps_status(self):
        with patch("services.strava_service.requests.post", return_value=_response(400, {"message": "Bad Request"})):
            with pytest.raises(UpstreamHTTPError) as exc:
                strava_service.refresh_access_token("refresh")
        assert exc.value.status_code == 400


def test_get_activity_requests_all_efforts():
    with patch("services.strava_service.requests.get", return_value=_response(payload={"id": 5})) as get:
        assert strava_service.get_activity("tok", 5) == {"id": 5}
    url = get.call_args[0][0]
    assert url.endswith("/activities/5")
    assert get.call_args[1]["params"] == {"include_all_efforts": "true"}
