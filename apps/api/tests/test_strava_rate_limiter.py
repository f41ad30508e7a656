"""
Tests for the Strava request scheduler.

A fake clock drives both the rate window and the scheduler's sleeps, so
throttling is observable without waiting.
"""
import threading

import pytest

from core.exceptions import RateLimitExceeded, RefreshFailed, UpstreamHTTPError
from services.strava_rate_limiter import (
    DEFAULT_PRIORITY,
    HIGHEST_PRIORITY,
    LOWEST_PRIORITY,
    RateWindow,
    RequestKind,
    RequestScheduler,
    read_status,
)
from fixtures.strava_fakes import FakeClock, FakeCredentials, FakeStravaClient, run_payload


def _activities(n):
    return [run_payload(i, f"2024-01-{(i % 28) + 1:02d}T06:00:00Z") for i in range(1, n + 1)]


def _scheduler(client, clock, credentials=None, quota=90, max_retries=3):
    return RequestScheduler(
        credentials=credentials or FakeCredentials(),
        window=RateWindow(quota=quota, window_s=900, clock=clock.monotonic),
        client=client,
        sleep=clock.sleep,
        min_spacing_s=0,
        poll_s=60,
        max_retries=max_retries,
    )


class TestRateWindow:
    def test_counts_within_window(self):
        clock = FakeClock()
        window = RateWindow(quota=3, window_s=900, clock=clock.monotonic)
        for _ in range(3):
            assert window.can_proceed()
            window.record_sent()
        assert not window.can_proceed()
        assert window.usage() == {"used": 3, "limit": 3, "percentage": 100.0}

    def test_old_sends_slide_out(self):
        clock = FakeClock()
        window = RateWindow(quota=2, window_s=900, clock=clock.monotonic)
        window.record_sent()
        clock.advance(seconds=600)
        window.record_sent()
        assert not window.can_proceed()
        clock.advance(seconds=300)
        assert window.can_proceed()
        assert window.usage()["used"] == 1

    def test_can_proceed_reserves_several_slots(self):
        clock = FakeClock()
        window = RateWindow(quota=2, window_s=900, clock=clock.monotonic)
        window.record_sent()
        assert window.can_proceed(1)
        assert not window.can_proceed(2)


class TestRequestScheduler:
    def test_quota_never_exceeded_in_any_window(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(12), clock=clock)
        scheduler = _scheduler(client, clock, quota=5)

        futures = [scheduler.submit("u1", RequestKind.FETCH_ACTIVITY, activity_id=i) for i in range(1, 13)]
        scheduler.run_pending()

        assert all(f.result()["id"] == i for i, f in enumerate(futures, start=1))
        sent_at = [c[2] for c in client.calls]
        assert len(sent_at) == 12
        for t in sent_at:
            in_window = [s for s in sent_at if t <= s < t + 900]
            assert len(in_window) <= 5
        # 12 requests at 5 per 15 minutes need at least two full waits.
        assert clock.t >= 1800

    def test_priority_then_fifo(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(4), clock=clock)
        scheduler = _scheduler(client, clock)

        scheduler.submit("u1", RequestKind.FETCH_ACTIVITY, activity_id=1, priority=LOWEST_PRIORITY)
        scheduler.submit("u1", RequestKind.FETCH_ACTIVITY, activity_id=2, priority=DEFAULT_PRIORITY)
        scheduler.submit("u1", RequestKind.FETCH_ACTIVITY, activity_id=3, priority=HIGHEST_PRIORITY)
        scheduler.submit("u1", RequestKind.FETCH_ACTIVITY, activity_id=4, priority=DEFAULT_PRIORITY)
        scheduler.run_pending()

        assert client.activity_calls() == [3, 2, 4, 1]

    def test_retryable_failure_is_requeued_at_lower_priority(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(2), clock=clock)
        client.fail(1, UpstreamHTTPError(503, "unavailable"))
        scheduler = _scheduler(client, clock)

        first = scheduler.submit("u1", RequestKind.FETCH_ACTIVITY, activity_id=1, priority=HIGHEST_PRIORITY)
        second = scheduler.submit("u1", RequestKind.FETCH_ACTIVITY, activity_id=2, priority=DEFAULT_PRIORITY)
        scheduler.run_pending()

        # After the 503 the first request drops to priority 2 behind the earlier-queued second one.
        assert client.activity_calls() == [1, 2, 1]
        assert first.result()["id"] == 1
        assert second.result()["id"] == 2
        assert scheduler.failed_count == 0
        assert scheduler.processed_count == 2

    def test_rate_limited_response_is_retried(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(1), clock=clock)
        client.fail(1, RateLimitExceeded("429"))
        scheduler = _scheduler(client, clock)

        assert scheduler.call("u1", RequestKind.FETCH_ACTIVITY, activity_id=1)["id"] == 1
        assert client.activity_calls() == [1, 1]

    def test_gives_up_after_max_retries(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(1), clock=clock)
        client.fail(1, *[UpstreamHTTPError(500, "boom") for _ in range(10)])
        scheduler = _scheduler(client, clock, max_retries=3)

        future = scheduler.submit("u1", RequestKind.FETCH_ACTIVITY, activity_id=1)
        scheduler.run_pending()

        assert isinstance(future.exception(), UpstreamHTTPError)
        assert len(client.activity_calls()) == 4
        assert scheduler.failed_count == 1

    def test_client_error_is_not_retried(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(1), clock=clock)
        client.fail(1, UpstreamHTTPError(404, "Record Not Found"))
        scheduler = _scheduler(client, clock)

        with pytest.raises(UpstreamHTTPError) as exc_info:
            scheduler.call("u1", RequestKind.FETCH_ACTIVITY, activity_id=1)

        assert exc_info.value.status_code == 404
        assert client.activity_calls() == [1]
        assert scheduler.failed_count == 1

    def test_credential_failure_fails_without_calling_strava(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(1), clock=clock)
        credentials = FakeCredentials(error=RefreshFailed("u1", "invalid_grant"))
        scheduler = _scheduler(client, clock, credentials=credentials)

        with pytest.raises(RefreshFailed):
            scheduler.call("u1", RequestKind.FETCH_ACTIVITY, activity_id=1)

        assert client.calls == []
        assert scheduler.failed_count == 1

    def test_token_refresh_counts_against_the_window(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(1), clock=clock)
        credentials = FakeCredentials(expiring=True)
        scheduler = _scheduler(client, clock, credentials=credentials)

        scheduler.call("u1", RequestKind.FETCH_ACTIVITY, activity_id=1)

        assert credentials.refreshes == 1
        assert scheduler.window.usage()["used"] == 2

    def test_list_activities_passes_paging_params(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(3), clock=clock)
        scheduler = _scheduler(client, clock)

        page = scheduler.call("u1", RequestKind.LIST_ACTIVITIES, after_timestamp=0, page=1, per_page=2)

        assert [a["id"] for a in page] == [1, 2]

    def test_status_reports_window_and_queue(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(2), clock=clock)
        scheduler = _scheduler(client, clock)

        scheduler.submit("u1", RequestKind.FETCH_ACTIVITY, activity_id=1)
        assert scheduler.status()["queued"] == 1
        scheduler.run_pending()

        status = scheduler.status()
        assert status["used"] == 1
        assert status["limit"] == 90
        assert status["queued"] == 0
        assert status["processed"] == 1
        assert status["running"] is False

    def test_status_published_after_each_request(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(1), clock=clock)
        published = []
        scheduler = _scheduler(client, clock)
        scheduler._on_status = published.append

        scheduler.call("u1", RequestKind.FETCH_ACTIVITY, activity_id=1)

        assert published and published[-1]["used"] == 1

    def test_background_worker_processes_queue(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(1), clock=clock)
        scheduler = _scheduler(client, clock)
        scheduler.start()
        try:
            assert scheduler.is_running
            assert scheduler.call("u1", RequestKind.FETCH_ACTIVITY, activity_id=1)["id"] == 1
        finally:
            scheduler.stop(timeout=5)
        assert not scheduler.is_running

    def test_concurrent_callers_share_one_window(self):
        clock = FakeClock()
        client = FakeStravaClient(_activities(12), clock=clock)
        scheduler = _scheduler(client, clock, quota=5)
        results, errors = [], []

        def caller(user_id, ids):
            try:
                for activity_id in ids:
                    results.append(scheduler.call(user_id, RequestKind.FETCH_ACTIVITY, activity_id=activity_id))
            except Exception as e:  # surfaced through `errors` below
                errors.append(e)

        threads = [
            threading.Thread(target=caller, args=(f"u{n}", range(n * 3 + 1, n * 3 + 4)))
            for n in range(4)
        ]
        scheduler.start()
        try:
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)
                assert not thread.is_alive()
        finally:
            scheduler.stop(timeout=5)

        assert errors == []
        assert sorted(r["id"] for r in results) == list(range(1, 13))
        sent_at = sorted(c[2] for c in client.calls)
        assert len(sent_at) == 12
        for t in sent_at:
            assert len([s for s in sent_at if t <= s < t + 900]) <= 5


def test_read_status_without_worker_reports_idle_window():
    status = read_status()
    assert status["used"] == 0
    assert status["queued"] == 0
    assert status["running"] is False
