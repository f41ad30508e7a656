"""
Tests for Strava webhook processing: create/update/delete, failure
recording and re-drive.
"""
from datetime import timedelta

import pytest

from models import ScoredActivity, StravaActivity, StravaWebhookEvent
from services.activity_cache import ActivityResponseCacheService
from services.strava_sync import StravaSyncEngine
from services.strava_webhook import (
    STALE_PENDING_AFTER,
    StravaWebhookPayload,
    WebhookProcessor,
    record_webhook_event,
)
from fixtures.strava_fakes import run_payload


@pytest.fixture
def processor(db_session, scheduler, clock):
    cache = ActivityResponseCacheService(db_session, now=clock.now)
    engine = StravaSyncEngine(db_session, scheduler=scheduler, cache=cache, now=clock.now)
    return WebhookProcessor(db_session, sync_engine=engine, now=clock.now)


def _event(db_session, aspect_type="create", object_id=1, owner_id=424242, object_type="activity"):
    payload = StravaWebhookPayload(
        object_type=object_type,
        object_id=object_id,
        aspect_type=aspect_type,
        owner_id=owner_id,
        subscription_id=99,
        event_time=1705305600,
    )
    return record_webhook_event(db_session, payload)


def test_recorded_event_is_pending(db_session):
    event = _event(db_session)
    assert event.processed is None
    assert event.attempts == 0
    assert event.event_time is not None
    assert event.raw_payload["object_id"] == 1


def test_create_ingests_and_scores(db_session, test_user, make_event, processor, strava_client):
    make_event(users=[test_user])
    strava_client.activities[1] = run_payload(1, "2024-01-15T06:30:00Z", distance_m=5000)

    event = _event(db_session)
    assert processor.process(event) == "ingested"

    assert event.processed is True
    assert event.attempts == 1
    assert event.processed_at is not None
    assert db_session.query(ScoredActivity).one().final_points == 5.0


def test_update_refetches_instead_of_using_cache(db_session, test_user, make_event, processor, strava_client, clock):
    make_event(users=[test_user])
    ActivityResponseCacheService(db_session, now=clock.now).put(
        1, run_payload(1, "2024-01-15T06:30:00Z", distance_m=5000)
    )
    strava_client.activities[1] = run_payload(1, "2024-01-15T06:30:00Z", distance_m=8000)

    processor.process(_event(db_session, aspect_type="update"))

    assert strava_client.activity_calls() == [1]
    assert db_session.query(ScoredActivity).one().distance_km == 8.0


def test_delete_removes_activity_and_scores(db_session, test_user, make_event, processor, strava_client):
    make_event(users=[test_user])
    strava_client.activities[1] = run_payload(1, "2024-01-15T06:30:00Z")
    processor.process(_event(db_session))

    assert processor.process(_event(db_session, aspect_type="delete")) == "deleted"

    assert db_session.query(ScoredActivity).count() == 0
    assert db_session.query(StravaActivity).count() == 0


def test_unsupported_kind_is_skipped(db_session, test_user, processor, strava_client):
    strava_client.activities[1] = run_payload(1, "2024-01-15T06:30:00Z", sport_type="Ride")
    event = _event(db_session)

    assert processor.process(event) == "skipped"
    assert event.processed is True


def test_non_activity_event_is_ignored(db_session, processor):
    event = _event(db_session, object_type="athlete", aspect_type="update")
    assert processor.process(event) == "ignored"
    assert event.processed is True


def test_failure_is_recorded_then_redriven(db_session, make_user, processor, strava_client):
    strava_client.activities[1] = run_payload(1, "2024-01-15T06:30:00Z")
    event = _event(db_session, owner_id=777)

    assert processor.process(event) == "failed"
    assert event.processed is False
    assert event.attempts == 1
    assert "777" in event.error_message

    make_user("Late linker", strava_athlete_id=777)
    counts = processor.redrive()

    assert counts == {"attempted": 1, "succeeded": 1, "failed": 0}
    db_session.refresh(event)
    assert event.processed is True
    assert event.attempts == 2
    assert event.error_message is None


def test_redrive_stops_after_max_attempts(db_session, processor):
    event = _event(db_session, owner_id=777)
    event.processed = False
    event.attempts = 5
    db_session.commit()

    assert processor.redrive(max_attempts=5) == {"attempted": 0, "succeeded": 0, "failed": 0}


def test_process_by_id_unknown(db_session, processor):
    assert processor.process_by_id("missing") is None
    assert db_session.query(StravaWebhookEvent).count() == 0


def test_unexpected_error_is_recorded_as_failure(db_session, test_user, make_event, processor, strava_client):
    make_event(users=[test_user], rules=[("lucky_distance", {"lucky_distances": [{"name": "x"}]})])
    strava_client.activities[1] = run_payload(1, "2024-01-15T06:30:00Z")
    event = _event(db_session)

    assert processor.process(event) == "failed"

    db_session.refresh(event)
    assert event.processed is False
    assert event.attempts == 1
    assert "distance" in event.error_message


def test_redrive_picks_up_stale_pending_events(db_session, test_user, processor, strava_client, clock):
    strava_client.activities[1] = run_payload(1, "2024-01-15T06:30:00Z")
    strava_client.activities[2] = run_payload(2, "2024-01-16T06:30:00Z")
    stale = _event(db_session, object_id=1)
    fresh = _event(db_session, object_id=2)
    stale.created_at = clock.now() - STALE_PENDING_AFTER - timedelta(minutes=1)
    fresh.created_at = clock.now()
    db_session.commit()

    assert processor.redrive() == {"attempted": 1, "succeeded": 1, "failed": 0}

    db_session.refresh(stale)
    db_session.refresh(fresh)
    assert stale.processed is True
    assert fresh.processed is None
    assert strava_client.activity_calls() == [1]
