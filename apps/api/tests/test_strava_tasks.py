"""
Tests for the Celery task wrappers, called in-process (no broker).
"""
from unittest.mock import MagicMock, patch

import pytest

from core.exceptions import RefreshFailed
from services.activity_cache import ActivityResponseCacheService
from tasks.strava_tasks import (
    process_webhook_event_task,
    sweep_activity_cache_task,
    sync_all_users_task,
    sync_user_task,
)
from fixtures.strava_fakes import FakeClock, run_payload


@pytest.fixture
def task_db(db_session):
    with patch("tasks.strava_tasks.get_db_sync", return_value=db_session):
        yield db_session


def test_sweep_deletes_expired_payloads(task_db):
    clock = FakeClock()
    ActivityResponseCacheService(task_db, now=clock.now).put(1, run_payload(1, "2024-01-10T06:00:00Z"))
    # Fresh row relative to the real clock used by the task.
    ActivityResponseCacheService(task_db).put(2, run_payload(2, "2024-01-11T06:00:00Z"))

    assert sweep_activity_cache_task() == {"deleted": 1}


def test_sync_user_reports_credential_failure(task_db, test_user):
    engine = MagicMock()
    engine.sync_user.side_effect = RefreshFailed(test_user.id, "invalid_grant")
    with patch("tasks.strava_tasks.StravaSyncEngine", return_value=engine):
        result = sync_user_task(test_user.id)

    assert result["status"] == "error"
    assert "invalid_grant" in result["error"]


def test_sync_all_defaults_to_connected_users(task_db, test_user):
    engine = MagicMock()
    engine.sync_users.return_value.to_dict.return_value = {"users": 1}
    with patch("tasks.strava_tasks.StravaSyncEngine", return_value=engine):
        assert sync_all_users_task() == {"users": 1}

    engine.sync_users.assert_called_once_with([test_user.id])


def test_process_unknown_webhook_event(task_db):
    assert process_webhook_event_task("missing") == {"event_id": "missing", "outcome": "not_found"}

