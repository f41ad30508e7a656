"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database (one shared connection, see
core/database.py). Every test starts from empty tables; Redis is patched out
so the leaderboard cache always misses.
"""
import os
import sys
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_FORMAT"] = "text"
# Fixed Fernet key (base64 of 32 ASCII bytes) so encrypted fixtures are reproducible.
os.environ["TOKEN_ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import Base, SessionLocal, engine  # noqa: E402
import models  # noqa: E402,F401
from models import Event, EventParticipant, EventRule, User  # noqa: E402
from services.token_encryption import encrypt_token  # noqa: E402
from services.strava_rate_limiter import RateWindow, RequestScheduler  # noqa: E402

from fixtures.strava_fakes import FakeClock, FakeCredentials, FakeStravaClient  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _create_schema():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _no_redis():
    """Leaderboard cache and scheduler status degrade to no-ops without Redis."""
    with patch("core.cache.get_redis_client", return_value=None):
        yield


@pytest.fixture(scope="function")
def db_session():
    """
    A session over empty tables.

    Application code commits freely; all rows are deleted after the test.
    """
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def strava_client():
    return FakeStravaClient()


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def scheduler(strava_client, credentials, clock):
    """A scheduler without a background thread: call() drains inline."""
    return RequestScheduler(
        credentials=credentials,
        window=RateWindow(quota=90, window_s=900, clock=clock.monotonic),
        client=strava_client,
        sleep=clock.sleep,
        min_spacing_s=0,
        poll_s=60,
        max_retries=3,
    )


@pytest.fixture
def test_user(db_session):
    user = User(
        email=f"runner_{uuid4()}@example.com",
        display_name="Test Runner",
        strava_athlete_id=424242,
        strava_access_token=encrypt_token("access-token"),
        strava_refresh_token=encrypt_token("refresh-token"),
        strava_token_expires_at=datetime.now(timezone.utc) + timedelta(hours=6),
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def make_user(db_session):
    def _make(display_name="Runner", strava_athlete_id=None):
        user = User(
            email=f"runner_{uuid4()}@example.com",
            display_name=display_name,
            strava_athlete_id=strava_athlete_id,
            strava_access_token=encrypt_token("access-token"),
            strava_refresh_token=encrypt_token("refresh-token"),
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def make_event(db_session):
    """Create an event with ordered rules and enrol the given users."""

    def _make(rules=(), users=(), start=date(2024, 1, 1), end=date(2024, 1, 31), team_id=None, name="January Challenge"):
        event = Event(name=name, start_date=start, end_date=end)
        db_session.add(event)
        db_session.flush()
        for position, (rule_type, config) in enumerate(rules):
            db_session.add(EventRule(event_id=event.id, rule_type=rule_type, config=config, position=position))
        for user in users:
            db_session.add(EventParticipant(event_id=event.id, user_id=user.id, team_id=team_id))
        db_session.commit()
        return event

    return _make
