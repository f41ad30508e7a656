"""
Tests for the Strava activity response cache (24h TTL, sweep, stats).
"""
from datetime import timedelta

from services.activity_cache import ActivityResponseCacheService
from fixtures.strava_fakes import FakeClock, run_payload


def _cache(db_session, clock):
    return ActivityResponseCacheService(db_session, now=clock.now, ttl=timedelta(hours=24))


def test_put_then_get_hits(db_session):
    clock = FakeClock()
    cache = _cache(db_session, clock)
    payload = run_payload(101, "2024-01-15T06:30:00Z")

    assert cache.put(101, payload) is True
    cached, hit = cache.get(101)

    assert hit is True
    assert cached["id"] == 101


def test_absent_entry_misses(db_session):
    cached, hit = _cache(db_session, FakeClock()).get(999)
    assert (cached, hit) == (None, False)


def test_entry_older_than_ttl_misses(db_session):
    clock = FakeClock()
    cache = _cache(db_session, clock)
    cache.put(101, run_payload(101, "2024-01-15T06:30:00Z"))

    clock.advance(hours=23)
    assert cache.get(101)[1] is True
    clock.advance(hours=2)
    assert cache.get(101) == (None, False)


def test_put_overwrites_and_extends_expiry(db_session):
    clock = FakeClock()
    cache = _cache(db_session, clock)
    cache.put(101, run_payload(101, "2024-01-15T06:30:00Z", distance_m=5000))
    clock.advance(hours=20)
    cache.put(101, run_payload(101, "2024-01-15T06:30:00Z", distance_m=6000))
    clock.advance(hours=10)

    cached, hit = cache.get(101)
    assert hit is True
    assert cached["distance"] == 6000


def test_invalidate(db_session):
    cache = _cache(db_session, FakeClock())
    cache.put(101, run_payload(101, "2024-01-15T06:30:00Z"))

    assert cache.invalidate(101) is True
    assert cache.invalidate(101) is False
    assert cache.get(101)[1] is False


def test_sweep_removes_only_expired_entries(db_session):
    clock = FakeClock()
    cache = _cache(db_session, clock)
    cache.put(1, run_payload(1, "2024-01-15T06:30:00Z"))
    clock.advance(hours=12)
    cache.put(2, run_payload(2, "2024-01-16T06:30:00Z"))
    clock.advance(hours=13)

    assert cache.stats() == {"total": 2, "valid": 1, "expired": 1}
    assert cache.sweep() == 1
    assert cache.stats() == {"total": 1, "valid": 1, "expired": 0}
    assert cache.get(2)[1] is True
