from datetime import datetime, timedelta

from admissions.core.cache import SessionRegistry, closed_key, session_key

OPENED = datetime(2025, 3, 1, 9, 0, 0)


def test_open_is_write_once(fake_redis):
    registry = SessionRegistry(fake_redis, retention_seconds=600)
    first = registry.open(7, 3, OPENED, OPENED + timedelta(minutes=30))
    later = registry.open(7, 3, OPENED + timedelta(minutes=5), OPENED + timedelta(minutes=35))

    assert (later.opened_at, later.deadline) == (first.opened_at, first.deadline)
    assert later.is_closed is False
    # ttl covers the remaining time plus the retention window
    assert fake_redis.expiry[session_key(7, 3)] == 30 * 60 + 600


def test_close_once_and_expiry(fake_redis):
    registry = SessionRegistry(fake_redis, retention_seconds=60)
    state = registry.open(1, 2, OPENED, OPENED + timedelta(minutes=10))
    assert state.expired(OPENED + timedelta(minutes=10)) is False
    assert state.expired(OPENED + timedelta(minutes=10, microseconds=1)) is True

    assert registry.close(state, "manual", OPENED + timedelta(minutes=4)) is True
    assert registry.close(state, "timeout", OPENED + timedelta(minutes=11)) is False
    stored = registry.get(1, 2)
    assert (stored.closed_at, stored.trigger) == (OPENED + timedelta(minutes=4), "manual")
    assert closed_key(1, 2) in fake_redis.store


def test_unknown_session_is_none(fake_redis):
    registry = SessionRegistry(fake_redis)
    registry.open(1, 2, OPENED, OPENED + timedelta(minutes=10))
    assert registry.get(2, 1) is None
