import pytest

from jobrelay.config import ConfigSnapshot, set_runtime_value
from jobrelay.errors import StoreUnavailableError
from jobrelay.ratelimit import RateLimiter
from jobrelay.storage import get_rate_bucket_count


def _limiter(conn, clock, quota=3):
    set_runtime_value(conn, "processing.rate_limit_per_hour", quota)
    snapshot = ConfigSnapshot(conn, clock=clock.monotonic)
    return RateLimiter(conn, snapshot, now=clock)


def test_reserve_does_not_increment(conn, clock):
    limiter = _limiter(conn, clock)
    for _ in range(10):
        assert limiter.try_reserve() is True
    assert limiter.used() == 0


def test_quota_blocks_after_commits(conn, clock):
    limiter = _limiter(conn, clock, quota=3)
    for _ in range(3):
        assert limiter.try_reserve() is True
        limiter.commit()
    assert limiter.used() == 3
    assert limiter.try_reserve() is False
    assert limiter.remaining() == 0


def test_new_hour_resets_headroom(conn, clock):
    limiter = _limiter(conn, clock, quota=1)
    limiter.commit()
    assert limiter.try_reserve() is False
    clock.advance(hours=1)
    assert limiter.try_reserve() is True


def test_commit_across_hour_boundary_charges_commit_hour(conn, clock):
    limiter = _limiter(conn, clock, quota=5)
    clock.advance(minutes=59, seconds=59)
    assert limiter.try_reserve() is True
    clock.advance(seconds=2)
    limiter.commit()
    assert get_rate_bucket_count(conn, "2024-03-04T10") == 0
    assert get_rate_bucket_count(conn, "2024-03-04T11") == 1


def test_purge_keeps_retention_window(conn, clock):
    limiter = _limiter(conn, clock)
    limiter.commit()
    clock.advance(hours=1)
    limiter.commit()
    clock.advance(hours=1)
    limiter.commit()

    removed = limiter.purge()

    assert removed == 1
    assert get_rate_bucket_count(conn, "2024-03-04T10") == 0
    assert get_rate_bucket_count(conn, "2024-03-04T11") == 1
    assert get_rate_bucket_count(conn, "2024-03-04T12") == 1


class _BrokenConn:
    def __init__(self, inner):
        self.inner = inner

    def execute(self, *args, **kwargs):
        raise RuntimeError("database is locked")

    def commit(self):
        pass

    def rollback(self):
        pass


def test_reserve_fails_closed_on_store_error(conn, clock):
    snapshot = ConfigSnapshot(conn, clock=clock.monotonic)
    limiter = RateLimiter(_BrokenConn(conn), snapshot, now=clock)
    assert limiter.try_reserve() is False


def test_commit_raises_on_store_error(conn, clock):
    snapshot = ConfigSnapshot(conn, clock=clock.monotonic)
    limiter = RateLimiter(_BrokenConn(conn), snapshot, now=clock)
    with pytest.raises(StoreUnavailableError):
        limiter.commit()
