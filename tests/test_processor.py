import random
import sqlite3
from datetime import timedelta

from jobrelay import processor as processor_module
from jobrelay.config import ConfigSnapshot, set_runtime_value
from jobrelay.errors import AuthExpiredError, InvalidGrantError, NotFoundError
from jobrelay.models import Credential
from jobrelay.processor import ProcessingLoop
from jobrelay.ratelimit import RateLimiter
from jobrelay.services.credentials_service import get_credential, save_credential
from jobrelay.storage import create_work_item, get_work_item, get_work_item_by_locator
from jobrelay.utils import isoformat_utc, parse_iso


class FakeEnricher:
    def __init__(self, errors=None):
        self.calls = []
        self.errors = errors or {}

    def fetch(self, locator, credential):
        self.calls.append((locator, credential.access_token))
        pending = self.errors.get(locator)
        if pending:
            raise pending.pop(0)
        return {"title": f"Job at {locator}", "client_country": "NL"}


class FakeRefresher:
    def __init__(self, clock, fail=False):
        self.clock = clock
        self.fail = fail
        self.calls = 0

    def refresh(self, credential):
        self.calls += 1
        if self.fail:
            raise InvalidGrantError("refresh token revoked")
        return Credential(
            principal=credential.principal,
            access_token=f"access-{self.calls + 1}",
            refresh_token=credential.refresh_token,
            expires_at=isoformat_utc(self.clock() + timedelta(hours=1)),
        )


def _store_credential(conn, clock, principal="alice", expires_in=timedelta(days=1)):
    save_credential(
        conn,
        Credential(
            principal=principal,
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=isoformat_utc(clock() + expires_in),
        ),
    )


def _loop(conn, clock, enricher, refresher=None, sink_configured=True):
    snapshot = ConfigSnapshot(conn, clock=clock.monotonic)
    limiter = RateLimiter(conn, snapshot, now=clock)
    return ProcessingLoop(
        conn,
        snapshot,
        limiter,
        enricher,
        refresher,
        sink_configured=sink_configured,
        now=clock,
        rng=random.Random(7),
    )


def _enqueue(conn, clock, *names):
    ids = []
    for offset, name in enumerate(names):
        created_at = isoformat_utc(clock() + timedelta(seconds=offset))
        ids.append(create_work_item(conn, f"https://jobs.example/{name}", now_iso=created_at))
    return ids


def test_quota_of_two_processes_two_then_waits(conn, clock):
    set_runtime_value(conn, "processing.rate_limit_per_hour", 2)
    _store_credential(conn, clock)
    first, second, third = _enqueue(conn, clock, "a", "b", "c")
    enricher = FakeEnricher()
    loop = _loop(conn, clock, enricher)

    waits = [loop.run_once(), loop.run_once(), loop.run_once()]

    assert get_work_item(conn, first).status == "completed"
    assert get_work_item(conn, second).status == "completed"
    assert get_work_item(conn, third).status == "queued"
    assert loop.limiter.used() == 2
    assert waits[2] == 60.0
    assert all(72.0 <= wait <= 360.0 for wait in waits[:2])
    assert [call[0] for call in enricher.calls] == [
        "https://jobs.example/a",
        "https://jobs.example/b",
    ]

    clock.advance(hours=1)
    loop.run_once()
    assert get_work_item(conn, third).status == "completed"
    assert loop.limiter.used() == 1


def test_success_schedules_dispatch_after_delay(conn, clock):
    set_runtime_value(conn, "dispatch.enabled", True)
    _store_credential(conn, clock)
    (item_id,) = _enqueue(conn, clock, "a")
    loop = _loop(conn, clock, FakeEnricher())

    loop.run_once()

    item = get_work_item(conn, item_id)
    assert item.status == "completed"
    assert item.result["client_country"] == "NL"
    assert item.dispatch_status == "pending"
    assert parse_iso(item.dispatch_due_at) - parse_iso(item.processed_at) == timedelta(hours=2)


def test_dispatch_delay_is_read_at_completion(conn, clock):
    set_runtime_value(conn, "dispatch.enabled", True)
    _store_credential(conn, clock)
    (item_id,) = _enqueue(conn, clock, "a")
    loop = _loop(conn, clock, FakeEnricher())
    set_runtime_value(conn, "dispatch.delay_hours", 0.5)

    loop.run_once()

    item = get_work_item(conn, item_id)
    assert parse_iso(item.dispatch_due_at) - parse_iso(item.processed_at) == timedelta(minutes=30)


def test_no_dispatch_without_sink(conn, clock):
    set_runtime_value(conn, "dispatch.enabled", True)
    _store_credential(conn, clock)
    (item_id,) = _enqueue(conn, clock, "a")
    loop = _loop(conn, clock, FakeEnricher(), sink_configured=False)

    loop.run_once()

    item = get_work_item(conn, item_id)
    assert item.status == "completed"
    assert item.dispatch_status == "none"
    assert item.dispatch_due_at is None


def test_enrichment_failure_fails_item_without_commit(conn, clock):
    _store_credential(conn, clock)
    (item_id,) = _enqueue(conn, clock, "gone")
    enricher = FakeEnricher(
        errors={"https://jobs.example/gone": [NotFoundError("job not found")]}
    )
    loop = _loop(conn, clock, enricher)

    loop.run_once()

    item = get_work_item(conn, item_id)
    assert item.status == "failed"
    assert item.error == "job not found"
    assert item.processed_at is not None
    assert loop.limiter.used() == 0

    loop.run_once()
    assert len(enricher.calls) == 1


def test_auth_expired_refreshes_once_and_retries(conn, clock):
    _store_credential(conn, clock)
    (item_id,) = _enqueue(conn, clock, "a")
    enricher = FakeEnricher(
        errors={"https://jobs.example/a": [AuthExpiredError("token rejected")]}
    )
    refresher = FakeRefresher(clock)
    loop = _loop(conn, clock, enricher, refresher)

    loop.run_once()

    assert get_work_item(conn, item_id).status == "completed"
    assert refresher.calls == 1
    assert [call[1] for call in enricher.calls] == ["access-1", "access-2"]
    assert get_credential(conn, "alice").access_token == "access-2"
    assert loop.limiter.used() == 1


def test_auth_expired_with_failed_refresh_fails_item(conn, clock):
    _store_credential(conn, clock)
    (item_id,) = _enqueue(conn, clock, "a")
    enricher = FakeEnricher(
        errors={"https://jobs.example/a": [AuthExpiredError("token rejected")]}
    )
    loop = _loop(conn, clock, enricher, FakeRefresher(clock, fail=True))

    loop.run_once()

    item = get_work_item(conn, item_id)
    assert item.status == "failed"
    assert "revoked" in item.error


def test_credential_near_expiry_is_refreshed_before_use(conn, clock):
    _store_credential(conn, clock, expires_in=timedelta(minutes=3))
    _enqueue(conn, clock, "a")
    enricher = FakeEnricher()
    refresher = FakeRefresher(clock)
    loop = _loop(conn, clock, enricher, refresher)

    loop.run_once()

    assert refresher.calls == 1
    assert enricher.calls[0][1] == "access-2"


def test_missing_credential_fails_item(conn, clock):
    (item_id,) = _enqueue(conn, clock, "a")
    loop = _loop(conn, clock, FakeEnricher())

    loop.run_once()

    assert get_work_item(conn, item_id).status == "failed"


def test_gates_pause_without_claiming(conn, clock):
    _store_credential(conn, clock)
    (item_id,) = _enqueue(conn, clock, "a")
    enricher = FakeEnricher()

    set_runtime_value(conn, "maintenance.enabled", True)
    assert _loop(conn, clock, enricher).run_once() == 60.0

    set_runtime_value(conn, "maintenance.enabled", False)
    set_runtime_value(conn, "processing.enabled", False)
    assert _loop(conn, clock, enricher).run_once() == 60.0

    set_runtime_value(conn, "processing.enabled", True)
    set_runtime_value(conn, "working_hours.enabled", True)
    set_runtime_value(conn, "working_hours.start", "11:00")
    assert _loop(conn, clock, enricher).run_once() == 60.0

    assert enricher.calls == []
    assert get_work_item(conn, item_id).status == "queued"


def test_empty_queue_waits_idle(conn, clock):
    loop = _loop(conn, clock, FakeEnricher())
    assert loop.run_once() == 10.0


def test_store_failure_is_survived(conn, clock, monkeypatch):
    _store_credential(conn, clock)
    _enqueue(conn, clock, "a")
    loop = _loop(conn, clock, FakeEnricher())

    def _locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    with monkeypatch.context() as patch:
        patch.setattr(processor_module, "claim_next_work_item", _locked)
        assert loop.run_once() == 30.0

    loop.run_once()
    assert get_work_item_by_locator(conn, "https://jobs.example/a").status == "completed"
    assert loop.cycles == 2


def test_completion_write_failure_is_retried_next_cycle(conn, clock, monkeypatch):
    _store_credential(conn, clock)
    (item_id,) = _enqueue(conn, clock, "a")
    enricher = FakeEnricher()
    loop = _loop(conn, clock, enricher)

    def _locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    with monkeypatch.context() as patch:
        patch.setattr(processor_module, "complete_work_item", _locked)
        loop.run_once()
        assert get_work_item(conn, item_id).status == "processing"
        assert loop.limiter.used() == 1
        assert loop.run_once() == 30.0

    assert loop.run_once() == 10.0
    assert get_work_item(conn, item_id).status == "completed"
    assert len(enricher.calls) == 1
    assert loop.limiter.used() == 1
