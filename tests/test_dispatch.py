import random
from datetime import timedelta

from jobrelay.config import ConfigSnapshot, set_runtime_value
from jobrelay.dispatch import DispatchForwarder
from jobrelay.errors import RejectedError
from jobrelay.models import Credential
from jobrelay.processor import ProcessingLoop
from jobrelay.ratelimit import RateLimiter
from jobrelay.services.credentials_service import save_credential
from jobrelay.storage import (
    claim_next_work_item,
    complete_work_item,
    create_work_item,
    get_work_item,
    reset_dispatch,
)
from jobrelay.utils import isoformat_utc


class FakeSink:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    def forward(self, locator, result, fallback):
        if locator in self.fail_for:
            raise RejectedError("Missing required fields (link or title)")
        self.sent.append((locator, result, fallback))


class FakeEnricher:
    def fetch(self, locator, credential):
        return {"title": "Backend developer", "description": "Python"}


def _forwarder(conn, clock, sink, sleeps=None):
    snapshot = ConfigSnapshot(conn, clock=clock.monotonic)
    record = sleeps if sleeps is not None else []
    return DispatchForwarder(conn, snapshot, sink, now=clock, sleep=record.append)


def _completed(conn, name, processed_at, due_at, fallback=None):
    item_id = create_work_item(
        conn, f"https://jobs.example/{name}", fallback=fallback, now_iso=processed_at
    )
    claim_next_work_item(conn)
    complete_work_item(conn, item_id, {"title": name}, processed_at, due_at)
    return item_id


def test_item_is_forwarded_two_hours_after_completion(conn, clock):
    set_runtime_value(conn, "dispatch.enabled", True)
    save_credential(
        conn,
        Credential("alice", "access", "refresh", isoformat_utc(clock() + timedelta(days=1))),
    )
    item_id = create_work_item(
        conn, "https://jobs.example/a", fallback={"client_country": "NL"}, now_iso=isoformat_utc(clock())
    )
    snapshot = ConfigSnapshot(conn, clock=clock.monotonic)
    processing = ProcessingLoop(
        conn,
        snapshot,
        RateLimiter(conn, snapshot, now=clock),
        FakeEnricher(),
        sink_configured=True,
        now=clock,
        rng=random.Random(3),
    )
    processing.run_once()
    assert get_work_item(conn, item_id).dispatch_status == "pending"

    sink = FakeSink()
    forwarder = _forwarder(conn, clock, sink)

    clock.advance(hours=1, minutes=59)
    assert forwarder.forward_due().selected == 0

    clock.advance(minutes=1)
    summary = forwarder.forward_due()

    assert summary.sent == 1
    item = get_work_item(conn, item_id)
    assert item.dispatch_status == "sent"
    assert item.dispatch_sent_at == isoformat_utc(clock())
    locator, result, fallback = sink.sent[0]
    assert locator == "https://jobs.example/a"
    assert result["title"] == "Backend developer"
    assert fallback == {"client_country": "NL"}


def test_batch_is_limited_ordered_and_spaced(conn, clock):
    set_runtime_value(conn, "dispatch.enabled", True)
    base = clock()
    for index in range(12):
        _completed(
            conn,
            f"job-{index:02d}",
            isoformat_utc(base - timedelta(hours=3)),
            isoformat_utc(base - timedelta(minutes=60 - index)),
        )
    sink = FakeSink()
    sleeps = []
    forwarder = _forwarder(conn, clock, sink, sleeps)

    summary = forwarder.forward_due()

    assert summary.selected == 10
    assert [entry[0] for entry in sink.sent] == [
        f"https://jobs.example/job-{index:02d}" for index in range(10)
    ]
    assert sleeps == [2.0] * 9

    forwarder.forward_due()
    assert len(sink.sent) == 12


def test_failed_dispatch_is_terminal_until_reset(conn, clock):
    set_runtime_value(conn, "dispatch.enabled", True)
    now = isoformat_utc(clock())
    item_id = _completed(conn, "bad", now, now)
    sink = FakeSink(fail_for={"https://jobs.example/bad"})
    forwarder = _forwarder(conn, clock, sink)

    assert forwarder.forward_due().failed == 1
    item = get_work_item(conn, item_id)
    assert item.dispatch_status == "failed"
    assert "Missing required fields" in item.dispatch_error

    assert forwarder.forward_due().selected == 0

    sink.fail_for.clear()
    assert reset_dispatch(conn, item_id) is True
    assert forwarder.forward_due().sent == 1
    assert get_work_item(conn, item_id).dispatch_status == "sent"


def test_forwarder_skips_when_disabled_or_unconfigured(conn, clock):
    now = isoformat_utc(clock())
    item_id = _completed(conn, "a", now, now)
    sink = FakeSink()

    assert _forwarder(conn, clock, sink).run_cycle() == 300.0
    assert sink.sent == []

    set_runtime_value(conn, "dispatch.enabled", True)
    assert _forwarder(conn, clock, None).run_cycle() == 300.0
    assert get_work_item(conn, item_id).dispatch_status == "pending"

    assert _forwarder(conn, clock, sink).run_cycle() == 300.0
    assert len(sink.sent) == 1
