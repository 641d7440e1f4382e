from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .config import Config, ConfigSnapshot, pause_reason
from .loops import PeriodicLoop
from .models import Candidate, Source, WorkItem
from .services.credentials_service import default_principal
from .storage import (
    create_work_item,
    get_work_item_by_locator,
    list_sources,
    record_api_call,
    work_item_exists,
)
from .utils import canonical_job_url, log_event, utc_now


@dataclass(frozen=True)
class IngestSummary:
    sources: int
    failed_sources: int
    found: int
    merged: int
    added: int
    skipped_existing: int


class SourceCache:
    """Per-source TTL cache in front of a source poller.

    Only successful polls are cached; a failing source is retried on the
    next call.
    """

    def __init__(self, poller, clock: Callable[[], float] = time.monotonic) -> None:
        self.poller = poller
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, list[Candidate]]] = {}

    def get(self, source: Source, ttl_seconds: float) -> tuple[list[Candidate], bool]:
        now = self._clock()
        with self._lock:
            cached = self._entries.get(source.id)
        if cached and now - cached[0] < ttl_seconds:
            return cached[1], True
        candidates = self.poller.poll(source)
        with self._lock:
            self._entries[source.id] = (self._clock(), list(candidates))
        return candidates, False

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def merge_candidates(
    batches: list[tuple[str, list[Candidate]]],
) -> list[tuple[str, str, Candidate]]:
    """Flatten per-source results, keeping the first source for each locator.

    Returns ``(source_id, locator, candidate)`` tuples in source order.
    """
    seen: set[str] = set()
    merged: list[tuple[str, str, Candidate]] = []
    for source_id, candidates in batches:
        for candidate in candidates:
            locator = canonical_job_url(candidate.url)
            if not locator or locator in seen:
                continue
            seen.add(locator)
            merged.append((source_id, locator, candidate))
    return merged


def submit_work_item(
    conn: Any, url: str, principal: str | None = None
) -> tuple[WorkItem, bool]:
    """Queue a URL by hand. Returns the item and whether it was newly created."""
    locator = canonical_job_url(url)
    if not locator:
        raise ValueError(f"invalid job url: {url}")
    created = create_work_item(conn, locator, principal=principal) is not None
    item = get_work_item_by_locator(conn, locator)
    if item is None:
        raise RuntimeError(f"work item for {locator} vanished after insert")
    return item, created


def poll_sources(
    conn: Any,
    config: Config,
    cache: SourceCache,
    logger: logging.Logger,
) -> IngestSummary:
    sources = list_sources(conn, enabled_only=True)
    batches: list[tuple[str, list[Candidate]]] = []
    failed = 0
    for source in sources:
        try:
            candidates, cached = cache.get(source, config.ingest.cache_ttl_seconds)
        except Exception as exc:  # noqa: BLE001
            failed += 1
            record_api_call(conn, "source", False, endpoint=source.id, error=str(exc))
            log_event(
                logger,
                logging.ERROR,
                "source_poll_failed",
                source_id=source.id,
                error=str(exc),
            )
            continue
        if not cached:
            record_api_call(conn, "source", True, endpoint=source.id)
        log_event(
            logger,
            logging.DEBUG,
            "source_polled",
            source_id=source.id,
            found=len(candidates),
            cached=cached,
        )
        batches.append((source.id, candidates))

    found = sum(len(candidates) for _, candidates in batches)
    merged = merge_candidates(batches)
    added = 0
    skipped = 0
    if config.ingest.auto_enqueue:
        principal = config.ingest.principal or default_principal(conn)
        for source_id, locator, candidate in merged:
            if work_item_exists(conn, locator):
                skipped += 1
                continue
            fallback = dict(candidate.fallback)
            if candidate.title and "title" not in fallback:
                fallback["title"] = candidate.title
            item_id = create_work_item(
                conn,
                locator,
                origin=source_id,
                principal=principal,
                fallback=fallback,
            )
            if item_id:
                added += 1
            else:
                skipped += 1

    summary = IngestSummary(
        sources=len(sources),
        failed_sources=failed,
        found=found,
        merged=len(merged),
        added=added,
        skipped_existing=skipped,
    )
    log_event(
        logger,
        logging.INFO,
        "ingest_cycle",
        sources=summary.sources,
        failed_sources=summary.failed_sources,
        found=summary.found,
        merged=summary.merged,
        added=summary.added,
        skipped_existing=summary.skipped_existing,
        auto_enqueue=config.ingest.auto_enqueue,
    )
    return summary


class IngestionPoller(PeriodicLoop):
    name = "ingest"

    def __init__(
        self,
        conn: Any,
        snapshot: ConfigSnapshot,
        cache: SourceCache,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(snapshot, conn)
        self.cache = cache
        self._now = now
        self.last_summary: IngestSummary | None = None

    def initial_delay(self) -> float:
        return self.snapshot.current.ingest.initial_delay_seconds

    def run_cycle(self) -> float:
        config = self.snapshot.current
        reason = pause_reason(config, self._now(), enabled=config.ingest.enabled)
        if reason:
            log_event(self.logger, logging.DEBUG, "ingest_paused", reason=reason)
        else:
            self.last_summary = poll_sources(self.conn, config, self.cache, self.logger)
        config = self.snapshot.refresh()
        return config.ingest.interval_minutes * 60
