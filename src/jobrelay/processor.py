from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import ConfigSnapshot, ProcessingConfig, load_runtime_config, pause_reason
from .errors import AuthExpiredError
from .loops import PeriodicLoop
from .models import WorkItem
from .ratelimit import RateLimiter
from .services.credentials_service import get_valid_credential, refresh_credential
from .storage import claim_next_work_item, complete_work_item, fail_work_item, record_api_call
from .utils import isoformat_utc, log_event, utc_now


@dataclass(frozen=True)
class _Completion:
    item_id: str
    locator: str
    result: dict[str, Any]
    processed_at: str
    dispatch_due_at: str | None


def next_interval(processing: ProcessingConfig, rng: random.Random) -> float:
    """Sample the wait before the next item.

    A uniform base in [min, max]; with ``long_pause_probability`` the base is
    stretched by a uniform factor in [long_pause_min, long_pause_max].
    """
    base = rng.uniform(processing.min_interval_seconds, processing.max_interval_seconds)
    if rng.random() < processing.long_pause_probability:
        base *= rng.uniform(
            processing.long_pause_min_multiplier, processing.long_pause_max_multiplier
        )
    return base


class ProcessingLoop(PeriodicLoop):
    """Single consumer of the work queue.

    Items are taken oldest first. One item is enriched per cycle, subject to
    the hourly quota, and the wait between items is randomized.
    """

    name = "processor"

    def __init__(
        self,
        conn: Any,
        snapshot: ConfigSnapshot,
        limiter: RateLimiter,
        enricher,
        refresher=None,
        *,
        sink_configured: bool = False,
        now: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(snapshot, conn)
        self.limiter = limiter
        self.enricher = enricher
        self.refresher = refresher
        self.sink_configured = sink_configured
        self._now = now
        self.rng = rng or random.Random()
        self._pending: _Completion | None = None

    def run_cycle(self) -> float:
        if self._pending is not None:
            self._finish_pending()
            if self._pending is not None:
                return self.snapshot.current.processing.error_wait_seconds
        if self.snapshot.refresh_if_stale():
            self.limiter.purge()
        config = self.snapshot.current
        processing = config.processing

        reason = pause_reason(config, self._now(), enabled=processing.enabled)
        if reason:
            log_event(self.logger, logging.DEBUG, "processing_paused", reason=reason)
            return processing.paused_wait_seconds
        if self.enricher is None:
            log_event(
                self.logger,
                logging.WARNING,
                "processing_skipped",
                reason="enrichment_not_configured",
            )
            return processing.paused_wait_seconds

        if not self.limiter.try_reserve():
            return processing.rate_limited_wait_seconds

        item = claim_next_work_item(self.conn, isoformat_utc(self._now()))
        if item is None:
            return processing.idle_wait_seconds

        self.process_item(item)
        return next_interval(processing, self.rng)

    def process_item(self, item: WorkItem) -> bool:
        log_event(self.logger, logging.INFO, "item_claimed", item_id=item.id, locator=item.locator)
        try:
            result = self._enrich(item)
        except Exception as exc:  # noqa: BLE001
            fail_work_item(self.conn, item.id, str(exc), isoformat_utc(self._now()))
            record_api_call(self.conn, "enrichment", False, endpoint=item.locator, error=str(exc))
            log_event(
                self.logger,
                logging.ERROR,
                "item_failed",
                item_id=item.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        processed_at = self._now()
        completion = _Completion(
            item_id=item.id,
            locator=item.locator,
            result=result,
            processed_at=isoformat_utc(processed_at),
            dispatch_due_at=self._dispatch_due_at(processed_at),
        )
        self._pending = completion
        try:
            self.limiter.commit()
        finally:
            completed = self._finish_pending()
        return completed

    def _finish_pending(self) -> bool:
        """Write the outcome of the last successful enrichment.

        On a store error the completion is kept and retried at the start of
        the next cycle, so the item never stays in ``processing``.
        """
        completion = self._pending
        if completion is None:
            return True
        try:
            written = complete_work_item(
                self.conn,
                completion.item_id,
                completion.result,
                completion.processed_at,
                completion.dispatch_due_at,
            )
        except Exception as exc:  # noqa: BLE001
            self._rollback()
            log_event(
                self.logger,
                logging.ERROR,
                "item_complete_deferred",
                item_id=completion.item_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        self._pending = None
        if not written:
            log_event(self.logger, logging.ERROR, "item_complete_failed", item_id=completion.item_id)
            return False
        record_api_call(self.conn, "enrichment", True, endpoint=completion.locator)
        log_event(
            self.logger,
            logging.INFO,
            "item_completed",
            item_id=completion.item_id,
            dispatch_due_at=completion.dispatch_due_at,
        )
        return True

    def _enrich(self, item: WorkItem) -> dict[str, Any]:
        buffer_minutes = self.snapshot.current.credentials.use_buffer_minutes
        credential = get_valid_credential(
            self.conn,
            item.principal,
            self.refresher,
            buffer_minutes=buffer_minutes,
            now=self._now,
        )
        try:
            return self.enricher.fetch(item.locator, credential)
        except AuthExpiredError:
            if self.refresher is None:
                raise
            log_event(
                self.logger,
                logging.INFO,
                "auth_expired_retry",
                item_id=item.id,
                principal=credential.principal,
            )
            credential = refresh_credential(self.conn, credential, self.refresher)
            return self.enricher.fetch(item.locator, credential)

    def _dispatch_due_at(self, processed_at: datetime) -> str | None:
        # Read straight from the store so a delay change applies to the next completion.
        try:
            dispatch = load_runtime_config(self.conn).dispatch
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.WARNING, "dispatch_delay_read_failed", error=str(exc))
            dispatch = self.snapshot.current.dispatch
        if not dispatch.enabled or not self.sink_configured:
            return None
        return isoformat_utc(processed_at + timedelta(hours=dispatch.delay_hours))
