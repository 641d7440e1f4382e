from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .config import ConfigSnapshot
from .loops import PeriodicLoop
from .storage import (
    list_due_dispatches,
    mark_dispatch_failed,
    mark_dispatch_sent,
    record_api_call,
)
from .utils import isoformat_utc, log_event, utc_now


@dataclass(frozen=True)
class DispatchSummary:
    selected: int
    sent: int
    failed: int


class DispatchForwarder(PeriodicLoop):
    """Forwards completed items to the sink once their due time has passed.

    A failed send is terminal for the item until it is reset by an operator.
    """

    name = "dispatch"

    def __init__(
        self,
        conn: Any,
        snapshot: ConfigSnapshot,
        sink,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(snapshot, conn)
        self.sink = sink
        self._now = now
        self._sleep = sleep

    def initial_delay(self) -> float:
        return self.snapshot.current.dispatch.initial_delay_seconds

    def run_cycle(self) -> float:
        dispatch = self.snapshot.current.dispatch
        if not dispatch.enabled:
            log_event(self.logger, logging.DEBUG, "dispatch_skipped", reason="disabled")
        elif self.sink is None:
            log_event(self.logger, logging.WARNING, "dispatch_skipped", reason="sink_not_configured")
        else:
            self.forward_due()
        return self.snapshot.current.dispatch.interval_seconds

    def forward_due(self) -> DispatchSummary:
        dispatch = self.snapshot.current.dispatch
        items = list_due_dispatches(self.conn, isoformat_utc(self._now()), dispatch.batch_size)
        sent = 0
        failed = 0
        for index, item in enumerate(items):
            if index and dispatch.send_spacing_seconds > 0:
                self._sleep(dispatch.send_spacing_seconds)
            try:
                self.sink.forward(item.locator, item.result, item.fallback)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                mark_dispatch_failed(self.conn, item.id, str(exc))
                record_api_call(self.conn, "sink", False, endpoint=item.locator, error=str(exc))
                log_event(
                    self.logger,
                    logging.ERROR,
                    "dispatch_failed",
                    item_id=item.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            sent += 1
            mark_dispatch_sent(self.conn, item.id, isoformat_utc(self._now()))
            record_api_call(self.conn, "sink", True, endpoint=item.locator)
            log_event(self.logger, logging.INFO, "dispatch_sent", item_id=item.id)

        summary = DispatchSummary(selected=len(items), sent=sent, failed=failed)
        if items:
            log_event(
                self.logger,
                logging.INFO,
                "dispatch_cycle",
                selected=summary.selected,
                sent=summary.sent,
                failed=summary.failed,
            )
        return summary
