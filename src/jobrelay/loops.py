from __future__ import annotations

import logging
import threading
from typing import Any

from .config import ConfigSnapshot
from .utils import log_event


class PeriodicLoop:
    """Runs ``run_cycle`` repeatedly on a dedicated thread.

    ``run_cycle`` returns the number of seconds to wait before the next
    cycle. Cycles never overlap. Any exception escaping a cycle is logged as
    ``loop_cycle_error`` and the loop waits ``processing.error_wait_seconds``
    before trying again. ``stop`` lets an in-flight cycle finish and prevents
    the next one from starting.
    """

    name = "loop"

    def __init__(self, snapshot: ConfigSnapshot, conn: Any = None) -> None:
        self.snapshot = snapshot
        self.conn = conn
        self.logger = logging.getLogger(f"jobrelay.{self.name}")
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.cycles = 0

    def run_cycle(self) -> float:
        raise NotImplementedError

    def initial_delay(self) -> float:
        return 0.0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run_once(self) -> float:
        try:
            wait = self.run_cycle()
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "loop_cycle_error",
                loop=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._rollback()
            wait = self._error_wait()
        self.cycles += 1
        return max(0.0, float(wait))

    def run_forever(self) -> None:
        log_event(self.logger, logging.INFO, "loop_started", loop=self.name)
        if self._stop_event.wait(self._safe_initial_delay()):
            log_event(self.logger, logging.INFO, "loop_stopped", loop=self.name)
            return
        while not self._stop_event.is_set():
            wait = self.run_once()
            if self._stop_event.wait(wait):
                break
        log_event(self.logger, logging.INFO, "loop_stopped", loop=self.name)

    def start(self) -> threading.Thread:
        if self.running:
            return self._thread
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever,
            name=f"jobrelay-{self.name}",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _rollback(self) -> None:
        if self.conn is None:
            return
        try:
            self.conn.rollback()
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.WARNING, "loop_rollback_failed", loop=self.name, error=str(exc))

    def _error_wait(self) -> float:
        try:
            return self.snapshot.current.processing.error_wait_seconds
        except Exception:  # noqa: BLE001
            return 30.0

    def _safe_initial_delay(self) -> float:
        try:
            return max(0.0, float(self.initial_delay()))
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.ERROR, "loop_cycle_error", loop=self.name, error=str(exc))
            return self._error_wait()
