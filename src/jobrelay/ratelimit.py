from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import ConfigSnapshot
from .errors import StoreUnavailableError
from .storage import (
    ensure_rate_bucket,
    get_rate_bucket_count,
    increment_rate_bucket,
    purge_rate_buckets,
)
from .utils import hour_key, isoformat_utc, log_event, utc_now


class RateLimiter:
    """Hourly quota backed by per-hour counters in the store.

    ``try_reserve`` only checks headroom; ``commit`` is the sole increment and
    runs after a successful enrichment. Both address the bucket of the wall
    clock hour at call time, so a reservation made at 10:59:59 and committed
    at 11:00:01 is charged to the 11:00 bucket.
    """

    def __init__(
        self,
        conn: Any,
        snapshot: ConfigSnapshot,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._conn = conn
        self._snapshot = snapshot
        self._now = now
        self._logger = logging.getLogger("jobrelay.ratelimit")

    @property
    def quota(self) -> int:
        return self._snapshot.current.processing.rate_limit_per_hour

    def try_reserve(self) -> bool:
        current = self._now()
        key = hour_key(current)
        try:
            count = ensure_rate_bucket(self._conn, key, isoformat_utc(current))
        except Exception as exc:  # noqa: BLE001
            log_event(self._logger, logging.ERROR, "rate_limit_check_failed", hour=key, error=exc)
            _safe_rollback(self._conn)
            return False
        allowed = count < self.quota
        if not allowed:
            log_event(
                self._logger,
                logging.INFO,
                "rate_limit_reached",
                hour=key,
                count=count,
                quota=self.quota,
            )
        return allowed

    def commit(self) -> None:
        current = self._now()
        key = hour_key(current)
        try:
            increment_rate_bucket(self._conn, key, isoformat_utc(current))
        except Exception as exc:
            log_event(self._logger, logging.ERROR, "rate_limit_commit_failed", hour=key, error=exc)
            _safe_rollback(self._conn)
            raise StoreUnavailableError(f"rate limit increment not confirmed for {key}") from exc
        log_event(self._logger, logging.DEBUG, "rate_limit_committed", hour=key)

    def used(self) -> int:
        return get_rate_bucket_count(self._conn, hour_key(self._now()))

    def remaining(self) -> int:
        return max(0, self.quota - self.used())

    def purge(self) -> int:
        retention = self._snapshot.current.processing.bucket_retention_hours
        current = self._now().replace(minute=0, second=0, microsecond=0)
        cutoff = current - timedelta(hours=retention - 1)
        removed = purge_rate_buckets(self._conn, isoformat_utc(cutoff))
        if removed:
            log_event(self._logger, logging.INFO, "rate_limit_buckets_purged", removed=removed)
        return removed


def _safe_rollback(conn: Any) -> None:
    try:
        conn.rollback()
    except Exception:  # noqa: BLE001
        pass
