from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import ConfigSnapshot
from .loops import PeriodicLoop
from .services.credentials_service import (
    get_credential,
    list_expiring_principals,
    refresh_credential,
)
from .utils import log_event, utc_now


class CredentialRefreshLoop(PeriodicLoop):
    """Renews credentials that will expire within the configured buffer.

    Runs once at start, then every ``credentials.refresh_interval_seconds``.
    A failed refresh leaves the stored credential unchanged.
    """

    name = "token_refresh"

    def __init__(
        self,
        conn: Any,
        snapshot: ConfigSnapshot,
        refresher,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(snapshot, conn)
        self.refresher = refresher
        self._now = now

    def run_cycle(self) -> float:
        credentials_cfg = self.snapshot.current.credentials
        if self.refresher is None:
            log_event(self.logger, logging.WARNING, "token_refresh_skipped", reason="oauth_not_configured")
        else:
            self.refresh_expiring()
        return credentials_cfg.refresh_interval_seconds

    def refresh_expiring(self) -> tuple[int, int]:
        buffer_minutes = self.snapshot.current.credentials.expiry_buffer_minutes
        cutoff = self._now() + timedelta(minutes=buffer_minutes)
        refreshed = 0
        failed = 0
        for principal in list_expiring_principals(self.conn, cutoff):
            try:
                credential = get_credential(self.conn, principal)
                if credential is None:
                    continue
                refresh_credential(self.conn, credential, self.refresher)
            except Exception as exc:  # noqa: BLE001
                failed += 1
                log_event(
                    self.logger,
                    logging.ERROR,
                    "token_refresh_failed",
                    principal=principal,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            refreshed += 1
        if refreshed or failed:
            log_event(
                self.logger,
                logging.INFO,
                "token_refresh_cycle",
                refreshed=refreshed,
                failed=failed,
            )
        return refreshed, failed
