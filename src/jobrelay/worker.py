from __future__ import annotations

import logging
import random
import signal
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .clients import HttpEnricher, HttpSourcePoller, OAuthTokenRefresher, WebhookSink
from .config import (
    Config,
    ConfigError,
    ConfigSnapshot,
    IntegrationSettings,
    load_integration_settings,
    load_runtime_config,
)
from .dispatch import DispatchForwarder
from .errors import JobRelayError
from .ingest import IngestionPoller, SourceCache
from .loops import PeriodicLoop
from .processor import ProcessingLoop
from .ratelimit import RateLimiter
from .recovery import recover_stuck_items
from .storage import init_db
from .token_refresh import CredentialRefreshLoop
from .utils import configure_logging, log_event, utc_now

LOOP_NAMES = ("processor", "ingest", "dispatch", "token_refresh")


@dataclass(frozen=True)
class Collaborators:
    enricher: object | None
    poller: object
    sink: object | None
    refresher: object | None


def build_collaborators(settings: IntegrationSettings, config: Config) -> Collaborators:
    timeout = settings.http_timeout_seconds
    enricher = HttpEnricher(settings.enrichment_url, timeout) if settings.enrichment_url else None
    sink = (
        WebhookSink(settings.sink_url, settings.sink_token, timeout) if settings.sink_url else None
    )
    refresher = (
        OAuthTokenRefresher(
            settings.oauth_token_url,
            settings.oauth_client_id,
            settings.oauth_client_secret,
            timeout,
        )
        if settings.oauth_token_url
        else None
    )
    poller = HttpSourcePoller(config.ingest.http.timeout_seconds, config.ingest.http.user_agent)
    return Collaborators(enricher=enricher, poller=poller, sink=sink, refresher=refresher)


def build_loops(
    collaborators: Collaborators,
    *,
    db_path: str | None = None,
    only: list[str] | None = None,
    now: Callable[[], datetime] = utc_now,
    rng: random.Random | None = None,
) -> list[PeriodicLoop]:
    selected = only or list(LOOP_NAMES)
    unknown = [name for name in selected if name not in LOOP_NAMES]
    if unknown:
        raise ValueError(f"unknown loop(s): {', '.join(unknown)}")

    snapshot = ConfigSnapshot(init_db(db_path))
    loops: list[PeriodicLoop] = []
    if "processor" in selected:
        conn = init_db(db_path)
        loops.append(
            ProcessingLoop(
                conn,
                snapshot,
                RateLimiter(conn, snapshot, now=now),
                collaborators.enricher,
                collaborators.refresher,
                sink_configured=collaborators.sink is not None,
                now=now,
                rng=rng,
            )
        )
    if "ingest" in selected:
        loops.append(
            IngestionPoller(init_db(db_path), snapshot, SourceCache(collaborators.poller), now=now)
        )
    if "dispatch" in selected:
        loops.append(DispatchForwarder(init_db(db_path), snapshot, collaborators.sink, now=now))
    if "token_refresh" in selected:
        loops.append(
            CredentialRefreshLoop(init_db(db_path), snapshot, collaborators.refresher, now=now)
        )
    return loops


def run_worker(only: list[str] | None = None, db_path: str | None = None) -> int:
    logger = configure_logging("jobrelay.worker")
    try:
        conn = init_db(db_path)
        config = load_runtime_config(conn)
        settings = load_integration_settings()
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    except JobRelayError as exc:
        log_event(logger, logging.ERROR, "worker_start_failed", error=str(exc))
        return 1

    recovered = recover_stuck_items(conn)
    snapshot = ConfigSnapshot(conn)
    RateLimiter(conn, snapshot).purge()

    collaborators = build_collaborators(settings, config)
    for name, value in (
        ("enrichment", collaborators.enricher),
        ("sink", collaborators.sink),
        ("oauth", collaborators.refresher),
    ):
        if value is None:
            log_event(logger, logging.WARNING, "integration_not_configured", integration=name)

    try:
        loops = build_loops(collaborators, db_path=db_path, only=only)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "worker_start_failed", error=str(exc))
        return 1

    shutdown = threading.Event()
    _install_signal_handlers(shutdown, logger)
    for loop in loops:
        loop.start()
    log_event(
        logger,
        logging.INFO,
        "worker_started",
        loops=",".join(loop.name for loop in loops),
        recovered=recovered,
    )

    while not shutdown.wait(1.0):
        if not any(loop.running for loop in loops):
            break

    for loop in loops:
        loop.stop()
    for loop in loops:
        loop.join(timeout=30)
    log_event(logger, logging.INFO, "worker_stopped")
    return 0


def _install_signal_handlers(shutdown: threading.Event, logger: logging.Logger) -> None:
    if threading.current_thread() is not threading.main_thread():
        return

    def _handle(signum, _frame) -> None:
        log_event(logger, logging.INFO, "shutdown_requested", signal=signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
