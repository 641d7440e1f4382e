from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timedelta

from .config import ConfigError, get_runtime_config, load_runtime_config, set_runtime_value
from .errors import JobRelayError
from .ingest import SourceCache, merge_candidates, submit_work_item
from .clients import HttpSourcePoller
from .models import WORK_STATUSES, Credential
from .recovery import recover_stuck_items
from .security.secrets import SecretError
from .services.credentials_service import list_credentials, save_credential
from .services.sources_service import import_sources_yaml
from .storage import (
    count_work_items_by_status,
    delete_work_item,
    get_api_stats,
    get_dispatch_stats,
    get_hourly_api_stats,
    get_source,
    get_work_item,
    init_db,
    list_rate_buckets,
    list_sources,
    list_work_items,
    queue_position,
    reset_dispatch,
    set_source_enabled,
)
from .utils import configure_logging, isoformat_utc, log_event, parse_iso, utc_now
from .worker import LOOP_NAMES, run_worker


def _setup_logging() -> logging.Logger:
    return configure_logging("jobrelay")


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    only = _parse_only(args.only)
    return run_worker(only=only, db_path=args.db)


def _cmd_recover(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    count = recover_stuck_items(conn)
    log_event(logger, logging.INFO, "recovered", requeued=count)
    return 0


def _cmd_submit(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        item, created = submit_work_item(conn, args.url, principal=args.principal)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "submit_rejected", error=str(exc))
        return 1
    log_event(
        logger,
        logging.INFO,
        "submitted" if created else "already_exists",
        item_id=item.id,
        locator=item.locator,
        status=item.status,
        queue_position=queue_position(conn, item) if item.status == "queued" else None,
    )
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    for item in list_work_items(conn, status=args.status, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "work_item",
            item_id=item.id,
            locator=item.locator,
            origin=item.origin,
            status=item.status,
            created_at=item.created_at,
            processed_at=item.processed_at,
            dispatch_status=item.dispatch_status,
            dispatch_due_at=item.dispatch_due_at,
            error=item.error,
        )
    return 0


def _cmd_jobs_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    counts = count_work_items_by_status(conn)
    log_event(logger, logging.INFO, "queue_stats", total=sum(counts.values()), **counts)
    dispatch = get_dispatch_stats(conn)
    log_event(logger, logging.INFO, "dispatch_stats", **dispatch)
    for bucket in list_rate_buckets(conn):
        log_event(logger, logging.INFO, "rate_bucket", hour=bucket.hour_key, count=bucket.count)
    return 0


def _cmd_jobs_remove(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    item = get_work_item(conn, args.item_id)
    if item is None:
        log_event(logger, logging.ERROR, "work_item_not_found", item_id=args.item_id)
        return 1
    if not delete_work_item(conn, args.item_id):
        log_event(logger, logging.ERROR, "work_item_in_progress", item_id=args.item_id)
        return 1
    log_event(logger, logging.INFO, "work_item_removed", item_id=args.item_id)
    return 0


def _cmd_jobs_retry_dispatch(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    if not reset_dispatch(conn, args.item_id):
        log_event(logger, logging.ERROR, "dispatch_not_failed", item_id=args.item_id)
        return 1
    log_event(logger, logging.INFO, "dispatch_reset", item_id=args.item_id)
    return 0


def _cmd_sources_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        imported = import_sources_yaml(conn, args.path)
    except (OSError, ValueError) as exc:
        log_event(logger, logging.ERROR, "sources_import_failed", path=args.path, error=str(exc))
        return 1
    log_event(logger, logging.INFO, "sources_imported", count=len(imported))
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    sources = list_sources(conn, enabled_only=False)
    if not sources:
        log_event(
            logger,
            logging.WARNING,
            "no_sources",
            hint="Import sources with `jobrelay sources import sources.yml`",
        )
        return 1
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            kind=source.kind,
            enabled=source.enabled,
            url=source.url,
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_sources_toggle(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    enabled = args.sources_command == "enable"
    if not set_source_enabled(conn, args.source_id, enabled):
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    log_event(logger, logging.INFO, "source_updated", source_id=args.source_id, enabled=enabled)
    return 0


def _cmd_test_source(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    source = get_source(conn, args.source_id)
    if source is None:
        log_event(logger, logging.ERROR, "source_not_found", source_id=args.source_id)
        return 1
    poller = HttpSourcePoller(config.ingest.http.timeout_seconds, config.ingest.http.user_agent)
    cache = SourceCache(poller)
    try:
        candidates, _ = cache.get(source, config.ingest.cache_ttl_seconds)
    except JobRelayError as exc:
        log_event(logger, logging.ERROR, "source_test_failed", source_id=source.id, error=str(exc))
        return 1
    merged = merge_candidates([(source.id, candidates)])
    log_event(
        logger,
        logging.INFO,
        "source_test",
        source_id=source.id,
        found=len(candidates),
        unique=len(merged),
    )
    for _, locator, candidate in merged[: args.limit]:
        log_event(logger, logging.INFO, "candidate", locator=locator, title=candidate.title)
    return 0


def _cmd_credentials_set(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        expires_at = isoformat_utc(parse_iso(args.expires_at))
    except ValueError as exc:
        log_event(logger, logging.ERROR, "invalid_expires_at", error=str(exc))
        return 1
    credential = Credential(
        principal=args.principal,
        access_token=args.access_token,
        refresh_token=args.refresh_token,
        expires_at=expires_at,
    )
    try:
        save_credential(conn, credential)
    except SecretError as exc:
        log_event(logger, logging.ERROR, "secret_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "credential_saved", principal=args.principal, expires_at=expires_at)
    return 0


def _cmd_credentials_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        credentials = list_credentials(conn)
    except SecretError as exc:
        log_event(logger, logging.ERROR, "secret_error", error=str(exc))
        return 1
    for credential in credentials:
        log_event(
            logger,
            logging.INFO,
            "credential",
            principal=credential.principal,
            expires_at=credential.expires_at,
        )
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    print(json.dumps(cfg, indent=2, sort_keys=True))
    return 0


def _cmd_config_set(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    try:
        value = json.loads(args.value)
    except json.JSONDecodeError:
        value = args.value
    try:
        set_runtime_value(conn, args.key, value)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "config_updated", key=args.key, value=json.dumps(value))
    return 0


def _cmd_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(args.db)
    start, end = stats_window(args.range, utc_now())
    start_iso, end_iso = isoformat_utc(start), isoformat_utc(end)
    api = get_api_stats(conn, start_iso, end_iso)
    log_event(
        logger,
        logging.INFO,
        "api_stats",
        range=args.range,
        start=start_iso,
        total=api["total"],
        by_type=json.dumps(api["by_type"], sort_keys=True),
    )
    if args.range == "today":
        hourly = get_hourly_api_stats(conn, start_iso, end_iso)
        log_event(
            logger,
            logging.INFO,
            "hourly_stats",
            peak_hour=hourly["peak_hour"],
            peak_count=hourly["peak_count"],
        )
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    init_db(args.db)
    log_event(logger, logging.INFO, "db_migrated", path=args.db or "default")
    return 0


def stats_window(range_name: str, now: datetime) -> tuple[datetime, datetime]:
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if range_name == "week":
        return today - timedelta(days=7), now
    if range_name == "month":
        return today - timedelta(days=30), now
    return today, now


def _parse_only(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="jobrelay", description="JobRelay CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the SQLite state file (defaults to $JR_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Recover, then run the background loops")
    run_parser.add_argument(
        "--only",
        default=None,
        help=f"Comma-separated loops to run ({', '.join(LOOP_NAMES)})",
    )
    run_parser.set_defaults(func=_cmd_run)

    recover_parser = subparsers.add_parser("recover", help="Requeue items stuck in processing")
    recover_parser.set_defaults(func=_cmd_recover)

    submit_parser = subparsers.add_parser("submit", help="Queue a job URL")
    submit_parser.add_argument("url", help="Job URL")
    submit_parser.add_argument("--principal", default=None, help="Credential owner to use")
    submit_parser.set_defaults(func=_cmd_submit)

    jobs_parser = subparsers.add_parser("jobs", help="Work queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent work items")
    jobs_list.add_argument("--status", choices=list(WORK_STATUSES))
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of items to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_stats = jobs_subparsers.add_parser("stats", help="Queue and dispatch counts")
    jobs_stats.set_defaults(func=_cmd_jobs_stats)

    jobs_remove = jobs_subparsers.add_parser("remove", help="Remove a work item")
    jobs_remove.add_argument("item_id", help="Work item id")
    jobs_remove.set_defaults(func=_cmd_jobs_remove)

    jobs_retry = jobs_subparsers.add_parser(
        "retry-dispatch", help="Reset a failed dispatch to pending"
    )
    jobs_retry.add_argument("item_id", help="Work item id")
    jobs_retry.set_defaults(func=_cmd_jobs_retry_dispatch)

    sources_parser = subparsers.add_parser("sources", help="Manage sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)

    sources_import = sources_subparsers.add_parser("import", help="Import sources from YAML")
    sources_import.add_argument("path", help="Path to sources YAML file")
    sources_import.set_defaults(func=_cmd_sources_import)

    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    for action in ("enable", "disable"):
        toggle = sources_subparsers.add_parser(action, help=f"{action.capitalize()} a source")
        toggle.add_argument("source_id", help="Source id")
        toggle.set_defaults(func=_cmd_sources_toggle)

    test_parser = subparsers.add_parser("test-source", help="Poll one source without enqueueing")
    test_parser.add_argument("source_id", help="Source id to test")
    test_parser.add_argument("--limit", type=int, default=10, help="Preview item limit")
    test_parser.set_defaults(func=_cmd_test_source)

    credentials_parser = subparsers.add_parser("credentials", help="Manage credentials")
    credentials_subparsers = credentials_parser.add_subparsers(
        dest="credentials_command", required=True
    )

    credentials_set = credentials_subparsers.add_parser("set", help="Store a credential")
    credentials_set.add_argument("principal", help="Credential owner")
    credentials_set.add_argument("--access-token", required=True)
    credentials_set.add_argument("--refresh-token", required=True)
    credentials_set.add_argument("--expires-at", required=True, help="ISO-8601 expiry time")
    credentials_set.set_defaults(func=_cmd_credentials_set)

    credentials_list = credentials_subparsers.add_parser("list", help="List credentials")
    credentials_list.set_defaults(func=_cmd_credentials_list)

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)

    config_show = config_subparsers.add_parser("show", help="Print the runtime config")
    config_show.set_defaults(func=_cmd_config_show)

    config_set = config_subparsers.add_parser("set", help="Set one config value")
    config_set.add_argument("key", help="Dotted key, e.g. dispatch.delay_hours")
    config_set.add_argument("value", help="JSON value")
    config_set.set_defaults(func=_cmd_config_set)

    stats_parser = subparsers.add_parser("stats", help="External API call statistics")
    stats_parser.add_argument("--range", choices=["today", "week", "month"], default="today")
    stats_parser.set_defaults(func=_cmd_stats)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
