from __future__ import annotations

import json
import uuid
from dataclasses import replace
from typing import Any

from .db import DBConn, connect_db
from .models import WORK_STATUSES, RateLimitBucket, Source, WorkItem
from .utils import json_dumps, json_loads_or, utc_now_iso

_WORK_ITEM_COLUMNS = """
    id, locator, origin, principal, status, result_json, fallback_json, error,
    created_at, processed_at, dispatch_status, dispatch_due_at, dispatch_sent_at,
    dispatch_error
"""


def init_db(path: str | None = None) -> DBConn:
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# Sources


def upsert_source(conn: Any, source: Source) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources (id, name, kind, url, enabled, config_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name=excluded.name,
            kind=excluded.kind,
            url=excluded.url,
            enabled=excluded.enabled,
            config_json=excluded.config_json,
            updated_at=excluded.updated_at
        """,
        (
            source.id,
            source.name,
            source.kind,
            source.url,
            1 if source.enabled else 0,
            json_dumps(source.config) if source.config else None,
            now,
            now,
        ),
    )
    conn.commit()


def set_source_enabled(conn: Any, source_id: str, enabled: bool) -> bool:
    cursor = conn.execute(
        "UPDATE sources SET enabled = ?, updated_at = ? WHERE id = ?",
        (1 if enabled else 0, utc_now_iso(), source_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_source(conn: Any, source_id: str) -> Source | None:
    cursor = conn.execute(
        "SELECT id, name, kind, url, enabled, config_json FROM sources WHERE id = ?",
        (source_id,),
    )
    row = cursor.fetchone()
    return _row_to_source(row) if row else None


def list_sources(conn: Any, enabled_only: bool = True) -> list[Source]:
    where = "WHERE enabled = 1" if enabled_only else ""
    cursor = conn.execute(
        f"""
        SELECT id, name, kind, url, enabled, config_json
        FROM sources
        {where}
        ORDER BY id
        """
    )
    return [_row_to_source(row) for row in cursor.fetchall()]


# Work items


def create_work_item(
    conn: Any,
    locator: str,
    *,
    origin: str | None = None,
    principal: str | None = None,
    fallback: dict[str, Any] | None = None,
    now_iso: str | None = None,
) -> str | None:
    """Insert a queued item. Returns the new id, or None if the locator exists."""
    item_id = _new_item_id()
    now = now_iso or utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO work_items
            (id, locator, origin, principal, status, result_json, fallback_json, error,
             created_at, processed_at, dispatch_status, dispatch_due_at, dispatch_sent_at,
             dispatch_error, updated_at)
        VALUES (?, ?, ?, ?, 'queued', NULL, ?, NULL, ?, NULL, 'none', NULL, NULL, NULL, ?)
        ON CONFLICT(locator) DO NOTHING
        """,
        (
            item_id,
            locator,
            origin,
            principal,
            json_dumps(fallback) if fallback else None,
            now,
            now,
        ),
    )
    conn.commit()
    return item_id if cursor.rowcount == 1 else None


def work_item_exists(conn: Any, locator: str) -> bool:
    cursor = conn.execute("SELECT 1 FROM work_items WHERE locator = ?", (locator,))
    return cursor.fetchone() is not None


def get_work_item(conn: Any, item_id: str) -> WorkItem | None:
    cursor = conn.execute(
        f"SELECT {_WORK_ITEM_COLUMNS} FROM work_items WHERE id = ?",
        (item_id,),
    )
    row = cursor.fetchone()
    return _row_to_work_item(row) if row else None


def get_work_item_by_locator(conn: Any, locator: str) -> WorkItem | None:
    cursor = conn.execute(
        f"SELECT {_WORK_ITEM_COLUMNS} FROM work_items WHERE locator = ?",
        (locator,),
    )
    row = cursor.fetchone()
    return _row_to_work_item(row) if row else None


def list_work_items(conn: Any, status: str | None = None, limit: int = 50) -> list[WorkItem]:
    if status:
        cursor = conn.execute(
            f"""
            SELECT {_WORK_ITEM_COLUMNS} FROM work_items
            WHERE status = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (status, limit),
        )
    else:
        cursor = conn.execute(
            f"""
            SELECT {_WORK_ITEM_COLUMNS} FROM work_items
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        )
    return [_row_to_work_item(row) for row in cursor.fetchall()]


def claim_next_work_item(conn: Any, now_iso: str | None = None) -> WorkItem | None:
    """Move the oldest queued item to processing and return it.

    Ordering is oldest-first (created_at, then id). The conditional update
    is the durable recovery boundary: once it commits, a crash leaves the
    item in processing until recover_stuck_items runs.
    """
    for _ in range(5):
        cursor = conn.execute(
            f"""
            SELECT {_WORK_ITEM_COLUMNS} FROM work_items
            WHERE status = 'queued'
            ORDER BY created_at ASC, id ASC
            LIMIT 1
            """
        )
        row = cursor.fetchone()
        if not row:
            return None
        item = _row_to_work_item(row)
        now = now_iso or utc_now_iso()
        cursor = conn.execute(
            """
            UPDATE work_items
            SET status = 'processing', updated_at = ?
            WHERE id = ? AND status = 'queued'
            """,
            (now, item.id),
        )
        conn.commit()
        if cursor.rowcount == 1:
            return _with_status(item, "processing")
    return None


def complete_work_item(
    conn: Any,
    item_id: str,
    result: dict[str, Any],
    processed_at: str,
    dispatch_due_at: str | None,
) -> bool:
    dispatch_status = "pending" if dispatch_due_at else "none"
    cursor = conn.execute(
        """
        UPDATE work_items
        SET status = 'completed', result_json = ?, error = NULL, processed_at = ?,
            dispatch_status = ?, dispatch_due_at = ?, updated_at = ?
        WHERE id = ? AND status = 'processing'
        """,
        (json_dumps(result), processed_at, dispatch_status, dispatch_due_at, processed_at, item_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_work_item(conn: Any, item_id: str, error: str, processed_at: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE work_items
        SET status = 'failed', error = ?, processed_at = ?, updated_at = ?
        WHERE id = ? AND status = 'processing'
        """,
        (error, processed_at, processed_at, item_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def requeue_processing_items(conn: Any) -> int:
    cursor = conn.execute(
        "UPDATE work_items SET status = 'queued', updated_at = ? WHERE status = 'processing'",
        (utc_now_iso(),),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def delete_work_item(conn: Any, item_id: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM work_items WHERE id = ? AND status != 'processing'",
        (item_id,),
    )
    conn.commit()
    return cursor.rowcount == 1


def count_work_items_by_status(conn: Any) -> dict[str, int]:
    counts = {status: 0 for status in WORK_STATUSES}
    cursor = conn.execute("SELECT status, COUNT(*) FROM work_items GROUP BY status")
    for status, count in cursor.fetchall():
        counts[str(status)] = int(count or 0)
    return counts


def queue_position(conn: Any, item: WorkItem) -> int:
    cursor = conn.execute(
        "SELECT COUNT(*) FROM work_items WHERE status = 'queued' AND created_at <= ?",
        (item.created_at,),
    )
    row = cursor.fetchone()
    return int(row[0] or 0) if row else 0


# Dispatch


def list_due_dispatches(conn: Any, now_iso: str, limit: int) -> list[WorkItem]:
    cursor = conn.execute(
        f"""
        SELECT {_WORK_ITEM_COLUMNS} FROM work_items
        WHERE status = 'completed'
          AND dispatch_status = 'pending'
          AND dispatch_due_at IS NOT NULL
          AND dispatch_due_at <= ?
        ORDER BY dispatch_due_at ASC, id ASC
        LIMIT ?
        """,
        (now_iso, limit),
    )
    return [_row_to_work_item(row) for row in cursor.fetchall()]


def mark_dispatch_sent(conn: Any, item_id: str, sent_at: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE work_items
        SET dispatch_status = 'sent', dispatch_sent_at = ?, dispatch_error = NULL, updated_at = ?
        WHERE id = ? AND dispatch_status = 'pending'
        """,
        (sent_at, sent_at, item_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_dispatch_failed(conn: Any, item_id: str, error: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE work_items
        SET dispatch_status = 'failed', dispatch_error = ?, updated_at = ?
        WHERE id = ? AND dispatch_status = 'pending'
        """,
        (error, utc_now_iso(), item_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def reset_dispatch(conn: Any, item_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE work_items
        SET dispatch_status = 'pending', dispatch_error = NULL, updated_at = ?
        WHERE id = ? AND dispatch_status = 'failed' AND status = 'completed'
        """,
        (utc_now_iso(), item_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_dispatch_stats(conn: Any) -> dict[str, object]:
    stats: dict[str, object] = {"pending": 0, "sent": 0, "failed": 0}
    cursor = conn.execute(
        """
        SELECT dispatch_status, COUNT(*) FROM work_items
        WHERE dispatch_status IN ('pending', 'sent', 'failed')
        GROUP BY dispatch_status
        """
    )
    for status, count in cursor.fetchall():
        stats[str(status)] = int(count or 0)
    row = conn.execute(
        """
        SELECT MIN(dispatch_due_at) FROM work_items
        WHERE dispatch_status = 'pending' AND status = 'completed'
        """
    ).fetchone()
    stats["next_due_at"] = row[0] if row else None
    return stats


# Rate limit buckets


def ensure_rate_bucket(conn: Any, hour_key: str, now_iso: str) -> int:
    conn.execute(
        """
        INSERT INTO rate_limit_buckets (hour_key, count, created_at, updated_at)
        VALUES (?, 0, ?, ?)
        ON CONFLICT(hour_key) DO NOTHING
        """,
        (hour_key, now_iso, now_iso),
    )
    conn.commit()
    return get_rate_bucket_count(conn, hour_key)


def increment_rate_bucket(conn: Any, hour_key: str, now_iso: str) -> None:
    conn.execute(
        """
        INSERT INTO rate_limit_buckets (hour_key, count, created_at, updated_at)
        VALUES (?, 1, ?, ?)
        ON CONFLICT(hour_key) DO UPDATE SET
            count = rate_limit_buckets.count + 1,
            updated_at = excluded.updated_at
        """,
        (hour_key, now_iso, now_iso),
    )
    conn.commit()


def get_rate_bucket_count(conn: Any, hour_key: str) -> int:
    cursor = conn.execute(
        "SELECT count FROM rate_limit_buckets WHERE hour_key = ?",
        (hour_key,),
    )
    row = cursor.fetchone()
    return int(row[0] or 0) if row else 0


def list_rate_buckets(conn: Any) -> list[RateLimitBucket]:
    cursor = conn.execute(
        "SELECT hour_key, count, created_at FROM rate_limit_buckets ORDER BY hour_key DESC"
    )
    return [
        RateLimitBucket(hour_key=str(key), count=int(count or 0), created_at=str(created_at))
        for key, count, created_at in cursor.fetchall()
    ]


def purge_rate_buckets(conn: Any, before_iso: str) -> int:
    cursor = conn.execute(
        "DELETE FROM rate_limit_buckets WHERE created_at < ?",
        (before_iso,),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


# Credentials (ciphertext only; see services.credentials_service)


def upsert_credential_row(
    conn: Any,
    principal: str,
    key_id: str,
    access_token_enc: str,
    refresh_token_enc: str,
    expires_at: str,
) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO credentials
            (principal, key_id, access_token_enc, refresh_token_enc, expires_at,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(principal) DO UPDATE SET
            key_id=excluded.key_id,
            access_token_enc=excluded.access_token_enc,
            refresh_token_enc=excluded.refresh_token_enc,
            expires_at=excluded.expires_at,
            updated_at=excluded.updated_at
        """,
        (principal, key_id, access_token_enc, refresh_token_enc, expires_at, now, now),
    )
    conn.commit()


def get_credential_row(conn: Any, principal: str) -> tuple | None:
    cursor = conn.execute(
        """
        SELECT principal, access_token_enc, refresh_token_enc, expires_at
        FROM credentials WHERE principal = ?
        """,
        (principal,),
    )
    return cursor.fetchone()


def list_credential_rows(conn: Any, expiring_before: str | None = None) -> list[tuple]:
    if expiring_before:
        cursor = conn.execute(
            """
            SELECT principal, access_token_enc, refresh_token_enc, expires_at
            FROM credentials
            WHERE expires_at < ?
            ORDER BY expires_at ASC
            """,
            (expiring_before,),
        )
    else:
        cursor = conn.execute(
            """
            SELECT principal, access_token_enc, refresh_token_enc, expires_at
            FROM credentials
            ORDER BY created_at ASC, principal ASC
            """
        )
    return list(cursor.fetchall())


# API call log


def record_api_call(
    conn: Any,
    api_type: str,
    success: bool,
    endpoint: str | None = None,
    error: str | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO api_calls (api_type, endpoint, success, error, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (api_type, endpoint, 1 if success else 0, error[:500] if error else None, utc_now_iso()),
    )
    conn.commit()


def get_api_stats(conn: Any, start_iso: str, end_iso: str) -> dict[str, object]:
    cursor = conn.execute(
        """
        SELECT api_type, success, COUNT(*)
        FROM api_calls
        WHERE created_at >= ? AND created_at < ?
        GROUP BY api_type, success
        """,
        (start_iso, end_iso),
    )
    by_type: dict[str, dict[str, int]] = {}
    total = 0
    for api_type, success, count in cursor.fetchall():
        bucket = by_type.setdefault(str(api_type), {"total": 0, "success": 0, "failed": 0})
        bucket["total"] += int(count)
        bucket["success" if success else "failed"] += int(count)
        total += int(count)
    return {"total": total, "by_type": by_type}


def get_hourly_api_stats(conn: Any, start_iso: str, end_iso: str) -> dict[str, object]:
    cursor = conn.execute(
        "SELECT created_at FROM api_calls WHERE created_at >= ? AND created_at < ?",
        (start_iso, end_iso),
    )
    hourly = {hour: 0 for hour in range(24)}
    for (created_at,) in cursor.fetchall():
        hourly[int(str(created_at)[11:13])] += 1
    peak_hour = max(hourly, key=lambda hour: (hourly[hour], -hour))
    return {"hourly": hourly, "peak_hour": peak_hour, "peak_count": hourly[peak_hour]}


def _row_to_source(row: tuple) -> Source:
    source_id, name, kind, url, enabled, config_json = row
    return Source(
        id=source_id,
        name=name,
        kind=kind,
        url=url,
        enabled=bool(enabled),
        config=json_loads_or(config_json, {}),
    )


def _row_to_work_item(row: tuple) -> WorkItem:
    (
        item_id,
        locator,
        origin,
        principal,
        status,
        result_json,
        fallback_json,
        error,
        created_at,
        processed_at,
        dispatch_status,
        dispatch_due_at,
        dispatch_sent_at,
        dispatch_error,
    ) = row
    return WorkItem(
        id=item_id,
        locator=locator,
        origin=origin,
        principal=principal,
        status=status,
        result=json_loads_or(result_json, None),
        fallback=json_loads_or(fallback_json, {}),
        error=error,
        created_at=created_at,
        processed_at=processed_at,
        dispatch_status=dispatch_status or "none",
        dispatch_due_at=dispatch_due_at,
        dispatch_sent_at=dispatch_sent_at,
        dispatch_error=dispatch_error,
    )


def _with_status(item: WorkItem, status: str) -> WorkItem:
    return replace(item, status=status)


def _new_item_id() -> str:
    return f"item_{uuid.uuid4().hex}"
