from __future__ import annotations

import logging

from .utils import utc_now_iso

_PG_MIGRATIONS = [
    (
        "pg_001_initial_schema",
        [
            """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS sources (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                kind TEXT NOT NULL,
                url TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                config_json TEXT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS work_items (
                id TEXT PRIMARY KEY,
                locator TEXT NOT NULL UNIQUE,
                origin TEXT NULL,
                principal TEXT NULL,
                status TEXT NOT NULL,
                result_json TEXT NULL,
                fallback_json TEXT NULL,
                error TEXT NULL,
                created_at TEXT NOT NULL,
                processed_at TEXT NULL,
                dispatch_status TEXT NOT NULL DEFAULT 'none',
                dispatch_due_at TEXT NULL,
                dispatch_sent_at TEXT NULL,
                dispatch_error TEXT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_work_items_status_created ON work_items(status, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_work_items_dispatch ON work_items(dispatch_status, dispatch_due_at)",
            """
            CREATE TABLE IF NOT EXISTS rate_limit_buckets (
                hour_key TEXT PRIMARY KEY,
                count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS credentials (
                principal TEXT PRIMARY KEY,
                key_id TEXT NOT NULL,
                access_token_enc TEXT NOT NULL,
                refresh_token_enc TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
        ],
    ),
    (
        "pg_002_api_calls",
        [
            """
            CREATE TABLE IF NOT EXISTS api_calls (
                id BIGSERIAL PRIMARY KEY,
                api_type TEXT NOT NULL,
                endpoint TEXT NULL,
                success INTEGER NOT NULL,
                error TEXT NULL,
                created_at TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_api_calls_created ON api_calls(created_at)",
        ],
    ),
]


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("jobrelay.migrations")
    conn.execute("BEGIN")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, statements in _PG_MIGRATIONS:
            if version in applied:
                continue
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
