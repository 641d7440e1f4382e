from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from ..errors import AuthExpiredError, JobRelayError
from ..models import Credential
from ..security.secrets import credential_aad, decrypt_secret, encrypt_secret
from ..storage import (
    get_credential_row,
    list_credential_rows,
    record_api_call,
    upsert_credential_row,
)
from ..utils import isoformat_utc, log_event, parse_iso, utc_now

logger = logging.getLogger("jobrelay.credentials")


def save_credential(conn: Any, credential: Credential) -> None:
    aad = credential_aad(credential.principal)
    key_id, access_enc = encrypt_secret(credential.access_token, aad)
    _, refresh_enc = encrypt_secret(credential.refresh_token, aad)
    upsert_credential_row(
        conn,
        credential.principal,
        key_id,
        access_enc,
        refresh_enc,
        isoformat_utc(parse_iso(credential.expires_at)),
    )


def get_credential(conn: Any, principal: str) -> Credential | None:
    row = get_credential_row(conn, principal)
    return _row_to_credential(row) if row else None


def list_credentials(conn: Any) -> list[Credential]:
    return [_row_to_credential(row) for row in list_credential_rows(conn)]


def list_expiring_principals(conn: Any, before: datetime) -> list[str]:
    rows = list_credential_rows(conn, expiring_before=isoformat_utc(before))
    return [str(row[0]) for row in rows]


def default_principal(conn: Any) -> str | None:
    rows = list_credential_rows(conn)
    return str(rows[0][0]) if rows else None


def refresh_credential(conn: Any, credential: Credential, refresher) -> Credential:
    """Exchange the refresh token and persist the renewed credential.

    Errors from the refresher propagate after the attempt is recorded.
    """
    try:
        renewed = refresher.refresh(credential)
    except Exception as exc:  # noqa: BLE001
        record_api_call(conn, "oauth", False, endpoint=credential.principal, error=str(exc))
        raise
    record_api_call(conn, "oauth", True, endpoint=credential.principal)
    save_credential(conn, renewed)
    log_event(
        logger,
        logging.INFO,
        "credential_refreshed",
        principal=renewed.principal,
        expires_at=renewed.expires_at,
    )
    return renewed


def get_valid_credential(
    conn: Any,
    principal: str | None,
    refresher,
    *,
    buffer_minutes: int,
    now: Callable[[], datetime] = utc_now,
) -> Credential:
    principal = principal or default_principal(conn)
    if not principal:
        raise AuthExpiredError("no credential is stored")
    credential = get_credential(conn, principal)
    if credential is None:
        raise AuthExpiredError(f"no credential for principal {principal}")

    current = now()
    expires_at = parse_iso(credential.expires_at)
    if expires_at > current + timedelta(minutes=buffer_minutes):
        return credential
    if refresher is None:
        if expires_at > current:
            return credential
        raise AuthExpiredError(f"credential for {principal} expired and no refresher is configured")
    try:
        return refresh_credential(conn, credential, refresher)
    except JobRelayError as exc:
        raise AuthExpiredError(f"credential refresh failed for {principal}: {exc}") from exc


def _row_to_credential(row: tuple) -> Credential:
    principal, access_enc, refresh_enc, expires_at = row
    aad = credential_aad(principal)
    return Credential(
        principal=principal,
        access_token=decrypt_secret(access_enc, aad),
        refresh_token=decrypt_secret(refresh_enc, aad),
        expires_at=expires_at,
    )
