from __future__ import annotations

from datetime import timedelta
from typing import Callable

from ..errors import InvalidGrantError, TransientError
from ..models import Credential
from ..utils import isoformat_utc, utc_now
from .http import HttpStatusError, decode_json, send


class OAuthTokenRefresher:
    """Renews credentials with the OAuth ``refresh_token`` grant."""

    def __init__(
        self,
        token_url: str,
        client_id: str | None,
        client_secret: str | None,
        timeout_seconds: int = 30,
        now: Callable = utc_now,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout_seconds = timeout_seconds
        self._now = now

    def refresh(self, credential: Credential) -> Credential:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        }
        if self.client_id:
            form["client_id"] = self.client_id
        if self.client_secret:
            form["client_secret"] = self.client_secret
        try:
            raw = send(
                self.token_url,
                method="POST",
                form_body=form,
                timeout=self.timeout_seconds,
            )
        except HttpStatusError as exc:
            if exc.status in {400, 401}:
                raise InvalidGrantError(
                    f"refresh rejected for {credential.principal}: {exc.body[:200]}"
                ) from exc
            raise TransientError(str(exc)) from exc

        payload = decode_json(raw, self.token_url)
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise TransientError("token response missing access_token")
        expires_in = int(payload.get("expires_in") or 3600)
        return Credential(
            principal=credential.principal,
            access_token=str(access_token),
            refresh_token=str(payload.get("refresh_token") or credential.refresh_token),
            expires_at=isoformat_utc(self._now() + timedelta(seconds=expires_in)),
        )
