from __future__ import annotations

from typing import Any

from ..errors import AuthExpiredError, NotFoundError, TransientError
from ..models import Credential
from ..utils import extract_job_key
from .http import HttpStatusError, decode_json, send


class HttpEnricher:
    """Looks up job details from the enrichment endpoint.

    Posts ``{"locator", "job_key"}`` with the principal's bearer token and
    expects a JSON object back, optionally wrapped in ``data``.
    """

    def __init__(self, url: str, timeout_seconds: int = 60) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds

    def fetch(self, locator: str, credential: Credential) -> dict[str, Any]:
        job_key = extract_job_key(locator)
        if not job_key:
            raise NotFoundError(f"no job key in {locator}")
        try:
            raw = send(
                self.url,
                method="POST",
                headers={"Authorization": f"Bearer {credential.access_token}"},
                json_body={"locator": locator, "job_key": job_key},
                timeout=self.timeout_seconds,
            )
        except HttpStatusError as exc:
            if exc.status == 404:
                raise NotFoundError(f"job not found: {locator}") from exc
            if exc.status in {401, 403}:
                raise AuthExpiredError(f"enrichment rejected token for {credential.principal}") from exc
            raise TransientError(str(exc)) from exc

        payload = decode_json(raw, self.url)
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not isinstance(payload, dict) or not payload:
            raise NotFoundError(f"job not found: {locator}")
        return payload
