from __future__ import annotations

from typing import Any

from ..errors import RejectedError, TransientError
from .http import HttpStatusError, send


def build_sink_payload(
    locator: str, result: dict[str, Any] | None, fallback: dict[str, Any] | None
) -> dict[str, str]:
    """Merge the enrichment result with ingestion fallback fields.

    Values from ``result`` win; ``fallback`` only fills what is empty.
    """
    result = result or {}
    fallback = fallback or {}
    client_name = str(result.get("client_name") or fallback.get("client_name") or "")
    return {
        "link": locator,
        "job_heading": str(result.get("title") or fallback.get("title") or ""),
        "job_description": str(result.get("description") or fallback.get("description") or ""),
        "first_name": client_name,
        "last_name": "",
        "country": str(result.get("client_country") or fallback.get("client_country") or ""),
        "city": str(result.get("client_city") or fallback.get("client_city") or ""),
        "company": client_name,
        "rss_feed": "1",
    }


class WebhookSink:
    def __init__(self, url: str, token: str | None = None, timeout_seconds: int = 30) -> None:
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds

    def forward(
        self,
        locator: str,
        result: dict[str, Any] | None,
        fallback: dict[str, Any] | None,
    ) -> None:
        payload = build_sink_payload(locator, result, fallback)
        if not payload["link"] or not payload["job_heading"]:
            raise RejectedError("Missing required fields (link or title)")
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            send(
                self.url,
                method="POST",
                headers=headers,
                json_body=payload,
                timeout=self.timeout_seconds,
            )
        except HttpStatusError as exc:
            if 400 <= exc.status < 500 and exc.status != 429:
                raise RejectedError(str(exc)) from exc
            raise TransientError(str(exc)) from exc
