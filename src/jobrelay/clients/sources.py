from __future__ import annotations

import logging
import os
from typing import Any

import feedparser

from ..errors import ConfigurationMissingError, TransientError
from ..models import Candidate, Source
from ..utils import log_event
from .http import HttpStatusError, decode_json, send

logger = logging.getLogger("jobrelay.sources")

_URL_KEYS = ("url", "link", "job_url")
_FALLBACK_KEYS = ("title", "description", "client_country", "client_city", "client_name", "budget")


class HttpSourcePoller:
    """Fetches candidates from ``json_api`` and ``rss`` sources."""

    def __init__(self, timeout_seconds: int = 60, user_agent: str = "JobRelay/0.1") -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent

    def poll(self, source: Source) -> list[Candidate]:
        raw = self._fetch(source)
        if source.kind == "rss":
            return _parse_feed(raw, source)
        return _parse_json(decode_json(raw, source.url), source)

    def _fetch(self, source: Source) -> bytes:
        headers = {"User-Agent": self.user_agent}
        key_env = source.config.get("api_key_env")
        if key_env:
            api_key = os.environ.get(str(key_env), "")
            if not api_key:
                raise ConfigurationMissingError(f"{key_env} is not set for source {source.id}")
            headers[str(source.config.get("api_key_header") or "X-API-TOKEN")] = api_key
        try:
            return send(source.url, headers=headers, timeout=self.timeout_seconds)
        except HttpStatusError as exc:
            raise TransientError(f"source {source.id}: {exc}") from exc


def _parse_json(payload: Any, source: Source) -> list[Candidate]:
    items_key = source.config.get("items_key")
    if isinstance(payload, dict):
        if items_key:
            payload = payload.get(items_key)
        else:
            payload = payload.get("data", payload.get("items"))
    if not isinstance(payload, list):
        raise TransientError(f"source {source.id} returned no item list")

    candidates: list[Candidate] = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        url = next((str(item[key]) for key in _URL_KEYS if item.get(key)), "")
        if not url:
            continue
        fallback = {key: item[key] for key in _FALLBACK_KEYS if item.get(key) not in (None, "")}
        candidates.append(
            Candidate(url=url, title=str(item.get("title") or ""), fallback=fallback)
        )
    return candidates


def _parse_feed(raw: bytes, source: Source) -> list[Candidate]:
    parsed = feedparser.parse(raw)
    if parsed.bozo and not parsed.entries:
        raise TransientError(f"source {source.id}: {parsed.bozo_exception}")
    if parsed.bozo:
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            source_id=source.id,
            error=str(parsed.bozo_exception),
        )
    candidates: list[Candidate] = []
    for entry in parsed.entries or []:
        link = entry.get("link") or entry.get("id")
        if not link:
            continue
        title = (entry.get("title") or "").strip()
        fallback: dict[str, Any] = {}
        if title:
            fallback["title"] = title
        summary = entry.get("summary") or entry.get("description")
        if summary:
            fallback["description"] = summary
        candidates.append(Candidate(url=str(link), title=title, fallback=fallback))
    return candidates
