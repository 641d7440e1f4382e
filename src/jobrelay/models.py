from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

WORK_STATUSES = ("queued", "processing", "completed", "failed")
SOURCE_KINDS = ("json_api", "rss")


@dataclass(frozen=True)
class WorkItem:
    id: str
    locator: str
    origin: str | None
    principal: str | None
    status: str
    result: dict[str, Any] | None
    fallback: dict[str, Any]
    error: str | None
    created_at: str
    processed_at: str | None
    dispatch_status: str
    dispatch_due_at: str | None
    dispatch_sent_at: str | None
    dispatch_error: str | None


@dataclass(frozen=True)
class Candidate:
    url: str
    title: str
    fallback: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Source:
    id: str
    name: str
    kind: str
    url: str
    enabled: bool
    config: dict[str, Any]


@dataclass(frozen=True)
class Credential:
    principal: str
    access_token: str
    refresh_token: str
    expires_at: str


@dataclass(frozen=True)
class RateLimitBucket:
    hour_key: str
    count: int
    created_at: str
