from __future__ import annotations

import json
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from ..errors import TransientError

USER_AGENT = "JobRelay/0.1"


class HttpStatusError(Exception):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status
        self.body = body


def send(
    url: str,
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    json_body: Any = None,
    form_body: dict[str, str] | None = None,
    timeout: int = 60,
) -> bytes:
    """Perform one HTTP request and return the raw body.

    Non-2xx responses raise ``HttpStatusError``; connection failures raise
    ``TransientError``. Callers map status codes onto their own contract.
    """
    request_headers = {"User-Agent": USER_AGENT}
    request_headers.update(headers or {})
    data = None
    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        request_headers["Content-Type"] = "application/json"
    elif form_body is not None:
        data = urlencode(form_body).encode("utf-8")
        request_headers["Content-Type"] = "application/x-www-form-urlencoded"
    request = Request(url, data=data, method=method, headers=request_headers)
    try:
        with urlopen(request, timeout=timeout) as response:
            return response.read()
    except HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        raise HttpStatusError(exc.code, body) from exc
    except (URLError, TimeoutError, ConnectionError) as exc:
        raise TransientError(f"request to {url} failed: {exc}") from exc


def decode_json(raw: bytes, url: str) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TransientError(f"invalid JSON from {url}") from exc
