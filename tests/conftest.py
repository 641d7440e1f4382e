from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone

import pytest

from jobrelay.storage import init_db


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start
        self.monotonic_value = 0.0

    def __call__(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.monotonic_value

    def advance(self, **kwargs) -> None:
        delta = timedelta(**kwargs)
        self.current = self.current + delta
        self.monotonic_value += delta.total_seconds()


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    key = base64.urlsafe_b64encode(b"k" * 32).decode("utf-8")
    monkeypatch.setenv("JR_MASTER_KEY", key)
    monkeypatch.setenv("JR_KEY_ID", "v1")
    monkeypatch.setenv("JR_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("JR_DB_URL", raising=False)
    for name in (
        "JR_ENRICHMENT_URL",
        "JR_SINK_URL",
        "JR_SINK_TOKEN",
        "JR_OAUTH_TOKEN_URL",
        "JR_OAUTH_CLIENT_ID",
        "JR_OAUTH_CLIENT_SECRET",
        "JR_HTTP_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 10, 0, 0, tzinfo=timezone.utc))
