import json
import logging

import pytest

from jobrelay import cli
from jobrelay.storage import (
    claim_next_work_item,
    count_work_items_by_status,
    get_work_item_by_locator,
    init_db,
    list_sources,
    list_work_items,
)


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "_setup_logging", lambda: logging.getLogger("jobrelay.cli"))


def test_submit_twice_creates_one_item(db_path, caplog):
    caplog.set_level(logging.INFO, logger="jobrelay.cli")
    assert cli.main(["--db", db_path, "submit", "https://jobs.example/a?utm_source=x"]) == 0
    assert cli.main(["--db", db_path, "submit", "https://jobs.example/a"]) == 0

    assert "event=submitted" in caplog.text
    assert "event=already_exists" in caplog.text
    conn = init_db(db_path)
    assert count_work_items_by_status(conn)["queued"] == 1
    conn.close()


def test_submit_rejects_invalid_url(db_path):
    assert cli.main(["--db", db_path, "submit", "not a url"]) == 1


def test_remove_refuses_processing_item(db_path):
    cli.main(["--db", db_path, "submit", "https://jobs.example/a"])
    cli.main(["--db", db_path, "submit", "https://jobs.example/b"])
    conn = init_db(db_path)
    claimed = claim_next_work_item(conn)
    waiting = get_work_item_by_locator(conn, "https://jobs.example/b")

    assert cli.main(["--db", db_path, "jobs", "remove", claimed.id]) == 1
    assert cli.main(["--db", db_path, "jobs", "remove", waiting.id]) == 0
    assert cli.main(["--db", db_path, "jobs", "remove", "item_missing"]) == 1
    assert [item.id for item in list_work_items(conn)] == [claimed.id]
    conn.close()


def test_config_set_and_show(db_path, capsys):
    assert cli.main(["--db", db_path, "config", "set", "dispatch.delay_hours", "3"]) == 0
    assert cli.main(["--db", db_path, "config", "set", "dispatch.enabled", "true"]) == 0
    capsys.readouterr()

    assert cli.main(["--db", db_path, "config", "show"]) == 0
    shown = json.loads(capsys.readouterr().out)
    assert shown["dispatch"]["delay_hours"] == 3
    assert shown["dispatch"]["enabled"] is True


def test_config_set_rejects_unknown_and_invalid(db_path):
    assert cli.main(["--db", db_path, "config", "set", "dispatch.colour", "1"]) == 1
    assert cli.main(["--db", db_path, "config", "set", "dispatch.batch_size", "0"]) == 1


def test_retry_dispatch_requires_failed_item(db_path):
    cli.main(["--db", db_path, "submit", "https://jobs.example/a"])
    conn = init_db(db_path)
    item = get_work_item_by_locator(conn, "https://jobs.example/a")
    assert cli.main(["--db", db_path, "jobs", "retry-dispatch", item.id]) == 1
    conn.close()


def test_credentials_set_and_list(db_path, caplog):
    caplog.set_level(logging.INFO, logger="jobrelay.cli")
    argv = [
        "--db",
        db_path,
        "credentials",
        "set",
        "alice",
        "--access-token",
        "access-1",
        "--refresh-token",
        "refresh-1",
        "--expires-at",
        "2030-01-01T00:00:00Z",
    ]
    assert cli.main(argv) == 0
    assert cli.main(["--db", db_path, "credentials", "list"]) == 0
    assert "principal=alice" in caplog.text
    assert "access-1" not in caplog.text


def test_sources_import_and_list(db_path, tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text("- id: s1\n  name: One\n  url: https://api.example/one\n", encoding="utf-8")
    assert cli.main(["--db", db_path, "sources", "list"]) == 1
    assert cli.main(["--db", db_path, "sources", "import", str(path)]) == 0
    assert cli.main(["--db", db_path, "sources", "list"]) == 0
    assert cli.main(["--db", db_path, "sources", "import", str(tmp_path / "missing.yml")]) == 1


def test_recover_and_stats_commands(db_path):
    cli.main(["--db", db_path, "submit", "https://jobs.example/a"])
    conn = init_db(db_path)
    claim_next_work_item(conn)

    assert cli.main(["--db", db_path, "recover"]) == 0
    assert count_work_items_by_status(conn)["queued"] == 1
    assert cli.main(["--db", db_path, "jobs", "stats"]) == 0
    assert cli.main(["--db", db_path, "jobs", "list", "--status", "queued"]) == 0
    assert cli.main(["--db", db_path, "stats", "--range", "week"]) == 0
    conn.close()


def test_stats_window(clock):
    start, end = cli.stats_window("week", clock())
    assert end == clock()
    assert start.isoformat() == "2024-02-26T00:00:00+00:00"
    today, _ = cli.stats_window("today", clock())
    assert today.isoformat() == "2024-03-04T00:00:00+00:00"


def test_sources_enable_disable(db_path, tmp_path):
    path = tmp_path / "sources.yml"
    path.write_text("- id: s1\n  name: One\n  url: https://api.example/one\n", encoding="utf-8")
    cli.main(["--db", db_path, "sources", "import", str(path)])

    assert cli.main(["--db", db_path, "sources", "disable", "s1"]) == 0
    conn = init_db(db_path)
    assert list_sources(conn) == []
    assert cli.main(["--db", db_path, "sources", "enable", "s1"]) == 0
    assert [source.id for source in list_sources(conn)] == ["s1"]
    assert cli.main(["--db", db_path, "sources", "enable", "missing"]) == 1
    conn.close()
