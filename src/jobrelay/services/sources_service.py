from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from ..models import SOURCE_KINDS, Source
from ..storage import get_source, upsert_source
from ..utils import log_event

logger = logging.getLogger("jobrelay.sources")

_CONFIG_KEYS = ("api_key_env", "api_key_header", "items_key")


def save_source(conn: Any, payload: dict[str, Any]) -> Source:
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("name is required")

    url = str(payload.get("url") or "").strip()
    if not url:
        raise ValueError("url is required")

    kind = str(payload.get("kind") or "json_api").strip()
    if kind not in SOURCE_KINDS:
        raise ValueError(f"kind must be one of {', '.join(SOURCE_KINDS)}")

    source_id = str(payload.get("id") or "").strip()
    if not source_id:
        source_id = _generate_source_id(conn, name)

    config = {key: str(payload[key]) for key in _CONFIG_KEYS if payload.get(key)}
    source = Source(
        id=source_id,
        name=name,
        kind=kind,
        url=url,
        enabled=bool(payload.get("enabled", True)),
        config=config,
    )
    upsert_source(conn, source)
    return source


def import_sources_yaml(conn: Any, path: str | Path) -> list[Source]:
    """Load source definitions from a YAML file.

    The file holds either a list of sources or a mapping with a ``sources``
    list. Existing ids are updated in place.
    """
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or []
    if isinstance(data, dict):
        data = data.get("sources") or []
    if not isinstance(data, list):
        raise ValueError("sources file must contain a list of sources")

    imported: list[Source] = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ValueError(f"source #{index + 1} must be a mapping")
        try:
            imported.append(save_source(conn, entry))
        except ValueError as exc:
            raise ValueError(f"source #{index + 1}: {exc}") from exc
    log_event(logger, logging.INFO, "sources_imported", path=path, count=len(imported))
    return imported


def _slugify(value: str) -> str:
    value = value.strip().lower()
    out = []
    dash = False
    for ch in value:
        if ch.isalnum():
            out.append(ch)
            dash = False
        elif not dash:
            out.append("-")
            dash = True
    slug = "".join(out).strip("-")
    return slug or "source"


def _generate_source_id(conn: Any, name: str) -> str:
    base = _slugify(name)
    candidate = base
    i = 2
    while get_source(conn, candidate) is not None:
        candidate = f"{base}-{i}"
        i += 1
    return candidate
