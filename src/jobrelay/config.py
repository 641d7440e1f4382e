from __future__ import annotations

import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .storage import get_setting, set_setting
from .utils import log_event


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class MaintenanceConfig:
    enabled: bool


@dataclass(frozen=True)
class WorkingHoursConfig:
    enabled: bool
    start: str
    end: str
    days: list[int]


@dataclass(frozen=True)
class ProcessingConfig:
    enabled: bool
    rate_limit_per_hour: int
    bucket_retention_hours: int
    min_interval_seconds: float
    max_interval_seconds: float
    long_pause_probability: float
    long_pause_min_multiplier: float
    long_pause_max_multiplier: float
    idle_wait_seconds: float
    rate_limited_wait_seconds: float
    paused_wait_seconds: float
    error_wait_seconds: float
    config_refresh_seconds: float


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str


@dataclass(frozen=True)
class IngestConfig:
    enabled: bool
    auto_enqueue: bool
    interval_minutes: int
    cache_ttl_seconds: int
    initial_delay_seconds: float
    principal: str
    http: HttpConfig


@dataclass(frozen=True)
class DispatchConfig:
    enabled: bool
    delay_hours: float
    interval_seconds: float
    batch_size: int
    send_spacing_seconds: float
    initial_delay_seconds: float


@dataclass(frozen=True)
class CredentialsConfig:
    refresh_interval_seconds: float
    expiry_buffer_minutes: int
    use_buffer_minutes: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    maintenance: MaintenanceConfig
    working_hours: WorkingHoursConfig
    processing: ProcessingConfig
    ingest: IngestConfig
    dispatch: DispatchConfig
    credentials: CredentialsConfig


@dataclass(frozen=True)
class IntegrationSettings:
    enrichment_url: str | None
    sink_url: str | None
    sink_token: str | None
    oauth_token_url: str | None
    oauth_client_id: str | None
    oauth_client_secret: str | None
    http_timeout_seconds: int


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "JobRelay",
        "timezone": "UTC",
    },
    "maintenance": {
        "enabled": False,
    },
    "working_hours": {
        "enabled": False,
        "start": "09:00",
        "end": "18:00",
        "days": [1, 2, 3, 4, 5],
    },
    "processing": {
        "enabled": True,
        "rate_limit_per_hour": 50,
        "bucket_retention_hours": 2,
        "min_interval_seconds": 72.0,
        "max_interval_seconds": 120.0,
        "long_pause_probability": 0.15,
        "long_pause_min_multiplier": 2.0,
        "long_pause_max_multiplier": 3.0,
        "idle_wait_seconds": 10.0,
        "rate_limited_wait_seconds": 60.0,
        "paused_wait_seconds": 60.0,
        "error_wait_seconds": 30.0,
        "config_refresh_seconds": 60.0,
    },
    "ingest": {
        "enabled": False,
        "auto_enqueue": False,
        "interval_minutes": 5,
        "cache_ttl_seconds": 60,
        "initial_delay_seconds": 30.0,
        "principal": "",
        "http": {
            "timeout_seconds": 60,
            "user_agent": "JobRelay/0.1",
        },
    },
    "dispatch": {
        "enabled": False,
        "delay_hours": 2.0,
        "interval_seconds": 300.0,
        "batch_size": 10,
        "send_spacing_seconds": 2.0,
        "initial_delay_seconds": 30.0,
    },
    "credentials": {
        "refresh_interval_seconds": 300.0,
        "expiry_buffer_minutes": 30,
        "use_buffer_minutes": 5,
    },
}

CONFIG_KEY = "config.runtime"

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _deep_copy(DEFAULT_CONFIG))
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def set_runtime_value(conn, dotted_key: str, value: Any) -> dict[str, Any]:
    """Set one leaf of the runtime config, e.g. ``dispatch.delay_hours``."""
    cfg = _deep_copy(get_runtime_config(conn))
    parts = [part for part in dotted_key.split(".") if part]
    if not parts:
        raise ConfigError("config key is required")
    node: Any = cfg
    for part in parts[:-1]:
        if not isinstance(node, dict) or part not in node:
            raise ConfigError(f"unknown config key: {dotted_key}")
        node = node[part]
    if not isinstance(node, dict) or parts[-1] not in node:
        raise ConfigError(f"unknown config key: {dotted_key}")
    node[parts[-1]] = value
    set_runtime_config(conn, cfg)
    return cfg


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_semantics(cfg, errors)
    return errors


def load_integration_settings() -> IntegrationSettings:
    timeout_raw = os.environ.get("JR_HTTP_TIMEOUT_SECONDS", "").strip()
    try:
        timeout = int(timeout_raw) if timeout_raw else 60
    except ValueError as exc:
        raise ConfigError("JR_HTTP_TIMEOUT_SECONDS must be an integer") from exc
    return IntegrationSettings(
        enrichment_url=_env("JR_ENRICHMENT_URL"),
        sink_url=_env("JR_SINK_URL"),
        sink_token=_env("JR_SINK_TOKEN"),
        oauth_token_url=_env("JR_OAUTH_TOKEN_URL"),
        oauth_client_id=_env("JR_OAUTH_CLIENT_ID"),
        oauth_client_secret=_env("JR_OAUTH_CLIENT_SECRET"),
        http_timeout_seconds=timeout,
    )


def is_within_working_hours(config: Config, now: datetime) -> bool:
    """Return True when ``now`` falls inside the configured working window.

    Days are numbered 0=Sunday through 6=Saturday and evaluated in the
    ``app.timezone`` zone. A window whose start is after its end runs past
    midnight; the day check then applies to the day the window opened.
    """
    window = config.working_hours
    if not window.enabled:
        return True
    local = now.astimezone(_zone(config.app.timezone))
    start = _minutes(window.start)
    end = _minutes(window.end)
    current = local.hour * 60 + local.minute
    weekday = local.isoweekday() % 7
    if start <= end:
        return weekday in window.days and start <= current < end
    if current >= start:
        return weekday in window.days
    if current < end:
        return (weekday - 1) % 7 in window.days
    return False


def pause_reason(config: Config, now: datetime, *, enabled: bool) -> str | None:
    if config.maintenance.enabled:
        return "maintenance"
    if not enabled:
        return "disabled"
    if not is_within_working_hours(config, now):
        return "outside_working_hours"
    return None


class ConfigSnapshot:
    """Process-wide view of the runtime config, refreshed from the store.

    Readers get a frozen ``Config``; refresh swaps the whole object under a
    lock, so a reader never observes a partially applied update.
    """

    def __init__(self, conn, clock: Callable[[], float] = time.monotonic) -> None:
        self._conn = conn
        self._clock = clock
        self._lock = threading.Lock()
        self._logger = logging.getLogger("jobrelay.config")
        self._config = load_runtime_config(conn)
        self._loaded_at = clock()

    @property
    def current(self) -> Config:
        return self._config

    def refresh(self) -> Config:
        with self._lock:
            try:
                config = load_runtime_config(self._conn)
            except Exception:
                _safe_rollback(self._conn)
                raise
            self._config = config
            self._loaded_at = self._clock()
        log_event(self._logger, logging.DEBUG, "config_refreshed")
        return config

    def refresh_if_stale(self) -> bool:
        age = self._clock() - self._loaded_at
        if age < self._config.processing.config_refresh_seconds:
            return False
        self.refresh()
        return True


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    try:
        _zone(cfg["app"]["timezone"])
    except ConfigError as exc:
        errors.append(str(exc))

    hours = cfg["working_hours"]
    for key in ("start", "end"):
        if not _TIME_RE.match(hours[key]):
            errors.append(f"config.runtime.working_hours.{key} must be HH:MM")
    for day in hours["days"]:
        if isinstance(day, bool) or not 0 <= day <= 6:
            errors.append("config.runtime.working_hours.days must contain values 0-6")
            break

    processing = cfg["processing"]
    if processing["rate_limit_per_hour"] < 0:
        errors.append("config.runtime.processing.rate_limit_per_hour must be >= 0")
    if processing["bucket_retention_hours"] < 1:
        errors.append("config.runtime.processing.bucket_retention_hours must be >= 1")
    if processing["min_interval_seconds"] < 0:
        errors.append("config.runtime.processing.min_interval_seconds must be >= 0")
    if processing["min_interval_seconds"] > processing["max_interval_seconds"]:
        errors.append(
            "config.runtime.processing.min_interval_seconds must be <= max_interval_seconds"
        )
    if not 0 <= processing["long_pause_probability"] <= 1:
        errors.append("config.runtime.processing.long_pause_probability must be between 0 and 1")
    if not 1 <= processing["long_pause_min_multiplier"] <= processing["long_pause_max_multiplier"]:
        errors.append(
            "config.runtime.processing.long_pause multipliers must satisfy 1 <= min <= max"
        )
    for key in (
        "idle_wait_seconds",
        "rate_limited_wait_seconds",
        "paused_wait_seconds",
        "error_wait_seconds",
        "config_refresh_seconds",
    ):
        if processing[key] < 0:
            errors.append(f"config.runtime.processing.{key} must be >= 0")

    ingest = cfg["ingest"]
    if ingest["interval_minutes"] < 1:
        errors.append("config.runtime.ingest.interval_minutes must be >= 1")
    if ingest["cache_ttl_seconds"] < 0:
        errors.append("config.runtime.ingest.cache_ttl_seconds must be >= 0")

    dispatch = cfg["dispatch"]
    if dispatch["delay_hours"] < 0:
        errors.append("config.runtime.dispatch.delay_hours must be >= 0")
    if dispatch["batch_size"] < 1:
        errors.append("config.runtime.dispatch.batch_size must be >= 1")
    if dispatch["interval_seconds"] <= 0:
        errors.append("config.runtime.dispatch.interval_seconds must be > 0")

    credentials = cfg["credentials"]
    if credentials["refresh_interval_seconds"] <= 0:
        errors.append("config.runtime.credentials.refresh_interval_seconds must be > 0")


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        sample_type = type(default[0]) if default else str
        for item in value:
            if not isinstance(item, sample_type):
                errors.append(f"{path} must be a list of {sample_type.__name__}")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str) and not isinstance(value, str):
        errors.append(f"{path} must be a string")


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    maintenance_cfg = cfg.get("maintenance") or {}
    hours_cfg = cfg.get("working_hours") or {}
    processing_cfg = cfg.get("processing") or {}
    ingest_cfg = cfg.get("ingest") or {}
    dispatch_cfg = cfg.get("dispatch") or {}
    credentials_cfg = cfg.get("credentials") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )
    maintenance = MaintenanceConfig(enabled=bool(maintenance_cfg.get("enabled")))
    working_hours = WorkingHoursConfig(
        enabled=bool(hours_cfg.get("enabled")),
        start=str(hours_cfg.get("start")),
        end=str(hours_cfg.get("end")),
        days=[int(day) for day in hours_cfg.get("days") or []],
    )

    processing = ProcessingConfig(
        enabled=bool(processing_cfg.get("enabled")),
        rate_limit_per_hour=int(processing_cfg.get("rate_limit_per_hour")),
        bucket_retention_hours=int(processing_cfg.get("bucket_retention_hours")),
        min_interval_seconds=float(processing_cfg.get("min_interval_seconds")),
        max_interval_seconds=float(processing_cfg.get("max_interval_seconds")),
        long_pause_probability=float(processing_cfg.get("long_pause_probability")),
        long_pause_min_multiplier=float(processing_cfg.get("long_pause_min_multiplier")),
        long_pause_max_multiplier=float(processing_cfg.get("long_pause_max_multiplier")),
        idle_wait_seconds=float(processing_cfg.get("idle_wait_seconds")),
        rate_limited_wait_seconds=float(processing_cfg.get("rate_limited_wait_seconds")),
        paused_wait_seconds=float(processing_cfg.get("paused_wait_seconds")),
        error_wait_seconds=float(processing_cfg.get("error_wait_seconds")),
        config_refresh_seconds=float(processing_cfg.get("config_refresh_seconds")),
    )

    http_cfg = ingest_cfg.get("http") or {}
    http = HttpConfig(
        timeout_seconds=int(http_cfg.get("timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
    )
    ingest = IngestConfig(
        enabled=bool(ingest_cfg.get("enabled")),
        auto_enqueue=bool(ingest_cfg.get("auto_enqueue")),
        interval_minutes=int(ingest_cfg.get("interval_minutes")),
        cache_ttl_seconds=int(ingest_cfg.get("cache_ttl_seconds")),
        initial_delay_seconds=float(ingest_cfg.get("initial_delay_seconds")),
        principal=str(ingest_cfg.get("principal") or ""),
        http=http,
    )

    dispatch = DispatchConfig(
        enabled=bool(dispatch_cfg.get("enabled")),
        delay_hours=float(dispatch_cfg.get("delay_hours")),
        interval_seconds=float(dispatch_cfg.get("interval_seconds")),
        batch_size=int(dispatch_cfg.get("batch_size")),
        send_spacing_seconds=float(dispatch_cfg.get("send_spacing_seconds")),
        initial_delay_seconds=float(dispatch_cfg.get("initial_delay_seconds")),
    )

    credentials = CredentialsConfig(
        refresh_interval_seconds=float(credentials_cfg.get("refresh_interval_seconds")),
        expiry_buffer_minutes=int(credentials_cfg.get("expiry_buffer_minutes")),
        use_buffer_minutes=int(credentials_cfg.get("use_buffer_minutes")),
    )

    return Config(
        app=app,
        maintenance=maintenance,
        working_hours=working_hours,
        processing=processing,
        ingest=ingest,
        dispatch=dispatch,
        credentials=credentials,
    )


def _zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"unknown timezone: {name}") from exc


def _minutes(value: str) -> int:
    hours, minutes = value.split(":", 1)
    return int(hours) * 60 + int(minutes)


def _env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))


def _safe_rollback(conn) -> None:
    try:
        conn.rollback()
    except Exception:  # noqa: BLE001
        pass
