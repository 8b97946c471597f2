from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class IngestConfig:
    initial_lookback_days: int
    max_feeds_per_poll: int
    max_items_per_feed: int
    max_items_per_poll: int
    feed_poll_interval_minutes: int
    feed_error_retry_minutes: int
    fetch_timeout_seconds: int
    page_fetch_timeout_seconds: int
    thin_content_chars: int
    image_backfill_cooldown_minutes: int
    max_recent_errors: int
    user_agent: str


@dataclass(frozen=True)
class JobsConfig:
    batch_size: int
    max_attempts: int
    retry_delay_seconds: int
    lease_seconds: int
    time_budget_ms: int
    max_rounds: int
    default_priority: int
    backfill_priority: int
    missing_today_priority: int
    auto_queue_today: bool
    auto_tag_enabled: bool


@dataclass(frozen=True)
class PullConfig:
    default_cycles: int
    max_cycles: int
    stale_minutes: int
    slices_per_tick: int
    slice_budget_ms: int
    runner_lease_seconds: int


@dataclass(frozen=True)
class SchedulerConfig:
    jobs_interval_minutes: int
    poll_interval_minutes: int
    retention_cron: str
    job_budget_idle_ms: int
    job_budget_while_pull_ms: int


@dataclass(frozen=True)
class RetentionConfig:
    days: int
    mode: str


@dataclass(frozen=True)
class MaintenanceConfig:
    orphan_batch_limit: int
    orphan_manual_limit: int


@dataclass(frozen=True)
class EnrichmentConfig:
    max_ai_tags: int
    profile_feedback_window: int


@dataclass(frozen=True)
class LlmConfig:
    base_url: str
    model: str
    timeout_seconds: int
    max_input_chars: int
    temperature: float


@dataclass(frozen=True)
class Config:
    ingest: IngestConfig
    jobs: JobsConfig
    pull: PullConfig
    scheduler: SchedulerConfig
    retention: RetentionConfig
    maintenance: MaintenanceConfig
    enrichment: EnrichmentConfig
    llm: LlmConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "ingest": {
        "initial_lookback_days": 45,
        "max_feeds_per_poll": 12,
        "max_items_per_feed": 40,
        "max_items_per_poll": 120,
        "feed_poll_interval_minutes": 60,
        "feed_error_retry_minutes": 60,
        "fetch_timeout_seconds": 12,
        "page_fetch_timeout_seconds": 10,
        "thin_content_chars": 200,
        "image_backfill_cooldown_minutes": 360,
        "max_recent_errors": 10,
        "user_agent": "NebularNews/0.1 (+feed reader)",
    },
    "jobs": {
        "batch_size": 5,
        "max_attempts": 3,
        "retry_delay_seconds": 600,
        "lease_seconds": 180,
        "time_budget_ms": 20000,
        "max_rounds": 20,
        "default_priority": 100,
        "backfill_priority": 150,
        "missing_today_priority": 120,
        "auto_queue_today": True,
        "auto_tag_enabled": True,
    },
    "pull": {
        "default_cycles": 1,
        "max_cycles": 10,
        "stale_minutes": 20,
        "slices_per_tick": 1,
        "slice_budget_ms": 8000,
        "runner_lease_seconds": 120,
    },
    "scheduler": {
        "jobs_interval_minutes": 5,
        "poll_interval_minutes": 60,
        "retention_cron": "30 3 * * *",
        "job_budget_idle_ms": 8000,
        "job_budget_while_pull_ms": 3000,
    },
    "retention": {
        "days": 0,
        "mode": "archive",
    },
    "maintenance": {
        "orphan_batch_limit": 50,
        "orphan_manual_limit": 200,
    },
    "enrichment": {
        "max_ai_tags": 5,
        "profile_feedback_window": 50,
    },
    "llm": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "timeout_seconds": 30,
        "max_input_chars": 12000,
        "temperature": 0.2,
    },
}

RETENTION_MODES = ("archive", "delete")

CONFIG_KEY = "config.runtime"


def get_state_db_path() -> str:
    data_dir = os.environ.get("NN_DATA_DIR", "/data")
    return os.path.join(data_dir, "nebularnews.sqlite3")


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


def update_runtime_config(conn, section: str, **values: Any) -> Config:
    cfg = _deep_copy(get_runtime_config(conn))
    if section not in cfg:
        raise ConfigError(f"unknown config.runtime.{section}")
    cfg[section].update(values)
    set_runtime_config(conn, cfg)
    return _build_config(cfg)


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def default_config() -> Config:
    return _build_config(_deep_copy(DEFAULT_CONFIG))


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors and cfg["retention"]["mode"] not in RETENTION_MODES:
        errors.append("config.runtime.retention.mode must be one of " + ", ".join(RETENTION_MODES))
    return errors


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
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _clamp(value: Any, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def _build_config(cfg: dict[str, Any]) -> Config:
    ingest_cfg = cfg.get("ingest") or {}
    jobs_cfg = cfg.get("jobs") or {}
    pull_cfg = cfg.get("pull") or {}
    scheduler_cfg = cfg.get("scheduler") or {}
    retention_cfg = cfg.get("retention") or {}
    maintenance_cfg = cfg.get("maintenance") or {}
    enrichment_cfg = cfg.get("enrichment") or {}
    llm_cfg = cfg.get("llm") or {}

    ingest = IngestConfig(
        initial_lookback_days=_clamp(ingest_cfg.get("initial_lookback_days"), 0, 3650),
        max_feeds_per_poll=_clamp(ingest_cfg.get("max_feeds_per_poll"), 1, 500),
        max_items_per_feed=_clamp(ingest_cfg.get("max_items_per_feed"), 1, 1000),
        max_items_per_poll=_clamp(ingest_cfg.get("max_items_per_poll"), 1, 5000),
        feed_poll_interval_minutes=_clamp(ingest_cfg.get("feed_poll_interval_minutes"), 5, 1440),
        feed_error_retry_minutes=_clamp(ingest_cfg.get("feed_error_retry_minutes"), 1, 1440),
        fetch_timeout_seconds=_clamp(ingest_cfg.get("fetch_timeout_seconds"), 1, 120),
        page_fetch_timeout_seconds=_clamp(ingest_cfg.get("page_fetch_timeout_seconds"), 1, 120),
        thin_content_chars=_clamp(ingest_cfg.get("thin_content_chars"), 0, 100000),
        image_backfill_cooldown_minutes=_clamp(
            ingest_cfg.get("image_backfill_cooldown_minutes"), 0, 10080
        ),
        max_recent_errors=_clamp(ingest_cfg.get("max_recent_errors"), 1, 100),
        user_agent=str(ingest_cfg.get("user_agent")),
    )

    jobs = JobsConfig(
        batch_size=_clamp(jobs_cfg.get("batch_size"), 1, 100),
        max_attempts=_clamp(jobs_cfg.get("max_attempts"), 1, 20),
        retry_delay_seconds=_clamp(jobs_cfg.get("retry_delay_seconds"), 0, 86400),
        lease_seconds=_clamp(jobs_cfg.get("lease_seconds"), 10, 3600),
        time_budget_ms=_clamp(jobs_cfg.get("time_budget_ms"), 500, 600000),
        max_rounds=_clamp(jobs_cfg.get("max_rounds"), 1, 1000),
        default_priority=int(jobs_cfg.get("default_priority")),
        backfill_priority=int(jobs_cfg.get("backfill_priority")),
        missing_today_priority=int(jobs_cfg.get("missing_today_priority")),
        auto_queue_today=bool(jobs_cfg.get("auto_queue_today")),
        auto_tag_enabled=bool(jobs_cfg.get("auto_tag_enabled")),
    )

    pull = PullConfig(
        default_cycles=_clamp(pull_cfg.get("default_cycles"), 1, 10),
        max_cycles=_clamp(pull_cfg.get("max_cycles"), 1, 10),
        stale_minutes=_clamp(pull_cfg.get("stale_minutes"), 1, 1440),
        slices_per_tick=_clamp(pull_cfg.get("slices_per_tick"), 1, 4),
        slice_budget_ms=_clamp(pull_cfg.get("slice_budget_ms"), 2000, 20000),
        runner_lease_seconds=_clamp(pull_cfg.get("runner_lease_seconds"), 10, 3600),
    )

    scheduler = SchedulerConfig(
        jobs_interval_minutes=_clamp(scheduler_cfg.get("jobs_interval_minutes"), 1, 30),
        poll_interval_minutes=_clamp(scheduler_cfg.get("poll_interval_minutes"), 5, 60),
        retention_cron=str(scheduler_cfg.get("retention_cron")).strip(),
        job_budget_idle_ms=_clamp(scheduler_cfg.get("job_budget_idle_ms"), 500, 600000),
        job_budget_while_pull_ms=_clamp(scheduler_cfg.get("job_budget_while_pull_ms"), 500, 600000),
    )

    retention = RetentionConfig(
        days=_clamp(retention_cfg.get("days"), 0, 3650),
        mode=str(retention_cfg.get("mode")),
    )

    maintenance = MaintenanceConfig(
        orphan_batch_limit=_clamp(maintenance_cfg.get("orphan_batch_limit"), 10, 1000),
        orphan_manual_limit=_clamp(maintenance_cfg.get("orphan_manual_limit"), 10, 1000),
    )

    enrichment = EnrichmentConfig(
        max_ai_tags=_clamp(enrichment_cfg.get("max_ai_tags"), 0, 50),
        profile_feedback_window=_clamp(enrichment_cfg.get("profile_feedback_window"), 1, 1000),
    )

    llm = LlmConfig(
        base_url=str(llm_cfg.get("base_url")),
        model=str(llm_cfg.get("model")),
        timeout_seconds=_clamp(llm_cfg.get("timeout_seconds"), 1, 600),
        max_input_chars=_clamp(llm_cfg.get("max_input_chars"), 500, 200000),
        temperature=float(llm_cfg.get("temperature")),
    )

    return Config(
        ingest=ingest,
        jobs=jobs,
        pull=pull,
        scheduler=scheduler,
        retention=retention,
        maintenance=maintenance,
        enrichment=enrichment,
        llm=llm,
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))


def load_feeds_file(path: str) -> list[dict[str, Any]]:
    """Read a YAML feed list: either a bare list or a mapping with a ``feeds`` key.

    Entries are URLs or mappings with ``url`` and optional ``title``/``disabled``.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigError(f"cannot read feeds file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    feeds = data.get("feeds") if isinstance(data, dict) else data
    if not isinstance(feeds, list):
        raise ConfigError("feeds file must contain a list of feeds")
    entries: list[dict[str, Any]] = []
    for index, entry in enumerate(feeds):
        if isinstance(entry, str):
            entry = {"url": entry}
        if not isinstance(entry, dict) or not entry.get("url"):
            raise ConfigError(f"feeds[{index}] requires a url")
        entries.append(
            {
                "url": str(entry["url"]).strip(),
                "title": entry.get("title"),
                "disabled": bool(entry.get("disabled", False)),
            }
        )
    return entries
