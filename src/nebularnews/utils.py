from __future__ import annotations

import calendar
import dataclasses
import hashlib
import json
import logging
import os
import sys
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

FUTURE_SKEW = timedelta(hours=24)
MAX_TZ_OFFSET_MINUTES = 14 * 60


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    parts = [f"event={event}"]
    for key, value in fields.items():
        parts.append(f"{key}={value}")
    logger.log(level, " ".join(parts))


def safe_log_event(logger: logging.Logger | None, level: int, event: str, **fields: Any) -> None:
    """Like log_event, but never raises.

    Used on paths that must keep going no matter what (tick dispatch,
    background continuations). Falls back to stderr when the logging
    machinery itself fails.
    """
    try:
        log_event(logger or logging.getLogger("nebularnews"), level, event, **fields)
    except Exception:  # noqa: BLE001
        try:
            sys.stderr.write(f"event={event} log_failure=1\n")
        except Exception:  # noqa: BLE001
            pass


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    level_name = os.environ.get("NN_LOG_LEVEL", default_level).upper()
    root = logging.getLogger()
    if not root.handlers:
        root.setLevel(getattr(logging, level_name, logging.INFO))
    _ensure_stdout_handler(level_name)
    _maybe_add_file_handler(level_name)
    _apply_log_overrides()
    return logging.getLogger(logger_name)


def _apply_log_overrides() -> None:
    overrides = os.environ.get("NN_LOG_LEVELS", "")
    if not overrides:
        return
    for item in overrides.split(","):
        if not item.strip() or "=" not in item:
            continue
        name, level = item.split("=", 1)
        logger = logging.getLogger(name.strip())
        logger.setLevel(getattr(logging, level.strip().upper(), logging.INFO))


def _maybe_add_file_handler(level_name: str) -> None:
    log_path = os.environ.get("NN_LOG_FILE")
    if not log_path:
        return
    root = logging.getLogger()
    target = os.path.abspath(log_path)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return
    os.makedirs(os.path.dirname(target), exist_ok=True)
    handler = logging.FileHandler(target)
    handler.setLevel(getattr(logging, level_name, logging.INFO))
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)


def _ensure_stdout_handler(level_name: str) -> None:
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            continue
        if isinstance(handler, logging.StreamHandler) and handler.stream is sys.stdout:
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level_name, logging.INFO))
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(handler)


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True)


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid4().hex}"


def content_hash(*candidates: str | None) -> str:
    # First non-empty candidate wins: extracted text, then title, then url.
    basis = ""
    for candidate in candidates:
        if candidate and candidate.strip():
            basis = candidate.strip()
            break
    return hashlib.sha256(basis.encode("utf-8")).hexdigest()


def isoformat_utc(value: datetime) -> str:
    # Fixed width so stored timestamps sort lexically in time order.
    return _normalize_datetime(value).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return _normalize_datetime(datetime.fromisoformat(value))
    except ValueError:
        return None


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return isoformat_utc(utc_now())


def utc_now_iso_offset(*, seconds: float) -> str:
    return isoformat_utc(utc_now() + timedelta(seconds=seconds))


def _normalize_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date_value(value: Any) -> datetime | None:
    if value is None:
        return None
    if hasattr(value, "tm_year"):
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    if isinstance(value, datetime):
        return _normalize_datetime(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = parsedate_to_datetime(text)
            return _normalize_datetime(parsed)
        except (TypeError, ValueError, IndexError):
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
                return _normalize_datetime(parsed)
            except ValueError:
                return None
    return None


def normalize_published_at(value: datetime | None, fetched_at: datetime) -> datetime | None:
    if value is None:
        return None
    value = _normalize_datetime(value)
    if value - fetched_at > FUTURE_SKEW:
        return fetched_at
    return value


def day_range(reference: datetime, tz_offset_minutes: int = 0) -> tuple[datetime, datetime]:
    offset = max(-MAX_TZ_OFFSET_MINUTES, min(MAX_TZ_OFFSET_MINUTES, int(tz_offset_minutes)))
    shift = timedelta(minutes=offset)
    local = _normalize_datetime(reference) + shift
    local_start = local.replace(hour=0, minute=0, second=0, microsecond=0)
    start = local_start - shift
    return start, start + timedelta(days=1)


def is_same_day(published_at: datetime | None, fetched_at: datetime) -> bool:
    if published_at is None:
        return True
    start, end = day_range(fetched_at)
    return start <= _normalize_datetime(published_at) < end
