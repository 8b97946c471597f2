from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from .config import Config
from .ingest import image_backfill_run_after
from .models import Job
from .states import JobStatus
from .storage import JOB_COLUMNS, row_to_job, enqueue_job, get_job
from .utils import day_range, isoformat_utc, log_event, utc_now, utc_now_iso

MAX_LIST_LIMIT = 250

_STATUS_ORDER = """
    CASE status
        WHEN 'running' THEN 0
        WHEN 'pending' THEN 1
        WHEN 'failed' THEN 2
        WHEN 'cancelled' THEN 3
        ELSE 4
    END
"""

# Artifact each job type produces; an article lacking it gets the job queued.
_MISSING_ARTIFACT_SQL = {
    "summarize": "NOT EXISTS (SELECT 1 FROM article_summaries s WHERE s.article_id = a.id)",
    "score": "NOT EXISTS (SELECT 1 FROM article_scores s WHERE s.article_id = a.id)",
    "auto_tag": (
        "NOT EXISTS (SELECT 1 FROM article_tags t WHERE t.article_id = a.id AND t.source = 'ai')"
    ),
    "image_backfill": "a.image_url IS NULL",
}


class JobNotFoundError(LookupError):
    pass


class JobConflictError(ValueError):
    pass


def list_jobs(conn: Any, status: str | None = None, limit: int = 50) -> list[Job]:
    limit = max(1, min(MAX_LIST_LIMIT, int(limit)))
    if status:
        JobStatus(status)
        rows = conn.execute(
            f"""
            SELECT {JOB_COLUMNS} FROM jobs
            WHERE status = ?
            ORDER BY run_after ASC, id
            LIMIT ?
            """,
            (status, limit),
        ).fetchall()
    else:
        rows = conn.execute(
            f"""
            SELECT {JOB_COLUMNS} FROM jobs
            ORDER BY {_STATUS_ORDER}, run_after ASC, id
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
    return [row_to_job(row) for row in rows]


def get_job_counts(conn: Any) -> dict[str, int]:
    counts = {status.value: 0 for status in JobStatus}
    for status, count in conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status"):
        counts[status] = int(count)
    return counts


def retry_failed_jobs(conn: Any, logger: logging.Logger | None = None) -> int:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'pending', attempts = 0, run_after = ?, last_error = NULL, updated_at = ?
        WHERE status = 'failed'
        """,
        (now, now),
    )
    conn.commit()
    count = int(cursor.rowcount or 0)
    _log(logger, "jobs_retry_failed", count=count)
    return count


def cancel_pending_job(conn: Any, job_id: str, logger: logging.Logger | None = None) -> Job:
    cursor = conn.execute(
        "UPDATE jobs SET status = 'cancelled', updated_at = ? WHERE id = ? AND status = 'pending'",
        (utc_now_iso(), job_id),
    )
    conn.commit()
    job = _require_applied(conn, job_id, cursor.rowcount, "cancel")
    _log(logger, "job_cancelled", job_id=job_id)
    return job


def cancel_all_pending_jobs(conn: Any, logger: logging.Logger | None = None) -> int:
    cursor = conn.execute(
        "UPDATE jobs SET status = 'cancelled', updated_at = ? WHERE status = 'pending'",
        (utc_now_iso(),),
    )
    conn.commit()
    count = int(cursor.rowcount or 0)
    _log(logger, "jobs_cancel_pending", count=count)
    return count


def delete_job(conn: Any, job_id: str, logger: logging.Logger | None = None) -> None:
    cursor = conn.execute("DELETE FROM jobs WHERE id = ? AND status <> 'running'", (job_id,))
    conn.commit()
    if cursor.rowcount != 1:
        existing = get_job(conn, job_id)
        if existing is None:
            raise JobNotFoundError(job_id)
        raise JobConflictError(f"cannot delete job in status {existing.status}")
    _log(logger, "job_deleted", job_id=job_id)


def clear_finished_jobs(conn: Any, logger: logging.Logger | None = None) -> int:
    cursor = conn.execute("DELETE FROM jobs WHERE status IN ('done', 'cancelled')")
    conn.commit()
    count = int(cursor.rowcount or 0)
    _log(logger, "jobs_clear_finished", count=count)
    return count


def run_job_now(conn: Any, job_id: str, logger: logging.Logger | None = None) -> Job:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'pending',
            run_after = ?,
            attempts = CASE WHEN status = 'failed' THEN 0 ELSE attempts END,
            updated_at = ?
        WHERE id = ? AND status <> 'running'
        """,
        (now, now, job_id),
    )
    conn.commit()
    job = _require_applied(conn, job_id, cursor.rowcount, "run")
    _log(logger, "job_run_now", job_id=job_id)
    return job


def queue_missing_today_jobs(
    conn: Any,
    config: Config,
    *,
    tz_offset_minutes: int = 0,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, int]:
    """Queue enrichment for today's articles that lack the artifact.

    Articles whose job is already pending, running, failed or done are left
    alone, so a failed job stays failed until an operator retries it.
    """
    now = now or utc_now()
    start, end = day_range(now, tz_offset_minutes)
    cooldown = config.ingest.image_backfill_cooldown_minutes
    job_types = ["summarize", "score"]
    if config.jobs.auto_tag_enabled:
        job_types.append("auto_tag")
    job_types.append("image_backfill")
    queued: dict[str, int] = {}
    for job_type in job_types:
        rows = conn.execute(
            f"""
            SELECT a.id, a.image_checked_at FROM articles a
            WHERE COALESCE(a.published_at, a.fetched_at) >= ?
              AND COALESCE(a.published_at, a.fetched_at) < ?
              AND {_MISSING_ARTIFACT_SQL[job_type]}
              AND NOT EXISTS (
                  SELECT 1 FROM jobs j
                  WHERE j.type = ? AND j.article_id = a.id AND j.status <> 'cancelled'
              )
            ORDER BY a.id
            """,
            (isoformat_utc(start), isoformat_utc(end), job_type),
        ).fetchall()
        for article_id, image_checked_at in rows:
            run_after = isoformat_utc(now)
            if job_type == "image_backfill":
                run_after = image_backfill_run_after(image_checked_at, now, cooldown)
            enqueue_job(
                conn,
                job_type,
                article_id,
                priority=config.jobs.missing_today_priority,
                run_after=run_after,
            )
        queued[job_type] = len(rows)
    _log(logger, "jobs_queue_missing_today", **queued)
    return queued


def _require_applied(conn: Any, job_id: str, rowcount: int, action: str) -> Job:
    job = get_job(conn, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if rowcount != 1:
        raise JobConflictError(f"cannot {action} job in status {job.status}")
    return job


def _log(logger: logging.Logger | None, event: str, **fields: Any) -> None:
    log_event(logger or logging.getLogger("nebularnews.jobs"), logging.INFO, event, **fields)
