from datetime import datetime, timedelta, timezone

import pytest
from conftest import seed_article

from nebularnews.jobs_admin import (
    JobConflictError,
    JobNotFoundError,
    cancel_all_pending_jobs,
    cancel_pending_job,
    clear_finished_jobs,
    delete_job,
    get_job_counts,
    list_jobs,
    queue_missing_today_jobs,
    retry_failed_jobs,
    run_job_now,
)
from nebularnews.storage import claim_due_jobs, enqueue_job, get_job, save_article_summary
from nebularnews.utils import isoformat_utc

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _set_status(conn, job_id, status, attempts=0):
    conn.execute(
        "UPDATE jobs SET status = ?, attempts = ? WHERE id = ?", (status, attempts, job_id)
    )
    conn.commit()


def test_cancel_and_delete_refuse_running_jobs(conn):
    job_id = enqueue_job(conn, "summarize", seed_article(conn, 1))
    claim_due_jobs(conn, "worker-a", limit=1, lease_seconds=60)

    with pytest.raises(JobConflictError):
        cancel_pending_job(conn, job_id)
    with pytest.raises(JobConflictError):
        delete_job(conn, job_id)
    with pytest.raises(JobConflictError):
        run_job_now(conn, job_id)
    assert get_job(conn, job_id).status == "running"


def test_unknown_job_raises_not_found(conn):
    with pytest.raises(JobNotFoundError):
        cancel_pending_job(conn, "job_missing")
    with pytest.raises(JobNotFoundError):
        delete_job(conn, "job_missing")
    with pytest.raises(JobNotFoundError):
        run_job_now(conn, "job_missing")


def test_cancel_pending_then_clear_finished(conn):
    pending = enqueue_job(conn, "summarize", seed_article(conn, 1))
    done = enqueue_job(conn, "score", seed_article(conn, 2))
    failed = enqueue_job(conn, "auto_tag", seed_article(conn, 3))
    _set_status(conn, done, "done")
    _set_status(conn, failed, "failed", attempts=3)

    assert cancel_pending_job(conn, pending).status == "cancelled"
    assert clear_finished_jobs(conn) == 2
    assert get_job(conn, pending) is None
    assert get_job(conn, done) is None
    assert get_job(conn, failed).status == "failed"


def test_run_now_resets_failed_attempts(conn):
    job_id = enqueue_job(
        conn, "summarize", seed_article(conn, 1), run_after="2999-01-01T00:00:00.000000+00:00"
    )
    _set_status(conn, job_id, "failed", attempts=3)

    job = run_job_now(conn, job_id)

    assert job.status == "pending"
    assert job.attempts == 0
    assert job.run_after < "2999"


def test_retry_failed_and_counts(conn):
    first = enqueue_job(conn, "summarize", seed_article(conn, 1))
    second = enqueue_job(conn, "score", seed_article(conn, 2))
    _set_status(conn, first, "failed", attempts=3)

    assert get_job_counts(conn)["failed"] == 1
    assert retry_failed_jobs(conn) == 1

    counts = get_job_counts(conn)
    assert counts["pending"] == 2
    assert counts["failed"] == 0
    assert get_job(conn, first).attempts == 0
    assert cancel_all_pending_jobs(conn) == 2
    assert get_job(conn, second).status == "cancelled"


def test_list_jobs_filters_by_status(conn):
    first = enqueue_job(conn, "summarize", seed_article(conn, 1))
    enqueue_job(conn, "score", seed_article(conn, 2))
    _set_status(conn, first, "failed", attempts=3)

    assert [job.id for job in list_jobs(conn, status="failed")] == [first]
    assert len(list_jobs(conn)) == 2
    with pytest.raises(ValueError):
        list_jobs(conn, status="bogus")


def test_queue_missing_today_skips_existing_jobs_and_artifacts(conn, config):
    today = isoformat_utc(NOW - timedelta(hours=1))
    bare = seed_article(conn, 1, published_at=today, image_url=None)
    summarized = seed_article(conn, 2, published_at=today)
    failed = seed_article(conn, 3, published_at=today)
    seed_article(conn, 4, published_at=isoformat_utc(NOW - timedelta(days=2)))
    save_article_summary(conn, summarized, "done already", [], "fake", "fake-1")
    _set_status(conn, enqueue_job(conn, "summarize", failed), "failed", attempts=3)

    queued = queue_missing_today_jobs(conn, config, now=NOW)

    assert queued == {"summarize": 1, "score": 3, "auto_tag": 3, "image_backfill": 1}
    assert get_job(conn, _job_id(conn, "summarize", bare)).priority == (
        config.jobs.missing_today_priority
    )
    assert get_job(conn, _job_id(conn, "summarize", failed)).status == "failed"


def _job_id(conn, job_type, article_id):
    row = conn.execute(
        "SELECT id FROM jobs WHERE type = ? AND article_id = ?", (job_type, article_id)
    ).fetchone()
    return row[0]


def test_queue_missing_today_respects_image_cooldown(conn, config):
    article_id = seed_article(conn, 1, published_at=isoformat_utc(NOW), image_url=None)
    checked = NOW - timedelta(minutes=5)
    conn.execute(
        "UPDATE articles SET image_checked_at = ? WHERE id = ?",
        (isoformat_utc(checked), article_id),
    )
    backfill = enqueue_job(conn, "image_backfill", article_id)
    _set_status(conn, backfill, "cancelled")

    queued = queue_missing_today_jobs(conn, config, now=NOW)

    assert queued["image_backfill"] == 1
    cooldown = config.ingest.image_backfill_cooldown_minutes
    job = get_job(conn, _job_id(conn, "image_backfill", article_id))
    assert job.status == "pending"
    assert job.run_after == isoformat_utc(checked + timedelta(minutes=cooldown))
    assert get_job(conn, _job_id(conn, "summarize", article_id)).run_after == isoformat_utc(NOW)
