from conftest import FakeCompleter, seed_article

from nebularnews.storage import (
    add_article_feedback,
    claim_due_jobs,
    complete_job,
    enqueue_job,
    fail_job_attempt,
    get_article_score,
    get_article_summary,
    get_job,
    get_preference_profile,
    list_article_tags,
    list_job_runs,
    reclaim_expired_leases,
)
from nebularnews.worker import process_jobs

FAR_FUTURE = "2999-01-01T00:00:00.000000+00:00"
LONG_AGO = "2000-01-01T00:00:00.000000+00:00"


def test_enqueue_resets_pending_and_failed_jobs(conn):
    article_id = seed_article(conn, 1)
    job_id = enqueue_job(conn, "summarize", article_id)
    conn.execute(
        "UPDATE jobs SET status = 'failed', attempts = 3, last_error = 'boom' WHERE id = ?",
        (job_id,),
    )
    conn.commit()

    again = enqueue_job(conn, "summarize", article_id, priority=10)

    job = get_job(conn, again)
    assert again == job_id
    assert job.status == "pending"
    assert job.attempts == 0
    assert job.last_error is None
    assert job.priority == 10


def test_enqueue_leaves_running_job_alone(conn):
    article_id = seed_article(conn, 1)
    job_id = enqueue_job(conn, "summarize", article_id)
    [claimed] = claim_due_jobs(conn, "worker-a", limit=1, lease_seconds=60)

    enqueue_job(conn, "summarize", article_id, priority=1)

    job = get_job(conn, job_id)
    assert job.status == "running"
    assert job.locked_by == "worker-a"
    assert job.priority == claimed.priority


def test_claim_orders_by_priority(conn):
    low = enqueue_job(conn, "summarize", seed_article(conn, 1), priority=100)
    high = enqueue_job(conn, "summarize", seed_article(conn, 2), priority=50)

    [first] = claim_due_jobs(conn, "worker-a", limit=1, lease_seconds=60)

    assert first.id == high
    assert first.lease_expires_at is not None
    assert get_job(conn, low).status == "pending"


def test_third_failed_attempt_is_terminal(conn):
    job_id = enqueue_job(conn, "summarize", seed_article(conn, 1))
    statuses = []
    for _ in range(3):
        [job] = claim_due_jobs(
            conn, "worker-a", limit=1, lease_seconds=60, now=FAR_FUTURE
        )
        statuses.append(
            fail_job_attempt(
                conn, job.id, "worker-a", "llm down", max_attempts=3, retry_delay_seconds=600
            )
        )

    job = get_job(conn, job_id)
    assert statuses == ["pending", "pending", "failed"]
    assert job.status == "failed"
    assert job.attempts == 3
    assert job.last_error == "llm down"
    assert claim_due_jobs(conn, "worker-a", limit=1, lease_seconds=60, now=FAR_FUTURE) == []


def test_expired_lease_is_reclaimed(conn):
    job_id = enqueue_job(conn, "summarize", seed_article(conn, 1), run_after=LONG_AGO)
    claim_due_jobs(conn, "worker-a", limit=1, lease_seconds=60, now=LONG_AGO)

    assert reclaim_expired_leases(conn) == 1

    job = get_job(conn, job_id)
    assert job.status == "pending"
    assert job.locked_by is None
    assert job.attempts == 0
    assert job.last_error == "lease_expired"


def test_lost_lease_blocks_completion_and_failure(conn):
    job_id = enqueue_job(conn, "summarize", seed_article(conn, 1))
    claim_due_jobs(conn, "worker-a", limit=1, lease_seconds=60)

    assert not complete_job(conn, job_id, "worker-b")
    assert (
        fail_job_attempt(conn, job_id, "worker-b", "late", max_attempts=3, retry_delay_seconds=1)
        is None
    )
    job = get_job(conn, job_id)
    assert job.status == "running"
    assert job.locked_by == "worker-a"
    assert complete_job(conn, job_id, "worker-a", provider="fake", model="fake-1")
    assert get_job(conn, job_id).status == "done"


def test_process_jobs_writes_enrichment(conn, config, completer):
    article_id = seed_article(conn, 1)
    for job_type in ("summarize", "score", "auto_tag"):
        enqueue_job(conn, job_type, article_id)

    result = process_jobs(conn, config, completer=completer, worker_id="worker-a")

    assert result.done == 3
    assert result.failed == 0
    summary = get_article_summary(conn, article_id)
    assert summary["summary"] == "A short summary."
    assert summary["key_points"] == ["one", "two"]
    assert get_article_score(conn, article_id)["score"] == 4
    assert list_article_tags(conn, article_id) == [("launch vehicles", "ai"), ("space", "ai")]
    assert sorted(call[0] for call in completer.calls) == ["auto_tag", "score", "summarize"]
    job = get_job(conn, _job_id(conn, "score", article_id))
    assert job.status == "done"
    assert job.provider == "fake"


def test_failing_completion_schedules_retry(conn, config):
    article_id = seed_article(conn, 1)
    job_id = enqueue_job(conn, "summarize", article_id)

    result = process_jobs(
        conn, config, completer=FakeCompleter(fail_with=RuntimeError("llm down")), worker_id="w"
    )

    job = get_job(conn, job_id)
    assert result.retried == 1
    assert job.status == "pending"
    assert job.attempts == 1
    assert job.last_error == "llm down"
    assert job.run_after > job.updated_at
    runs = list_job_runs(conn, job_id)
    assert [run["status"] for run in runs] == ["retry"]
    assert runs[0]["error"] == "llm down"


def test_zero_budget_claims_nothing(conn, config, completer):
    job_id = enqueue_job(conn, "summarize", seed_article(conn, 1))

    result = process_jobs(conn, config, completer=completer, time_budget_ms=0)

    assert result.claimed == 0
    assert result.budget_exhausted
    assert get_job(conn, job_id).status == "pending"


def test_refresh_profile_job_uses_feedback(conn, config, completer):
    article_id = seed_article(conn, 1)
    add_article_feedback(conn, article_id, 5, "more like this")
    enqueue_job(conn, "refresh_profile")

    result = process_jobs(conn, config, completer=completer)

    assert result.done == 1
    profile = get_preference_profile(conn)
    assert profile["profile_text"] == "Likes space news."
    assert profile["version"] == 1
    task, text, _ = completer.calls[0]
    assert task == "refresh_profile"
    assert "Seeded 1" in text
    assert "more like this" in text


def _job_id(conn, job_type, article_id):
    row = conn.execute(
        "SELECT id FROM jobs WHERE type = ? AND article_id = ?", (job_type, article_id)
    ).fetchone()
    return row[0]
