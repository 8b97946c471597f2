from __future__ import annotations

import json
from datetime import timedelta
from typing import Any

from .db import connect_db
from .models import Article, Feed, Job, PullRun
from .states import ACTIVE_PULL_STATUSES, JobStatus, PullRunStatus, sources_for, sql_in
from .utils import isoformat_utc, json_dumps, new_id, parse_iso, utc_now_iso, utc_now_iso_offset

_FEED_COLUMNS = """
    id, url, title, site_url, etag, last_modified, next_poll_at, last_polled_at,
    error_count, last_error, disabled
"""

_ARTICLE_COLUMNS = """
    id, canonical_url, content_hash, title, author, excerpt, content_html, content_text,
    published_at, fetched_at, image_url, image_checked_at, status
"""

JOB_COLUMNS = """
    id, type, article_id, status, attempts, priority, run_after, last_error, provider,
    model, locked_by, locked_at, lease_expires_at, created_at, updated_at
"""

_PULL_RUN_COLUMNS = """
    id, status, trigger_source, request_id, cycles, cycles_completed, started_at,
    completed_at, last_error, stats_json, created_at, updated_at
"""


def init_db(path: str):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


# Feeds


def add_feed(conn: Any, url: str, title: str | None = None) -> Feed:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT OR IGNORE INTO feeds
            (id, url, title, error_count, disabled, created_at, updated_at)
        VALUES (?, ?, ?, 0, 0, ?, ?)
        """,
        (new_id("feed_"), url.strip(), title, now, now),
    )
    conn.commit()
    feed = get_feed_by_url(conn, url.strip())
    if feed is None:
        raise RuntimeError(f"feed insert failed for {url}")
    return feed


def get_feed(conn: Any, feed_id: str) -> Feed | None:
    row = conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,)).fetchone()
    return _row_to_feed(row) if row else None


def get_feed_by_url(conn: Any, url: str) -> Feed | None:
    row = conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE url = ?", (url,)).fetchone()
    return _row_to_feed(row) if row else None


def list_feeds(conn: Any, include_disabled: bool = True) -> list[Feed]:
    clause = "" if include_disabled else "WHERE disabled = 0"
    rows = conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds {clause} ORDER BY created_at, id").fetchall()
    return [_row_to_feed(row) for row in rows]


def set_feed_disabled(conn: Any, feed_id: str, disabled: bool) -> bool:
    cursor = conn.execute(
        "UPDATE feeds SET disabled = ?, updated_at = ? WHERE id = ?",
        (1 if disabled else 0, utc_now_iso(), feed_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def list_due_feeds(conn: Any, now: str, limit: int | None = None) -> list[Feed]:
    sql = f"""
        SELECT {_FEED_COLUMNS}
        FROM feeds
        WHERE disabled = 0 AND (next_poll_at IS NULL OR next_poll_at <= ?)
        ORDER BY COALESCE(next_poll_at, ''), id
    """
    params: list[object] = [now]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    rows = conn.execute(sql, tuple(params)).fetchall()
    return [_row_to_feed(row) for row in rows]


def count_due_feeds(conn: Any, now: str) -> int:
    row = conn.execute(
        """
        SELECT COUNT(*) FROM feeds
        WHERE disabled = 0 AND (next_poll_at IS NULL OR next_poll_at <= ?)
        """,
        (now,),
    ).fetchone()
    return int(row[0] or 0)


def force_feeds_due(conn: Any, now: str) -> int:
    cursor = conn.execute(
        "UPDATE feeds SET next_poll_at = ?, updated_at = ? WHERE disabled = 0",
        (now, now),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def mark_feed_polled(
    conn: Any,
    feed_id: str,
    *,
    polled_at: str,
    next_poll_at: str,
    etag: str | None,
    last_modified: str | None,
    title: str | None = None,
    site_url: str | None = None,
) -> None:
    conn.execute(
        """
        UPDATE feeds
        SET etag = ?,
            last_modified = ?,
            title = COALESCE(?, title),
            site_url = COALESCE(?, site_url),
            next_poll_at = ?,
            last_polled_at = ?,
            error_count = 0,
            last_error = NULL,
            updated_at = ?
        WHERE id = ?
        """,
        (etag, last_modified, title, site_url, next_poll_at, polled_at, polled_at, feed_id),
    )
    conn.commit()


def mark_feed_error(conn: Any, feed_id: str, *, error: str, next_poll_at: str) -> None:
    conn.execute(
        """
        UPDATE feeds
        SET error_count = error_count + 1,
            last_error = ?,
            next_poll_at = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (error[:1000], next_poll_at, utc_now_iso(), feed_id),
    )
    conn.commit()


def count_feeds(conn: Any) -> int:
    row = conn.execute("SELECT COUNT(*) FROM feeds").fetchone()
    return int(row[0] or 0)


def count_feeds_with_errors(conn: Any) -> int:
    row = conn.execute("SELECT COUNT(*) FROM feeds WHERE error_count > 0").fetchone()
    return int(row[0] or 0)


# Articles


def find_existing_article_id(conn: Any, canonical_url: str, content_hash: str) -> str | None:
    row = conn.execute(
        """
        SELECT id FROM articles
        WHERE canonical_url = ? OR content_hash = ?
        ORDER BY created_at
        LIMIT 1
        """,
        (canonical_url, content_hash),
    ).fetchone()
    return row[0] if row else None


def insert_article(
    conn: Any,
    *,
    canonical_url: str,
    content_hash: str,
    title: str | None,
    author: str | None,
    excerpt: str | None,
    content_html: str | None,
    content_text: str | None,
    published_at: str | None,
    fetched_at: str,
    image_url: str | None,
    image_checked_at: str | None = None,
) -> tuple[str, bool]:
    """Insert an article unless one already matches its url or hash.

    Returns (article_id, created).
    """
    article_id = new_id("art_")
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO articles
            (id, canonical_url, content_hash, title, author, excerpt, content_html,
             content_text, published_at, fetched_at, image_url, image_checked_at, status,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
        """,
        (
            article_id,
            canonical_url,
            content_hash,
            title,
            author,
            excerpt,
            content_html,
            content_text,
            published_at,
            fetched_at,
            image_url,
            image_checked_at,
            now,
            now,
        ),
    )
    if cursor.rowcount == 1:
        conn.execute(
            """
            INSERT INTO article_search (article_id, title, summary_text, content_text, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(article_id) DO UPDATE SET
                title = excluded.title,
                content_text = excluded.content_text,
                updated_at = excluded.updated_at
            """,
            (article_id, title, excerpt, content_text, now),
        )
        conn.commit()
        return article_id, True
    conn.commit()
    existing = find_existing_article_id(conn, canonical_url, content_hash)
    if existing is None:
        raise RuntimeError(f"article insert ignored but no match for {canonical_url}")
    return existing, False


def record_article_source(
    conn: Any,
    *,
    article_id: str,
    feed_id: str,
    item_guid: str,
    original_url: str,
    published_at: str | None,
) -> bool:
    cursor = conn.execute(
        """
        INSERT OR IGNORE INTO article_sources
            (id, article_id, feed_id, item_guid, original_url, published_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (new_id("src_"), article_id, feed_id, item_guid, original_url, published_at, utc_now_iso()),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_article(conn: Any, article_id: str) -> Article | None:
    row = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id = ?", (article_id,)
    ).fetchone()
    return _row_to_article(row) if row else None


def list_articles(conn: Any, limit: int = 50) -> list[Article]:
    rows = conn.execute(
        f"""
        SELECT {_ARTICLE_COLUMNS} FROM articles
        ORDER BY COALESCE(published_at, fetched_at) DESC, id
        LIMIT ?
        """,
        (int(limit),),
    ).fetchall()
    return [_row_to_article(row) for row in rows]


def update_article_content(
    conn: Any, article_id: str, content_html: str | None, content_text: str | None
) -> None:
    now = utc_now_iso()
    conn.execute(
        "UPDATE articles SET content_html = ?, content_text = ?, updated_at = ? WHERE id = ?",
        (content_html, content_text, now, article_id),
    )
    conn.execute(
        "UPDATE article_search SET content_text = ?, updated_at = ? WHERE article_id = ?",
        (content_text, now, article_id),
    )
    conn.commit()


def update_article_image(
    conn: Any, article_id: str, image_url: str | None, checked_at: str
) -> None:
    conn.execute(
        """
        UPDATE articles
        SET image_url = COALESCE(?, image_url), image_checked_at = ?, updated_at = ?
        WHERE id = ?
        """,
        (image_url, checked_at, utc_now_iso(), article_id),
    )
    conn.commit()


def count_articles(conn: Any) -> int:
    row = conn.execute("SELECT COUNT(*) FROM articles").fetchone()
    return int(row[0] or 0)


def list_article_source_feed_ids(conn: Any, article_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT feed_id FROM article_sources WHERE article_id = ? ORDER BY created_at",
        (article_id,),
    ).fetchall()
    return [row[0] for row in rows]


# Enrichment artifacts


def save_article_summary(
    conn: Any,
    article_id: str,
    summary: str,
    key_points: list[str],
    provider: str | None,
    model: str | None,
) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO article_summaries
            (article_id, summary, key_points_json, provider, model, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(article_id) DO UPDATE SET
            summary = excluded.summary,
            key_points_json = excluded.key_points_json,
            provider = excluded.provider,
            model = excluded.model,
            created_at = excluded.created_at
        """,
        (article_id, summary, json_dumps(key_points), provider, model, now),
    )
    conn.execute(
        "UPDATE article_search SET summary_text = ?, updated_at = ? WHERE article_id = ?",
        (summary, now, article_id),
    )
    conn.commit()


def get_article_summary(conn: Any, article_id: str) -> dict[str, object] | None:
    row = conn.execute(
        """
        SELECT summary, key_points_json, provider, model, created_at
        FROM article_summaries WHERE article_id = ?
        """,
        (article_id,),
    ).fetchone()
    if not row:
        return None
    return {
        "summary": row[0],
        "key_points": json.loads(row[1]) if row[1] else [],
        "provider": row[2],
        "model": row[3],
        "created_at": row[4],
    }


def save_article_score(
    conn: Any,
    article_id: str,
    score: int,
    label: str | None,
    reason: str | None,
    provider: str | None,
    model: str | None,
) -> None:
    conn.execute(
        """
        INSERT INTO article_scores (article_id, score, label, reason, provider, model, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(article_id) DO UPDATE SET
            score = excluded.score,
            label = excluded.label,
            reason = excluded.reason,
            provider = excluded.provider,
            model = excluded.model,
            created_at = excluded.created_at
        """,
        (article_id, int(score), label, reason, provider, model, utc_now_iso()),
    )
    conn.commit()


def get_article_score(conn: Any, article_id: str) -> dict[str, object] | None:
    row = conn.execute(
        "SELECT score, label, reason FROM article_scores WHERE article_id = ?",
        (article_id,),
    ).fetchone()
    if not row:
        return None
    return {"score": int(row[0]), "label": row[1], "reason": row[2]}


def replace_ai_tags(conn: Any, article_id: str, names: list[str]) -> list[str]:
    now = utc_now_iso()
    applied: list[str] = []
    with conn.transaction():
        conn.execute(
            "DELETE FROM article_tags WHERE article_id = ? AND source = 'ai'",
            (article_id,),
        )
        for name in names:
            conn.execute(
                "INSERT OR IGNORE INTO tags (id, name, created_at) VALUES (?, ?, ?)",
                (new_id("tag_"), name, now),
            )
            tag_id = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()[0]
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO article_tags (article_id, tag_id, source, created_at)
                VALUES (?, ?, 'ai', ?)
                """,
                (article_id, tag_id, now),
            )
            if cursor.rowcount == 1:
                applied.append(name)
    return applied


def add_manual_tag(conn: Any, article_id: str, name: str) -> None:
    now = utc_now_iso()
    with conn.transaction():
        conn.execute(
            "INSERT OR IGNORE INTO tags (id, name, created_at) VALUES (?, ?, ?)",
            (new_id("tag_"), name, now),
        )
        tag_id = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()[0]
        conn.execute(
            """
            INSERT INTO article_tags (article_id, tag_id, source, created_at)
            VALUES (?, ?, 'manual', ?)
            ON CONFLICT(article_id, tag_id) DO UPDATE SET source = 'manual'
            """,
            (article_id, tag_id, now),
        )


def list_article_tags(conn: Any, article_id: str) -> list[tuple[str, str]]:
    rows = conn.execute(
        """
        SELECT t.name, at.source
        FROM article_tags at
        JOIN tags t ON t.id = at.tag_id
        WHERE at.article_id = ?
        ORDER BY t.name
        """,
        (article_id,),
    ).fetchall()
    return [(row[0], row[1]) for row in rows]


def get_preference_profile(conn: Any) -> dict[str, object] | None:
    row = conn.execute(
        "SELECT profile_text, version, updated_at FROM preference_profile WHERE id = 1"
    ).fetchone()
    if not row:
        return None
    return {"profile_text": row[0], "version": int(row[1]), "updated_at": row[2]}


def save_preference_profile(conn: Any, profile_text: str) -> int:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO preference_profile (id, profile_text, version, updated_at)
        VALUES (1, ?, 1, ?)
        ON CONFLICT(id) DO UPDATE SET
            profile_text = excluded.profile_text,
            version = preference_profile.version + 1,
            updated_at = excluded.updated_at
        """,
        (profile_text, now),
    )
    conn.commit()
    profile = get_preference_profile(conn)
    return int(profile["version"]) if profile else 1


def add_article_feedback(conn: Any, article_id: str, rating: int, comment: str | None) -> str:
    feedback_id = new_id("fb_")
    conn.execute(
        """
        INSERT INTO article_feedback (id, article_id, rating, comment, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (feedback_id, article_id, int(rating), comment, utc_now_iso()),
    )
    conn.commit()
    return feedback_id


def list_recent_feedback(conn: Any, limit: int) -> list[dict[str, object]]:
    rows = conn.execute(
        """
        SELECT f.rating, f.comment, a.title, s.summary
        FROM article_feedback f
        JOIN articles a ON a.id = f.article_id
        LEFT JOIN article_summaries s ON s.article_id = f.article_id
        ORDER BY f.created_at DESC
        LIMIT ?
        """,
        (int(limit),),
    ).fetchall()
    return [
        {"rating": int(row[0]), "comment": row[1], "title": row[2], "summary": row[3]}
        for row in rows
    ]


# Jobs


def enqueue_job(
    conn: Any,
    job_type: str,
    article_id: str | None = None,
    *,
    priority: int = 100,
    run_after: str | None = None,
) -> str:
    """Create or reset the (job_type, article_id) job.

    An existing row is reset to a fresh pending job unless it is running,
    in which case it is left exactly as it is.
    """
    now = utc_now_iso()
    run_after = run_after or now
    if article_id is None:
        return _enqueue_global_job(conn, job_type, priority, run_after, now)
    conn.execute(
        """
        INSERT INTO jobs
            (id, type, article_id, status, attempts, priority, run_after, last_error,
             provider, model, locked_by, locked_at, lease_expires_at, created_at, updated_at)
        VALUES (?, ?, ?, 'pending', 0, ?, ?, NULL, NULL, NULL, NULL, NULL, NULL, ?, ?)
        ON CONFLICT(type, article_id) DO UPDATE SET
            status = 'pending',
            attempts = 0,
            priority = excluded.priority,
            run_after = excluded.run_after,
            last_error = NULL,
            locked_by = NULL,
            locked_at = NULL,
            lease_expires_at = NULL,
            updated_at = excluded.updated_at
        WHERE jobs.status <> 'running'
        """,
        (new_id("job_"), job_type, article_id, int(priority), run_after, now, now),
    )
    conn.commit()
    row = conn.execute(
        "SELECT id FROM jobs WHERE type = ? AND article_id = ?", (job_type, article_id)
    ).fetchone()
    return row[0]


def _enqueue_global_job(
    conn: Any, job_type: str, priority: int, run_after: str, now: str
) -> str:
    # NULL article ids never collide under UNIQUE, so global jobs upsert by lookup.
    row = conn.execute(
        "SELECT id FROM jobs WHERE type = ? AND article_id IS NULL ORDER BY created_at LIMIT 1",
        (job_type,),
    ).fetchone()
    if row:
        conn.execute(
            """
            UPDATE jobs
            SET status = 'pending', attempts = 0, priority = ?, run_after = ?, last_error = NULL,
                locked_by = NULL, locked_at = NULL, lease_expires_at = NULL, updated_at = ?
            WHERE id = ? AND status <> 'running'
            """,
            (int(priority), run_after, now, row[0]),
        )
        conn.commit()
        return row[0]
    job_id = new_id("job_")
    conn.execute(
        """
        INSERT INTO jobs
            (id, type, article_id, status, attempts, priority, run_after, created_at, updated_at)
        VALUES (?, ?, NULL, 'pending', 0, ?, ?, ?, ?)
        """,
        (job_id, job_type, int(priority), run_after, now, now),
    )
    conn.commit()
    return job_id


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return row_to_job(row) if row else None


def get_job_for(conn: Any, job_type: str, article_id: str) -> Job | None:
    row = conn.execute(
        f"SELECT {JOB_COLUMNS} FROM jobs WHERE type = ? AND article_id = ?",
        (job_type, article_id),
    ).fetchone()
    return row_to_job(row) if row else None


def count_pending_jobs(conn: Any) -> int:
    row = conn.execute("SELECT COUNT(*) FROM jobs WHERE status = 'pending'").fetchone()
    return int(row[0] or 0)


def reclaim_expired_leases(conn: Any, now: str | None = None) -> int:
    now = now or utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'pending',
            locked_by = NULL,
            locked_at = NULL,
            lease_expires_at = NULL,
            last_error = COALESCE(last_error, 'lease_expired'),
            updated_at = ?
        WHERE status = 'running'
          AND lease_expires_at IS NOT NULL
          AND lease_expires_at < ?
        """,
        (now, now),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def claim_due_jobs(
    conn: Any,
    worker_id: str,
    *,
    limit: int,
    lease_seconds: int,
    now: str | None = None,
) -> list[Job]:
    now = now or utc_now_iso()
    lease_expires_at = isoformat_utc(parse_iso(now) + timedelta(seconds=lease_seconds))
    claimable = sources_for(JobStatus.RUNNING)
    rows = conn.execute(
        f"""
        SELECT id FROM jobs
        WHERE status IN {sql_in(claimable)} AND run_after <= ?
        ORDER BY priority ASC, run_after ASC, id ASC
        LIMIT ?
        """,
        (*claimable, now, int(limit)),
    ).fetchall()
    claimed: list[Job] = []
    for (job_id,) in rows:
        cursor = conn.execute(
            f"""
            UPDATE jobs
            SET status = 'running',
                locked_by = ?,
                locked_at = ?,
                lease_expires_at = ?,
                updated_at = ?
            WHERE id = ? AND status IN {sql_in(claimable)} AND run_after <= ?
            """,
            (worker_id, now, lease_expires_at, now, job_id, *claimable, now),
        )
        conn.commit()
        if cursor.rowcount != 1:
            continue
        job = get_job(conn, job_id)
        if job is not None:
            claimed.append(job)
    return claimed


def complete_job(
    conn: Any,
    job_id: str,
    worker_id: str,
    provider: str | None = None,
    model: str | None = None,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'done',
            last_error = NULL,
            provider = COALESCE(?, provider),
            model = COALESCE(?, model),
            locked_by = NULL,
            locked_at = NULL,
            lease_expires_at = NULL,
            updated_at = ?
        WHERE id = ? AND status = 'running' AND locked_by = ?
        """,
        (provider, model, utc_now_iso(), job_id, worker_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job_attempt(
    conn: Any,
    job_id: str,
    worker_id: str,
    error: str,
    *,
    max_attempts: int,
    retry_delay_seconds: int,
) -> str | None:
    """Record a failed attempt; returns the resulting status, or None if the lease was lost."""
    cursor = conn.execute(
        """
        UPDATE jobs
        SET attempts = attempts + 1,
            status = CASE WHEN attempts + 1 >= ? THEN 'failed' ELSE 'pending' END,
            run_after = ?,
            last_error = ?,
            locked_by = NULL,
            locked_at = NULL,
            lease_expires_at = NULL,
            updated_at = ?
        WHERE id = ? AND status = 'running' AND locked_by = ?
        """,
        (
            int(max_attempts),
            utc_now_iso_offset(seconds=retry_delay_seconds),
            error[:2000],
            utc_now_iso(),
            job_id,
            worker_id,
        ),
    )
    conn.commit()
    if cursor.rowcount != 1:
        return None
    job = get_job(conn, job_id)
    return job.status if job else None


def record_job_run(
    conn: Any,
    job: Job,
    *,
    attempt: int,
    status: str,
    started_at: str,
    duration_ms: int,
    provider: str | None = None,
    model: str | None = None,
    error: str | None = None,
) -> str:
    run_id = new_id("run_")
    conn.execute(
        """
        INSERT INTO job_runs
            (id, job_id, job_type, article_id, attempt, status, provider, model, duration_ms,
             error, started_at, finished_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            run_id,
            job.id,
            job.type,
            job.article_id,
            int(attempt),
            status,
            provider,
            model,
            int(duration_ms),
            error[:2000] if error else None,
            started_at,
            utc_now_iso(),
        ),
    )
    conn.commit()
    return run_id


def list_job_runs(conn: Any, job_id: str) -> list[dict[str, object]]:
    rows = conn.execute(
        """
        SELECT id, attempt, status, provider, model, duration_ms, error, started_at, finished_at
        FROM job_runs WHERE job_id = ?
        ORDER BY started_at, attempt
        """,
        (job_id,),
    ).fetchall()
    keys = (
        "id", "attempt", "status", "provider", "model", "duration_ms", "error",
        "started_at", "finished_at",
    )
    return [dict(zip(keys, row)) for row in rows]


# Pull runs


def insert_pull_run_if_idle(
    conn: Any, *, cycles: int, trigger: str, request_id: str | None
) -> tuple[str | None, str | None]:
    """Insert a queued run unless one is active.

    Returns (new_run_id, None) or (None, active_run_id).
    """
    run_id = new_id("pull_")
    now = utc_now_iso()
    active = tuple(status.value for status in ACTIVE_PULL_STATUSES)
    cursor = conn.execute(
        f"""
        INSERT INTO pull_runs
            (id, status, trigger_source, request_id, cycles, cycles_completed, active_slot,
             created_at, updated_at)
        SELECT ?, 'queued', ?, ?, ?, 0, 1, ?, ?
        WHERE NOT EXISTS (SELECT 1 FROM pull_runs WHERE status IN {sql_in(active)})
        ON CONFLICT(active_slot) DO NOTHING
        """,
        (run_id, trigger, request_id, int(cycles), now, now, *active),
    )
    conn.commit()
    if cursor.rowcount == 1:
        return run_id, None
    existing = get_active_pull_run(conn)
    return None, existing.id if existing else None


def get_pull_run(conn: Any, run_id: str) -> PullRun | None:
    row = conn.execute(
        f"SELECT {_PULL_RUN_COLUMNS} FROM pull_runs WHERE id = ?", (run_id,)
    ).fetchone()
    return _row_to_pull_run(row) if row else None


def get_active_pull_run(conn: Any) -> PullRun | None:
    active = tuple(status.value for status in ACTIVE_PULL_STATUSES)
    row = conn.execute(
        f"""
        SELECT {_PULL_RUN_COLUMNS} FROM pull_runs
        WHERE status IN {sql_in(active)}
        ORDER BY created_at DESC
        LIMIT 1
        """,
        active,
    ).fetchone()
    return _row_to_pull_run(row) if row else None


def get_latest_pull_run(conn: Any) -> PullRun | None:
    row = conn.execute(
        f"SELECT {_PULL_RUN_COLUMNS} FROM pull_runs ORDER BY created_at DESC, id DESC LIMIT 1"
    ).fetchone()
    return _row_to_pull_run(row) if row else None


def get_latest_finished_pull_run(conn: Any) -> PullRun | None:
    row = conn.execute(
        f"""
        SELECT {_PULL_RUN_COLUMNS} FROM pull_runs
        WHERE status IN ('success', 'failed')
        ORDER BY COALESCE(completed_at, updated_at) DESC, id DESC
        LIMIT 1
        """
    ).fetchone()
    return _row_to_pull_run(row) if row else None


def claim_pull_run(
    conn: Any, run_id: str, runner_id: str, *, lease_seconds: int
) -> bool:
    """queued/running -> running, taking the runner lease if it is free or expired."""
    now = utc_now_iso()
    allowed = sources_for(PullRunStatus.RUNNING)
    cursor = conn.execute(
        f"""
        UPDATE pull_runs
        SET status = 'running',
            started_at = COALESCE(started_at, ?),
            runner_id = ?,
            runner_lease_expires_at = ?,
            updated_at = ?
        WHERE id = ?
          AND status IN {sql_in(allowed)}
          AND (runner_id IS NULL OR runner_id = ? OR runner_lease_expires_at < ?)
        """,
        (
            now,
            runner_id,
            utc_now_iso_offset(seconds=lease_seconds),
            now,
            run_id,
            *allowed,
            runner_id,
            now,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def heartbeat_pull_run(
    conn: Any,
    run_id: str,
    runner_id: str,
    *,
    lease_seconds: int,
    stats: dict[str, object] | None = None,
    cycles_completed: int | None = None,
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE pull_runs
        SET updated_at = ?,
            runner_lease_expires_at = ?,
            stats_json = COALESCE(?, stats_json),
            cycles_completed = COALESCE(?, cycles_completed)
        WHERE id = ? AND status = 'running' AND runner_id = ?
        """,
        (
            now,
            utc_now_iso_offset(seconds=lease_seconds),
            json_dumps(stats) if stats is not None else None,
            cycles_completed,
            run_id,
            runner_id,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_pull_run(conn: Any, run_id: str, runner_id: str) -> None:
    conn.execute(
        """
        UPDATE pull_runs
        SET runner_id = NULL, runner_lease_expires_at = NULL
        WHERE id = ? AND status = 'running' AND runner_id = ?
        """,
        (run_id, runner_id),
    )
    conn.commit()


def finish_pull_run(
    conn: Any,
    run_id: str,
    status: PullRunStatus,
    *,
    stats: dict[str, object] | None,
    error: str | None = None,
    runner_id: str | None = None,
) -> bool:
    now = utc_now_iso()
    allowed = sources_for(status)
    runner_clause = " AND runner_id = ?" if runner_id else ""
    params: list[object] = [
        status.value,
        now,
        now,
        error[:2000] if error else None,
        json_dumps(stats) if stats is not None else None,
        run_id,
        *allowed,
    ]
    if runner_id:
        params.append(runner_id)
    cursor = conn.execute(
        f"""
        UPDATE pull_runs
        SET status = ?,
            completed_at = ?,
            updated_at = ?,
            last_error = ?,
            stats_json = COALESCE(?, stats_json),
            active_slot = NULL,
            runner_id = NULL,
            runner_lease_expires_at = NULL
        WHERE id = ? AND status IN {sql_in(allowed)}{runner_clause}
        """,
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_stale_pull_runs(conn: Any, cutoff: str, error: str) -> list[str]:
    active = tuple(status.value for status in ACTIVE_PULL_STATUSES)
    rows = conn.execute(
        f"""
        SELECT id FROM pull_runs
        WHERE status IN {sql_in(active)} AND updated_at < ?
        """,
        (*active, cutoff),
    ).fetchall()
    failed: list[str] = []
    now = utc_now_iso()
    for (run_id,) in rows:
        # Re-check staleness in the guard so a run that heartbeats meanwhile survives.
        cursor = conn.execute(
            f"""
            UPDATE pull_runs
            SET status = 'failed',
                last_error = ?,
                completed_at = ?,
                updated_at = ?,
                active_slot = NULL,
                runner_id = NULL,
                runner_lease_expires_at = NULL
            WHERE id = ? AND status IN {sql_in(active)} AND updated_at < ?
            """,
            (error, now, now, run_id, *active, cutoff),
        )
        conn.commit()
        if cursor.rowcount == 1:
            failed.append(run_id)
    return failed


def _row_to_feed(row: tuple) -> Feed:
    (
        feed_id,
        url,
        title,
        site_url,
        etag,
        last_modified,
        next_poll_at,
        last_polled_at,
        error_count,
        last_error,
        disabled,
    ) = row
    return Feed(
        id=feed_id,
        url=url,
        title=title,
        site_url=site_url,
        etag=etag,
        last_modified=last_modified,
        next_poll_at=next_poll_at,
        last_polled_at=last_polled_at,
        error_count=int(error_count or 0),
        last_error=last_error,
        disabled=bool(disabled),
    )


def _row_to_article(row: tuple) -> Article:
    return Article(*row)


def row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        article_id,
        status,
        attempts,
        priority,
        run_after,
        last_error,
        provider,
        model,
        locked_by,
        locked_at,
        lease_expires_at,
        created_at,
        updated_at,
    ) = row
    return Job(
        id=job_id,
        type=job_type,
        article_id=article_id,
        status=status,
        attempts=int(attempts or 0),
        priority=int(priority or 0),
        run_after=run_after,
        last_error=last_error,
        provider=provider,
        model=model,
        locked_by=locked_by,
        locked_at=locked_at,
        lease_expires_at=lease_expires_at,
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_pull_run(row: tuple) -> PullRun:
    (
        run_id,
        status,
        trigger,
        request_id,
        cycles,
        cycles_completed,
        started_at,
        completed_at,
        last_error,
        stats_json,
        created_at,
        updated_at,
    ) = row
    try:
        stats = json.loads(stats_json) if stats_json else {}
    except json.JSONDecodeError:
        stats = {}
    return PullRun(
        id=run_id,
        status=status,
        trigger=trigger,
        request_id=request_id,
        cycles=int(cycles or 0),
        cycles_completed=int(cycles_completed or 0),
        started_at=started_at,
        completed_at=completed_at,
        last_error=last_error,
        stats=stats,
        created_at=created_at,
        updated_at=updated_at,
    )
