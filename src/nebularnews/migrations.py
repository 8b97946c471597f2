from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import FUTURE_SKEW, isoformat_utc, parse_iso, utc_now_iso

Migration = Callable[[Any], None]


def apply_migrations(conn: Any) -> None:
    logger = logging.getLogger("nebularnews.migrations")
    conn.commit()
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS feeds (
            id TEXT PRIMARY KEY,
            url TEXT NOT NULL UNIQUE,
            title TEXT NULL,
            site_url TEXT NULL,
            etag TEXT NULL,
            last_modified TEXT NULL,
            next_poll_at TEXT NULL,
            last_polled_at TEXT NULL,
            error_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT NULL,
            disabled INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id TEXT PRIMARY KEY,
            canonical_url TEXT NOT NULL UNIQUE,
            content_hash TEXT NOT NULL UNIQUE,
            title TEXT NULL,
            author TEXT NULL,
            excerpt TEXT NULL,
            content_html TEXT NULL,
            content_text TEXT NULL,
            published_at TEXT NULL,
            fetched_at TEXT NOT NULL,
            image_url TEXT NULL,
            image_checked_at TEXT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_sources (
            id TEXT PRIMARY KEY,
            article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
            feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
            item_guid TEXT NOT NULL,
            original_url TEXT NOT NULL,
            published_at TEXT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(feed_id, item_guid)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_search (
            article_id TEXT PRIMARY KEY,
            title TEXT NULL,
            summary_text TEXT NULL,
            content_text TEXT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            type TEXT NOT NULL,
            article_id TEXT NULL,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            priority INTEGER NOT NULL DEFAULT 100,
            run_after TEXT NOT NULL,
            last_error TEXT NULL,
            provider TEXT NULL,
            model TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            lease_expires_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(type, article_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_runs (
            id TEXT PRIMARY KEY,
            job_id TEXT NOT NULL,
            job_type TEXT NOT NULL,
            article_id TEXT NULL,
            attempt INTEGER NOT NULL,
            status TEXT NOT NULL,
            provider TEXT NULL,
            model TEXT NULL,
            duration_ms INTEGER NULL,
            error TEXT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pull_runs (
            id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            trigger_source TEXT NOT NULL,
            request_id TEXT NULL,
            cycles INTEGER NOT NULL,
            cycles_completed INTEGER NOT NULL DEFAULT 0,
            active_slot INTEGER NULL UNIQUE,
            runner_id TEXT NULL,
            runner_lease_expires_at TEXT NULL,
            started_at TEXT NULL,
            completed_at TEXT NULL,
            last_error TEXT NULL,
            stats_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_summaries (
            article_id TEXT PRIMARY KEY REFERENCES articles(id) ON DELETE CASCADE,
            summary TEXT NOT NULL,
            key_points_json TEXT NULL,
            provider TEXT NULL,
            model TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_scores (
            article_id TEXT PRIMARY KEY REFERENCES articles(id) ON DELETE CASCADE,
            score INTEGER NOT NULL,
            label TEXT NULL,
            reason TEXT NULL,
            provider TEXT NULL,
            model TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tags (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_tags (
            article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
            tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
            source TEXT NOT NULL DEFAULT 'manual',
            created_at TEXT NOT NULL,
            PRIMARY KEY (article_id, tag_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chat_threads (
            id TEXT PRIMARY KEY,
            scope TEXT NOT NULL,
            article_id TEXT NULL,
            title TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS preference_profile (
            id INTEGER PRIMARY KEY,
            profile_text TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_feedback (
            id TEXT PRIMARY KEY,
            article_id TEXT NOT NULL REFERENCES articles(id) ON DELETE CASCADE,
            rating INTEGER NOT NULL,
            comment TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )


def _migration_indexes(conn: Any) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_feeds_next_poll ON feeds(next_poll_at)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(published_at, fetched_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_article_sources_article ON article_sources(article_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(status, run_after, priority)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_article ON jobs(article_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_job ON job_runs(job_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_pull_runs_status ON pull_runs(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chat_threads_article ON chat_threads(article_id)")


def _migration_clamp_future_published(conn: Any) -> None:
    rows = conn.execute(
        """
        SELECT id, published_at, fetched_at
        FROM articles
        WHERE published_at IS NOT NULL AND published_at > fetched_at
        """
    ).fetchall()
    for article_id, published_at, fetched_at in rows:
        published = parse_iso(published_at)
        fetched = parse_iso(fetched_at)
        if not published or not fetched:
            continue
        if published - fetched > FUTURE_SKEW:
            conn.execute(
                "UPDATE articles SET published_at = ? WHERE id = ?",
                (isoformat_utc(fetched), article_id),
            )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_indexes", _migration_indexes),
        ("003_clamp_future_published", _migration_clamp_future_published),
    ]
