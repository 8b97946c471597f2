from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from .states import sql_in
from .utils import log_event

MIN_ORPHAN_CLEANUP_LIMIT = 10
MAX_ORPHAN_CLEANUP_LIMIT = 1000
DEFAULT_MANUAL_ORPHAN_CLEANUP_LIMIT = 200
DEFAULT_SCHEDULED_ORPHAN_CLEANUP_LIMIT = 50
ORPHAN_PREVIEW_SAMPLE_SIZE = 10

_ORPHAN_PREDICATE = """
    NOT EXISTS (SELECT 1 FROM article_sources s WHERE s.article_id = a.id)
"""


@dataclass(frozen=True)
class OrphanCleanupStats:
    orphan_count_before: int
    targeted: int
    deleted_articles: int
    deleted_article_search_rows: int
    deleted_jobs_rows: int
    deleted_chat_threads_rows: int
    orphan_count_after: int
    has_more: bool
    dry_run: bool

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


def clamp_orphan_cleanup_limit(
    value: Any, fallback: int = DEFAULT_MANUAL_ORPHAN_CLEANUP_LIMIT
) -> int:
    try:
        parsed = int(round(float(value)))
    except (TypeError, ValueError):
        return fallback
    return max(MIN_ORPHAN_CLEANUP_LIMIT, min(MAX_ORPHAN_CLEANUP_LIMIT, parsed))


def count_orphan_articles(conn: Any) -> int:
    row = conn.execute(f"SELECT COUNT(*) FROM articles a WHERE {_ORPHAN_PREDICATE}").fetchone()
    return int(row[0]) if row else 0


def list_orphan_article_ids(conn: Any, limit: int = ORPHAN_PREVIEW_SAMPLE_SIZE) -> list[str]:
    """Oldest orphans first; ties broken by id so batches are deterministic."""
    limit = max(1, min(MAX_ORPHAN_CLEANUP_LIMIT, int(limit)))
    rows = conn.execute(
        f"""
        SELECT a.id FROM articles a
        WHERE {_ORPHAN_PREDICATE}
        ORDER BY COALESCE(a.published_at, a.fetched_at) ASC, a.id ASC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [row[0] for row in rows]


def preview_orphans(conn: Any) -> dict[str, object]:
    return {
        "orphan_count": count_orphan_articles(conn),
        "sample_article_ids": list_orphan_article_ids(conn, ORPHAN_PREVIEW_SAMPLE_SIZE),
        "suggested_batch_size": DEFAULT_MANUAL_ORPHAN_CLEANUP_LIMIT,
    }


def delete_orphan_articles_batch(
    conn: Any,
    limit: int = DEFAULT_MANUAL_ORPHAN_CLEANUP_LIMIT,
    *,
    dry_run: bool = False,
    logger: logging.Logger | None = None,
) -> OrphanCleanupStats:
    """Delete one bounded batch of articles that no feed references anymore.

    Dependent search rows, queued jobs and article-scoped chat threads go
    first; summaries, scores and tags cascade with the article row. A dry run
    only counts.
    """
    logger = logger or logging.getLogger("nebularnews.maintenance")
    limit = clamp_orphan_cleanup_limit(limit)
    before = count_orphan_articles(conn)
    ids = list_orphan_article_ids(conn, limit)

    if dry_run or not ids:
        stats = OrphanCleanupStats(
            orphan_count_before=before,
            targeted=len(ids),
            deleted_articles=0,
            deleted_article_search_rows=0,
            deleted_jobs_rows=0,
            deleted_chat_threads_rows=0,
            orphan_count_after=before,
            has_more=before > len(ids),
            dry_run=dry_run,
        )
        log_event(logger, logging.INFO, "orphan_cleanup_skipped", **stats.as_dict())
        return stats

    in_clause = sql_in(ids)
    with conn.transaction():
        search = conn.execute(
            f"DELETE FROM article_search WHERE article_id IN {in_clause}", tuple(ids)
        )
        jobs = conn.execute(
            f"DELETE FROM jobs WHERE status <> 'running' AND article_id IN {in_clause}",
            tuple(ids),
        )
        threads = conn.execute(
            f"DELETE FROM chat_threads WHERE scope = 'article' AND article_id IN {in_clause}",
            tuple(ids),
        )
        # Re-check the orphan predicate so an article that gained a source meanwhile survives.
        articles = conn.execute(
            f"""
            DELETE FROM articles
            WHERE id IN {in_clause}
              AND NOT EXISTS (SELECT 1 FROM article_sources s WHERE s.article_id = articles.id)
            """,
            tuple(ids),
        )
        counts = (
            int(search.rowcount or 0),
            int(jobs.rowcount or 0),
            int(threads.rowcount or 0),
            int(articles.rowcount or 0),
        )
    after = count_orphan_articles(conn)
    stats = OrphanCleanupStats(
        orphan_count_before=before,
        targeted=len(ids),
        deleted_articles=counts[3],
        deleted_article_search_rows=counts[0],
        deleted_jobs_rows=counts[1],
        deleted_chat_threads_rows=counts[2],
        orphan_count_after=after,
        has_more=after > 0,
        dry_run=False,
    )
    log_event(logger, logging.INFO, "orphan_cleanup_completed", **stats.as_dict())
    return stats
