from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from .config import RetentionConfig
from .utils import isoformat_utc, log_event, utc_now

_TARGET_PREDICATE = "COALESCE(published_at, fetched_at) < ?"


@dataclass(frozen=True)
class RetentionStats:
    enabled: bool
    mode: str
    days: int
    cutoff_at: str | None
    articles_targeted: int
    articles_deleted: int
    articles_archived: int
    search_rows_cleared: int

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


def count_retention_targets(conn: Any, cutoff_at: str) -> int:
    row = conn.execute(
        f"SELECT COUNT(*) FROM articles WHERE {_TARGET_PREDICATE}", (cutoff_at,)
    ).fetchone()
    return int(row[0]) if row else 0


def run_retention_cleanup(
    conn: Any,
    config: RetentionConfig,
    *,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> RetentionStats:
    """Age articles past the retention window.

    ``delete`` drops the article and its search row. ``archive`` keeps the
    metadata and enrichment but nulls the stored content and blanks the
    search text. ``days <= 0`` disables retention.
    """
    logger = logger or logging.getLogger("nebularnews.maintenance")
    if config.days <= 0:
        return RetentionStats(
            enabled=False,
            mode=config.mode,
            days=config.days,
            cutoff_at=None,
            articles_targeted=0,
            articles_deleted=0,
            articles_archived=0,
            search_rows_cleared=0,
        )

    cutoff_at = isoformat_utc((now or utc_now()) - timedelta(days=config.days))
    targeted = count_retention_targets(conn, cutoff_at)
    deleted = archived = cleared = 0
    if targeted:
        if config.mode == "delete":
            deleted, cleared = _delete_targets(conn, cutoff_at)
        else:
            archived, cleared = _archive_targets(conn, cutoff_at)
            if archived == 0:
                log_event(
                    logger,
                    logging.INFO,
                    "retention_noop",
                    mode=config.mode,
                    days=config.days,
                    cutoff_at=cutoff_at,
                    targeted=targeted,
                )

    stats = RetentionStats(
        enabled=True,
        mode=config.mode,
        days=config.days,
        cutoff_at=cutoff_at,
        articles_targeted=targeted,
        articles_deleted=deleted,
        articles_archived=archived,
        search_rows_cleared=cleared,
    )
    log_event(logger, logging.INFO, "retention_completed", **stats.as_dict())
    return stats


def _delete_targets(conn: Any, cutoff_at: str) -> tuple[int, int]:
    with conn.transaction():
        search = conn.execute(
            f"""
            DELETE FROM article_search
            WHERE article_id IN (SELECT id FROM articles WHERE {_TARGET_PREDICATE})
            """,
            (cutoff_at,),
        )
        articles = conn.execute(
            f"DELETE FROM articles WHERE {_TARGET_PREDICATE}", (cutoff_at,)
        )
        return int(articles.rowcount or 0), int(search.rowcount or 0)


def _archive_targets(conn: Any, cutoff_at: str) -> tuple[int, int]:
    with conn.transaction():
        articles = conn.execute(
            f"""
            UPDATE articles
            SET content_html = NULL, content_text = NULL, updated_at = ?
            WHERE {_TARGET_PREDICATE}
              AND (content_html IS NOT NULL OR content_text IS NOT NULL)
            """,
            (isoformat_utc(utc_now()), cutoff_at),
        )
        search = conn.execute(
            f"""
            UPDATE article_search
            SET content_text = ''
            WHERE article_id IN (SELECT id FROM articles WHERE {_TARGET_PREDICATE})
              AND COALESCE(content_text, '') <> ''
            """,
            (cutoff_at,),
        )
        return int(articles.rowcount or 0), int(search.rowcount or 0)
