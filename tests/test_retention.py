from datetime import datetime, timedelta, timezone

from conftest import seed_article

from nebularnews.config import RetentionConfig
from nebularnews.retention import run_retention_cleanup
from nebularnews.storage import get_article, get_article_summary, save_article_summary
from nebularnews.utils import isoformat_utc

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _search_text(conn, article_id):
    row = conn.execute(
        "SELECT content_text FROM article_search WHERE article_id = ?", (article_id,)
    ).fetchone()
    return row[0] if row else None


def _seed_pair(conn):
    old = seed_article(conn, 1, published_at=isoformat_utc(NOW - timedelta(days=40)))
    recent = seed_article(conn, 2, published_at=isoformat_utc(NOW - timedelta(days=5)))
    return old, recent


def test_disabled_when_days_is_zero(conn):
    old, _ = _seed_pair(conn)

    stats = run_retention_cleanup(conn, RetentionConfig(days=0, mode="archive"), now=NOW)

    assert not stats.enabled
    assert stats.cutoff_at is None
    assert stats.articles_targeted == 0
    assert get_article(conn, old).content_text == "seeded body 1"


def test_archive_keeps_metadata_and_enrichment(conn):
    old, recent = _seed_pair(conn)
    save_article_summary(conn, old, "kept summary", [], "fake", "fake-1")

    stats = run_retention_cleanup(conn, RetentionConfig(days=30, mode="archive"), now=NOW)

    assert stats.enabled
    assert stats.cutoff_at == isoformat_utc(NOW - timedelta(days=30))
    assert stats.articles_targeted == 1
    assert stats.articles_archived == 1
    assert stats.search_rows_cleared == 1
    archived = get_article(conn, old)
    assert archived.title == "Seeded 1"
    assert archived.content_text is None
    assert archived.content_html is None
    assert _search_text(conn, old) == ""
    assert get_article_summary(conn, old)["summary"] == "kept summary"
    assert get_article(conn, recent).content_text == "seeded body 2"
    assert _search_text(conn, recent) == "seeded body 2"

    again = run_retention_cleanup(conn, RetentionConfig(days=30, mode="archive"), now=NOW)
    assert again.articles_targeted == 1
    assert again.articles_archived == 0
    assert again.search_rows_cleared == 0


def test_delete_mode_removes_articles(conn):
    old, recent = _seed_pair(conn)
    save_article_summary(conn, old, "gone", [], "fake", "fake-1")

    stats = run_retention_cleanup(conn, RetentionConfig(days=30, mode="delete"), now=NOW)

    assert stats.articles_deleted == 1
    assert stats.search_rows_cleared == 1
    assert get_article(conn, old) is None
    assert _search_text(conn, old) is None
    assert get_article_summary(conn, old) is None
    assert get_article(conn, recent) is not None


def test_missing_published_falls_back_to_fetched(conn):
    stale = seed_article(conn, 3, fetched_at=isoformat_utc(NOW - timedelta(days=90)))

    stats = run_retention_cleanup(conn, RetentionConfig(days=30, mode="delete"), now=NOW)

    assert stats.articles_deleted == 1
    assert get_article(conn, stale) is None
