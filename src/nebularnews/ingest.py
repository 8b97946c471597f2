from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import Config
from .enrichment.url import canonicalize_url
from .feeds import fetch_feed
from .models import Feed, FeedItem
from .pipelines.content_fetch import try_fetch_article_page
from .storage import (
    count_due_feeds,
    enqueue_job,
    find_existing_article_id,
    insert_article,
    list_due_feeds,
    mark_feed_error,
    mark_feed_polled,
    record_article_source,
)
from .utils import (
    content_hash,
    is_same_day,
    isoformat_utc,
    log_event,
    normalize_published_at,
    parse_iso,
    utc_now,
)

ENRICHMENT_JOB_TYPES = ("summarize", "score")


@dataclass
class PollSummary:
    feeds_due: int = 0
    feeds_polled: int = 0
    feeds_not_modified: int = 0
    feeds_failed: int = 0
    feeds_skipped_due_to_budget: int = 0
    items_seen: int = 0
    items_processed: int = 0
    items_skipped_lookback: int = 0
    items_skipped_no_url: int = 0
    articles_created: int = 0
    jobs_enqueued: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "feeds_due": self.feeds_due,
            "feeds_polled": self.feeds_polled,
            "feeds_not_modified": self.feeds_not_modified,
            "feeds_failed": self.feeds_failed,
            "feeds_skipped_due_to_budget": self.feeds_skipped_due_to_budget,
            "items_seen": self.items_seen,
            "items_processed": self.items_processed,
            "items_skipped_lookback": self.items_skipped_lookback,
            "items_skipped_no_url": self.items_skipped_no_url,
            "articles_created": self.articles_created,
            "jobs_enqueued": self.jobs_enqueued,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class IngestOutcome:
    status: str
    article_id: str | None = None
    same_day: bool = False
    jobs_enqueued: int = 0


def poll_feeds(
    conn: Any,
    config: Config,
    *,
    now: datetime | None = None,
    fetcher: Callable[..., Any] = fetch_feed,
    page_fetcher: Callable[..., Any] = try_fetch_article_page,
    deadline: float | None = None,
    on_feed_settled: Callable[[], bool] | None = None,
    logger: logging.Logger | None = None,
) -> PollSummary:
    """Poll due feeds under the feed, item and wall-clock budgets.

    One feed failing never stops the others; its error lands in the
    summary and the feed is rescheduled. ``on_feed_settled`` runs after
    each feed; returning False stops the pass.
    """
    logger = logger or logging.getLogger("nebularnews.ingest")
    cfg = config.ingest
    now = now or utc_now()
    now_iso = isoformat_utc(now)
    summary = PollSummary()
    summary.feeds_due = count_due_feeds(conn, now_iso)
    feeds = list_due_feeds(conn, now_iso, limit=cfg.max_feeds_per_poll)
    summary.feeds_skipped_due_to_budget = max(0, summary.feeds_due - len(feeds))
    item_budget = cfg.max_items_per_poll

    for index, feed in enumerate(feeds):
        if item_budget <= 0 or (deadline is not None and time.monotonic() >= deadline):
            summary.feeds_skipped_due_to_budget += len(feeds) - index
            break
        item_budget -= _poll_one_feed(
            conn,
            config,
            feed,
            now=now,
            item_budget=item_budget,
            fetcher=fetcher,
            page_fetcher=page_fetcher,
            summary=summary,
            logger=logger,
        )
        if on_feed_settled is not None and on_feed_settled() is False:
            log_event(logger, logging.WARNING, "poll_stopped", remaining=len(feeds) - index - 1)
            break

    log_event(
        logger,
        logging.INFO,
        "poll_completed",
        feeds_due=summary.feeds_due,
        feeds_polled=summary.feeds_polled,
        feeds_failed=summary.feeds_failed,
        skipped_due_to_budget=summary.feeds_skipped_due_to_budget,
        items_seen=summary.items_seen,
        articles_created=summary.articles_created,
    )
    return summary


def _poll_one_feed(
    conn: Any,
    config: Config,
    feed: Feed,
    *,
    now: datetime,
    item_budget: int,
    fetcher: Callable[..., Any],
    page_fetcher: Callable[..., Any],
    summary: PollSummary,
    logger: logging.Logger,
) -> int:
    cfg = config.ingest
    now_iso = isoformat_utc(now)
    try:
        result = fetcher(
            feed.url,
            etag=feed.etag,
            last_modified=feed.last_modified,
            timeout_seconds=cfg.fetch_timeout_seconds,
            user_agent=cfg.user_agent,
            logger=logger,
        )
    except Exception as exc:  # noqa: BLE001
        summary.feeds_failed += 1
        _record_error(summary, cfg.max_recent_errors, feed.url, str(exc))
        mark_feed_error(
            conn,
            feed.id,
            error=str(exc),
            next_poll_at=isoformat_utc(now + timedelta(minutes=cfg.feed_error_retry_minutes)),
        )
        log_event(
            logger,
            logging.WARNING,
            "feed_poll_failed",
            feed_id=feed.id,
            url=feed.url,
            error_count=feed.error_count + 1,
            error=str(exc),
        )
        return 0

    next_poll_at = isoformat_utc(now + timedelta(minutes=cfg.feed_poll_interval_minutes))
    if result.not_modified or result.feed is None:
        summary.feeds_not_modified += 1
        mark_feed_polled(
            conn,
            feed.id,
            polled_at=now_iso,
            next_poll_at=next_poll_at,
            etag=result.etag,
            last_modified=result.last_modified,
        )
        return 0

    first_poll = feed.last_polled_at is None
    items = result.feed.items[: min(cfg.max_items_per_feed, item_budget)]
    for item in items:
        summary.items_seen += 1
        try:
            outcome = ingest_feed_item(
                conn,
                config,
                feed,
                item,
                fetched_at=now,
                first_poll=first_poll,
                page_fetcher=page_fetcher,
                logger=logger,
            )
        except Exception as exc:  # noqa: BLE001
            _record_error(summary, cfg.max_recent_errors, item.url or feed.url, str(exc))
            log_event(
                logger,
                logging.WARNING,
                "feed_item_failed",
                feed_id=feed.id,
                url=item.url,
                error=str(exc),
            )
            continue
        if outcome.status == "skipped_lookback":
            summary.items_skipped_lookback += 1
        elif outcome.status == "skipped_no_url":
            summary.items_skipped_no_url += 1
        else:
            summary.items_processed += 1
            if outcome.status == "created":
                summary.articles_created += 1
            summary.jobs_enqueued += outcome.jobs_enqueued

    mark_feed_polled(
        conn,
        feed.id,
        polled_at=now_iso,
        next_poll_at=next_poll_at,
        etag=result.etag,
        last_modified=result.last_modified,
        title=result.feed.title,
        site_url=result.feed.site_url,
    )
    summary.feeds_polled += 1
    log_event(
        logger,
        logging.DEBUG,
        "feed_polled",
        feed_id=feed.id,
        items=len(items),
        first_poll=first_poll,
    )
    return len(items)


def ingest_feed_item(
    conn: Any,
    config: Config,
    feed: Feed,
    item: FeedItem,
    *,
    fetched_at: datetime,
    first_poll: bool,
    page_fetcher: Callable[..., Any] = try_fetch_article_page,
    logger: logging.Logger | None = None,
) -> IngestOutcome:
    logger = logger or logging.getLogger("nebularnews.ingest")
    cfg = config.ingest
    canonical_url = canonicalize_url(item.url) or canonicalize_url(item.guid)
    if not canonical_url:
        return IngestOutcome(status="skipped_no_url")

    published = normalize_published_at(parse_iso(item.published_at), fetched_at)
    if first_poll and cfg.initial_lookback_days > 0 and published is not None:
        if published < fetched_at - timedelta(days=cfg.initial_lookback_days):
            return IngestOutcome(status="skipped_lookback")
    published_iso = isoformat_utc(published) if published else None
    fetched_iso = isoformat_utc(fetched_at)
    digest = content_hash(item.content_text, item.title, canonical_url)
    same_day = is_same_day(published, fetched_at)

    existing_id = find_existing_article_id(conn, canonical_url, digest)
    if existing_id:
        _record_source(conn, existing_id, feed, item, canonical_url, published_iso)
        return IngestOutcome(status="existing", article_id=existing_id, same_day=same_day)

    content_html = item.content_html
    content_text = item.content_text
    image_url = item.image_url
    image_checked_at = fetched_iso if image_url else None
    if same_day and (len(content_text or "") < cfg.thin_content_chars or not image_url):
        page = page_fetcher(
            canonical_url,
            timeout_seconds=cfg.page_fetch_timeout_seconds,
            user_agent=cfg.user_agent,
            logger=logger,
        )
        image_checked_at = fetched_iso
        if page is not None:
            if len(page.content_text or "") > len(content_text or ""):
                content_text = page.content_text
                content_html = page.content_html
            image_url = image_url or page.image_url

    article_id, created = insert_article(
        conn,
        canonical_url=canonical_url,
        content_hash=digest,
        title=item.title,
        author=item.author,
        excerpt=_excerpt(item.content_text),
        content_html=content_html,
        content_text=content_text,
        published_at=published_iso,
        fetched_at=fetched_iso,
        image_url=image_url,
        image_checked_at=image_checked_at,
    )
    _record_source(conn, article_id, feed, item, canonical_url, published_iso)
    if not created:
        return IngestOutcome(status="existing", article_id=article_id, same_day=same_day)

    jobs_enqueued = 0
    if same_day:
        jobs_enqueued += _enqueue_same_day_jobs(conn, config, article_id, fetched_at)
    if not image_url:
        enqueue_job(
            conn,
            "image_backfill",
            article_id,
            priority=config.jobs.backfill_priority,
            run_after=image_backfill_run_after(
                image_checked_at, fetched_at, cfg.image_backfill_cooldown_minutes
            ),
        )
        jobs_enqueued += 1
    log_event(
        logger,
        logging.DEBUG,
        "article_created",
        article_id=article_id,
        feed_id=feed.id,
        same_day=same_day,
        jobs=jobs_enqueued,
    )
    return IngestOutcome(
        status="created", article_id=article_id, same_day=same_day, jobs_enqueued=jobs_enqueued
    )


def image_backfill_run_after(
    image_checked_at: str | None, now: datetime, cooldown_minutes: int
) -> str:
    checked = parse_iso(image_checked_at)
    if checked is None:
        return isoformat_utc(now)
    return isoformat_utc(max(now, checked + timedelta(minutes=cooldown_minutes)))


def _enqueue_same_day_jobs(
    conn: Any,
    config: Config,
    article_id: str,
    now: datetime,
) -> int:
    priority = config.jobs.default_priority
    job_types = list(ENRICHMENT_JOB_TYPES)
    if config.jobs.auto_tag_enabled:
        job_types.append("auto_tag")
    for job_type in job_types:
        enqueue_job(conn, job_type, article_id, priority=priority, run_after=isoformat_utc(now))
    return len(job_types)


def _record_source(
    conn: Any,
    article_id: str,
    feed: Feed,
    item: FeedItem,
    canonical_url: str,
    published_at: str | None,
) -> None:
    record_article_source(
        conn,
        article_id=article_id,
        feed_id=feed.id,
        item_guid=item.guid or canonical_url,
        original_url=item.url or canonical_url,
        published_at=published_at,
    )


def _record_error(summary: PollSummary, cap: int, url: str, error: str) -> None:
    if len(summary.errors) >= cap:
        return
    summary.errors.append({"url": url, "error": error[:300]})


def _excerpt(text: str | None, limit: int = 280) -> str | None:
    if not text:
        return None
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"
