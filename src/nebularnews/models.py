from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Feed:
    id: str
    url: str
    title: str | None
    site_url: str | None
    etag: str | None
    last_modified: str | None
    next_poll_at: str | None
    last_polled_at: str | None
    error_count: int
    last_error: str | None
    disabled: bool


@dataclass(frozen=True)
class FeedItem:
    guid: str | None
    title: str | None
    url: str | None
    published_at: str | None
    author: str | None
    content_html: str | None
    content_text: str | None
    image_url: str | None


@dataclass(frozen=True)
class ParsedFeed:
    title: str | None
    site_url: str | None
    items: list[FeedItem] = field(default_factory=list)


@dataclass(frozen=True)
class FetchResult:
    not_modified: bool
    status: int | None
    etag: str | None
    last_modified: str | None
    feed: ParsedFeed | None


@dataclass(frozen=True)
class Article:
    id: str
    canonical_url: str
    content_hash: str
    title: str | None
    author: str | None
    excerpt: str | None
    content_html: str | None
    content_text: str | None
    published_at: str | None
    fetched_at: str
    image_url: str | None
    image_checked_at: str | None
    status: str


@dataclass(frozen=True)
class Job:
    id: str
    type: str
    article_id: str | None
    status: str
    attempts: int
    priority: int
    run_after: str
    last_error: str | None
    provider: str | None
    model: str | None
    locked_by: str | None
    locked_at: str | None
    lease_expires_at: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PullRun:
    id: str
    status: str
    trigger: str
    request_id: str | None
    cycles: int
    cycles_completed: int
    started_at: str | None
    completed_at: str | None
    last_error: str | None
    stats: dict[str, object]
    created_at: str
    updated_at: str
