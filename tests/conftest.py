from __future__ import annotations

from dataclasses import replace

import pytest

from nebularnews.config import default_config
from nebularnews.llm.client import Completion
from nebularnews.models import FeedItem, FetchResult, ParsedFeed
from nebularnews.storage import init_db, insert_article
from nebularnews.utils import utc_now_iso


class FakeCompleter:
    def __init__(self, fail_with: Exception | None = None) -> None:
        self.fail_with = fail_with
        self.calls: list[tuple[str, str, str | None]] = []

    def complete(self, task: str, text: str, profile: str | None = None) -> Completion:
        self.calls.append((task, text, profile))
        if self.fail_with is not None:
            raise self.fail_with
        return Completion(
            provider="fake",
            model="fake-1",
            summary="A short summary.",
            key_points=["one", "two"],
            tags=["Space", "Launch Vehicles", "space"],
            score=4,
            label="relevant",
            reason="matches interests",
            profile="Likes space news.",
        )


class FakeFetcher:
    """Stands in for fetch_feed; maps url -> ParsedFeed or an exception."""

    def __init__(self, feeds: dict[str, object]) -> None:
        self.feeds = feeds
        self.calls: list[str] = []

    def __call__(self, url, **kwargs) -> FetchResult:
        self.calls.append(url)
        result = self.feeds[url]
        if isinstance(result, Exception):
            raise result
        if result is None:
            return FetchResult(
                not_modified=True, status=304, etag=kwargs.get("etag"),
                last_modified=kwargs.get("last_modified"), feed=None,
            )
        return FetchResult(
            not_modified=False, status=200, etag='"v1"', last_modified=None, feed=result
        )


def no_page(url, **kwargs):
    return None


def make_item(index: int, published_at: str | None, **overrides) -> FeedItem:
    values = {
        "guid": f"guid-{index}",
        "title": f"Story {index}",
        "url": f"https://news.example.com/story/{index}",
        "published_at": published_at,
        "author": None,
        "content_html": f"<p>Body of story {index}</p>",
        "content_text": f"Body of story {index} " + "x" * 300,
        "image_url": f"https://cdn.example.com/{index}.jpg",
    }
    values.update(overrides)
    return FeedItem(**values)


def make_feed(items: list[FeedItem]) -> ParsedFeed:
    return ParsedFeed(title="Example News", site_url="https://news.example.com/", items=items)


def seed_article(
    conn,
    index: int,
    *,
    published_at: str | None = None,
    fetched_at: str | None = None,
    image_url: str | None = "https://cdn.example.com/seed.jpg",
) -> str:
    article_id, _ = insert_article(
        conn,
        canonical_url=f"https://seed.example.com/{index}",
        content_hash=f"hash-{index}",
        title=f"Seeded {index}",
        author=None,
        excerpt=None,
        content_html=f"<p>seeded {index}</p>",
        content_text=f"seeded body {index}",
        published_at=published_at,
        fetched_at=fetched_at or utc_now_iso(),
        image_url=image_url,
    )
    return article_id


def with_section(config, section: str, **values):
    return replace(config, **{section: replace(getattr(config, section), **values)})


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "state.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def completer():
    return FakeCompleter()
