from __future__ import annotations

import logging
import re
import socket
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import Request, urlopen

import feedparser
from bs4 import BeautifulSoup

from .enrichment.images import first_content_image, is_decorative_image
from .enrichment.url import canonicalize_url
from .models import FeedItem, FetchResult, ParsedFeed
from .utils import isoformat_utc, log_event, parse_date_value

DEFAULT_TIMEOUT_SECONDS = 12
DEFAULT_USER_AGENT = "NebularNews/0.1 (+feed reader)"


class FeedFetchError(RuntimeError):
    def __init__(self, url: str, reason: str, status: int | None = None) -> None:
        self.url = url
        self.reason = reason
        self.status = status
        label = f"http_{status}" if status is not None else reason
        super().__init__(f"feed_fetch_failed {label}: {url}")


def fetch_feed(
    url: str,
    *,
    etag: str | None = None,
    last_modified: str | None = None,
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
    user_agent: str = DEFAULT_USER_AGENT,
    logger: logging.Logger | None = None,
) -> FetchResult:
    logger = logger or logging.getLogger("nebularnews.feeds")
    headers = {
        "User-Agent": user_agent,
        "Accept": "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8",
    }
    if etag:
        headers["If-None-Match"] = etag
    if last_modified:
        headers["If-Modified-Since"] = last_modified
    request = Request(url, headers=headers)
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            status = response.getcode()
            body = response.read()
            new_etag = response.headers.get("ETag")
            new_last_modified = response.headers.get("Last-Modified")
    except HTTPError as exc:
        if exc.code == 304:
            log_event(logger, logging.DEBUG, "feed_not_modified", url=url)
            return FetchResult(
                not_modified=True,
                status=304,
                etag=etag,
                last_modified=last_modified,
                feed=None,
            )
        raise FeedFetchError(url, "http_error", status=exc.code) from exc
    except (socket.timeout, TimeoutError) as exc:
        raise FeedFetchError(url, "timeout") from exc
    except URLError as exc:
        reason = "timeout" if isinstance(exc.reason, (socket.timeout, TimeoutError)) else str(exc.reason)
        raise FeedFetchError(url, reason) from exc
    if status is not None and not 200 <= int(status) < 300:
        raise FeedFetchError(url, "http_error", status=int(status))
    return FetchResult(
        not_modified=False,
        status=status,
        etag=new_etag or etag,
        last_modified=new_last_modified or last_modified,
        feed=parse_feed(body, base_url=url, logger=logger),
    )


def parse_feed(
    body: bytes | str, base_url: str | None = None, logger: logging.Logger | None = None
) -> ParsedFeed:
    """Parse RSS/Atom into a ParsedFeed; garbage in gives an empty feed, never an error."""
    logger = logger or logging.getLogger("nebularnews.feeds")
    try:
        parsed = feedparser.parse(body)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "feed_parse_failed", url=base_url, error=str(exc))
        return ParsedFeed(title=None, site_url=None, items=[])
    entries = parsed.get("entries") or []
    if parsed.get("bozo") and not entries:
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_malformed",
            url=base_url,
            error=str(parsed.get("bozo_exception") or ""),
        )
        return ParsedFeed(title=None, site_url=None, items=[])
    channel = parsed.get("feed") or {}
    items: list[FeedItem] = []
    for entry in entries:
        try:
            items.append(_entry_to_item(entry, base_url))
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "feed_entry_skipped", url=base_url, error=str(exc))
    return ParsedFeed(
        title=_clean(channel.get("title")),
        site_url=canonicalize_url(channel.get("link"), base_url),
        items=items,
    )


def _entry_to_item(entry: Any, base_url: str | None) -> FeedItem:
    link = entry.get("link") or _alternate_link(entry)
    guid = entry.get("id") or link
    if not link and guid and str(guid).startswith(("http://", "https://")):
        link = guid
    url = _absolute_link(link, base_url)
    published = parse_date_value(
        entry.get("published_parsed")
        or entry.get("published")
        or entry.get("updated_parsed")
        or entry.get("updated")
    )
    content_html = _entry_html(entry)
    return FeedItem(
        guid=str(guid) if guid else None,
        title=_clean(entry.get("title")),
        url=url,
        published_at=isoformat_utc(published) if published else None,
        author=_clean(entry.get("author")),
        content_html=content_html,
        content_text=html_to_text(content_html),
        image_url=_media_image(entry, base_url) or first_content_image(content_html, url or base_url),
    )


def _absolute_link(link: Any, base_url: str | None) -> str | None:
    # Keep the item's own link; canonicalization happens at ingest.
    if not link or canonicalize_url(str(link), base_url) is None:
        return None
    link = str(link).strip()
    return urljoin(base_url, link) if base_url else link


def _alternate_link(entry: Any) -> str | None:
    for link in entry.get("links") or []:
        if link.get("rel", "alternate") == "alternate" and link.get("href"):
            return link["href"]
    return None


def _entry_html(entry: Any) -> str | None:
    content = entry.get("content") or []
    for block in content:
        value = block.get("value")
        if value:
            return value
    return entry.get("summary") or entry.get("description")


def _media_image(entry: Any, base_url: str | None) -> str | None:
    candidates: list[str] = []
    for media in entry.get("media_content") or []:
        medium = (media.get("medium") or "").lower()
        mime = (media.get("type") or "").lower()
        if medium == "image" or mime.startswith("image/") or (not medium and not mime):
            if media.get("url"):
                candidates.append(media["url"])
    for thumb in entry.get("media_thumbnail") or []:
        if thumb.get("url"):
            candidates.append(thumb["url"])
    for enclosure in entry.get("enclosures") or []:
        if (enclosure.get("type") or "").lower().startswith("image/"):
            href = enclosure.get("href") or enclosure.get("url")
            if href:
                candidates.append(href)
    image = entry.get("image")
    if isinstance(image, dict) and image.get("href"):
        candidates.append(image["href"])
    for candidate in candidates:
        url = canonicalize_url(candidate, base_url)
        if url and not is_decorative_image(url):
            return url
    return None


def html_to_text(html: str | None) -> str | None:
    if not html:
        return None
    text = BeautifulSoup(html, "html.parser").get_text(" ", strip=True)
    text = re.sub(r"\s+", " ", text).strip()
    return text or None


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None
