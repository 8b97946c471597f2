from __future__ import annotations

import logging
import re
import urllib.request
from dataclasses import dataclass

from bs4 import BeautifulSoup

from ..enrichment.images import extract_lead_image
from ..utils import log_event

MAX_PAGE_BYTES = 2_000_000


@dataclass(frozen=True)
class PageContent:
    url: str
    content_html: str
    content_text: str
    image_url: str | None


def fetch_article_page(
    url: str,
    *,
    timeout_seconds: int,
    user_agent: str,
    logger: logging.Logger,
) -> PageContent:
    request = urllib.request.Request(
        url,
        headers={"User-Agent": user_agent, "Accept": "text/html,application/xhtml+xml"},
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            raw = response.read(MAX_PAGE_BYTES)
            final_url = response.geturl() or url
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "page_fetch_failed", url=url, error=str(exc))
        raise
    html = raw.decode("utf-8", errors="replace")
    return PageContent(
        url=final_url,
        content_html=html,
        content_text=extract_readable_text(html),
        image_url=extract_lead_image(html, final_url),
    )


def try_fetch_article_page(
    url: str,
    *,
    timeout_seconds: int,
    user_agent: str,
    logger: logging.Logger,
) -> PageContent | None:
    # Opportunistic enrichment; the feed-provided content stays on any failure.
    try:
        return fetch_article_page(
            url, timeout_seconds=timeout_seconds, user_agent=user_agent, logger=logger
        )
    except Exception:  # noqa: BLE001
        return None


def extract_readable_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside", "noscript", "form"]):
        tag.decompose()
    article = soup.find("article")
    if article:
        return _normalize_text(article.get_text(" ", strip=True))
    main = soup.find("main")
    if main:
        return _normalize_text(main.get_text(" ", strip=True))
    best = None
    best_len = 0
    for div in soup.find_all("div"):
        text = div.get_text(" ", strip=True)
        if len(text) > best_len:
            best_len = len(text)
            best = text
    if best:
        return _normalize_text(best)
    return _normalize_text(soup.get_text(" ", strip=True))


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
