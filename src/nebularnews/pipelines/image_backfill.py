from __future__ import annotations

import logging
from typing import Any

from ..config import Config
from ..models import Job
from ..storage import update_article_image
from ..utils import log_event, utc_now_iso
from .article_text import load_article
from .content_fetch import fetch_article_page


def handle_image_backfill(
    conn: Any, config: Config, job: Job, completer, logger: logging.Logger
) -> dict[str, object]:
    article = load_article(conn, job.article_id)
    if article.image_url:
        return {"skipped": "has_image"}
    page = fetch_article_page(
        article.canonical_url,
        timeout_seconds=config.ingest.page_fetch_timeout_seconds,
        user_agent=config.ingest.user_agent,
        logger=logger,
    )
    update_article_image(conn, article.id, page.image_url, utc_now_iso())
    log_event(
        logger,
        logging.INFO,
        "article_image_backfilled",
        article_id=article.id,
        found=bool(page.image_url),
    )
    return {"image_url": page.image_url}
