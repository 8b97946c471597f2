from __future__ import annotations

import logging
from typing import Any

from ..config import Config
from ..models import Job
from ..storage import save_article_summary
from ..utils import log_event
from .article_text import article_prompt_text, load_article

MAX_KEY_POINTS = 6


def handle_summarize(
    conn: Any, config: Config, job: Job, completer, logger: logging.Logger
) -> dict[str, object]:
    article = load_article(conn, job.article_id)
    text = article_prompt_text(article, config.llm.max_input_chars)
    completion = completer.complete("summarize", text)
    summary = (completion.summary or "").strip()
    if not summary:
        raise ValueError("empty_summary")
    key_points = [point.strip() for point in completion.key_points if point.strip()]
    save_article_summary(
        conn,
        article.id,
        summary,
        key_points[:MAX_KEY_POINTS],
        completion.provider,
        completion.model,
    )
    log_event(
        logger,
        logging.INFO,
        "article_summarized",
        article_id=article.id,
        key_points=len(key_points[:MAX_KEY_POINTS]),
        model=completion.model,
    )
    return {"provider": completion.provider, "model": completion.model}
