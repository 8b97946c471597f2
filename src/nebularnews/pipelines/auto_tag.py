from __future__ import annotations

import logging
import re
from typing import Any

from ..config import Config
from ..models import Job
from ..storage import replace_ai_tags
from ..utils import log_event
from .article_text import article_prompt_text, load_article


def normalize_tag(value: str) -> str:
    cleaned = re.sub(r"[^a-z0-9 +#.-]+", "", value.strip().lower())
    return re.sub(r"\s+", " ", cleaned).strip(" -.")[:40]


def handle_auto_tag(
    conn: Any, config: Config, job: Job, completer, logger: logging.Logger
) -> dict[str, object]:
    article = load_article(conn, job.article_id)
    text = article_prompt_text(article, config.llm.max_input_chars)
    completion = completer.complete("auto_tag", text)
    names: list[str] = []
    for raw in completion.tags:
        tag = normalize_tag(raw)
        if tag and tag not in names:
            names.append(tag)
    applied = replace_ai_tags(conn, article.id, names[: config.enrichment.max_ai_tags])
    log_event(logger, logging.INFO, "article_tagged", article_id=article.id, tags=len(applied))
    return {"provider": completion.provider, "model": completion.model}
