from __future__ import annotations

import logging
from typing import Any

from ..config import Config
from ..models import Job
from ..storage import get_preference_profile, save_article_score
from ..utils import log_event
from .article_text import article_prompt_text, load_article


def handle_score(
    conn: Any, config: Config, job: Job, completer, logger: logging.Logger
) -> dict[str, object]:
    article = load_article(conn, job.article_id)
    text = article_prompt_text(article, config.llm.max_input_chars)
    profile = get_preference_profile(conn)
    completion = completer.complete(
        "score", text, profile=str(profile["profile_text"]) if profile else None
    )
    if completion.score is None:
        raise ValueError("missing_score")
    score = max(1, min(5, int(completion.score)))
    save_article_score(
        conn,
        article.id,
        score,
        completion.label,
        completion.reason,
        completion.provider,
        completion.model,
    )
    log_event(logger, logging.INFO, "article_scored", article_id=article.id, score=score)
    return {"provider": completion.provider, "model": completion.model}
