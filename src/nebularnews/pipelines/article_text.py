from __future__ import annotations

from typing import Any

from ..models import Article
from ..storage import get_article


def load_article(conn: Any, article_id: str | None) -> Article:
    if not article_id:
        raise ValueError("article_id_required")
    article = get_article(conn, article_id)
    if article is None:
        raise ValueError("article_not_found")
    return article


def article_prompt_text(article: Article, max_chars: int) -> str:
    parts = []
    if article.title:
        parts.append(f"Title: {article.title}")
    if article.canonical_url:
        parts.append(f"URL: {article.canonical_url}")
    body = article.content_text or article.excerpt or ""
    if body:
        parts.append("")
        parts.append(body)
    text = "\n".join(parts).strip()
    if not text:
        raise ValueError("article_has_no_text")
    return text[:max_chars]
