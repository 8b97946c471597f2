from __future__ import annotations

import logging
from typing import Any

from ..config import Config
from ..models import Job
from ..storage import list_recent_feedback, save_preference_profile
from ..utils import log_event


def handle_refresh_profile(
    conn: Any, config: Config, job: Job, completer, logger: logging.Logger
) -> dict[str, object]:
    feedback = list_recent_feedback(conn, config.enrichment.profile_feedback_window)
    if not feedback:
        log_event(logger, logging.INFO, "profile_refresh_skipped", reason="no_feedback")
        return {"skipped": "no_feedback"}
    lines = []
    for entry in feedback:
        line = f"[{entry['rating']:+d}] {entry['title'] or 'untitled'}"
        if entry.get("summary"):
            line += f" - {entry['summary']}"
        if entry.get("comment"):
            line += f" (note: {entry['comment']})"
        lines.append(line)
    completion = completer.complete("refresh_profile", "\n".join(lines))
    profile = (completion.profile or "").strip()
    if not profile:
        raise ValueError("empty_profile")
    version = save_preference_profile(conn, profile)
    log_event(logger, logging.INFO, "profile_refreshed", version=version, feedback=len(feedback))
    return {"provider": completion.provider, "model": completion.model}
