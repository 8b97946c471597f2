from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import Config
from .feeds import fetch_feed
from .ingest import PollSummary, poll_feeds
from .models import PullRun
from .pipelines.content_fetch import try_fetch_article_page
from .states import ACTIVE_PULL_STATUSES, PullRunStatus
from .storage import (
    claim_pull_run,
    count_articles,
    count_feeds,
    count_feeds_with_errors,
    count_pending_jobs,
    fail_stale_pull_runs,
    finish_pull_run,
    force_feeds_due,
    get_active_pull_run,
    get_latest_finished_pull_run,
    get_latest_pull_run,
    get_pull_run,
    heartbeat_pull_run,
    insert_pull_run_if_idle,
    release_pull_run,
)
from .utils import isoformat_utc, log_event, new_id, utc_now
from .worker import process_jobs

MAX_RECENT_ERRORS = 5
STALE_ERROR = "stale pull run: no heartbeat for {minutes} minutes"


@dataclass(frozen=True)
class StartResult:
    started: bool
    run_id: str | None

    def as_dict(self) -> dict[str, object]:
        return {"started": self.started, "run_id": self.run_id}


@dataclass
class PullStats:
    feeds: int = 0
    articles: int = 0
    pending_jobs: int = 0
    feeds_with_errors: int = 0
    due_feeds: int = 0
    items_seen: int = 0
    items_processed: int = 0
    articles_created: int = 0
    jobs_processed: int = 0
    cycle_in_progress: bool = False
    recent_errors: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, object] | None) -> "PullStats":
        stats = cls()
        for key, value in (data or {}).items():
            if hasattr(stats, key):
                setattr(stats, key, value)
        stats.recent_errors = list(stats.recent_errors or [])[:MAX_RECENT_ERRORS]
        return stats

    def absorb_poll(self, summary: PollSummary) -> None:
        self.due_feeds += summary.feeds_due
        self.items_seen += summary.items_seen
        self.items_processed += summary.items_processed
        self.articles_created += summary.articles_created
        for error in summary.errors:
            self.add_error(f"{error['url']}: {error['error']}")

    def add_error(self, message: str) -> None:
        if len(self.recent_errors) < MAX_RECENT_ERRORS:
            self.recent_errors.append(message[:300])

    def refresh_totals(self, conn: Any) -> None:
        self.feeds = count_feeds(conn)
        self.articles = count_articles(conn)
        self.pending_jobs = count_pending_jobs(conn)
        self.feeds_with_errors = count_feeds_with_errors(conn)

    def as_dict(self) -> dict[str, object]:
        return {
            "feeds": self.feeds,
            "articles": self.articles,
            "pending_jobs": self.pending_jobs,
            "feeds_with_errors": self.feeds_with_errors,
            "due_feeds": self.due_feeds,
            "items_seen": self.items_seen,
            "items_processed": self.items_processed,
            "articles_created": self.articles_created,
            "jobs_processed": self.jobs_processed,
            "cycle_in_progress": self.cycle_in_progress,
            "recent_errors": list(self.recent_errors),
        }


def recover_stale_pull_runs(
    conn: Any,
    *,
    stale_minutes: int = 20,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> list[str]:
    """Fail queued/running runs whose heartbeat is older than the threshold.

    The only code path allowed to touch a stale run.
    """
    logger = logger or logging.getLogger("nebularnews.pull")
    cutoff = isoformat_utc((now or utc_now()) - timedelta(minutes=stale_minutes))
    failed = fail_stale_pull_runs(conn, cutoff, STALE_ERROR.format(minutes=stale_minutes))
    for run_id in failed:
        log_event(logger, logging.WARNING, "pull_run_stale_failed", run_id=run_id, cutoff=cutoff)
    return failed


def start_manual_pull(
    conn: Any,
    config: Config,
    *,
    cycles: int | None = None,
    trigger: str = "manual",
    request_id: str | None = None,
    logger: logging.Logger | None = None,
) -> StartResult:
    logger = logger or logging.getLogger("nebularnews.pull")
    recover_stale_pull_runs(conn, stale_minutes=config.pull.stale_minutes, logger=logger)
    cycles = max(1, min(config.pull.max_cycles, int(cycles or config.pull.default_cycles)))
    existing = get_active_pull_run(conn)
    if existing is not None:
        log_event(logger, logging.INFO, "pull_already_active", run_id=existing.id)
        return StartResult(started=False, run_id=existing.id)
    run_id, active_id = insert_pull_run_if_idle(
        conn, cycles=cycles, trigger=trigger, request_id=request_id
    )
    if run_id is None:
        log_event(logger, logging.INFO, "pull_already_active", run_id=active_id)
        return StartResult(started=False, run_id=active_id)
    log_event(
        logger,
        logging.INFO,
        "pull_queued",
        run_id=run_id,
        cycles=cycles,
        trigger=trigger,
        request_id=request_id,
    )
    return StartResult(started=True, run_id=run_id)


def run_pull_run(
    conn: Any,
    config: Config,
    run_id: str,
    *,
    runner_id: str | None = None,
    completer: Any = None,
    fetcher: Callable[..., Any] = fetch_feed,
    page_fetcher: Callable[..., Any] = try_fetch_article_page,
    logger: logging.Logger | None = None,
) -> PullRun | None:
    """Drive a run through all of its cycles, no time budget."""
    return _advance(
        conn,
        config,
        run_id,
        runner_id=runner_id or new_id("runner_"),
        deadline=None,
        completer=completer,
        fetcher=fetcher,
        page_fetcher=page_fetcher,
        logger=logger or logging.getLogger("nebularnews.pull"),
    )


def run_pull_slice(
    conn: Any,
    config: Config,
    *,
    budget_ms: int | None = None,
    runner_id: str | None = None,
    completer: Any = None,
    fetcher: Callable[..., Any] = fetch_feed,
    page_fetcher: Callable[..., Any] = try_fetch_article_page,
    logger: logging.Logger | None = None,
) -> PullRun | None:
    """Advance the active run, if any, until the wall-clock budget is spent."""
    active = get_active_pull_run(conn)
    if active is None:
        return None
    budget = budget_ms if budget_ms is not None else config.pull.slice_budget_ms
    return _advance(
        conn,
        config,
        active.id,
        runner_id=runner_id or new_id("runner_"),
        deadline=time.monotonic() + budget / 1000.0,
        completer=completer,
        fetcher=fetcher,
        page_fetcher=page_fetcher,
        logger=logger or logging.getLogger("nebularnews.pull"),
    )


def _advance(
    conn: Any,
    config: Config,
    run_id: str,
    *,
    runner_id: str,
    deadline: float | None,
    completer: Any,
    fetcher: Callable[..., Any],
    page_fetcher: Callable[..., Any],
    logger: logging.Logger,
) -> PullRun | None:
    lease_seconds = config.pull.runner_lease_seconds
    if not claim_pull_run(conn, run_id, runner_id, lease_seconds=lease_seconds):
        log_event(logger, logging.INFO, "pull_run_not_claimed", run_id=run_id)
        return get_pull_run(conn, run_id)
    run = get_pull_run(conn, run_id)
    if run is None:
        return None
    stats = PullStats.from_dict(run.stats)
    cycles_completed = run.cycles_completed

    lease_lost = False

    def heartbeat() -> bool:
        """Extend the runner lease; False once another runner owns the run."""
        nonlocal lease_lost
        if lease_lost:
            return False
        lease_lost = not heartbeat_pull_run(
            conn,
            run_id,
            runner_id,
            lease_seconds=lease_seconds,
            stats=stats.as_dict(),
            cycles_completed=cycles_completed,
        )
        return not lease_lost

    log_event(
        logger,
        logging.INFO,
        "pull_run_advancing",
        run_id=run_id,
        cycles=run.cycles,
        cycles_completed=cycles_completed,
        sliced=deadline is not None,
    )
    try:
        heartbeat()
        while not lease_lost and cycles_completed < run.cycles:
            if not stats.cycle_in_progress:
                now_iso = isoformat_utc(utc_now())
                force_feeds_due(conn, now_iso)
                stats.cycle_in_progress = True
                if not heartbeat():
                    break
            if _expired(deadline):
                break
            summary = poll_feeds(
                conn,
                config,
                fetcher=fetcher,
                page_fetcher=page_fetcher,
                deadline=deadline,
                on_feed_settled=heartbeat,
                logger=logger,
            )
            stats.absorb_poll(summary)
            if not heartbeat() or _expired(deadline):
                break
            budget_ms = config.jobs.time_budget_ms
            if deadline is not None:
                budget_ms = max(0, int((deadline - time.monotonic()) * 1000))
            processed = process_jobs(
                conn, config, completer=completer, time_budget_ms=budget_ms, logger=logger
            )
            stats.jobs_processed += processed.done + processed.failed + processed.retried
            cycles_completed += 1
            stats.cycle_in_progress = False
            stats.refresh_totals(conn)
            heartbeat()
    except Exception as exc:  # noqa: BLE001
        stats.add_error(str(exc))
        try:
            stats.refresh_totals(conn)
        except Exception as count_exc:  # noqa: BLE001
            log_event(logger, logging.WARNING, "pull_stats_refresh_failed", error=str(count_exc))
        finish_pull_run(
            conn,
            run_id,
            PullRunStatus.FAILED,
            stats=stats.as_dict(),
            error=str(exc) or exc.__class__.__name__,
            runner_id=runner_id,
        )
        log_event(logger, logging.ERROR, "pull_run_failed", run_id=run_id, error=str(exc))
        raise

    if lease_lost:
        log_event(
            logger,
            logging.WARNING,
            "pull_run_lease_lost",
            run_id=run_id,
            runner_id=runner_id,
            cycles_completed=cycles_completed,
        )
    elif cycles_completed >= run.cycles:
        stats.refresh_totals(conn)
        finish_pull_run(
            conn,
            run_id,
            PullRunStatus.SUCCESS,
            stats=stats.as_dict(),
            runner_id=runner_id,
        )
        log_event(logger, logging.INFO, "pull_run_succeeded", run_id=run_id, **_log_fields(stats))
    else:
        release_pull_run(conn, run_id, runner_id)
        log_event(
            logger,
            logging.INFO,
            "pull_run_slice_yielded",
            run_id=run_id,
            cycles_completed=cycles_completed,
        )
    return get_pull_run(conn, run_id)


def get_pull_status(conn: Any, run_id: str | None = None) -> dict[str, object]:
    """Read-only view of a run; never recovers or otherwise mutates anything."""
    if run_id:
        run = get_pull_run(conn, run_id)
    else:
        run = get_active_pull_run(conn) or get_latest_pull_run(conn)
    last_finished = get_latest_finished_pull_run(conn)
    active_values = {status.value for status in ACTIVE_PULL_STATUSES}
    if run is None:
        return {
            "run_id": None,
            "status": "idle",
            "in_progress": False,
            "started_at": None,
            "completed_at": None,
            "last_run_status": last_finished.status if last_finished else None,
            "last_error": None,
            "stats": {},
        }
    return {
        "run_id": run.id,
        "status": run.status,
        "in_progress": run.status in active_values,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
        "last_run_status": last_finished.status if last_finished else None,
        "last_error": run.last_error,
        "stats": run.stats,
        "cycles": run.cycles,
        "cycles_completed": run.cycles_completed,
        "trigger": run.trigger,
    }


def is_pull_active(conn: Any) -> bool:
    return get_active_pull_run(conn) is not None


def _expired(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def _log_fields(stats: PullStats) -> dict[str, object]:
    return {
        "feeds": stats.feeds,
        "articles": stats.articles,
        "pending_jobs": stats.pending_jobs,
        "items_seen": stats.items_seen,
        "errors": len(stats.recent_errors),
    }
