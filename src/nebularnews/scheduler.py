from __future__ import annotations

import logging
from typing import Any, Callable

from .config import Config, get_state_db_path, load_runtime_config
from .feeds import fetch_feed
from .ingest import poll_feeds
from .jobs_admin import queue_missing_today_jobs
from .manual_pull import is_pull_active, recover_stale_pull_runs, run_pull_slice
from .orphan_cleanup import delete_orphan_articles_batch
from .pipelines.content_fetch import try_fetch_article_page
from .retention import run_retention_cleanup
from .states import PullRunStatus, TickKind
from .storage import init_db
from .utils import log_event, safe_log_event
from .worker import process_jobs

# Schedule ids deployed before the cadences became configurable.
LEGACY_TICK_KINDS: dict[str, tuple[TickKind, ...]] = {
    "*/5 * * * *": (TickKind.JOBS,),
    "0 * * * *": (TickKind.POLL,),
    "30 3 * * *": (TickKind.RETENTION,),
}


def interval_to_cron(minutes: int) -> str:
    minutes = max(1, int(minutes))
    if minutes >= 60:
        return "0 * * * *"
    return f"*/{minutes} * * * *"


def build_tick_table(config: Config) -> dict[str, frozenset[TickKind]]:
    table: dict[str, set[TickKind]] = {
        cron: set(kinds) for cron, kinds in LEGACY_TICK_KINDS.items()
    }
    scheduler = config.scheduler
    current = (
        (interval_to_cron(scheduler.jobs_interval_minutes), TickKind.JOBS),
        (interval_to_cron(scheduler.poll_interval_minutes), TickKind.POLL),
        (scheduler.retention_cron, TickKind.RETENTION),
    )
    for cron, kind in current:
        table.setdefault(_normalize_cron(cron), set()).add(kind)
    return {cron: frozenset(kinds) for cron, kinds in table.items()}


def resolve_tick_kinds(
    cron: str | None, config: Config, logger: logging.Logger | None = None
) -> frozenset[TickKind]:
    kinds = build_tick_table(config).get(_normalize_cron(cron or ""))
    if kinds:
        return kinds
    safe_log_event(
        logger or logging.getLogger("nebularnews.scheduler"),
        logging.WARNING,
        "tick_unknown_schedule",
        cron=cron,
        fallback=TickKind.JOBS.value,
    )
    return frozenset({TickKind.JOBS})


def run_tick(
    conn: Any,
    config: Config,
    cron: str | None,
    *,
    completer: Any = None,
    fetcher: Callable[..., Any] = fetch_feed,
    page_fetcher: Callable[..., Any] = try_fetch_article_page,
    logger: logging.Logger | None = None,
) -> dict[str, object]:
    """Run every unit of work the schedule id selects.

    Each step is isolated: a failing step is logged and recorded in the
    report, and the remaining steps still run.
    """
    logger = logger or logging.getLogger("nebularnews.scheduler")
    kinds = resolve_tick_kinds(cron, config, logger)
    report: dict[str, object] = {
        "cron": cron,
        "kinds": sorted(kind.value for kind in kinds),
        "errors": [],
    }

    def step(name: str, func: Callable[[], object]) -> object:
        try:
            result = func()
        except Exception as exc:  # noqa: BLE001
            report["errors"].append({"step": name, "error": str(exc)})
            safe_log_event(logger, logging.ERROR, "tick_step_failed", step=name, error=str(exc))
            return None
        report[name] = result
        return result

    if TickKind.JOBS in kinds:
        step(
            "recovered_pull_runs",
            lambda: recover_stale_pull_runs(
                conn, stale_minutes=config.pull.stale_minutes, logger=logger
            ),
        )
        step(
            "pull",
            lambda: _run_pull_slices(conn, config, completer, fetcher, page_fetcher, logger),
        )
        pull_active = step("pull_active", lambda: is_pull_active(conn))
        if pull_active is None:
            # Unknown pull state: keep the smaller budget and skip housekeeping.
            pull_active = True
        if not pull_active and config.jobs.auto_queue_today:
            step("queued_today", lambda: queue_missing_today_jobs(conn, config, logger=logger))
        budget_ms = (
            config.scheduler.job_budget_while_pull_ms
            if pull_active
            else config.scheduler.job_budget_idle_ms
        )
        step(
            "jobs",
            lambda: process_jobs(
                conn, config, completer=completer, time_budget_ms=budget_ms, logger=logger
            ).as_dict(),
        )
        if not pull_active:
            step(
                "orphans",
                lambda: delete_orphan_articles_batch(
                    conn, config.maintenance.orphan_batch_limit, logger=logger
                ).as_dict(),
            )

    if TickKind.POLL in kinds:
        step(
            "poll",
            lambda: poll_feeds(
                conn, config, fetcher=fetcher, page_fetcher=page_fetcher, logger=logger
            ).as_dict(),
        )

    if TickKind.RETENTION in kinds:
        step(
            "retention",
            lambda: run_retention_cleanup(conn, config.retention, logger=logger).as_dict(),
        )

    log_event(
        logger,
        logging.INFO,
        "tick_completed",
        cron=cron,
        kinds=",".join(report["kinds"]),
        errors=len(report["errors"]),
    )
    return report


def dispatch_tick(
    cron: str | None,
    *,
    conn: Any = None,
    completer: Any = None,
    fetcher: Callable[..., Any] = fetch_feed,
    page_fetcher: Callable[..., Any] = try_fetch_article_page,
    logger: logging.Logger | None = None,
) -> dict[str, object] | None:
    """Background entry point for a tick; never raises."""
    logger = logger or logging.getLogger("nebularnews.scheduler")
    owned = conn is None
    try:
        if owned:
            conn = init_db(get_state_db_path())
        config = load_runtime_config(conn)
        return run_tick(
            conn,
            config,
            cron,
            completer=completer,
            fetcher=fetcher,
            page_fetcher=page_fetcher,
            logger=logger,
        )
    except Exception as exc:  # noqa: BLE001
        safe_log_event(logger, logging.ERROR, "tick_failed", cron=cron, error=str(exc))
        return None
    finally:
        if owned and conn is not None:
            try:
                conn.close()
            except Exception as exc:  # noqa: BLE001
                safe_log_event(logger, logging.WARNING, "tick_close_failed", error=str(exc))


def _run_pull_slices(
    conn: Any,
    config: Config,
    completer: Any,
    fetcher: Callable[..., Any],
    page_fetcher: Callable[..., Any],
    logger: logging.Logger,
) -> dict[str, object] | None:
    run = None
    for _ in range(config.pull.slices_per_tick):
        run = run_pull_slice(
            conn,
            config,
            completer=completer,
            fetcher=fetcher,
            page_fetcher=page_fetcher,
            logger=logger,
        )
        if run is None or run.status != PullRunStatus.RUNNING.value:
            break
    if run is None:
        return None
    return {
        "run_id": run.id,
        "status": run.status,
        "cycles": run.cycles,
        "cycles_completed": run.cycles_completed,
    }


def _normalize_cron(cron: str) -> str:
    return " ".join(cron.split())
