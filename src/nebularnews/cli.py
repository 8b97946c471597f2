from __future__ import annotations

import argparse
import json
import logging
from typing import Any

from .config import (
    Config,
    ConfigError,
    get_state_db_path,
    load_feeds_file,
    load_runtime_config,
)
from .enrichment.url import canonicalize_url
from .ingest import poll_feeds
from .jobs_admin import (
    JobConflictError,
    JobNotFoundError,
    cancel_all_pending_jobs,
    cancel_pending_job,
    clear_finished_jobs,
    delete_job,
    get_job_counts,
    list_jobs,
    queue_missing_today_jobs,
    retry_failed_jobs,
    run_job_now,
)
from .manual_pull import get_pull_status, recover_stale_pull_runs, run_pull_run, start_manual_pull
from .orphan_cleanup import clamp_orphan_cleanup_limit, delete_orphan_articles_batch
from .retention import run_retention_cleanup
from .scheduler import run_tick
from .states import JobStatus
from .storage import add_feed, init_db, list_feeds, set_feed_disabled
from .utils import configure_logging, log_event
from .worker import run_queue_cycles


def _setup_logging() -> logging.Logger:
    return configure_logging("nebularnews")


def _open_state(args: argparse.Namespace, logger: logging.Logger) -> tuple[Any, Config | None]:
    path = args.db or get_state_db_path()
    conn = init_db(path)
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return conn, None
    return conn, config


def _emit(logger: logging.Logger, event: str, payload: dict[str, object]) -> None:
    logger.info(json.dumps({"event": event, **payload}, sort_keys=True, default=str))


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = args.db or get_state_db_path()
    init_db(path)
    log_event(logger, logging.INFO, "db_migrated", path=path)
    return 0


def _cmd_feeds_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    if canonicalize_url(args.url) is None:
        log_event(logger, logging.ERROR, "feed_add_error", error="url must be absolute http(s)")
        return 1
    conn, _ = _open_state(args, logger)
    feed = add_feed(conn, args.url, args.title)
    log_event(logger, logging.INFO, "feed_added", feed_id=feed.id, url=feed.url)
    return 0


def _cmd_feeds_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    feeds = list_feeds(conn)
    if not feeds:
        log_event(
            logger,
            logging.WARNING,
            "no_feeds",
            hint="Add feeds with `nebularnews feeds add <url>` or `nebularnews feeds import`",
        )
        return 1
    for feed in feeds:
        log_event(
            logger,
            logging.INFO,
            "feed",
            feed_id=feed.id,
            url=feed.url,
            disabled=feed.disabled,
            error_count=feed.error_count,
            next_poll_at=feed.next_poll_at,
        )
    log_event(logger, logging.INFO, "feeds_listed", count=len(feeds))
    return 0


def _cmd_feeds_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        entries = load_feeds_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "feeds_import_error", error=str(exc))
        return 1
    if not entries:
        log_event(logger, logging.ERROR, "feeds_import_error", error="no feeds found")
        return 1
    conn, _ = _open_state(args, logger)
    for entry in entries:
        if canonicalize_url(entry["url"]) is None:
            log_event(logger, logging.ERROR, "feeds_import_error", url=entry["url"], error="bad url")
            return 1
        feed = add_feed(conn, entry["url"], entry["title"])
        if entry["disabled"]:
            set_feed_disabled(conn, feed.id, True)
    log_event(logger, logging.INFO, "feeds_imported", count=len(entries), path=args.path)
    return 0


def _cmd_poll(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_state(args, logger)
    if config is None:
        return 1
    summary = poll_feeds(conn, config, logger=logger)
    _emit(logger, "poll_summary", summary.as_dict())
    return 0


def _cmd_jobs_process(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_state(args, logger)
    if config is None:
        return 1
    results = run_queue_cycles(
        conn, config, cycles=args.cycles, force_due=args.force_due, logger=logger
    )
    _emit(logger, "jobs_processed", {"cycles": results})
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    for job in list_jobs(conn, status=args.status, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.type,
            article_id=job.article_id,
            status=job.status,
            attempts=job.attempts,
            run_after=job.run_after,
            error=job.last_error,
        )
    return 0


def _cmd_jobs_counts(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    log_event(logger, logging.INFO, "job_counts", **get_job_counts(conn))
    return 0


def _cmd_jobs_retry_failed(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    retry_failed_jobs(conn, logger)
    return 0


def _cmd_jobs_cancel_pending(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    cancel_all_pending_jobs(conn, logger)
    return 0


def _cmd_jobs_clear_finished(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    clear_finished_jobs(conn, logger)
    return 0


def _cmd_jobs_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    return _job_action(logger, args.job_id, lambda: cancel_pending_job(conn, args.job_id, logger))


def _cmd_jobs_delete(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    return _job_action(logger, args.job_id, lambda: delete_job(conn, args.job_id, logger))


def _cmd_jobs_run_now(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    return _job_action(logger, args.job_id, lambda: run_job_now(conn, args.job_id, logger))


def _cmd_jobs_queue_today(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_state(args, logger)
    if config is None:
        return 1
    queue_missing_today_jobs(conn, config, tz_offset_minutes=args.tz_offset, logger=logger)
    return 0


def _job_action(logger: logging.Logger, job_id: str, action) -> int:
    try:
        action()
    except JobNotFoundError:
        log_event(logger, logging.ERROR, "job_not_found", job_id=job_id)
        return 1
    except JobConflictError as exc:
        log_event(logger, logging.ERROR, "job_conflict", job_id=job_id, error=str(exc))
        return 1
    return 0


def _cmd_pull_start(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_state(args, logger)
    if config is None:
        return 1
    result = start_manual_pull(conn, config, cycles=args.cycles, trigger="cli", logger=logger)
    if not result.started:
        log_event(logger, logging.WARNING, "pull_not_started", existing_run_id=result.run_id)
        return 1
    if args.queue_only:
        return 0
    run = run_pull_run(conn, config, result.run_id, logger=logger)
    _emit(logger, "pull_finished", get_pull_status(conn, result.run_id))
    return 0 if run is not None and run.status == "success" else 1


def _cmd_pull_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open_state(args, logger)
    _emit(logger, "pull_status", get_pull_status(conn, args.run_id))
    return 0


def _cmd_pull_recover(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_state(args, logger)
    if config is None:
        return 1
    failed = recover_stale_pull_runs(conn, stale_minutes=config.pull.stale_minutes, logger=logger)
    log_event(logger, logging.INFO, "pull_recover_completed", failed=len(failed))
    return 0


def _cmd_tick(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_state(args, logger)
    if config is None:
        return 1
    report = run_tick(conn, config, args.cron, logger=logger)
    _emit(logger, "tick_report", report)
    return 1 if report["errors"] else 0


def _cmd_orphans(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_state(args, logger)
    if config is None:
        return 1
    limit = clamp_orphan_cleanup_limit(
        args.limit if args.limit is not None else config.maintenance.orphan_manual_limit
    )
    stats = delete_orphan_articles_batch(conn, limit, dry_run=args.dry_run, logger=logger)
    _emit(logger, "orphan_cleanup", stats.as_dict())
    return 0


def _cmd_retention(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open_state(args, logger)
    if config is None:
        return 1
    stats = run_retention_cleanup(conn, config.retention, logger=logger)
    _emit(logger, "retention", stats.as_dict())
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    log_event(logger, logging.INFO, "serve_starting", host=args.host, port=args.port)
    uvicorn.run("nebularnews.admin:app", host=args.host, port=args.port, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nebularnews", description="NebularNews CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the sqlite state db (defaults to $NN_DATA_DIR/nebularnews.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    feeds_parser = subparsers.add_parser("feeds", help="Manage feeds")
    feeds_subparsers = feeds_parser.add_subparsers(dest="feeds_command", required=True)
    feeds_add = feeds_subparsers.add_parser("add", help="Add a feed")
    feeds_add.add_argument("url", help="Feed URL")
    feeds_add.add_argument("--title", default=None)
    feeds_add.set_defaults(func=_cmd_feeds_add)
    feeds_list = feeds_subparsers.add_parser("list", help="List feeds")
    feeds_list.set_defaults(func=_cmd_feeds_list)
    feeds_import = feeds_subparsers.add_parser("import", help="Import feeds from YAML")
    feeds_import.add_argument("path", help="YAML file")
    feeds_import.set_defaults(func=_cmd_feeds_import)

    poll_parser = subparsers.add_parser("poll", help="Poll due feeds once")
    poll_parser.set_defaults(func=_cmd_poll)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_process = jobs_subparsers.add_parser("process", help="Run processing cycles now")
    jobs_process.add_argument("--cycles", type=int, default=1, help="1..10 cycles")
    jobs_process.add_argument(
        "--force-due", action="store_true", help="Make every pending job due first"
    )
    jobs_process.set_defaults(func=_cmd_jobs_process)
    jobs_list = jobs_subparsers.add_parser("list", help="List jobs")
    jobs_list.add_argument("--status", choices=[status.value for status in JobStatus])
    jobs_list.add_argument("--limit", type=int, default=50)
    jobs_list.set_defaults(func=_cmd_jobs_list)
    jobs_counts = jobs_subparsers.add_parser("counts", help="Job counts by status")
    jobs_counts.set_defaults(func=_cmd_jobs_counts)
    jobs_retry = jobs_subparsers.add_parser("retry-failed", help="Reset failed jobs to pending")
    jobs_retry.set_defaults(func=_cmd_jobs_retry_failed)
    jobs_cancel = jobs_subparsers.add_parser("cancel", help="Cancel one pending job")
    jobs_cancel.add_argument("job_id")
    jobs_cancel.set_defaults(func=_cmd_jobs_cancel)
    jobs_cancel_pending = jobs_subparsers.add_parser(
        "cancel-pending", help="Cancel every pending job"
    )
    jobs_cancel_pending.set_defaults(func=_cmd_jobs_cancel_pending)
    jobs_delete = jobs_subparsers.add_parser("delete", help="Delete a job that is not running")
    jobs_delete.add_argument("job_id")
    jobs_delete.set_defaults(func=_cmd_jobs_delete)
    jobs_clear = jobs_subparsers.add_parser("clear-finished", help="Delete done/cancelled jobs")
    jobs_clear.set_defaults(func=_cmd_jobs_clear_finished)
    jobs_run_now = jobs_subparsers.add_parser("run-now", help="Make a job due immediately")
    jobs_run_now.add_argument("job_id")
    jobs_run_now.set_defaults(func=_cmd_jobs_run_now)
    jobs_today = jobs_subparsers.add_parser(
        "queue-today", help="Queue missing enrichment for today's articles"
    )
    jobs_today.add_argument("--tz-offset", type=int, default=0, help="Minutes east of UTC")
    jobs_today.set_defaults(func=_cmd_jobs_queue_today)

    pull_parser = subparsers.add_parser("pull", help="Manual pull runs")
    pull_subparsers = pull_parser.add_subparsers(dest="pull_command", required=True)
    pull_start = pull_subparsers.add_parser("start", help="Start and run a manual pull")
    pull_start.add_argument("--cycles", type=int, default=None)
    pull_start.add_argument(
        "--queue-only", action="store_true", help="Queue the run for the next tick"
    )
    pull_start.set_defaults(func=_cmd_pull_start)
    pull_status = pull_subparsers.add_parser("status", help="Show pull run status")
    pull_status.add_argument("--run-id", default=None)
    pull_status.set_defaults(func=_cmd_pull_status)
    pull_recover = pull_subparsers.add_parser("recover", help="Fail stale pull runs")
    pull_recover.set_defaults(func=_cmd_pull_recover)

    tick_parser = subparsers.add_parser("tick", help="Run one scheduler tick")
    tick_parser.add_argument("cron", help="Schedule identifier, e.g. '*/5 * * * *'")
    tick_parser.set_defaults(func=_cmd_tick)

    orphans_parser = subparsers.add_parser("orphans", help="Delete one batch of orphan articles")
    orphans_parser.add_argument("--limit", type=int, default=None)
    orphans_parser.add_argument("--dry-run", action="store_true")
    orphans_parser.set_defaults(func=_cmd_orphans)

    retention_parser = subparsers.add_parser("retention", help="Run retention cleanup")
    retention_parser.set_defaults(func=_cmd_retention)

    serve_parser = subparsers.add_parser("serve", help="Run the admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
