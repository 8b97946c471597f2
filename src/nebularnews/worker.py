from __future__ import annotations

import argparse
import logging
import os
import socket
import time
from dataclasses import dataclass
from typing import Any, Callable

from .config import Config, ConfigError, get_state_db_path, load_runtime_config
from .llm.client import CompletionClient
from .models import Job
from .pipelines.auto_tag import handle_auto_tag
from .pipelines.image_backfill import handle_image_backfill
from .pipelines.profile import handle_refresh_profile
from .pipelines.score import handle_score
from .pipelines.summarize import handle_summarize
from .storage import (
    claim_due_jobs,
    complete_job,
    fail_job_attempt,
    init_db,
    reclaim_expired_leases,
    record_job_run,
)
from .utils import configure_logging, log_event, new_id, utc_now_iso

Handler = Callable[[Any, Config, Job, Any, logging.Logger], dict]

JOB_HANDLERS: dict[str, Handler] = {
    "summarize": handle_summarize,
    "score": handle_score,
    "auto_tag": handle_auto_tag,
    "image_backfill": handle_image_backfill,
    "refresh_profile": handle_refresh_profile,
}


@dataclass
class ProcessResult:
    claimed: int = 0
    done: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0
    lease_lost: int = 0
    reclaimed: int = 0
    rounds: int = 0
    budget_exhausted: bool = False

    def as_dict(self) -> dict[str, object]:
        return {
            "claimed": self.claimed,
            "done": self.done,
            "retried": self.retried,
            "failed": self.failed,
            "released": self.released,
            "lease_lost": self.lease_lost,
            "reclaimed": self.reclaimed,
            "rounds": self.rounds,
            "budget_exhausted": self.budget_exhausted,
        }


def _setup_logging() -> logging.Logger:
    return configure_logging("nebularnews.worker")


def default_worker_id() -> str:
    host = os.environ.get("HOSTNAME") or socket.gethostname() or "worker"
    return f"{host}:{os.getpid()}:{new_id()[:8]}"


def process_jobs(
    conn: Any,
    config: Config,
    *,
    completer: Any = None,
    worker_id: str | None = None,
    time_budget_ms: int | None = None,
    batch_size: int | None = None,
    max_rounds: int | None = None,
    logger: logging.Logger | None = None,
) -> ProcessResult:
    """Claim and run due jobs in batches until the queue drains or the budget runs out."""
    logger = logger or logging.getLogger("nebularnews.worker")
    completer = completer or CompletionClient(config.llm, logger=logger)
    worker_id = worker_id or default_worker_id()
    budget_ms = time_budget_ms if time_budget_ms is not None else config.jobs.time_budget_ms
    deadline = time.monotonic() + budget_ms / 1000.0
    limit = batch_size or config.jobs.batch_size
    rounds = max_rounds or config.jobs.max_rounds
    result = ProcessResult()

    result.reclaimed = reclaim_expired_leases(conn)
    if result.reclaimed:
        log_event(logger, logging.WARNING, "jobs_lease_reclaimed", count=result.reclaimed)

    for _ in range(rounds):
        if time.monotonic() >= deadline:
            result.budget_exhausted = True
            break
        jobs = claim_due_jobs(
            conn, worker_id, limit=limit, lease_seconds=config.jobs.lease_seconds
        )
        if not jobs:
            break
        result.rounds += 1
        result.claimed += len(jobs)
        for index, job in enumerate(jobs):
            if time.monotonic() >= deadline:
                result.budget_exhausted = True
                result.released += release_claimed_jobs(conn, jobs[index:], worker_id)
                break
            outcome = _process_claimed_job(conn, config, job, completer, worker_id, logger)
            if outcome == "done":
                result.done += 1
            elif outcome == "pending":
                result.retried += 1
            elif outcome == "failed":
                result.failed += 1
            else:
                result.lease_lost += 1
        if result.budget_exhausted:
            break

    log_event(logger, logging.INFO, "jobs_process_completed", worker_id=worker_id, **result.as_dict())
    return result


def run_claimed_job(
    conn: Any, config: Config, job: Job, completer: Any, logger: logging.Logger
) -> dict[str, object]:
    handler = JOB_HANDLERS.get(job.type)
    if handler is None:
        raise ValueError(f"unsupported job type {job.type}")
    return handler(conn, config, job, completer, logger) or {}


def _process_claimed_job(
    conn: Any,
    config: Config,
    job: Job,
    completer: Any,
    worker_id: str,
    logger: logging.Logger,
) -> str:
    started_at = utc_now_iso()
    started = time.monotonic()
    attempt = job.attempts + 1
    log_event(
        logger,
        logging.INFO,
        "job_claimed",
        job_id=job.id,
        job_type=job.type,
        article_id=job.article_id,
        attempt=attempt,
    )
    try:
        result = run_claimed_job(conn, config, job, completer, logger)
    except Exception as exc:  # noqa: BLE001
        error = str(exc) or exc.__class__.__name__
        status = fail_job_attempt(
            conn,
            job.id,
            worker_id,
            error,
            max_attempts=config.jobs.max_attempts,
            retry_delay_seconds=config.jobs.retry_delay_seconds,
        )
        record_job_run(
            conn,
            job,
            attempt=attempt,
            status="failed" if status == "failed" else "retry",
            started_at=started_at,
            duration_ms=_elapsed_ms(started),
            error=error,
        )
        if status is None:
            log_event(logger, logging.WARNING, "job_lease_lost", job_id=job.id, error=error)
            return "lease_lost"
        log_event(
            logger,
            logging.ERROR if status == "failed" else logging.WARNING,
            "job_failed" if status == "failed" else "job_retry_scheduled",
            job_id=job.id,
            job_type=job.type,
            attempt=attempt,
            error=error,
        )
        return status

    provider = result.get("provider")
    model = result.get("model")
    if not complete_job(conn, job.id, worker_id, provider=provider, model=model):
        log_event(logger, logging.WARNING, "job_lease_lost", job_id=job.id)
        return "lease_lost"
    record_job_run(
        conn,
        job,
        attempt=attempt,
        status="done",
        started_at=started_at,
        duration_ms=_elapsed_ms(started),
        provider=provider,
        model=model,
    )
    log_event(
        logger,
        logging.INFO,
        "job_succeeded",
        job_id=job.id,
        job_type=job.type,
        duration_ms=_elapsed_ms(started),
    )
    return "done"


def release_claimed_jobs(conn: Any, jobs: list[Job], worker_id: str) -> int:
    released = 0
    now = utc_now_iso()
    for job in jobs:
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'pending', locked_by = NULL, locked_at = NULL,
                lease_expires_at = NULL, updated_at = ?
            WHERE id = ? AND status = 'running' AND locked_by = ?
            """,
            (now, job.id, worker_id),
        )
        released += int(cursor.rowcount or 0)
    conn.commit()
    return released


def run_queue_cycles(
    conn: Any,
    config: Config,
    *,
    cycles: int = 1,
    force_due: bool = False,
    completer: Any = None,
    logger: logging.Logger | None = None,
) -> list[dict[str, object]]:
    """Operator helper: run up to 10 processing cycles back to back."""
    logger = logger or logging.getLogger("nebularnews.worker")
    results = []
    for _ in range(max(1, min(10, int(cycles)))):
        if force_due:
            now = utc_now_iso()
            conn.execute(
                "UPDATE jobs SET run_after = ?, updated_at = ? WHERE status = 'pending'",
                (now, now),
            )
            conn.commit()
        result = process_jobs(conn, config, completer=completer, logger=logger)
        results.append(result.as_dict())
        if result.claimed == 0:
            break
    return results


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nebularnews-worker")
    parser.add_argument("--worker-id", default=None)
    parser.add_argument("--budget-ms", type=int, default=None, help="Wall-clock budget")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--rounds", type=int, default=None)
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    try:
        conn = init_db(get_state_db_path())
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    result = process_jobs(
        conn,
        config,
        worker_id=args.worker_id,
        time_budget_ms=args.budget_ms,
        batch_size=args.batch_size,
        max_rounds=args.rounds,
        logger=logger,
    )
    return 1 if result.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
