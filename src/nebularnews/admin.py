from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .enrichment.url import canonicalize_url
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
from .manual_pull import get_pull_status, run_pull_run, start_manual_pull
from .orphan_cleanup import clamp_orphan_cleanup_limit, delete_orphan_articles_batch, preview_orphans
from .retention import run_retention_cleanup
from .scheduler import dispatch_tick
from .storage import (
    add_article_feedback,
    add_feed,
    enqueue_job,
    get_article,
    get_job,
    init_db,
    list_feeds,
    list_job_runs,
)
from .utils import configure_logging, log_event, safe_log_event

app = FastAPI(title="NebularNews Admin API")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("NN_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class RuntimeConfigRequest(BaseModel):
    config: dict


class FeedRequest(BaseModel):
    url: str
    title: str | None = None


class PullRequest(BaseModel):
    cycles: int | None = None
    request_id: str | None = None


class QueueTodayRequest(BaseModel):
    tz_offset_minutes: int = 0


class OrphanRunRequest(BaseModel):
    limit: int | None = None
    dry_run: bool = False


class FeedbackRequest(BaseModel):
    rating: int
    comment: str | None = None


class TickRequest(BaseModel):
    cron: str | None = None


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "NebularNews Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.on_event("startup")
def _startup() -> None:
    logger = logging.getLogger("nebularnews.admin")
    try:
        conn = init_db(get_state_db_path())
        load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))


@app.post("/internal/tick", status_code=202, dependencies=[Depends(_require_admin_token)])
def internal_tick(payload: TickRequest, background_tasks: BackgroundTasks) -> dict[str, object]:
    background_tasks.add_task(dispatch_tick, payload.cron)
    return {"accepted": True, "cron": payload.cron}


api_router = APIRouter(prefix="/api", dependencies=[Depends(_require_admin_token)])


@api_router.get("/feeds")
def feeds_list() -> list[dict[str, object]]:
    conn = _get_conn()
    return [asdict(feed) for feed in list_feeds(conn)]


@api_router.post("/feeds")
def feeds_create(payload: FeedRequest) -> dict[str, object]:
    if canonicalize_url(payload.url) is None:
        raise HTTPException(status_code=400, detail="invalid_feed_url")
    conn = _get_conn()
    feed = add_feed(conn, payload.url, payload.title)
    log_event(logging.getLogger("nebularnews.admin"), logging.INFO, "feed_added", feed_id=feed.id)
    return asdict(feed)


@api_router.post("/pull")
def pull_start(payload: PullRequest, background_tasks: BackgroundTasks) -> dict[str, object]:
    conn = _get_conn()
    config = load_runtime_config(conn)
    result = start_manual_pull(
        conn,
        config,
        cycles=payload.cycles,
        trigger="api",
        request_id=payload.request_id,
        logger=logging.getLogger("nebularnews.admin"),
    )
    if result.started and result.run_id:
        background_tasks.add_task(_run_pull_in_background, result.run_id)
    return result.as_dict()


@api_router.get("/pull/status")
def pull_status(run_id: str | None = None) -> dict[str, object]:
    conn = _get_conn()
    status = get_pull_status(conn, run_id)
    if run_id and status["run_id"] is None:
        raise HTTPException(status_code=404, detail="pull_run_not_found")
    return status


@api_router.get("/jobs")
def jobs_list(status: str | None = None, limit: int = 50) -> list[dict[str, object]]:
    conn = _get_conn()
    try:
        jobs = list_jobs(conn, status=status, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid_status") from exc
    return [asdict(job) for job in jobs]


@api_router.get("/jobs/counts")
def jobs_counts() -> dict[str, int]:
    return get_job_counts(_get_conn())


@api_router.post("/jobs/retry-failed")
def jobs_retry_failed() -> dict[str, int]:
    return {"count": retry_failed_jobs(_get_conn(), _admin_logger())}


@api_router.post("/jobs/cancel-pending")
def jobs_cancel_pending() -> dict[str, int]:
    return {"count": cancel_all_pending_jobs(_get_conn(), _admin_logger())}


@api_router.post("/jobs/clear-finished")
def jobs_clear_finished() -> dict[str, int]:
    return {"count": clear_finished_jobs(_get_conn(), _admin_logger())}


@api_router.post("/jobs/queue-today")
def jobs_queue_today(payload: QueueTodayRequest) -> dict[str, int]:
    conn = _get_conn()
    config = load_runtime_config(conn)
    return queue_missing_today_jobs(
        conn, config, tz_offset_minutes=payload.tz_offset_minutes, logger=_admin_logger()
    )


@api_router.get("/jobs/{job_id}")
def jobs_read(job_id: str) -> dict[str, object]:
    conn = _get_conn()
    job = get_job(conn, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job_not_found")
    return {**asdict(job), "runs": list_job_runs(conn, job_id)}


@api_router.post("/jobs/{job_id}/cancel")
def jobs_cancel(job_id: str) -> dict[str, object]:
    conn = _get_conn()
    job = _job_action(lambda: cancel_pending_job(conn, job_id, _admin_logger()))
    return asdict(job)


@api_router.post("/jobs/{job_id}/run-now")
def jobs_run_now(job_id: str) -> dict[str, object]:
    conn = _get_conn()
    job = _job_action(lambda: run_job_now(conn, job_id, _admin_logger()))
    return asdict(job)


@api_router.delete("/jobs/{job_id}")
def jobs_delete(job_id: str) -> dict[str, str]:
    conn = _get_conn()
    _job_action(lambda: delete_job(conn, job_id, _admin_logger()))
    return {"status": "deleted", "job_id": job_id}


@api_router.post("/articles/{article_id}/feedback")
def article_feedback(article_id: str, payload: FeedbackRequest) -> dict[str, str]:
    if not 1 <= payload.rating <= 5:
        raise HTTPException(status_code=400, detail="rating_out_of_range")
    conn = _get_conn()
    if get_article(conn, article_id) is None:
        raise HTTPException(status_code=404, detail="article_not_found")
    feedback_id = add_article_feedback(conn, article_id, payload.rating, payload.comment)
    job_id = enqueue_job(conn, "refresh_profile")
    return {"feedback_id": feedback_id, "job_id": job_id}


@api_router.get("/admin/orphans/preview")
def orphans_preview() -> dict[str, object]:
    return preview_orphans(_get_conn())


@api_router.post("/admin/orphans/run")
def orphans_run(payload: OrphanRunRequest) -> dict[str, object]:
    conn = _get_conn()
    config = load_runtime_config(conn)
    limit = clamp_orphan_cleanup_limit(
        payload.limit if payload.limit is not None else config.maintenance.orphan_manual_limit
    )
    stats = delete_orphan_articles_batch(
        conn, limit, dry_run=payload.dry_run, logger=_admin_logger()
    )
    return stats.as_dict()


@api_router.post("/admin/retention/run")
def retention_run() -> dict[str, object]:
    conn = _get_conn()
    config = load_runtime_config(conn)
    return run_retention_cleanup(conn, config.retention, logger=_admin_logger()).as_dict()


app.include_router(api_router)


@app.exception_handler(ConfigError)
async def _config_error_handler(request: Request, exc: ConfigError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=400)


def _job_action(action) -> Any:
    try:
        return action()
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="job_not_found") from exc
    except JobConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


def _run_pull_in_background(run_id: str) -> None:
    logger = logging.getLogger("nebularnews.pull")
    conn = None
    try:
        conn = init_db(get_state_db_path())
        config = load_runtime_config(conn)
        run_pull_run(conn, config, run_id, logger=logger)
    except Exception as exc:  # noqa: BLE001
        safe_log_event(logger, logging.ERROR, "pull_background_failed", run_id=run_id, error=str(exc))
    finally:
        if conn is not None:
            conn.close()


def _admin_logger() -> logging.Logger:
    return logging.getLogger("nebularnews.admin")


def _setup_logging() -> None:
    configure_logging("nebularnews.admin")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("nebularnews")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn() -> Any:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn
