"""
Server-Sent Events for job progress.

Two streams, both built by polling the database:
- per job: `progress` snapshots until a terminal event
  (`complete`, `failed`, `cancelled`) or `error`, then the stream ends
- all active jobs: a `jobs` event on connect, then again only when the
  active set or any job's counters change
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from concrete_jobs.models import BackgroundJob, JobStatus
from concrete_jobs.schemas import JobProgress, JobResponse
from concrete_jobs.service import JobService

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

TERMINAL_EVENTS = {
    JobStatus.COMPLETED: "complete",
    JobStatus.FAILED: "failed",
    JobStatus.CANCELLED: "cancelled",
}

JobKey = Tuple[str, int, int]  # status, processed, failed
Disconnected = Callable[[], Awaitable[bool]]


def format_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def job_event_name(status: JobStatus) -> str:
    return TERMINAL_EVENTS.get(JobStatus(status), "progress")


def _job_key(job: BackgroundJob) -> JobKey:
    return (JobStatus(job.status).value, job.processed_items, job.failed_items)


def diff_active_jobs(
    previous: Dict[str, JobKey], jobs: List[BackgroundJob]
) -> Tuple[bool, List[str], Dict[str, JobKey]]:
    """Compare the active set against the last one sent.

    Returns (changed, removed_ids, current) where `current` becomes the
    next `previous` once an event has been emitted.
    """
    current = {job.id: _job_key(job) for job in jobs}
    removed = [job_id for job_id in previous if job_id not in current]
    changed = bool(removed) or any(previous.get(job_id) != key for job_id, key in current.items())
    return changed, removed, current


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _never_disconnected() -> bool:
    return False


def _load_progress(engine: Engine, job_id: str) -> Optional[JobProgress]:
    with Session(engine) as s:
        return JobService(s).get_job_progress(job_id)


def _load_active_jobs(engine: Engine) -> List[BackgroundJob]:
    with Session(engine) as s:
        return JobService(s).list_active_jobs()


async def stream_job(
    engine: Engine,
    job_id: str,
    interval: float,
    is_disconnected: Disconnected = _never_disconnected,
) -> AsyncIterator[str]:
    while True:
        if await is_disconnected():
            logger.debug("Job stream client disconnected (%s)", job_id)
            return
        try:
            progress = await run_in_threadpool(_load_progress, engine, job_id)
        except Exception as e:
            logger.error("Job stream poll error for %s: %s", job_id, e)
            yield format_event("error", {"error": "Failed to fetch job progress"})
            return

        if progress is None:
            yield format_event("error", {"error": "Job not found"})
            return

        event = job_event_name(progress.status)
        yield format_event(event, progress.to_json())
        if event != "progress":
            return
        await asyncio.sleep(interval)


async def stream_active_jobs(
    engine: Engine,
    interval: float,
    is_disconnected: Disconnected = _never_disconnected,
    max_polls: Optional[int] = None,
) -> AsyncIterator[str]:
    previous: Dict[str, JobKey] = {}
    try:
        jobs = await run_in_threadpool(_load_active_jobs, engine)
        _, _, previous = diff_active_jobs({}, jobs)
        yield format_event(
            "jobs",
            {"jobs": [JobResponse.from_job(j).to_json() for j in jobs], "timestamp": _now_iso()},
        )
    except Exception as e:
        # the poll loop below retries
        logger.warning("Initial active jobs fetch failed: %s", e)

    polls = 0
    while max_polls is None or polls < max_polls:
        polls += 1
        if await is_disconnected():
            logger.debug("Jobs stream client disconnected")
            return
        await asyncio.sleep(interval)
        try:
            jobs = await run_in_threadpool(_load_active_jobs, engine)
        except Exception as e:
            logger.error("Jobs stream poll error: %s", e)
            yield format_event("error", {"error": "Failed to fetch jobs"})
            await asyncio.sleep(interval)
            continue

        changed, removed, current = diff_active_jobs(previous, jobs)
        if changed:
            yield format_event(
                "jobs",
                {
                    "jobs": [JobResponse.from_job(j).to_json() for j in jobs],
                    "removedJobIds": removed,
                    "timestamp": _now_iso(),
                },
            )
            previous = current
