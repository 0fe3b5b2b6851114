from contextlib import contextmanager
from functools import lru_cache
import logging
from typing import Optional

from fastapi import FastAPI, Depends, BackgroundTasks, Query, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from sqlalchemy.engine import Engine
from sqlmodel import Session

from concrete_jobs.auth import require_admin, require_runner_secret
from concrete_jobs.db import get_engine, get_session
from concrete_jobs.errors import JobError
from concrete_jobs.executors import JobExecutorRegistry
from concrete_jobs.models import JobStatus, JobType
from concrete_jobs.schemas import (
    CreateJobRequest,
    DEFAULT_PAGE_LIMIT,
    JobLogEntry,
    MAX_PAGE_LIMIT,
    Pagination,
)
from concrete_jobs.service import JobService
from concrete_jobs.settings import settings
from concrete_jobs.sse import SSE_HEADERS, stream_active_jobs, stream_job

logger = logging.getLogger(__name__)

app = FastAPI(title="Concrete directory jobs API")

@app.get("/healthz", include_in_schema=False)
def healthz():
    return {"ok": True}

# ----- CORS (admin UI is served from another origin in dev) -----
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----- dependencies -----
@lru_cache(maxsize=1)
def get_registry() -> JobExecutorRegistry:
    return JobExecutorRegistry().load(settings.JOB_EXECUTORS)

def get_service(
    session: Session = Depends(get_session),
    registry: JobExecutorRegistry = Depends(get_registry),
) -> JobService:
    return JobService(session, registry)

@contextmanager
def api_errors(action: str):
    """Domain errors keep their status; anything else becomes a 500 'Failed to ...'."""
    try:
        yield
    except HTTPException:
        raise
    except JobError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception:
        logger.exception("%s", action)
        raise HTTPException(status_code=500, detail=action)

# ----- jobs API -----
@app.get("/api/jobs")
def list_jobs(
    job_type: Optional[JobType] = Query(None, alias="jobType"),
    status: Optional[JobStatus] = Query(None),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
    svc: JobService = Depends(get_service),
    _: str = Depends(require_admin),
):
    with api_errors("Failed to list jobs"):
        jobs, total = svc.list_jobs(status=status, job_type=job_type, limit=limit, offset=offset)
        return {
            "success": True,
            "data": [svc.to_response(j) for j in jobs],
            "pagination": Pagination.build(total, limit, offset).to_json(),
        }

@app.post("/api/jobs")
def create_job(
    body: CreateJobRequest,
    svc: JobService = Depends(get_service),
    user: str = Depends(require_admin),
):
    with api_errors("Failed to create job"):
        job = svc.create_job(body.job_type, body.payload, created_by=user)
        return {"success": True, "data": svc.to_response(job), "message": "Job queued successfully"}

@app.get("/api/jobs/stream")
def jobs_stream(
    request: Request,
    engine: Engine = Depends(get_engine),
    _: str = Depends(require_admin),
):
    return StreamingResponse(
        stream_active_jobs(engine, settings.JOBS_STREAM_POLL_SECONDS, request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )

@app.get("/api/jobs/{job_id}")
def job_detail(job_id: str, svc: JobService = Depends(get_service), _: str = Depends(require_admin)):
    with api_errors("Failed to fetch job"):
        job = svc.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        data = svc.to_response(job)
        data["logs"] = [JobLogEntry.from_log(log).to_json() for log in svc.get_job_logs(job_id)]
        return {"success": True, "data": data}

@app.get("/api/jobs/{job_id}/logs")
def job_logs(job_id: str, svc: JobService = Depends(get_service), _: str = Depends(require_admin)):
    with api_errors("Failed to fetch job logs"):
        return {
            "success": True,
            "data": [JobLogEntry.from_log(log).to_json() for log in svc.get_job_logs(job_id, limit=100)],
        }

@app.post("/api/jobs/{job_id}/cancel")
def cancel_job(job_id: str, svc: JobService = Depends(get_service), user: str = Depends(require_admin)):
    with api_errors("Failed to cancel job"):
        job = svc.cancel_job(job_id, cancelled_by=user)
        return {"success": True, "data": svc.to_response(job), "message": "Job cancelled successfully"}

@app.post("/api/jobs/{job_id}/retry")
def retry_job(job_id: str, svc: JobService = Depends(get_service), _: str = Depends(require_admin)):
    with api_errors("Failed to retry job"):
        job = svc.retry_job(job_id)
        return {"success": True, "data": svc.to_response(job), "message": "Job queued for retry"}

@app.get("/api/jobs/{job_id}/stream")
def job_stream(
    job_id: str,
    request: Request,
    engine: Engine = Depends(get_engine),
    _: str = Depends(require_admin),
):
    return StreamingResponse(
        stream_job(engine, job_id, settings.JOB_STREAM_POLL_SECONDS, request.is_disconnected),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )

# ----- runner hook -----
def _execute_in_background(engine: Engine, registry: JobExecutorRegistry, job_id: str) -> None:
    with Session(engine) as s:
        try:
            JobService(s, registry).execute_job(job_id)
        except Exception as e:
            # failure (and retry scheduling) is already recorded on the job
            logger.warning("Job %s execution failed: %s", job_id, e)

@app.post("/api/jobs/{job_id}/execute", dependencies=[Depends(require_runner_secret)])
def execute_job(
    job_id: str,
    bg: BackgroundTasks,
    svc: JobService = Depends(get_service),
    engine: Engine = Depends(get_engine),
    registry: JobExecutorRegistry = Depends(get_registry),
):
    with api_errors("Failed to execute job"):
        job = svc.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        if job.status != JobStatus.PROCESSING:
            raise HTTPException(
                status_code=400,
                detail=f"Job {job_id} is not in processing status (current: {job.status.value})",
            )
    bg.add_task(_execute_in_background, engine, registry, job_id)
    return {"success": True, "data": {"id": job_id, "status": job.status.value}, "message": "Job dispatched"}
