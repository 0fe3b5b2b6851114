"""
Job runner: the worker loop that moves pending jobs through their executors.

Each tick:
1. fail jobs stuck in processing longer than JOB_TIMEOUT_MINUTES
2. claim the oldest runnable pending job (one processing job per type)
3. execute it in-process
"""

import logging
import threading
from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

from concrete_jobs.executors import JobExecutorRegistry
from concrete_jobs.service import JobService

logger = logging.getLogger(__name__)


class JobRunner:
    def __init__(self, engine: Engine, registry: JobExecutorRegistry, poll_seconds: float = 15.0):
        self.engine = engine
        self.registry = registry
        self.poll_seconds = poll_seconds

    def time_out_stuck_jobs(self) -> int:
        with Session(self.engine) as s:
            return len(JobService(s, self.registry).time_out_stuck_jobs())

    def claim_next(self) -> Optional[str]:
        with Session(self.engine) as s:
            job = JobService(s, self.registry).claim_next()
            if job is None:
                return None
            logger.info("Claimed %s job %s (attempt %s)", job.job_type.value, job.id, job.attempts)
            return job.id

    def execute(self, job_id: str) -> bool:
        with Session(self.engine) as s:
            try:
                JobService(s, self.registry).execute_job(job_id)
                return True
            except Exception as e:
                # JobService has already recorded the failure / scheduled the retry
                logger.warning("Job %s failed: %s", job_id, e)
                return False

    def run_once(self) -> Optional[str]:
        self.time_out_stuck_jobs()
        job_id = self.claim_next()
        if job_id:
            self.execute(job_id)
        return job_id

    def run_forever(self, stop: Optional[threading.Event] = None) -> None:
        stop = stop or threading.Event()
        logger.info(
            "Job runner started (executors: %s)",
            ", ".join(t.value for t in self.registry.registered_types()) or "none",
        )
        while not stop.is_set():
            try:
                job_id = self.run_once()
            except Exception:
                logger.exception("Job runner tick failed")
                job_id = None
            if not job_id:
                stop.wait(self.poll_seconds)
        logger.info("Job runner stopped")
