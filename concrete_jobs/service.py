"""
Job service: the rules of the job queue.

- at most one active (pending/processing) job per job type
- cancel is refused for completed/cancelled jobs
- manual retry only from failed, and it resets the attempt counter
- executor failures are retried automatically with a fixed delay ladder
  until max_attempts is reached
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session

from concrete_jobs.errors import (
    InvalidJobTransitionError,
    JobConflictError,
    JobError,
    JobNotFoundError,
    JobValidationError,
)
from concrete_jobs.executors import JobExecutorRegistry
from concrete_jobs.models import BackgroundJob, JobStatus, JobType, SystemLog, utc_now
from concrete_jobs.repository import JobRepository, SystemLogRepository
from concrete_jobs.schemas import JobProgress, JobResponse, validate_payload
from concrete_jobs.settings import settings

logger = logging.getLogger(__name__)

LOG_ENTITY = "background_job"


def retry_delay_minutes(attempts: int, delays: List[int]) -> int:
    """Delay before automatic retry number `attempts` (1-based); the last step repeats."""
    if not delays:
        return 0
    index = max(0, attempts - 1)
    return delays[index] if index < len(delays) else delays[-1]


class JobService:
    def __init__(self, session: Session, registry: Optional[JobExecutorRegistry] = None):
        self.session = session
        self.repository = JobRepository(session)
        self.logs = SystemLogRepository(session)
        self.registry = registry or JobExecutorRegistry()

    # ----- logging helper -----
    def _log(self, job_id: str, action: str, message: str, level: str = "info", **details) -> None:
        self.logs.add(
            SystemLog(
                entity_type=LOG_ENTITY,
                entity_id=job_id,
                action=action,
                level=level,
                message=message,
                details=details,
            )
        )

    def _require(self, job_id: str) -> BackgroundJob:
        job = self.repository.find_by_id(job_id)
        if not job:
            raise JobNotFoundError(job_id)
        return job

    # ----- commands -----
    def create_job(
        self,
        job_type: JobType,
        payload: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None,
    ) -> BackgroundJob:
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise JobValidationError(f"Unknown job type: {job_type}") from None
        normalized = validate_payload(job_type, payload)

        if self.repository.is_job_type_processing(job_type):
            raise JobConflictError(
                f"A {job_type.value} job is already processing. Please wait for it to complete."
            )
        if self.repository.find_active(job_type):
            raise JobConflictError(
                f"A {job_type.value} job is already queued. Please wait for it to complete."
            )

        job = self.repository.create(
            job_type,
            payload=normalized,
            created_by=created_by,
            max_attempts=settings.JOB_MAX_ATTEMPTS,
        )
        self._log(job.id, "job_created", f"Created {job_type.value} job", created_by=created_by)
        logger.info("Created %s job %s", job_type.value, job.id)
        return job

    def cancel_job(self, job_id: str, cancelled_by: Optional[str] = None) -> BackgroundJob:
        job = self._require(job_id)
        if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            raise InvalidJobTransitionError(f"Cannot cancel job with status: {job.status.value}")

        job = self.repository.set_status(job_id, JobStatus.CANCELLED, completed=True)
        self._log(job_id, "job_cancelled", "Job cancelled", cancelled_by=cancelled_by)
        logger.info("Cancelled job %s", job_id)
        return job

    def retry_job(self, job_id: str) -> BackgroundJob:
        job = self._require(job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidJobTransitionError(f"Can only retry failed jobs (current: {job.status.value})")

        job = self.repository.reset_for_retry(job_id, max_attempts=settings.JOB_MAX_ATTEMPTS)
        self._log(job_id, "job_retried", "Job queued for manual retry")
        logger.info("Queued job %s for retry", job_id)
        return job

    def execute_job(self, job_id: str) -> Dict[str, Any]:
        """Run a claimed (processing) job through its executor."""
        job = self._require(job_id)
        if job.status != JobStatus.PROCESSING:
            raise InvalidJobTransitionError(
                f"Job {job_id} is not in processing status (current: {job.status.value})"
            )

        job_type = job.job_type
        self._log(job_id, "job_started", f"Started {job_type.value} job", attempt=job.attempts)
        logger.info("Executing %s job %s (attempt %s/%s)", job_type.value, job_id, job.attempts, job.max_attempts)

        def report_progress(processed_items=None, failed_items=None, total_items=None):
            try:
                self.repository.update_progress(
                    job_id,
                    processed_items=processed_items,
                    failed_items=failed_items,
                    total_items=total_items,
                )
            except Exception as e:
                # progress is advisory; the job keeps running
                self.session.rollback()
                logger.warning("Failed to update progress for job %s: %s", job_id, e)

        try:
            executor = self.registry.get(job_type)
            if executor is None:
                raise JobError(f"No executor registered for job type: {job_type.value}")
            result = executor(job, report_progress) or {}
        except Exception as e:
            self.session.rollback()
            self._handle_failure(job_id, str(e) or e.__class__.__name__)
            raise

        job = self.repository.set_result(job_id, result)
        if job is None:
            self._log_discarded(job_id, "result")
            return result
        self._log(job_id, "job_completed", f"Completed {job_type.value} job", result=result)
        logger.info("Completed %s job %s", job_type.value, job_id)

        if job.payload.get("continuous") and result.get("shouldContinue"):
            self._queue_continuation(job)
        return result

    def _log_discarded(self, job_id: str, what: str) -> None:
        job = self.repository.find_by_id(job_id)
        status = job.status.value if job else "deleted"
        self._log(job_id, "job_outcome_discarded", f"Job is {status}; executor {what} discarded", level="warning")
        logger.warning("Job %s is %s; executor %s discarded", job_id, status, what)

    def _handle_failure(self, job_id: str, message: str) -> None:
        job = self._require(job_id)
        if job.attempts < job.max_attempts:
            delay = retry_delay_minutes(job.attempts, settings.RETRY_DELAYS_MINUTES)
            if self.repository.schedule_retry(job_id, message, utc_now() + timedelta(minutes=delay)) is None:
                self._log_discarded(job_id, "failure")
                return
            self._log(
                job_id,
                "job_retry_scheduled",
                f"Job failed, retrying in {delay} minutes: {message}",
                level="warning",
                attempt=job.attempts,
            )
            logger.warning(
                "Job %s failed (attempt %s/%s), retrying in %s minutes",
                job_id, job.attempts, job.max_attempts, delay,
            )
        else:
            if self.repository.fail_processing(job_id, message) is None:
                self._log_discarded(job_id, "failure")
                return
            self._log(job_id, "job_failed", f"Job failed: {message}", level="error", attempt=job.attempts)
            logger.error("Job %s failed permanently after %s attempts: %s", job_id, job.max_attempts, message)

    def _queue_continuation(self, job: BackgroundJob) -> Optional[BackgroundJob]:
        try:
            nxt = self.create_job(job.job_type, job.payload, created_by=job.created_by)
        except JobConflictError as e:
            logger.info("Continuous mode: next %s batch not queued: %s", job.job_type.value, e)
            return None
        logger.info("Continuous mode: queued %s job %s after %s", job.job_type.value, nxt.id, job.id)
        return nxt

    def time_out_stuck_jobs(self) -> List[BackgroundJob]:
        minutes = settings.JOB_TIMEOUT_MINUTES
        message = f"Job timed out after {minutes} minutes"
        stuck = self.repository.time_out_stuck(utc_now() - timedelta(minutes=minutes), message)
        for job in stuck:
            self._log(job.id, "job_timed_out", message, level="error")
            logger.error("Job %s timed out", job.id)
        return stuck

    def claim_next(self) -> Optional[BackgroundJob]:
        return self.repository.claim_next_pending()

    # ----- queries -----
    def get_job(self, job_id: str) -> Optional[BackgroundJob]:
        return self.repository.find_by_id(job_id)

    def get_job_progress(self, job_id: str) -> Optional[JobProgress]:
        job = self.repository.find_by_id(job_id)
        return JobProgress.from_job(job) if job else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[BackgroundJob], int]:
        return self.repository.find_all(status=status, job_type=job_type, limit=limit, offset=offset)

    def list_active_jobs(self, job_type: Optional[JobType] = None) -> List[BackgroundJob]:
        return self.repository.find_active(job_type)

    def get_job_logs(self, job_id: str, limit: int = 100) -> List[SystemLog]:
        return self.logs.find_by_entity(LOG_ENTITY, job_id, limit=limit)

    @staticmethod
    def to_response(job: BackgroundJob) -> Dict[str, Any]:
        return JobResponse.from_job(job).to_json()
