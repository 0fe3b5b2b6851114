import logging
from typing import Any, Dict, Iterable, Optional

from concrete_jobs.client.api import JobsApiClient, JobsApiError
from concrete_jobs.client.monitor import JobMonitor
from concrete_jobs.client.notify import ToastQueue
from concrete_jobs.client.state import JobBoard
from concrete_jobs.models import JobStatus, JobType
from concrete_jobs.schemas import JobResponse

logger = logging.getLogger(__name__)

_LABELS = {
    JobType.IMAGE_ENRICHMENT: "Image enrichment",
    JobType.CONTRACTOR_ENRICHMENT: "Contractor enrichment",
    JobType.REVIEW_ENRICHMENT: "Review enrichment",
}


def job_label(job_type: JobType) -> str:
    return _LABELS.get(JobType(job_type), JobType(job_type).value)


class JobActions:
    def __init__(
        self,
        api: JobsApiClient,
        board: JobBoard,
        notifier: ToastQueue,
        monitor: Optional[JobMonitor] = None,
        blocking_types: Optional[Iterable[JobType]] = None,
    ):
        self.api = api
        self.board = board
        self.notifier = notifier
        self.monitor = monitor
        # None: any active job blocks queueing
        self.blocking_types = (
            frozenset(JobType(t) for t in blocking_types) if blocking_types is not None else None
        )

    def blocking_job(self) -> Optional[JobResponse]:
        for job in self.board.jobs():
            if not job.status.is_active:
                continue
            if self.blocking_types is None or job.job_type in self.blocking_types:
                return job
        return None

    def can_cancel(self, job_id: str) -> bool:
        job = self.board.get(job_id)
        return job is not None and job.status == JobStatus.PENDING

    def can_retry(self, job_id: str) -> bool:
        job = self.board.get(job_id)
        return job is not None and job.status == JobStatus.FAILED

    def _follow(self, job: JobResponse) -> None:
        if self.monitor is not None:
            self.monitor.subscribe(job.id)

    def queue_job(self, job_type: JobType, payload: Optional[Dict[str, Any]] = None) -> Optional[JobResponse]:
        job_type = JobType(job_type)
        blocking = self.blocking_job()
        if blocking is not None:
            logger.info("Not queueing %s: job %s is %s", job_type.value, blocking.id, blocking.status.value)
            self.notifier.info(
                "Job already running",
                f"{job_label(blocking.job_type)} job is {blocking.status.value}. Wait for it to finish.",
            )
            return None
        try:
            job = self.api.create_job(job_type, payload)
        except JobsApiError as e:
            self.notifier.error(f"Failed to queue {job_label(job_type).lower()} job", e.message)
            return None
        self.board.upsert(job)
        self.notifier.success("Job queued", f"{job_label(job_type)} job {job.id[:8]} queued.")
        self._follow(job)
        return job

    def cancel_job(self, job_id: str) -> Optional[JobResponse]:
        if not self.can_cancel(job_id):
            logger.debug("Cancel ignored for %s: not pending", job_id)
            return None
        try:
            job = self.api.cancel_job(job_id)
        except JobsApiError as e:
            self.notifier.error("Failed to cancel job", e.message)
            return None
        self.board.upsert(job)
        self.notifier.success("Job cancelled", f"Job {job_id[:8]} cancelled.")
        return job

    def retry_job(self, job_id: str) -> Optional[JobResponse]:
        if not self.can_retry(job_id):
            logger.debug("Retry ignored for %s: not failed", job_id)
            return None
        try:
            job = self.api.retry_job(job_id)
        except JobsApiError as e:
            self.notifier.error("Failed to retry job", e.message)
            return None
        self.board.upsert(job, reopen=True)
        self.notifier.success("Job queued for retry", f"Job {job_id[:8]} will run again.")
        self._follow(job)
        return job
