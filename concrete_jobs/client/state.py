"""
Observable client-side job state.

The board is what the admin views render from. Listeners are called after
every effective change (outside the lock), from whichever thread made the
change: the channel's reader thread, the poller thread, or the caller.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from concrete_jobs.schemas import JobProgress, JobResponse

logger = logging.getLogger(__name__)

Listener = Callable[["JobBoard"], None]


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _created_key(job: JobResponse) -> datetime:
    created = job.created_at
    if created is None:
        return _EPOCH
    return created if created.tzinfo else created.replace(tzinfo=timezone.utc)


def newest_first(jobs: Iterable[JobResponse]) -> List[JobResponse]:
    return sorted(jobs, key=_created_key, reverse=True)


class JobBoard:
    def __init__(self):
        self._lock = threading.RLock()
        self._jobs: Dict[str, JobResponse] = {}
        self._listeners: List[Listener] = []

    # ----- observers -----
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(self)
            except Exception:
                logger.exception("Job board listener failed")

    # ----- writes -----
    def _accepts(self, current: Optional[JobResponse], status, reopen: bool) -> bool:
        # terminal jobs only come back to life through an explicit retry
        if current is not None and current.status.is_terminal and status.is_active and not reopen:
            logger.debug("Ignoring %s update for terminal job %s", status.value, current.id)
            return False
        return True

    def upsert(self, job: JobResponse, reopen: bool = False) -> bool:
        with self._lock:
            current = self._jobs.get(job.id)
            if not self._accepts(current, job.status, reopen) or current == job:
                return False
            self._jobs[job.id] = job
        self._notify()
        return True

    def apply_progress(self, progress: JobProgress) -> bool:
        """Merge a streamed snapshot; last writer wins, duplicates are no-ops."""
        with self._lock:
            current = self._jobs.get(progress.id)
            if current is None:
                logger.debug("Progress for unknown job %s ignored", progress.id)
                return False
            if not self._accepts(current, progress.status, reopen=False):
                return False
            updated = current.model_copy(
                update={
                    "status": progress.status,
                    "total_items": progress.total_items,
                    "processed_items": progress.processed_items,
                    "failed_items": progress.failed_items,
                }
            )
            if updated == current:
                return False
            self._jobs[progress.id] = updated
        self._notify()
        return True

    def replace(self, jobs: Iterable[JobResponse]) -> None:
        """Swap in a fresh server listing."""
        with self._lock:
            self._jobs = {j.id: j for j in jobs}
        self._notify()

    def remove(self, job_id: str) -> None:
        with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return
        self._notify()

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()
        self._notify()

    # ----- reads -----
    def get(self, job_id: str) -> Optional[JobResponse]:
        with self._lock:
            return self._jobs.get(job_id)

    def jobs(self) -> List[JobResponse]:
        with self._lock:
            return newest_first(self._jobs.values())

    @property
    def active_job(self) -> Optional[JobResponse]:
        for job in self.jobs():
            if job.status.is_active:
                return job
        return None

    @property
    def has_active_job(self) -> bool:
        return self.active_job is not None

    def is_active(self, job_id: str) -> bool:
        job = self.get(job_id)
        return job is not None and job.status.is_active
