import logging
import threading
from typing import Callable, Optional

from concrete_jobs.client.api import JobsApiClient, JobsApiError
from concrete_jobs.models import JobType
from concrete_jobs.schemas import JobResponse
from concrete_jobs.settings import settings

logger = logging.getLogger(__name__)


class JobDiscoveryPoller:
    def __init__(
        self,
        api: JobsApiClient,
        on_found: Callable[[JobResponse], None],
        interval: Optional[float] = None,
        job_type: Optional[JobType] = None,
    ):
        self._api = api
        self._on_found = on_found
        self.interval = settings.DISCOVERY_POLL_SECONDS if interval is None else interval
        self.job_type = job_type
        self._lock = threading.Lock()
        self._stop: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def polling(self) -> bool:
        with self._lock:
            return self._stop is not None and not self._stop.is_set()

    def poll_once(self) -> Optional[JobResponse]:
        """One discovery round; hands the newest active job to `on_found`."""
        try:
            active = self._api.list_active_jobs(job_type=self.job_type)
        except JobsApiError as e:
            logger.warning("Job discovery poll failed: %s", e)
            return None
        if not active:
            return None
        job = active[0]
        logger.info("Discovered active job %s (%s)", job.id, job.status.value)
        self._on_found(job)
        return job

    def start_polling(self) -> None:
        with self._lock:
            if self._stop is not None and not self._stop.is_set():
                return
            stop = threading.Event()
            self._stop = stop
            self._thread = threading.Thread(
                target=self._run, args=(stop,), name="job-discovery-poller", daemon=True
            )
            thread = self._thread
        logger.debug("Job discovery polling started (every %ss)", self.interval)
        thread.start()

    def stop_polling(self) -> None:
        with self._lock:
            stop, self._stop = self._stop, None
            self._thread = None
        if stop is not None and not stop.is_set():
            stop.set()
            logger.debug("Job discovery polling stopped")

    def dispose(self) -> None:
        with self._lock:
            thread = self._thread
        self.stop_polling()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def _run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Job discovery callback failed")
            if stop.wait(self.interval):
                return
