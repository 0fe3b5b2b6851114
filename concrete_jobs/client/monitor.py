"""
Job monitor: switches between discovery polling and the push channel.

    idle --start()--> polling  (no active job)
                  `-> subscribed (active job)
    polling    --active job found-->       subscribed  (poller stops, channel opens)
    subscribed --board has no active job--> polling    (channel closes after a short
                                                        delay, poller resumes)
"""

import logging
import threading
from enum import Enum
from typing import Optional

from concrete_jobs.client.api import JobsApiClient, JobsApiError
from concrete_jobs.client.channel import JobStatusChannel
from concrete_jobs.client.poller import JobDiscoveryPoller
from concrete_jobs.client.state import JobBoard
from concrete_jobs.models import JobType
from concrete_jobs.schemas import JobResponse
from concrete_jobs.settings import settings

logger = logging.getLogger(__name__)


class MonitorState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    SUBSCRIBED = "subscribed"


class JobMonitor:
    def __init__(
        self,
        api: JobsApiClient,
        board: Optional[JobBoard] = None,
        job_type: Optional[JobType] = None,
        poll_interval: Optional[float] = None,
        reconnect_delay: Optional[float] = None,
        handoff_delay: Optional[float] = None,
        channel: Optional[JobStatusChannel] = None,
        poller: Optional[JobDiscoveryPoller] = None,
    ):
        self.api = api
        self.board = board or JobBoard()
        self.job_type = job_type
        self.handoff_delay = settings.DISCONNECT_DELAY_SECONDS if handoff_delay is None else handoff_delay
        self.channel = channel or JobStatusChannel(api, self.board, reconnect_delay=reconnect_delay)
        self.poller = poller or JobDiscoveryPoller(
            api, self._on_job_found, interval=poll_interval, job_type=job_type
        )
        self._lock = threading.RLock()
        self._state = MonitorState.IDLE
        self._unsubscribe = None

    @property
    def state(self) -> MonitorState:
        with self._lock:
            return self._state

    def start(self) -> MonitorState:
        with self._lock:
            if self._state is not MonitorState.IDLE:
                return self._state
            self._unsubscribe = self.board.subscribe(self._on_board_change)
            self._state = MonitorState.POLLING

        try:
            active = self.api.list_active_jobs(job_type=self.job_type)
        except JobsApiError as e:
            logger.warning("Initial active job fetch failed: %s", e)
            active = []

        if active:
            self._on_job_found(active[0])
        else:
            self._enter_polling()
        return self.state

    def subscribe(self, job_id: str) -> bool:
        """Follow `job_id` over the push channel (after queue/retry)."""
        with self._lock:
            if self._state is MonitorState.IDLE:
                return False
            if not self.channel.connect(job_id):
                return False
            self._state = MonitorState.SUBSCRIBED
        self.poller.stop_polling()
        logger.info("Monitor subscribed to job %s", job_id)
        return True

    def stop(self) -> None:
        with self._lock:
            self._state = MonitorState.IDLE
            unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe:
            unsubscribe()
        self.poller.stop_polling()
        self.channel.disconnect()

    def dispose(self) -> None:
        self.stop()
        self.poller.dispose()
        self.channel.dispose()

    # ----- transitions -----
    def _on_job_found(self, job: JobResponse) -> None:
        # a listing from the server is authoritative, including a job
        # retried elsewhere after we saw it fail
        self.board.upsert(job, reopen=True)
        if not self.subscribe(job.id):
            self._enter_polling()

    def _enter_polling(self) -> None:
        with self._lock:
            if self._state is MonitorState.IDLE:
                return
            self._state = MonitorState.POLLING
        self.poller.start_polling()

    def _on_board_change(self, board: JobBoard) -> None:
        with self._lock:
            if self._state is not MonitorState.SUBSCRIBED:
                return
            active = board.active_job
            if active is not None:
                if active.id != self.channel.job_id:
                    # a newer job took over (e.g. queued from this client)
                    self.subscribe(active.id)
                return
            self._state = MonitorState.POLLING
        logger.info("No active job; back to discovery polling")
        self.channel.disconnect(delay=self.handoff_delay)
        self.poller.start_polling()
