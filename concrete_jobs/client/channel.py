"""
Job status channel: a push connection to /api/jobs/{id}/stream.

- `progress` events update the job on the board in place
- `complete` / `failed` / `cancelled` close the connection and re-fetch
  the full job
- connection errors are never raised: while the job is still active the
  channel reconnects after a fixed delay

Each connection owns a daemon reader thread and a stop Event. Closing the
streaming response is how a blocked reader is interrupted.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from pydantic import ValidationError

from concrete_jobs.client.api import JobsApiClient, JobsApiError
from concrete_jobs.client.events import EventStream, ServerSentEvent
from concrete_jobs.client.state import JobBoard
from concrete_jobs.schemas import JobProgress
from concrete_jobs.settings import settings

logger = logging.getLogger(__name__)

PROGRESS_EVENT = "progress"
TERMINAL_EVENTS = frozenset({"complete", "failed", "cancelled"})


@dataclass(eq=False)
class _Connection:
    job_id: str
    stop: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    stream: Optional[EventStream] = None


class JobStatusChannel:
    def __init__(
        self,
        api: JobsApiClient,
        board: JobBoard,
        reconnect_delay: Optional[float] = None,
    ):
        self._api = api
        self._board = board
        self._reconnect_delay = (
            settings.RECONNECT_DELAY_SECONDS if reconnect_delay is None else reconnect_delay
        )
        self._lock = threading.Lock()
        self._conn: Optional[_Connection] = None
        self._timer: Optional[threading.Timer] = None
        self._disposed = False

    # ----- state -----
    @property
    def connected(self) -> bool:
        with self._lock:
            return self._conn is not None and not self._conn.stop.is_set()

    @property
    def job_id(self) -> Optional[str]:
        with self._lock:
            return self._conn.job_id if self._conn else None

    # ----- lifecycle -----
    def connect(self, job_id: str) -> bool:
        """Open the channel for `job_id`.

        Returns False without opening anything when the board has no active
        job with that id. Connecting to the job already connected is a no-op.
        """
        if not self._board.is_active(job_id):
            logger.debug("Job %s is not active; channel not opened", job_id)
            return False

        with self._lock:
            if self._disposed:
                return False
            self._cancel_timer_locked()
            old = self._conn
            if old is not None and old.job_id == job_id and not old.stop.is_set():
                return True
            conn = _Connection(job_id)
            conn.thread = threading.Thread(
                target=self._run,
                args=(conn,),
                name=f"job-channel-{job_id[:8]}",
                daemon=True,
            )
            self._conn = conn

        if old is not None:
            self._close(old)
        logger.info("Opening job channel for %s", job_id)
        conn.thread.start()
        return True

    def disconnect(self, delay: Optional[float] = None) -> None:
        """Close now, or after `delay` seconds unless connect() is called first."""
        with self._lock:
            self._cancel_timer_locked()
            conn = self._conn
            if conn is None:
                return
            if delay:
                self._timer = threading.Timer(delay, self._close_if_current, args=(conn,))
                self._timer.daemon = True
                self._timer.start()
                return
            self._conn = None
        self._close(conn)

    def dispose(self) -> None:
        with self._lock:
            self._disposed = True
            self._cancel_timer_locked()
            conn, self._conn = self._conn, None
        if conn is not None:
            self._close(conn)
            if conn.thread is not None and conn.thread is not threading.current_thread():
                conn.thread.join(timeout=2.0)

    def _cancel_timer_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _close_if_current(self, conn: _Connection) -> None:
        with self._lock:
            if self._conn is not conn:
                return
            self._conn = None
            self._timer = None
        self._close(conn)

    def _close(self, conn: _Connection) -> None:
        conn.stop.set()
        stream = conn.stream
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.debug("Error closing stream for %s: %s", conn.job_id, e)
        logger.info("Closed job channel for %s", conn.job_id)

    def _release(self, conn: _Connection) -> None:
        conn.stop.set()
        with self._lock:
            if self._conn is conn:
                self._conn = None
                self._cancel_timer_locked()

    # ----- reader thread -----
    def _run(self, conn: _Connection) -> None:
        try:
            while not conn.stop.is_set():
                terminal = self._consume(conn)
                if terminal is not None:
                    self._finish(conn, terminal)
                    return
                if conn.stop.is_set():
                    return

                # stream ended or failed without a terminal event
                self._refresh(conn.job_id)
                if not self._board.is_active(conn.job_id):
                    logger.info("Job %s is no longer active; channel closed", conn.job_id)
                    return
                logger.info("Job channel for %s lost; reconnecting in %ss", conn.job_id, self._reconnect_delay)
                if conn.stop.wait(self._reconnect_delay):
                    return
        finally:
            self._release(conn)

    def _consume(self, conn: _Connection) -> Optional[JobProgress]:
        """Read events until a terminal one (returned) or the stream ends (None)."""
        try:
            stream = self._api.stream_job(conn.job_id)
        except JobsApiError as e:
            logger.warning("Job channel for %s could not connect: %s", conn.job_id, e)
            return None

        conn.stream = stream
        if conn.stop.is_set():
            # closed while we were connecting
            stream.close()
            return None

        try:
            with stream:
                for event in stream:
                    if conn.stop.is_set():
                        return None
                    progress = self.handle_event(conn.job_id, event)
                    if progress is not None:
                        return progress
        except Exception as e:
            if not conn.stop.is_set():
                logger.warning("Job channel for %s failed: %s", conn.job_id, e)
        return None

    def handle_event(self, job_id: str, event: ServerSentEvent) -> Optional[JobProgress]:
        """Apply one event; returns the snapshot when it is terminal."""
        if event.event == "error":
            logger.warning("Job stream for %s reported an error: %s", job_id, event.data)
            return None
        if event.event != PROGRESS_EVENT and event.event not in TERMINAL_EVENTS:
            logger.debug("Ignoring %s event on job channel %s", event.event, job_id)
            return None
        try:
            progress = JobProgress.model_validate(event.json())
        except (ValueError, ValidationError) as e:
            logger.warning("Malformed %s event for %s: %s", event.event, job_id, e)
            return None
        if progress.id != job_id:
            return None

        if event.event == PROGRESS_EVENT:
            self._board.apply_progress(progress)
            return None
        return progress

    def _finish(self, conn: _Connection, progress: JobProgress) -> None:
        self._release(conn)
        logger.info("Job %s finished with status %s", conn.job_id, progress.status.value)
        self._board.apply_progress(progress)
        self._refresh(conn.job_id)

    def _refresh(self, job_id: str) -> None:
        try:
            job = self._api.get_job(job_id)
        except JobsApiError as e:
            if e.status_code == 404:
                self._board.remove(job_id)
            else:
                logger.warning("Could not refresh job %s: %s", job_id, e)
            return
        self._board.upsert(job)
