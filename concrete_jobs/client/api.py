import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import requests

from concrete_jobs.client.events import EventStream
from concrete_jobs.client.state import newest_first
from concrete_jobs.models import JobStatus, JobType
from concrete_jobs.schemas import DEFAULT_PAGE_LIMIT, JobResponse, offset_for_page
from concrete_jobs.settings import settings

logger = logging.getLogger(__name__)


class JobsApiError(Exception):
    """Non-2xx answer or transport failure (status_code 0)."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def __str__(self) -> str:
        return f"{self.message} (HTTP {self.status_code})" if self.status_code else self.message


@dataclass
class JobPage:
    jobs: List[JobResponse]
    total: int
    page: int
    limit: int
    offset: int
    total_pages: int


@dataclass
class JobLog:
    id: str
    action: str
    message: str
    level: str
    created_at: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "JobLog":
        return cls(
            id=str(d.get("id", "")),
            action=str(d.get("action", "")),
            message=str(d.get("message", "")),
            level=str(d.get("level", "info")),
            created_at=str(d.get("createdAt", "")),
            metadata=dict(d.get("metadata") or {}),
        )


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text.strip() or resp.reason or "Request failed"
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list):
        # FastAPI validation errors
        return "; ".join(str(d.get("msg", d)) if isinstance(d, dict) else str(d) for d in detail)
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return resp.reason or "Request failed"


class JobsApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        auth: Optional[Tuple[str, str]] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self.session.auth = auth or (settings.BASIC_USER, settings.BASIC_PASS)

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise JobsApiError(0, f"Network error: {e}") from e
        if not resp.ok:
            raise JobsApiError(resp.status_code, _error_message(resp))
        try:
            return resp.json()
        except ValueError as e:
            raise JobsApiError(resp.status_code, "Invalid JSON response") from e

    # ----- queries -----
    def list_jobs(
        self,
        job_type: Optional[JobType] = None,
        status: Optional[JobStatus] = None,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> JobPage:
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if job_type:
            params["jobType"] = JobType(job_type).value
        if status:
            params["status"] = JobStatus(status).value
        body = self._request("GET", "/api/jobs", params=params)
        p = body.get("pagination") or {}
        jobs = [JobResponse.model_validate(j) for j in body.get("data") or []]
        return JobPage(
            jobs=jobs,
            total=int(p.get("total", len(jobs))),
            page=int(p.get("page", 1)),
            limit=int(p.get("limit", limit)),
            offset=int(p.get("offset", offset)),
            total_pages=int(p.get("totalPages", 1)),
        )

    def list_page(self, page: int, limit: int = DEFAULT_PAGE_LIMIT, **filters) -> JobPage:
        return self.list_jobs(limit=limit, offset=offset_for_page(page, limit), **filters)

    def list_active_jobs(self, job_type: Optional[JobType] = None, limit: int = 10) -> List[JobResponse]:
        """Pending and processing jobs, newest first.

        Filtered on the server per status so an old active job is never
        pushed out of the page by newer finished ones.
        """
        jobs: List[JobResponse] = []
        for status in (JobStatus.PROCESSING, JobStatus.PENDING):
            jobs.extend(self.list_jobs(job_type=job_type, status=status, limit=limit).jobs)
        return newest_first(jobs)[:limit]

    def get_job(self, job_id: str) -> JobResponse:
        return JobResponse.model_validate(self._request("GET", f"/api/jobs/{job_id}")["data"])

    def get_job_logs(self, job_id: str) -> List[JobLog]:
        body = self._request("GET", f"/api/jobs/{job_id}/logs")
        return [JobLog.from_dict(d) for d in body.get("data") or []]

    # ----- commands -----
    def create_job(self, job_type: JobType, payload: Optional[Dict[str, Any]] = None) -> JobResponse:
        body = self._request(
            "POST",
            "/api/jobs",
            json={"jobType": JobType(job_type).value, "payload": payload or {}},
        )
        return JobResponse.model_validate(body["data"])

    def cancel_job(self, job_id: str) -> JobResponse:
        return JobResponse.model_validate(self._request("POST", f"/api/jobs/{job_id}/cancel")["data"])

    def retry_job(self, job_id: str) -> JobResponse:
        return JobResponse.model_validate(self._request("POST", f"/api/jobs/{job_id}/retry")["data"])

    # ----- streams -----
    def _open_stream(self, path: str) -> EventStream:
        try:
            resp = self.session.get(
                self._url(path),
                headers={"Accept": "text/event-stream"},
                stream=True,
                timeout=(self.timeout, None),  # no read timeout on a push channel
            )
        except requests.RequestException as e:
            raise JobsApiError(0, f"Network error: {e}") from e
        if not resp.ok:
            message = _error_message(resp)
            resp.close()
            raise JobsApiError(resp.status_code, message)
        logger.debug("Opened event stream %s", path)
        return EventStream(resp)

    def stream_job(self, job_id: str) -> EventStream:
        return self._open_stream(f"/api/jobs/{job_id}/stream")

    def stream_jobs(self) -> EventStream:
        return self._open_stream("/api/jobs/stream")
