from unittest.mock import MagicMock

import pytest
import requests

from concrete_jobs.client.api import JobsApiClient, JobsApiError
from concrete_jobs.client.events import EventStream
from concrete_jobs.models import JobStatus, JobType

JOB = {
    "id": "abc",
    "jobType": "image_enrichment",
    "status": "processing",
    "attempts": 1,
    "maxAttempts": 3,
    "totalItems": 10,
    "processedItems": 4,
    "failedItems": 0,
    "payload": {"batchSize": 10, "continuous": False},
    "createdAt": "2024-05-01T12:00:00",
}


def response(status=200, body=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    resp.reason = "Error"
    resp.text = text
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def api(session):
    return JobsApiClient(base_url="http://jobs.test/", auth=("admin", "pw"), timeout=5, session=session)


def test_list_page_uses_offset_and_reads_pagination(api, session):
    session.request.return_value = response(
        body={
            "success": True,
            "data": [JOB],
            "pagination": {"total": 45, "page": 2, "limit": 20, "offset": 20, "totalPages": 3},
        }
    )

    page = api.list_page(2, 20, status=JobStatus.PROCESSING)

    session.request.assert_called_once_with(
        "GET",
        "http://jobs.test/api/jobs",
        timeout=5,
        params={"limit": 20, "offset": 20, "status": "processing"},
    )
    assert (page.total, page.page, page.total_pages) == (45, 2, 3)
    assert page.jobs[0].processed_items == 4
    assert page.jobs[0].job_type == JobType.IMAGE_ENRICHMENT
    assert session.auth == ("admin", "pw")


def test_list_active_jobs_queries_each_active_status(api, session):
    older = dict(JOB, id="queued", status="pending", createdAt="2024-05-01T11:00:00")
    session.request.side_effect = [
        response(body={"data": [JOB], "pagination": {}}),
        response(body={"data": [older], "pagination": {}}),
    ]

    active = api.list_active_jobs(job_type=JobType.IMAGE_ENRICHMENT)

    assert [j.id for j in active] == ["abc", "queued"]
    params = [c.kwargs["params"] for c in session.request.call_args_list]
    assert [p["status"] for p in params] == ["processing", "pending"]
    assert {p["jobType"] for p in params} == {"image_enrichment"}


def test_old_pending_job_is_not_hidden_by_newer_finished_jobs(api, session):
    jobs = [dict(JOB, id=f"done-{i}", status="completed", createdAt=f"2024-05-02T{10 + i:02d}:00:00") for i in range(10)]
    jobs.append(dict(JOB, id="waiting", status="pending", createdAt="2024-04-30T09:00:00"))

    def handle(method, url, timeout=None, params=None, **kwargs):
        rows = [j for j in jobs if "status" not in params or j["status"] == params["status"]]
        rows.sort(key=lambda j: j["createdAt"], reverse=True)
        return response(body={"data": rows[: params["limit"]], "pagination": {"total": len(rows)}})

    session.request.side_effect = handle

    assert [j.id for j in api.list_active_jobs()] == ["waiting"]


def test_create_job_posts_camel_case(api, session):
    session.request.return_value = response(body={"success": True, "data": dict(JOB, status="pending")})

    job = api.create_job(JobType.IMAGE_ENRICHMENT, {"batchSize": 10})

    assert job.status == JobStatus.PENDING
    assert session.request.call_args.kwargs["json"] == {"jobType": "image_enrichment", "payload": {"batchSize": 10}}


def test_http_error_carries_detail(api, session):
    session.request.return_value = response(409, body={"detail": "A image_enrichment job is already queued."})

    with pytest.raises(JobsApiError) as exc:
        api.create_job(JobType.IMAGE_ENRICHMENT)

    assert exc.value.status_code == 409
    assert exc.value.message == "A image_enrichment job is already queued."


def test_validation_error_list_is_joined(api, session):
    session.request.return_value = response(422, body={"detail": [{"msg": "bad limit"}, {"msg": "bad offset"}]})

    with pytest.raises(JobsApiError, match="bad limit; bad offset"):
        api.list_jobs(limit=500)


def test_non_json_error_uses_text(api, session):
    session.request.return_value = response(502, text="Bad Gateway\n")

    with pytest.raises(JobsApiError, match="Bad Gateway"):
        api.get_job("abc")


def test_network_error_has_status_zero(api, session):
    session.request.side_effect = requests.ConnectionError("refused")

    with pytest.raises(JobsApiError) as exc:
        api.cancel_job("abc")

    assert exc.value.status_code == 0
    assert str(exc.value).startswith("Network error")


def test_get_job_logs(api, session):
    session.request.return_value = response(
        body={"data": [{"id": "l1", "action": "job_created", "message": "Created", "level": "info", "createdAt": "2024-05-01T12:00:00"}]}
    )

    (log,) = api.get_job_logs("abc")

    assert (log.action, log.level, log.metadata) == ("job_created", "info", {})


def test_stream_job_opens_streaming_request(api, session):
    session.get.return_value = response(body={})

    stream = api.stream_job("abc")

    assert isinstance(stream, EventStream)
    args, kwargs = session.get.call_args
    assert args == ("http://jobs.test/api/jobs/abc/stream",)
    assert kwargs["stream"] is True
    assert kwargs["timeout"] == (5, None)


def test_stream_error_closes_response(api, session):
    resp = response(404, body={"detail": "Not Found"})
    session.get.return_value = resp

    with pytest.raises(JobsApiError) as exc:
        api.stream_jobs()

    assert exc.value.status_code == 404
    resp.close.assert_called_once()
