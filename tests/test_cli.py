from unittest.mock import patch

from concrete_jobs import cli
from concrete_jobs.client.api import JobsApiError, JobPage
from concrete_jobs.models import JobStatus


def test_parser_wires_subcommands():
    args = cli.build_parser().parse_args(["list", "--status", "failed", "--page", "2"])
    assert args.func is cli.cmd_list
    assert (args.status, args.page, args.limit) == ("failed", 2, 20)


def test_format_job_shows_clamped_progress(make_job):
    job = make_job("abcdef123456", JobStatus.PROCESSING, total_items=10, processed_items=5, failed_items=2, attempts=1)

    line = cli.format_job(job)

    assert line.startswith("abcdef12  image_enrichment")
    assert "[##########xxxx......]" in line
    assert "5/10 ok, 2 failed" in line
    assert "attempts 1/3" in line


@patch("concrete_jobs.cli.JobsApiClient")
def test_list_prints_page_summary(client_cls, make_job, capsys):
    client_cls.return_value.list_page.return_value = JobPage(
        jobs=[make_job("a" * 12, JobStatus.COMPLETED, total_items=4, processed_items=4)],
        total=21,
        page=2,
        limit=20,
        offset=20,
        total_pages=2,
    )

    assert cli.main(["list", "--page", "2"]) == 0

    out = capsys.readouterr().out
    assert "page 2/2 - 21 jobs" in out
    client_cls.return_value.list_page.assert_called_once_with(2, 20, job_type=None, status=None)


@patch("concrete_jobs.cli.JobsApiClient")
def test_retry_refuses_non_failed_job(client_cls, make_job, capsys):
    client_cls.return_value.get_job.return_value = make_job("abc", JobStatus.COMPLETED)

    assert cli.main(["retry", "abc"]) == 1

    assert "only failed jobs can be retried" in capsys.readouterr().out
    client_cls.return_value.retry_job.assert_not_called()


@patch("concrete_jobs.cli.JobsApiClient")
def test_api_errors_exit_non_zero(client_cls, capsys):
    client_cls.return_value.get_job.side_effect = JobsApiError(404, "Job not found")

    assert cli.main(["show", "missing"]) == 1
    assert "Job not found (HTTP 404)" in capsys.readouterr().err


def test_queue_rejects_bad_payload_json(capsys):
    assert cli.main(["queue", "image_enrichment", "--payload", "{bad"]) == 2
    assert "--payload is not valid JSON" in capsys.readouterr().err
