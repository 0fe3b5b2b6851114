import time
import warnings
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from concrete_jobs.client.api import JobsApiClient, JobsApiError
from concrete_jobs.client.channel import JobStatusChannel
from concrete_jobs.client import monitor as monitor_module
from concrete_jobs.client.monitor import JobMonitor, MonitorState
from concrete_jobs.client.poller import JobDiscoveryPoller
from concrete_jobs.client.state import JobBoard
from concrete_jobs.models import JobStatus, JobType


@pytest.fixture
def api():
    return MagicMock(spec=JobsApiClient)


@pytest.fixture
def monitor(api):
    channel = MagicMock(spec=JobStatusChannel)
    channel.connect.return_value = True
    poller = MagicMock(spec=JobDiscoveryPoller)
    monitor = JobMonitor(api, board=JobBoard(), handoff_delay=0.5, channel=channel, poller=poller)
    yield monitor
    monitor.stop()


def test_starts_polling_when_nothing_is_running(monitor, api):
    api.list_active_jobs.return_value = []

    assert monitor.start() is MonitorState.POLLING

    monitor.poller.start_polling.assert_called_once()
    monitor.channel.connect.assert_not_called()


def test_starts_subscribed_to_running_job(monitor, api, make_job):
    api.list_active_jobs.return_value = [make_job("a", JobStatus.PROCESSING)]

    assert monitor.start() is MonitorState.SUBSCRIBED

    monitor.channel.connect.assert_called_once_with("a")
    monitor.poller.stop_polling.assert_called()
    assert monitor.board.get("a").status == JobStatus.PROCESSING


def test_initial_fetch_error_falls_back_to_polling(monitor, api):
    api.list_active_jobs.side_effect = JobsApiError(0, "Network error")

    assert monitor.start() is MonitorState.POLLING
    monitor.poller.start_polling.assert_called_once()


def test_back_to_polling_when_job_finishes(monitor, api, make_job):
    api.list_active_jobs.return_value = [make_job("a", JobStatus.PROCESSING)]
    monitor.start()
    monitor.channel.job_id = "a"

    monitor.board.upsert(make_job("a", JobStatus.COMPLETED))

    assert monitor.state is MonitorState.POLLING
    monitor.channel.disconnect.assert_called_once_with(delay=0.5)
    monitor.poller.start_polling.assert_called_once()


def test_newer_job_takes_over_subscription(monitor, api, make_job):
    api.list_active_jobs.return_value = [make_job("a", JobStatus.PROCESSING)]
    monitor.start()
    monitor.channel.job_id = "a"

    monitor.board.upsert(make_job("b", JobStatus.PENDING, minute=5))

    monitor.channel.connect.assert_called_with("b")
    assert monitor.state is MonitorState.SUBSCRIBED


def test_found_job_that_cannot_be_followed_keeps_polling(monitor, api, make_job):
    api.list_active_jobs.return_value = [make_job("a", JobStatus.PROCESSING)]
    monitor.channel.connect.return_value = False

    assert monitor.start() is MonitorState.POLLING
    monitor.poller.start_polling.assert_called_once()


def test_stopped_monitor_ignores_changes(monitor, api, make_job):
    api.list_active_jobs.return_value = []
    monitor.start()
    monitor.stop()

    monitor.board.upsert(make_job("a", JobStatus.PENDING))

    assert monitor.state is MonitorState.IDLE
    assert monitor.subscribe("a") is False
    monitor.channel.connect.assert_not_called()


# ----- discovery poller -----
def test_poll_once_hands_over_newest_active_job(api, make_job):
    found = []
    api.list_active_jobs.return_value = [make_job("b", minute=5), make_job("a")]
    poller = JobDiscoveryPoller(api, found.append, interval=60, job_type=JobType.IMAGE_ENRICHMENT)

    assert poller.poll_once().id == "b"
    assert [j.id for j in found] == ["b"]
    api.list_active_jobs.assert_called_with(job_type=JobType.IMAGE_ENRICHMENT)


def test_poll_once_swallows_api_errors(api):
    api.list_active_jobs.side_effect = JobsApiError(503, "Service unavailable")
    poller = JobDiscoveryPoller(api, lambda job: None, interval=60)

    assert poller.poll_once() is None


def test_polling_thread_repeats_until_stopped(api):
    api.list_active_jobs.return_value = []
    poller = JobDiscoveryPoller(api, lambda job: None, interval=0.01)

    poller.start_polling()
    poller.start_polling()  # already running
    deadline = time.monotonic() + 2
    while api.list_active_jobs.call_count < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    poller.dispose()

    assert api.list_active_jobs.call_count >= 3
    assert not poller.polling
    calls = api.list_active_jobs.call_count
    time.sleep(0.05)
    assert api.list_active_jobs.call_count == calls


@pytest.mark.parametrize("path", sorted(Path(monitor_module.__file__).parent.glob("*.py")), ids=lambda p: p.name)
def test_client_sources_compile_without_warnings(path):
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(path.read_text(), str(path), "exec")
