"""
concrete-jobs command line.

    concrete-jobs serve                 # API server (uvicorn)
    concrete-jobs worker                # job runner loop
    concrete-jobs list --status failed --page 2
    concrete-jobs queue image_enrichment --payload '{"batchSize": 25}'
    concrete-jobs cancel <job-id> | retry <job-id> | show <job-id> | logs <job-id>
    concrete-jobs watch                 # live progress (poll + SSE)
"""

import argparse
import json
import logging
import sys
import threading
from typing import List, Optional

from concrete_jobs.client.actions import JobActions
from concrete_jobs.client.api import JobsApiClient, JobsApiError
from concrete_jobs.client.monitor import JobMonitor
from concrete_jobs.client.notify import Toast, ToastQueue
from concrete_jobs.client.progress import aggregate, job_progress, progress_bar
from concrete_jobs.client.state import JobBoard
from concrete_jobs.models import JobStatus, JobType
from concrete_jobs.schemas import JobResponse
from concrete_jobs.settings import settings

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def format_job(job: JobResponse) -> str:
    view = job_progress(job)
    total = str(view.total) if view.total_known else "?"
    line = (
        f"{job.id[:8]}  {job.job_type.value:<22} {job.status.value:<10} "
        f"{progress_bar(view, 20)} {view.processed}/{total} ok, {view.failed} failed"
        f"  attempts {job.attempts}/{job.max_attempts}"
    )
    if job.last_error:
        line += f"  error: {job.last_error}"
    return line


def _print_toast(toast: Toast) -> None:
    stream = sys.stderr if toast.level == "error" else sys.stdout
    print(f"[{toast.level}] {toast.title}: {toast.message}", file=stream)


def _client(args: argparse.Namespace) -> JobsApiClient:
    return JobsApiClient(base_url=args.api_url)


def _actions(api: JobsApiClient, board: JobBoard) -> JobActions:
    toasts = ToastQueue()
    toasts.subscribe(_print_toast)
    return JobActions(api, board, toasts)


# ----- commands -----
def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("concrete_jobs.main:app", host=args.host, port=args.port, log_level=settings.LOG_LEVEL.lower())
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    from concrete_jobs.db import get_engine
    from concrete_jobs.main import get_registry
    from concrete_jobs.runner import JobRunner

    runner = JobRunner(get_engine(), get_registry(), poll_seconds=settings.RUNNER_POLL_SECONDS)
    if args.once:
        job_id = runner.run_once()
        print(job_id or "no runnable job")
        return 0
    stop = threading.Event()
    try:
        runner.run_forever(stop)
    except KeyboardInterrupt:
        stop.set()
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    page = _client(args).list_page(args.page, args.limit, job_type=args.type, status=args.status)
    for job in page.jobs:
        print(format_job(job))
    summary = aggregate(page.jobs)
    print(
        f"page {page.page}/{max(page.total_pages, 1)} - {page.total} jobs; "
        f"shown: {summary.processed} processed, {summary.failed} failed of {summary.total}"
    )
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    job = _client(args).get_job(args.job_id)
    print(format_job(job))
    print(json.dumps(job.to_json(), indent=2))
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    for log in _client(args).get_job_logs(args.job_id):
        print(f"{log.created_at}  {log.level:<7} {log.action:<20} {log.message}")
    return 0


def cmd_queue(args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except ValueError as e:
        print(f"--payload is not valid JSON: {e}", file=sys.stderr)
        return 2
    api = _client(args)
    board = JobBoard()
    board.replace(api.list_active_jobs())
    job = _actions(api, board).queue_job(args.job_type, payload)
    return 0 if job else 1


def _load_one(api: JobsApiClient, job_id: str) -> JobBoard:
    board = JobBoard()
    board.upsert(api.get_job(job_id))
    return board


def cmd_cancel(args: argparse.Namespace) -> int:
    api = _client(args)
    board = _load_one(api, args.job_id)
    actions = _actions(api, board)
    if not actions.can_cancel(args.job_id):
        print(f"Job {args.job_id} is {board.get(args.job_id).status.value}; only pending jobs can be cancelled")
        return 1
    return 0 if actions.cancel_job(args.job_id) else 1


def cmd_retry(args: argparse.Namespace) -> int:
    api = _client(args)
    board = _load_one(api, args.job_id)
    actions = _actions(api, board)
    if not actions.can_retry(args.job_id):
        print(f"Job {args.job_id} is {board.get(args.job_id).status.value}; only failed jobs can be retried")
        return 1
    job = actions.retry_job(args.job_id)
    if job:
        print(format_job(job))
    return 0 if job else 1


def cmd_watch(args: argparse.Namespace) -> int:
    api = _client(args)
    monitor = JobMonitor(api, job_type=args.type, poll_interval=args.interval)
    last: dict = {}

    def on_change(board: JobBoard) -> None:
        for job in board.jobs():
            line = format_job(job)
            if last.get(job.id) != line:
                last[job.id] = line
                print(line, flush=True)

    monitor.board.subscribe(on_change)
    state = monitor.start()
    print(f"watching jobs ({state.value}); Ctrl-C to stop", flush=True)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        monitor.dispose()
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="concrete-jobs", description="Background job admin for the concrete directory.")
    p.add_argument("--api-url", default=None, help=f"API base URL (default: {settings.API_BASE_URL})")
    p.add_argument("--log-level", default=settings.LOG_LEVEL)
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("serve", help="Run the jobs API server")
    s.add_argument("--host", default="127.0.0.1")
    s.add_argument("--port", type=int, default=8000)
    s.set_defaults(func=cmd_serve)

    s = sub.add_parser("worker", help="Run the job runner loop")
    s.add_argument("--once", action="store_true", help="Process at most one job and exit")
    s.set_defaults(func=cmd_worker)

    s = sub.add_parser("list", help="List jobs")
    s.add_argument("--type", choices=[t.value for t in JobType])
    s.add_argument("--status", choices=[st.value for st in JobStatus])
    s.add_argument("--page", type=int, default=1)
    s.add_argument("--limit", type=int, default=20)
    s.set_defaults(func=cmd_list)

    for name, func, help_text in (
        ("show", cmd_show, "Show one job"),
        ("logs", cmd_logs, "Show a job's logs"),
        ("cancel", cmd_cancel, "Cancel a pending job"),
        ("retry", cmd_retry, "Retry a failed job"),
    ):
        s = sub.add_parser(name, help=help_text)
        s.add_argument("job_id")
        s.set_defaults(func=func)

    s = sub.add_parser("queue", help="Queue a job")
    s.add_argument("job_type", choices=[t.value for t in JobType])
    s.add_argument("--payload", help="JSON payload, e.g. '{\"batchSize\": 25}'")
    s.set_defaults(func=cmd_queue)

    s = sub.add_parser("watch", help="Follow job progress live")
    s.add_argument("--type", choices=[t.value for t in JobType])
    s.add_argument("--interval", type=float, default=None, help="Discovery poll interval (seconds)")
    s.set_defaults(func=cmd_watch)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return args.func(args)
    except JobsApiError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
