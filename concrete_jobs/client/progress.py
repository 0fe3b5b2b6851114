from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from concrete_jobs.schemas import JobResponse, percent_complete


@dataclass(frozen=True)
class ProgressView:
    processed: int
    failed: int
    total: int
    percent: int
    total_known: bool = True


@dataclass(frozen=True)
class ProgressSummary:
    jobs: int = 0
    processed: int = 0
    failed: int = 0
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)

    @property
    def percent(self) -> int:
        return percent_complete(self.processed + self.failed, self.total)


def display_counts(
    processed: int, failed: int, total: Optional[int]
) -> ProgressView:
    processed = max(0, processed or 0)
    failed = max(0, failed or 0)
    if total is None:
        done = processed + failed
        return ProgressView(processed, failed, done, 0, total_known=False)

    total = max(0, total)
    processed = min(processed, total)
    failed = min(failed, total - processed)
    return ProgressView(processed, failed, total, percent_complete(processed, total))


def job_progress(job: JobResponse) -> ProgressView:
    return display_counts(job.processed_items, job.failed_items, job.total_items)


def aggregate(jobs: Iterable[JobResponse]) -> ProgressSummary:
    statuses: Counter = Counter()
    processed = failed = total = count = 0
    for job in jobs:
        view = job_progress(job)
        count += 1
        processed += view.processed
        failed += view.failed
        total += view.total
        statuses[job.status.value] += 1
    return ProgressSummary(count, processed, failed, total, dict(statuses))


def progress_bar(view: ProgressView, width: int = 30) -> str:
    """Text bar: '#' processed, 'x' failed, '.' remaining."""
    if view.total <= 0:
        return "[" + "." * width + "]"
    done = round(view.processed / view.total * width)
    bad = min(width - done, round(view.failed / view.total * width))
    return "[" + "#" * done + "x" * bad + "." * (width - done - bad) + "]"
