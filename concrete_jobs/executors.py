"""
Executor registry.

An executor does the actual work of one job type:

    def enrich_images(job: BackgroundJob, report_progress) -> dict:
        report_progress(total_items=10)
        ...
        report_progress(processed_items=3, failed_items=1)
        return {"processedContractors": 3, "shouldContinue": False}

The returned dict is stored as the job result. Executors live outside this
package (image/review providers); they are wired in through
settings.JOB_EXECUTORS as "module:callable" strings.
"""

import importlib
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from concrete_jobs.models import BackgroundJob, JobType

logger = logging.getLogger(__name__)

ProgressReporter = Callable[..., None]
Executor = Callable[[BackgroundJob, ProgressReporter], Dict[str, Any]]


def import_string(path: str) -> Any:
    module_name, sep, attr = path.partition(":")
    if not sep or not attr:
        raise ValueError(f"Executor path must look like 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


class JobExecutorRegistry:
    def __init__(self):
        self._executors: Dict[JobType, Executor] = {}

    def register(self, job_type: JobType, executor: Executor) -> None:
        job_type = JobType(job_type)
        if job_type in self._executors:
            logger.warning("Replacing executor for %s", job_type.value)
        self._executors[job_type] = executor

    def get(self, job_type: JobType) -> Optional[Executor]:
        return self._executors.get(JobType(job_type))

    def registered_types(self) -> List[JobType]:
        return sorted(self._executors, key=lambda t: t.value)

    def load(self, mapping: Mapping[str, str]) -> "JobExecutorRegistry":
        for job_type, path in mapping.items():
            self.register(JobType(job_type), import_string(path))
            logger.info("Registered executor %s for %s", path, job_type)
        return self
