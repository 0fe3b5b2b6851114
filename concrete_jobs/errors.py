"""
Domain errors for the job queue.

Each error carries the HTTP status the API answers with; routes turn them
into HTTPException so the admin UI can show `detail` as a toast.
"""


class JobError(Exception):
    status_code = 500


class JobNotFoundError(JobError):
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobConflictError(JobError):
    """An active job of the same type already exists."""

    status_code = 409


class InvalidJobTransitionError(JobError):
    status_code = 400


class JobValidationError(JobError):
    status_code = 400
