"""
Data access for background_jobs and system_logs.

Status transitions and progress writes live here; the rules about which
transitions are allowed live in JobService.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple, Union

from sqlalchemy import func, or_
from sqlmodel import Session, select

from concrete_jobs.models import (
    ACTIVE_STATUSES,
    BackgroundJob,
    JobStatus,
    JobType,
    SystemLog,
    utc_now,
)


class JobRepository:
    def __init__(self, session: Session):
        self.session = session

    def _save(self, job: BackgroundJob) -> BackgroundJob:
        job.updated_at = utc_now()
        self.session.add(job)
        self.session.commit()
        self.session.refresh(job)
        return job

    def _update(self, job_id: str, **fields) -> BackgroundJob:
        job = self.session.exec(select(BackgroundJob).where(BackgroundJob.id == job_id)).one()
        for k, v in fields.items():
            setattr(job, k, v)
        return self._save(job)

    def _update_if_processing(self, job_id: str, **fields) -> Optional[BackgroundJob]:
        """Apply `fields` only while the stored row is still processing.

        The row is re-read so a cancel or timeout committed by another
        session is seen; returns None when the job has moved on.
        """
        job = self.session.exec(
            select(BackgroundJob)
            .where(BackgroundJob.id == job_id)
            .execution_options(populate_existing=True)
        ).first()
        if job is None or job.status != JobStatus.PROCESSING:
            return None
        for k, v in fields.items():
            setattr(job, k, v)
        return self._save(job)

    def create(
        self,
        job_type: JobType,
        payload: Optional[Dict] = None,
        created_by: Optional[str] = None,
        max_attempts: int = 3,
        total_items: Optional[int] = None,
    ) -> BackgroundJob:
        job = BackgroundJob(
            job_type=job_type,
            payload=payload or {},
            created_by=created_by,
            max_attempts=max_attempts,
            total_items=total_items,
        )
        return self._save(job)

    def find_by_id(self, job_id: str) -> Optional[BackgroundJob]:
        return self.session.get(BackgroundJob, job_id)

    def find_all(
        self,
        status: Union[JobStatus, Sequence[JobStatus], None] = None,
        job_type: Optional[JobType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[BackgroundJob], int]:
        filters = []
        if status is not None:
            if isinstance(status, JobStatus):
                filters.append(BackgroundJob.status == status)
            else:
                filters.append(BackgroundJob.status.in_(list(status)))
        if job_type is not None:
            filters.append(BackgroundJob.job_type == job_type)

        total = self.session.exec(
            select(func.count()).select_from(BackgroundJob).where(*filters)
        ).one()
        # id as tie-breaker keeps pages stable for jobs created in the same tick
        stmt = (
            select(BackgroundJob)
            .where(*filters)
            .order_by(BackgroundJob.created_at.desc(), BackgroundJob.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.exec(stmt).all()), int(total)

    def find_active(self, job_type: Optional[JobType] = None) -> List[BackgroundJob]:
        stmt = select(BackgroundJob).where(BackgroundJob.status.in_(list(ACTIVE_STATUSES)))
        if job_type is not None:
            stmt = stmt.where(BackgroundJob.job_type == job_type)
        return list(self.session.exec(stmt.order_by(BackgroundJob.created_at.asc())).all())

    def is_job_type_processing(self, job_type: JobType) -> bool:
        count = self.session.exec(
            select(func.count())
            .select_from(BackgroundJob)
            .where(BackgroundJob.job_type == job_type, BackgroundJob.status == JobStatus.PROCESSING)
        ).one()
        return count > 0

    def set_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: Optional[str] = None,
        started: bool = False,
        completed: bool = False,
    ) -> BackgroundJob:
        fields = {"status": status}
        if error:
            fields["last_error"] = error
        if started:
            fields["started_at"] = utc_now()
        if completed:
            fields["completed_at"] = utc_now()
        return self._update(job_id, **fields)

    def set_result(self, job_id: str, result: Dict) -> Optional[BackgroundJob]:
        return self._update_if_processing(
            job_id,
            result=result,
            status=JobStatus.COMPLETED,
            completed_at=utc_now(),
            last_error=None,
        )

    def update_progress(
        self,
        job_id: str,
        processed_items: Optional[int] = None,
        failed_items: Optional[int] = None,
        total_items: Optional[int] = None,
    ) -> BackgroundJob:
        fields = {}
        if processed_items is not None:
            fields["processed_items"] = processed_items
        if failed_items is not None:
            fields["failed_items"] = failed_items
        if total_items is not None:
            fields["total_items"] = total_items
        return self._update(job_id, **fields)

    def schedule_retry(self, job_id: str, error: str, next_retry_at: datetime) -> Optional[BackgroundJob]:
        return self._update_if_processing(
            job_id,
            status=JobStatus.PENDING,
            last_error=error,
            next_retry_at=next_retry_at,
        )

    def fail_processing(self, job_id: str, error: str) -> Optional[BackgroundJob]:
        return self._update_if_processing(
            job_id,
            status=JobStatus.FAILED,
            last_error=error,
            completed_at=utc_now(),
        )

    def reset_for_retry(self, job_id: str, max_attempts: int) -> BackgroundJob:
        return self._update(
            job_id,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            last_error=None,
            next_retry_at=None,
            started_at=None,
            completed_at=None,
            result=None,
            processed_items=0,
            failed_items=0,
        )

    def claim_next_pending(self, now: Optional[datetime] = None) -> Optional[BackgroundJob]:
        """Move the oldest runnable pending job to processing (one processing job per type)."""
        now = now or utc_now()
        busy_types = set(
            self.session.exec(
                select(BackgroundJob.job_type).where(BackgroundJob.status == JobStatus.PROCESSING)
            ).all()
        )
        stmt = (
            select(BackgroundJob)
            .where(
                BackgroundJob.status == JobStatus.PENDING,
                or_(BackgroundJob.next_retry_at.is_(None), BackgroundJob.next_retry_at <= now),
            )
            .order_by(BackgroundJob.created_at.asc())
        )
        if busy_types:
            stmt = stmt.where(BackgroundJob.job_type.not_in(list(busy_types)))
        job = self.session.exec(stmt.limit(1)).first()
        if job is None:
            return None
        job.status = JobStatus.PROCESSING
        job.started_at = now
        job.attempts += 1
        return self._save(job)

    def time_out_stuck(self, cutoff: datetime, message: str) -> List[BackgroundJob]:
        stuck = self.session.exec(
            select(BackgroundJob).where(
                BackgroundJob.status == JobStatus.PROCESSING,
                BackgroundJob.started_at < cutoff,
            )
        ).all()
        now = utc_now()
        for job in stuck:
            job.status = JobStatus.FAILED
            job.last_error = message
            job.completed_at = now
            job.updated_at = now
            self.session.add(job)
        if stuck:
            self.session.commit()
            for job in stuck:
                self.session.refresh(job)
        return list(stuck)


class SystemLogRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, log: SystemLog) -> SystemLog:
        self.session.add(log)
        self.session.commit()
        self.session.refresh(log)
        return log

    def find_by_entity(self, entity_type: str, entity_id: str, limit: int = 100) -> List[SystemLog]:
        stmt = (
            select(SystemLog)
            .where(SystemLog.entity_type == entity_type, SystemLog.entity_id == entity_id)
            .order_by(SystemLog.created_at.desc())
            .limit(limit)
        )
        return list(self.session.exec(stmt).all())
