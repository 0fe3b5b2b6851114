"""
Wire schemas for the jobs API.

The admin UI speaks camelCase JSON; models here accept both camelCase and
snake_case so the same classes serve the server responses and the client
parsing them.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from concrete_jobs.errors import JobValidationError
from concrete_jobs.models import BackgroundJob, JobStatus, JobType, SystemLog

MAX_PAGE_LIMIT = 100
DEFAULT_PAGE_LIMIT = 20


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ---------- payloads (per job type) ----------

class ImageEnrichmentPayload(CamelModel):
    batch_size: int = Field(10, ge=1, le=100)
    continuous: bool = False  # queue the next batch on completion


class ContractorEnrichmentPayload(CamelModel):
    contractor_ids: List[UUID] = Field(..., min_length=1, max_length=10)


class ReviewEnrichmentPayload(CamelModel):
    contractor_ids: List[UUID] = Field(..., min_length=1, max_length=10)
    max_depth: int = Field(50, ge=1, le=1500)  # reviews per contractor
    continuous: bool = False


PAYLOAD_MODELS = {
    JobType.IMAGE_ENRICHMENT: ImageEnrichmentPayload,
    JobType.CONTRACTOR_ENRICHMENT: ContractorEnrichmentPayload,
    JobType.REVIEW_ENRICHMENT: ReviewEnrichmentPayload,
}


def validate_payload(job_type: JobType, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate a payload for its job type and return it normalized (camelCase, defaults filled)."""
    try:
        job_type = JobType(job_type)
    except ValueError:
        raise JobValidationError(f"Unknown job type: {job_type}") from None
    model = PAYLOAD_MODELS[job_type]
    try:
        return model.model_validate(payload or {}).to_json()
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}" for err in e.errors()
        )
        raise JobValidationError(f"Invalid {job_type.value} payload: {errors}") from e


# ---------- requests ----------

class CreateJobRequest(CamelModel):
    job_type: JobType
    payload: Dict[str, Any] = Field(default_factory=dict)


# ---------- responses ----------

class JobResponse(CamelModel):
    id: str
    job_type: JobType
    status: JobStatus
    attempts: int = 0
    max_attempts: int = 3
    total_items: Optional[int] = None
    processed_items: int = 0
    failed_items: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by: Optional[str] = None

    @classmethod
    def from_job(cls, job: BackgroundJob) -> "JobResponse":
        return cls(
            id=job.id,
            job_type=job.job_type,
            status=job.status,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            total_items=job.total_items,
            processed_items=job.processed_items,
            failed_items=job.failed_items,
            payload=dict(job.payload or {}),
            result=job.result,
            last_error=job.last_error,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            created_by=job.created_by,
        )


class JobProgress(CamelModel):
    id: str
    status: JobStatus
    total_items: Optional[int] = None
    processed_items: int = 0
    failed_items: int = 0
    percent_complete: int = 0

    @classmethod
    def from_job(cls, job: BackgroundJob) -> "JobProgress":
        return cls(
            id=job.id,
            status=job.status,
            total_items=job.total_items,
            processed_items=job.processed_items,
            failed_items=job.failed_items,
            percent_complete=percent_complete(job.processed_items, job.total_items),
        )


class JobLogEntry(CamelModel):
    id: str
    action: str
    message: str
    level: str
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_log(cls, log: SystemLog) -> "JobLogEntry":
        return cls(
            id=log.id,
            action=log.action,
            message=log.message,
            level=log.level,
            created_at=log.created_at,
            metadata=dict(log.details or {}),
        )


class Pagination(CamelModel):
    total: int
    page: int
    limit: int
    offset: int
    total_pages: int

    @classmethod
    def build(cls, total: int, limit: int, offset: int) -> "Pagination":
        return cls(
            total=total,
            page=offset // limit + 1,
            limit=limit,
            offset=offset,
            total_pages=math.ceil(total / limit) if limit else 0,
        )


def percent_complete(processed: int, total: Optional[int]) -> int:
    if not total or total <= 0:
        return 0
    return round(processed / total * 100)


def offset_for_page(page: int, limit: int) -> int:
    """1-based page number -> row offset."""
    return (max(1, page) - 1) * limit
