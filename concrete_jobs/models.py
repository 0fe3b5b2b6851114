from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC in and out. SQLite stores no offset, so naive rows read back as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def utc_column(nullable: bool = True, index: bool = False) -> Column:
    return Column(UTCDateTime(), nullable=nullable, index=index)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(str, Enum):
    IMAGE_ENRICHMENT = "image_enrichment"
    CONTRACTOR_ENRICHMENT = "contractor_enrichment"
    REVIEW_ENRICHMENT = "review_enrichment"


class BackgroundJob(SQLModel, table=True):
    __tablename__ = "background_jobs"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    job_type: JobType = Field(index=True)
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    attempts: int = 0
    max_attempts: int = 3
    next_retry_at: Optional[datetime] = Field(default=None, sa_column=utc_column())
    last_error: Optional[str] = None
    total_items: Optional[int] = None
    processed_items: int = 0
    failed_items: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now, sa_column=utc_column(nullable=False, index=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_column=utc_column(nullable=False))
    started_at: Optional[datetime] = Field(default=None, sa_column=utc_column())
    completed_at: Optional[datetime] = Field(default=None, sa_column=utc_column())
    created_by: Optional[str] = None


class SystemLog(SQLModel, table=True):
    __tablename__ = "system_logs"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    action: str
    level: str = "info"  # info|warning|error
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utc_now, sa_column=utc_column(nullable=False))
