"""Server-side job tables: the job itself, its photos and its audit trail."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class JobStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    EN_ROUTE = "EN_ROUTE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


class PhotoType(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    ISSUE = "issue"


class Job(SQLModel, table=True):
    id: str = Field(primary_key=True)
    org_id: str = Field(index=True)
    technician_id: Optional[str] = Field(default=None, index=True)
    status: str = Field(default=JobStatus.SCHEDULED.value, index=True)
    scheduled_date: date
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    skip_reason: Optional[str] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)


class JobPhoto(SQLModel, table=True):
    __tablename__ = "job_photo"

    id: str = Field(primary_key=True)
    job_id: str = Field(index=True, foreign_key="job.id")
    photo_type: str
    content_type: str
    size_bytes: int
    storage_path: str
    position: int
    idempotency_key: Optional[str] = Field(default=None, unique=True)
    uploaded_at: datetime = Field(default_factory=utc_now)
    uploaded_by: Optional[str] = None


class JobAuditRecord(SQLModel, table=True):
    """Append-only; rows are never updated or deleted."""

    __tablename__ = "job_audit"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(index=True, foreign_key="job.id")
    previous_status: str
    new_status: str
    actor: str
    at: datetime = Field(default_factory=utc_now)
    skip_reason: Optional[str] = None
    operation_id: Optional[str] = Field(default=None, unique=True)


__all__ = ["Job", "JobAuditRecord", "JobPhoto", "JobStatus", "PhotoType"]
