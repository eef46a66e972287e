"""SQLModel table for writes waiting to be replayed to the server."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class OperationState(str, Enum):
    PENDING = "PENDING"
    IN_FLIGHT = "IN_FLIGHT"
    DEAD_LETTER = "DEAD_LETTER"
    QUARANTINED = "QUARANTINED"


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CORRUPT = "corrupt"


class QueuedOperationRecord(SQLModel, table=True):
    __tablename__ = "queued_operation"

    id: str = Field(primary_key=True)
    sequence: int = Field(index=True, unique=True)
    method: str = Field(default="POST")
    target_endpoint: str
    payload: str
    resource_key: Optional[str] = Field(default=None, index=True)
    state: str = Field(default=OperationState.PENDING.value, index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    attempt_count: int = Field(default=0)
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    failure_kind: Optional[str] = None


__all__ = ["FailureKind", "OperationState", "QueuedOperationRecord"]
