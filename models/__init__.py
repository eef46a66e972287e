"""ORM models exposed by the FieldSync application."""
from .cache_entry import CacheEntry
from .job import Job, JobAuditRecord, JobPhoto, JobStatus, PhotoType
from .queued_operation import FailureKind, OperationState, QueuedOperationRecord

__all__ = [
    "CacheEntry",
    "FailureKind",
    "Job",
    "JobAuditRecord",
    "JobPhoto",
    "JobStatus",
    "OperationState",
    "PhotoType",
    "QueuedOperationRecord",
]
