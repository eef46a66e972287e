"""Exception types shared by the client queue and the job endpoints."""
from __future__ import annotations

from typing import Iterable, Optional


class FieldSyncError(Exception):
    """Base class for every error raised by this project."""


class CorruptPayloadError(FieldSyncError):
    """A stored operation payload could not be decoded."""


class OperationNotFound(FieldSyncError):
    def __init__(self, op_id: str):
        super().__init__(f"Queued operation {op_id} not found")
        self.op_id = op_id


class InvalidOperationState(FieldSyncError):
    """The operation exists but is not in a state that allows the request."""

    def __init__(self, op_id: str, state: str, wanted: str):
        super().__init__(f"Operation {op_id} is {state}, expected {wanted}")
        self.op_id = op_id
        self.state = state
        self.wanted = wanted


class JobNotFound(FieldSyncError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class IllegalTransition(FieldSyncError):
    def __init__(
        self,
        message: str,
        *,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
        allowed: Iterable[str] = (),
    ):
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status
        self.allowed = list(allowed)


class MissingSkipReason(IllegalTransition):
    pass


class TransitionConflict(FieldSyncError):
    """Another transition for the same job is being applied."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is already being transitioned")
        self.job_id = job_id


class PhotoRejected(FieldSyncError):
    """The uploaded photo failed validation."""


__all__ = [
    "CorruptPayloadError",
    "FieldSyncError",
    "IllegalTransition",
    "InvalidOperationState",
    "JobNotFound",
    "MissingSkipReason",
    "OperationNotFound",
    "PhotoRejected",
    "TransitionConflict",
]
