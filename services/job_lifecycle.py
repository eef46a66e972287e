"""Server-side authority for job status.

Legal moves::

    SCHEDULED   -> EN_ROUTE | SKIPPED
    EN_ROUTE    -> IN_PROGRESS | SKIPPED
    IN_PROGRESS -> COMPLETED | SKIPPED

COMPLETED and SKIPPED are terminal. Entering SKIPPED needs a non-empty
reason. Each accepted move stamps its timestamp from the server clock and
appends one audit row in the same transaction as the status change.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterator, List, Optional, Tuple, Union

from sqlalchemy import update
from sqlmodel import select

from core.errors import IllegalTransition, JobNotFound, MissingSkipReason, TransitionConflict
from core.log import get_logger
from datetime_utils import utc_now
from models.job import Job, JobAuditRecord, JobStatus
from storage.db import Database


TRANSITIONS: Dict[JobStatus, Tuple[JobStatus, ...]] = {
    JobStatus.SCHEDULED: (JobStatus.EN_ROUTE, JobStatus.SKIPPED),
    JobStatus.EN_ROUTE: (JobStatus.IN_PROGRESS, JobStatus.SKIPPED),
    JobStatus.IN_PROGRESS: (JobStatus.COMPLETED, JobStatus.SKIPPED),
    JobStatus.COMPLETED: (),
    JobStatus.SKIPPED: (),
}

ACTION_TO_STATUS = {
    "en_route": JobStatus.EN_ROUTE,
    "start": JobStatus.IN_PROGRESS,
    "complete": JobStatus.COMPLETED,
    "skip": JobStatus.SKIPPED,
}

logger = get_logger("jobs")


def allowed_targets(current: JobStatus) -> List[JobStatus]:
    return list(TRANSITIONS[current])


def resolve_target(value: Union[JobStatus, str]) -> JobStatus:
    """Accept a status (``"EN_ROUTE"``) or an action (``"en_route"``)."""

    if isinstance(value, JobStatus):
        return value
    text = (value or "").strip()
    if text in ACTION_TO_STATUS:
        return ACTION_TO_STATUS[text]
    try:
        return JobStatus(text.upper())
    except ValueError:
        raise IllegalTransition(
            f"Unknown status or action: {value!r}. Use: en_route, start, complete, skip",
            requested_status=text,
        ) from None


def validate_transition(current: JobStatus, target: JobStatus, skip_reason: Optional[str]) -> None:
    allowed = TRANSITIONS[current]
    if target not in allowed:
        if not allowed:
            message = f"Job is {current.value}, a terminal state, and accepts no transitions"
        else:
            message = f"Cannot transition from {current.value} to {target.value}"
        raise IllegalTransition(
            message,
            current_status=current.value,
            requested_status=target.value,
            allowed=[s.value for s in allowed],
        )
    if target is JobStatus.SKIPPED and not (skip_reason or "").strip():
        raise MissingSkipReason(
            "Skip reason is required",
            current_status=current.value,
            requested_status=target.value,
            allowed=[s.value for s in allowed],
        )


class JobLifecycle:
    def __init__(self, db: Database):
        self.db = db
        self._guard = threading.Lock()
        self._active: set[str] = set()

    # ------------------------------------------------------------------
    def schedule(
        self,
        job_id: str,
        *,
        org_id: str,
        scheduled_date: date,
        technician_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Job:
        """Insert a SCHEDULED job, as the scheduling subsystem would."""

        job = Job(
            id=job_id,
            org_id=org_id,
            technician_id=technician_id,
            scheduled_date=scheduled_date,
            notes=notes,
            status=JobStatus.SCHEDULED.value,
        )
        with self.db.session() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
            return job

    def get(self, job_id: str) -> Job:
        with self.db.session() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFound(job_id)
            return job

    def audit_trail(self, job_id: str) -> List[JobAuditRecord]:
        stmt = select(JobAuditRecord).where(JobAuditRecord.job_id == job_id).order_by(JobAuditRecord.id)
        with self.db.session() as session:
            return list(session.exec(stmt))

    # ------------------------------------------------------------------
    def transition(
        self,
        job_id: str,
        target: Union[JobStatus, str],
        *,
        actor: str,
        skip_reason: Optional[str] = None,
        notes: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> Job:
        target_status = resolve_target(target)
        with self._claim(job_id):
            with self.db.session() as session:
                if operation_id:
                    replayed = self._replayed(session, job_id, operation_id)
                    if replayed is not None:
                        return replayed

                job = session.get(Job, job_id)
                if job is None:
                    raise JobNotFound(job_id)
                current = JobStatus(job.status)
                validate_transition(current, target_status, skip_reason)

                now = utc_now()
                values = {"status": target_status.value, "updated_at": now}
                if target_status is JobStatus.IN_PROGRESS:
                    values["started_at"] = now
                if target_status in (JobStatus.COMPLETED, JobStatus.SKIPPED):
                    values["completed_at"] = now
                if target_status is JobStatus.SKIPPED:
                    values["skip_reason"] = skip_reason.strip()
                if notes:
                    values["internal_notes"] = notes

                # Conditional on the status we validated against.
                result = session.exec(
                    update(Job)
                    .where(Job.id == job_id)
                    .where(Job.status == current.value)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise TransitionConflict(job_id)
                session.add(
                    JobAuditRecord(
                        job_id=job_id,
                        previous_status=current.value,
                        new_status=target_status.value,
                        actor=actor,
                        at=now,
                        skip_reason=values.get("skip_reason"),
                        operation_id=operation_id,
                    )
                )
                session.commit()
                session.refresh(job)
                logger.info(
                    "Job %s: %s -> %s by %s", job_id, current.value, target_status.value, actor
                )
                return job

    @staticmethod
    def _replayed(session, job_id: str, operation_id: str) -> Optional[Job]:
        record = session.exec(
            select(JobAuditRecord).where(JobAuditRecord.operation_id == operation_id)
        ).first()
        if record is None:
            return None
        if record.job_id != job_id:
            raise IllegalTransition(f"Operation {operation_id} was already applied to job {record.job_id}")
        logger.info("Job %s: operation %s already applied", job_id, operation_id)
        return session.get(Job, job_id)

    @contextmanager
    def _claim(self, job_id: str) -> Iterator[None]:
        with self._guard:
            if job_id in self._active:
                raise TransitionConflict(job_id)
            self._active.add(job_id)
        try:
            yield
        finally:
            with self._guard:
                self._active.discard(job_id)


__all__ = [
    "ACTION_TO_STATUS",
    "JobLifecycle",
    "TRANSITIONS",
    "allowed_targets",
    "resolve_target",
    "validate_transition",
]
