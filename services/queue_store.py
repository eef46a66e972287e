from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from core.errors import InvalidOperationState, OperationNotFound
from core.log import get_logger
from datetime_utils import ensure_utc, utc_now
from models.queued_operation import FailureKind, OperationState, QueuedOperationRecord
from storage.db import Database


_MAX_ERROR_LENGTH = 1000
_CREATE_RETRIES = 5

INTERRUPTED_ERROR = "Interrupted before the server answered"

logger = get_logger("queue")


@dataclass
class QueuedOperation:
    id: str
    sequence: int
    method: str
    target_endpoint: str
    payload: str
    resource_key: Optional[str]
    state: OperationState
    created_at: datetime
    attempt_count: int
    last_attempt_at: Optional[datetime]
    last_error: Optional[str]
    failure_kind: Optional[FailureKind]

    @classmethod
    def from_record(cls, row: QueuedOperationRecord) -> "QueuedOperation":
        return cls(
            id=row.id,
            sequence=row.sequence,
            method=row.method,
            target_endpoint=row.target_endpoint,
            payload=row.payload,
            resource_key=row.resource_key,
            state=OperationState(row.state),
            created_at=ensure_utc(row.created_at),
            attempt_count=row.attempt_count,
            last_attempt_at=ensure_utc(row.last_attempt_at),
            last_error=row.last_error,
            failure_kind=FailureKind(row.failure_kind) if row.failure_kind else None,
        )


@dataclass
class QueueStatus:
    """Snapshot for UI badges."""

    operations: List[QueuedOperation] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.operations)

    @property
    def needs_attention(self) -> int:
        return self.counts.get(OperationState.DEAD_LETTER.value, 0) + self.counts.get(
            OperationState.QUARANTINED.value, 0
        )

    def count(self, state: OperationState) -> int:
        return self.counts.get(state.value, 0)


def _trim(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return error[:_MAX_ERROR_LENGTH]


class DurableQueueStore:
    """Crash-surviving store of queued writes.

    Every public method is a single SQLite transaction. A record becomes
    visible only when its commit succeeds, so a crash during ``create``
    leaves either the whole record or nothing.
    """

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Creation
    def create(
        self,
        target_endpoint: str,
        payload: str,
        *,
        method: str = "POST",
        op_id: Optional[str] = None,
        resource_key: Optional[str] = None,
    ) -> QueuedOperation:
        if not target_endpoint:
            raise ValueError("target_endpoint is required")
        op_id = op_id or uuid.uuid4().hex
        existing = self.get(op_id)
        if existing is not None:
            return existing

        for _ in range(_CREATE_RETRIES):
            with self.db.session() as session:
                next_sequence = session.exec(
                    select(func.coalesce(func.max(QueuedOperationRecord.sequence), 0))
                ).one() + 1
                record = QueuedOperationRecord(
                    id=op_id,
                    sequence=next_sequence,
                    method=method.upper(),
                    target_endpoint=target_endpoint,
                    payload=payload,
                    resource_key=resource_key,
                    state=OperationState.PENDING.value,
                    created_at=utc_now(),
                )
                session.add(record)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    existing = self.get(op_id)
                    if existing is not None:
                        return existing
                    # Lost the race for the sequence number.
                    continue
                logger.info("Queued %s %s as %s", method.upper(), target_endpoint, op_id)
                return QueuedOperation.from_record(record)
        raise RuntimeError(f"Could not allocate a queue sequence for {op_id}")

    # ------------------------------------------------------------------
    # Reads
    def get(self, op_id: str) -> Optional[QueuedOperation]:
        with self.db.session() as session:
            row = session.get(QueuedOperationRecord, op_id)
            return QueuedOperation.from_record(row) if row else None

    def list_pending(self, limit: Optional[int] = None) -> List[QueuedOperation]:
        stmt = (
            select(QueuedOperationRecord)
            .where(QueuedOperationRecord.state == OperationState.PENDING.value)
            .order_by(QueuedOperationRecord.sequence.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        with self.db.session() as session:
            return [QueuedOperation.from_record(row) for row in session.exec(stmt)]

    def list_all(self, resource_key: Optional[str] = None) -> List[QueuedOperation]:
        stmt = select(QueuedOperationRecord).order_by(QueuedOperationRecord.sequence.asc())
        if resource_key is not None:
            stmt = stmt.where(QueuedOperationRecord.resource_key == resource_key)
        with self.db.session() as session:
            return [QueuedOperation.from_record(row) for row in session.exec(stmt)]

    def count(self) -> int:
        with self.db.session() as session:
            return int(session.exec(select(func.count()).select_from(QueuedOperationRecord)).one())

    def status(self, resource_key: Optional[str] = None) -> QueueStatus:
        operations = self.list_all(resource_key)
        counts = {state.value: 0 for state in OperationState}
        for op in operations:
            counts[op.state.value] += 1
        return QueueStatus(operations=operations, counts=counts)

    # ------------------------------------------------------------------
    # Replay bookkeeping
    def mark_in_flight(self, op_id: str) -> bool:
        """PENDING -> IN_FLIGHT. Returns False if the record moved meanwhile."""

        stmt = (
            update(QueuedOperationRecord)
            .where(QueuedOperationRecord.id == op_id)
            .where(QueuedOperationRecord.state == OperationState.PENDING.value)
            .values(state=OperationState.IN_FLIGHT.value, last_attempt_at=utc_now())
        )
        return self._apply(stmt) == 1

    def mark_attempted(
        self,
        op_id: str,
        error: str,
        *,
        kind: FailureKind = FailureKind.TRANSIENT,
    ) -> QueuedOperation:
        """Failed attempt: back to PENDING with the attempt counted."""

        stmt = (
            update(QueuedOperationRecord)
            .where(QueuedOperationRecord.id == op_id)
            .where(
                QueuedOperationRecord.state.in_(
                    [OperationState.PENDING.value, OperationState.IN_FLIGHT.value]
                )
            )
            .values(
                state=OperationState.PENDING.value,
                attempt_count=QueuedOperationRecord.attempt_count + 1,
                last_attempt_at=utc_now(),
                last_error=_trim(error),
                failure_kind=kind.value,
            )
        )
        if self._apply(stmt) != 1:
            self._raise_missing_or_state(op_id, "PENDING or IN_FLIGHT")
        return self.get(op_id)

    def mark_dead_letter(
        self,
        op_id: str,
        error: Optional[str],
        *,
        kind: FailureKind = FailureKind.TRANSIENT,
    ) -> QueuedOperation:
        values = dict(state=OperationState.DEAD_LETTER.value, failure_kind=kind.value)
        if error is not None:
            values["last_error"] = _trim(error)
        stmt = (
            update(QueuedOperationRecord)
            .where(QueuedOperationRecord.id == op_id)
            .where(
                QueuedOperationRecord.state.in_(
                    [OperationState.PENDING.value, OperationState.IN_FLIGHT.value]
                )
            )
            .values(**values)
        )
        if self._apply(stmt) != 1:
            self._raise_missing_or_state(op_id, "PENDING or IN_FLIGHT")
        logger.warning("Operation %s dead-lettered (%s): %s", op_id, kind.value, error)
        return self.get(op_id)

    def quarantine(self, op_id: str, error: str) -> QueuedOperation:
        stmt = (
            update(QueuedOperationRecord)
            .where(QueuedOperationRecord.id == op_id)
            .values(
                state=OperationState.QUARANTINED.value,
                last_error=_trim(error),
                failure_kind=FailureKind.CORRUPT.value,
            )
        )
        if self._apply(stmt) != 1:
            raise OperationNotFound(op_id)
        logger.error("Operation %s quarantined: %s", op_id, error)
        return self.get(op_id)

    def delete(self, op_id: str) -> bool:
        stmt = delete(QueuedOperationRecord).where(QueuedOperationRecord.id == op_id)
        return self._apply(stmt) == 1

    def recover_in_flight(self) -> int:
        """Return records left IN_FLIGHT by a crash to PENDING.

        The interrupted send counts as an attempt, so a record that kills the
        process every time still reaches DEAD_LETTER.
        """

        stmt = (
            update(QueuedOperationRecord)
            .where(QueuedOperationRecord.state == OperationState.IN_FLIGHT.value)
            .values(
                state=OperationState.PENDING.value,
                attempt_count=QueuedOperationRecord.attempt_count + 1,
                last_error=INTERRUPTED_ERROR,
                failure_kind=FailureKind.TRANSIENT.value,
            )
        )
        recovered = self._apply(stmt)
        if recovered:
            logger.info("Recovered %s in-flight operations after restart", recovered)
        return recovered

    # ------------------------------------------------------------------
    # User actions
    def cancel(self, op_id: str) -> None:
        stmt = (
            delete(QueuedOperationRecord)
            .where(QueuedOperationRecord.id == op_id)
            .where(QueuedOperationRecord.state == OperationState.PENDING.value)
        )
        if self._apply(stmt) != 1:
            self._raise_missing_or_state(op_id, OperationState.PENDING.value)
        logger.info("Operation %s cancelled", op_id)

    def retry_dead_letter(self, op_id: str) -> QueuedOperation:
        stmt = (
            update(QueuedOperationRecord)
            .where(QueuedOperationRecord.id == op_id)
            .where(QueuedOperationRecord.state == OperationState.DEAD_LETTER.value)
            .values(state=OperationState.PENDING.value, attempt_count=0, failure_kind=None)
        )
        if self._apply(stmt) != 1:
            self._raise_missing_or_state(op_id, OperationState.DEAD_LETTER.value)
        logger.info("Operation %s re-queued by user", op_id)
        return self.get(op_id)

    def discard_dead_letter(self, op_id: str) -> None:
        stmt = (
            delete(QueuedOperationRecord)
            .where(QueuedOperationRecord.id == op_id)
            .where(
                QueuedOperationRecord.state.in_(
                    [OperationState.DEAD_LETTER.value, OperationState.QUARANTINED.value]
                )
            )
        )
        if self._apply(stmt) != 1:
            self._raise_missing_or_state(op_id, OperationState.DEAD_LETTER.value)
        logger.info("Operation %s discarded by user", op_id)

    # ------------------------------------------------------------------
    def _apply(self, stmt) -> int:
        with self.db.session() as session:
            result = session.exec(stmt.execution_options(synchronize_session=False))
            session.commit()
            return int(result.rowcount or 0)

    def _raise_missing_or_state(self, op_id: str, wanted: str) -> None:
        current = self.get(op_id)
        if current is None:
            raise OperationNotFound(op_id)
        raise InvalidOperationState(op_id, current.state.value, wanted)


__all__ = ["DurableQueueStore", "QueuedOperation", "QueueStatus"]
