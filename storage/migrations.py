"""Idempotent DDL applied after ``create_all``."""

from __future__ import annotations

from typing import Iterable

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_queue_columns(conn) -> None:
    # Databases created before per-resource ordering and failure kinds.
    columns = {
        "method": "TEXT NOT NULL DEFAULT 'POST'",
        "resource_key": "TEXT",
        "failure_kind": "TEXT",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "queued_operation", name):
            conn.execute(text(f"ALTER TABLE queued_operation ADD COLUMN {name} {ddl_type}"))


def ensure_queue_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_queued_operation_fifo
            ON queued_operation (state, sequence)
            """
        )
    )


def ensure_photo_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_job_photo_position
            ON job_photo (job_id, position)
            """
        )
    )


def ensure_audit_append_only(conn) -> None:
    conn.execute(
        text(
            """
            CREATE TRIGGER IF NOT EXISTS job_audit_no_update
            BEFORE UPDATE ON job_audit
            BEGIN
                SELECT RAISE(ABORT, 'job_audit is append-only');
            END
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE TRIGGER IF NOT EXISTS job_audit_no_delete
            BEFORE DELETE ON job_audit
            BEGIN
                SELECT RAISE(ABORT, 'job_audit is append-only');
            END
            """
        )
    )


def run_all(engine, tables: Iterable[str]) -> None:
    present = set(tables)
    with engine.begin() as conn:
        if "queued_operation" in present:
            ensure_queue_columns(conn)
            ensure_queue_indexes(conn)
        if "job_photo" in present:
            ensure_photo_indexes(conn)
        if "job_audit" in present:
            ensure_audit_append_only(conn)


__all__ = ["run_all"]
