"""SQLite engine ownership for the client queue and the job server."""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

from models import CacheEntry, Job, JobAuditRecord, JobPhoto, QueuedOperationRecord
from storage import migrations


CLIENT_TABLES = [QueuedOperationRecord.__table__, CacheEntry.__table__]
SERVER_TABLES = [Job.__table__, JobPhoto.__table__, JobAuditRecord.__table__]


def _enable_durability(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


class Database:
    """An explicitly constructed SQLite database.

    Nothing is created at import time: callers build one per process,
    call :meth:`init` on start and :meth:`dispose` on shutdown.
    """

    def __init__(self, path: str | Path, *, tables: Optional[Sequence] = None, echo: bool = False):
        self.path = Path(path)
        self.tables = list(tables) if tables is not None else list(CLIENT_TABLES)
        self._engine = create_engine(
            f"sqlite:///{self.path.as_posix()}",
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        event.listen(self._engine, "connect", _enable_durability)

    @classmethod
    def client(cls, path: str | Path) -> "Database":
        return cls(path, tables=CLIENT_TABLES)

    @classmethod
    def server(cls, path: str | Path) -> "Database":
        return cls(path, tables=SERVER_TABLES)

    @property
    def engine(self):
        return self._engine

    def init(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(self._engine, tables=self.tables)
        migrations.run_all(self._engine, [table.name for table in self.tables])

    def session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def dispose(self) -> None:
        self._engine.dispose()


__all__ = ["CLIENT_TABLES", "SERVER_TABLES", "Database"]
