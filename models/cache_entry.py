"""Locally stored responses, partitioned by versioned bucket."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, LargeBinary
from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class CacheEntry(SQLModel, table=True):
    __tablename__ = "cache_entry"

    bucket: str = Field(primary_key=True)
    request_key: str = Field(primary_key=True)
    url: str
    status_code: int = Field(default=200)
    headers: str = Field(default="{}")
    body: bytes = Field(default=b"", sa_column=Column(LargeBinary, nullable=False))
    stored_at: datetime = Field(default_factory=utc_now)


__all__ = ["CacheEntry"]
