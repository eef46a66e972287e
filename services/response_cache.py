"""Versioned response buckets backed by the local database."""
from __future__ import annotations

import json
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
from sqlalchemy import delete
from sqlmodel import select

from core.log import get_logger
from core.settings import CACHE, CacheSettings
from datetime_utils import utc_now
from models.cache_entry import CacheEntry
from storage.db import Database


CACHE_HEADER = "x-fieldsync-cache"
# httpx hands us decoded bodies, so these no longer describe what we store.
_DROPPED_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}

logger = get_logger("cache")


def normalize_url(url) -> str:
    parsed = httpx.URL(str(url))
    query = urlencode(sorted(parsed.params.multi_items()))
    base = f"{parsed.scheme}://{parsed.netloc.decode('ascii')}{parsed.path}"
    return f"{base}?{query}" if query else base


def request_key(method: str, url) -> str:
    return f"{method.upper()} {normalize_url(url)}"


def _serialise_headers(headers: httpx.Headers) -> str:
    pairs = [(k, v) for k, v in headers.multi_items() if k.lower() not in _DROPPED_HEADERS]
    return json.dumps(pairs, ensure_ascii=False)


def _deserialise_headers(payload: Optional[str]) -> List[Tuple[str, str]]:
    try:
        data = json.loads(payload or "[]")
    except json.JSONDecodeError:
        return []
    if not isinstance(data, list):
        return []
    return [(str(pair[0]), str(pair[1])) for pair in data if isinstance(pair, list) and len(pair) == 2]


class ResponseCache:
    """Cache buckets named ``<prefix>-static-<version>`` / ``-dynamic-``.

    Entries never expire on their own. A new version tag makes every
    older bucket stale, and :meth:`purge_stale` drops them wholesale.
    """

    def __init__(self, db: Database, settings: CacheSettings = CACHE):
        self.db = db
        self.settings = settings

    @property
    def static_bucket(self) -> str:
        return self.settings.static_bucket

    @property
    def dynamic_bucket(self) -> str:
        return self.settings.dynamic_bucket

    def current_buckets(self) -> Tuple[str, str]:
        return (self.static_bucket, self.dynamic_bucket)

    def put(self, bucket: str, request: httpx.Request, response: httpx.Response) -> None:
        if bucket not in self.current_buckets():
            raise ValueError(f"Unknown cache bucket: {bucket}")
        key = request_key(request.method, request.url)
        with self.db.session() as session:
            row = session.get(CacheEntry, (bucket, key))
            if row is None:
                row = CacheEntry(bucket=bucket, request_key=key, url=str(request.url))
            row.status_code = response.status_code
            row.headers = _serialise_headers(response.headers)
            row.body = response.content
            row.stored_at = utc_now()
            session.add(row)
            session.commit()

    def match(self, method: str, url, *, buckets: Optional[Iterable[str]] = None) -> Optional[httpx.Response]:
        """Most recently stored response for the request across ``buckets``."""

        key = request_key(method, url)
        names = list(buckets or self.current_buckets())
        stmt = (
            select(CacheEntry)
            .where(CacheEntry.request_key == key)
            .where(CacheEntry.bucket.in_(names))
            .order_by(CacheEntry.stored_at.desc())
            .limit(1)
        )
        with self.db.session() as session:
            row = session.exec(stmt).first()
        if row is None:
            return None
        headers = _deserialise_headers(row.headers) + [(CACHE_HEADER, row.bucket)]
        return httpx.Response(
            row.status_code,
            headers=headers,
            content=row.body,
            request=httpx.Request(method.upper(), row.url),
        )

    def bucket_names(self) -> List[str]:
        with self.db.session() as session:
            return sorted(set(session.exec(select(CacheEntry.bucket))))

    def purge_stale(self) -> int:
        current = list(self.current_buckets())
        with self.db.session() as session:
            result = session.exec(delete(CacheEntry)
                .where(CacheEntry.bucket.not_in(current))
                .execution_options(synchronize_session=False)
            )
            session.commit()
            removed = int(result.rowcount or 0)
        if removed:
            logger.info("Purged %s cache entries from old buckets", removed)
        return removed

    def clear(self, bucket: Optional[str] = None) -> None:
        stmt = delete(CacheEntry)
        if bucket is not None:
            stmt = stmt.where(CacheEntry.bucket == bucket)
        with self.db.session() as session:
            session.exec(stmt)
            session.commit()


__all__ = ["CACHE_HEADER", "ResponseCache", "normalize_url", "request_key"]
