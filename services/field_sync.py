"""Client-side entry point that owns the queue, cache and replay loop."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import httpx

from core.log import get_logger
from core.settings import CACHE, DB_PATH, REPLAY, ROUTING, CacheSettings, ReplaySettings, RoutingSettings
from services.cache_router import CacheStrategyRouter
from services.notification_bridge import Listener, NotificationBridge
from services.queue_store import DurableQueueStore, QueuedOperation, QueueStatus
from services.replay_coordinator import DrainReport, ReplayCoordinator
from services.response_cache import ResponseCache
from services.upload_codec import BlobField, Field, TextField, json_payload
from storage.db import Database
from storage.device import get_device_id


logger = get_logger("engine")


def job_resource_key(job_id: str) -> str:
    return f"job:{job_id}"


class FieldSyncEngine:
    """Wires the local database, the router and the replay coordinator.

    Build one per process and use it as an async context manager::

        async with FieldSyncEngine(server_url) as engine:
            op_id = engine.enqueue_photo(job_id, "before", data, "image/jpeg")
            await engine.drain_now()

    Opening recovers records a crash left IN_FLIGHT and purges cache
    buckets from older versions. Closing waits for nothing: undelivered
    records stay in the database for the next start.
    """

    def __init__(
        self,
        server_url: Optional[str] = None,
        *,
        db_path: Optional[Path] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
        replay: ReplaySettings = REPLAY,
        cache: CacheSettings = CACHE,
        routing: RoutingSettings = ROUTING,
        device_id: Optional[str] = None,
        config_path: Optional[Path] = None,
    ) -> None:
        self.server_url = server_url or replay.server_url
        self.db = Database.client(db_path or DB_PATH)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.server_url,
            transport=transport,
            timeout=httpx.Timeout(replay.request_timeout_sec),
        )
        self.store = DurableQueueStore(self.db)
        self.cache = ResponseCache(self.db, cache)
        self.router = CacheStrategyRouter(self.client, self.cache, settings=cache, routing=routing)
        self.bridge = NotificationBridge()
        self.coordinator = ReplayCoordinator(
            self.store,
            self.router,
            self.bridge,
            settings=replay,
            device_id=device_id or get_device_id(),
            config_path=config_path,
        )
        self._opened = False

    # ------------------------------------------------------------------
    # Lifecycle
    async def open(self) -> "FieldSyncEngine":
        if self._opened:
            return self
        self.db.init()
        self.store.recover_in_flight()
        self.router.activate()
        self._opened = True
        logger.info("Engine open against %s (%s queued)", self.server_url, self.store.count())
        return self

    async def close(self) -> None:
        if not self._opened:
            return
        self._opened = False
        await self.coordinator.shutdown()
        if self._owns_client:
            await self.client.aclose()
        self.db.dispose()
        logger.info("Engine closed")

    async def __aenter__(self) -> "FieldSyncEngine":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Writes
    def enqueue_write(
        self,
        target_endpoint: str,
        fields: Sequence[Field],
        *,
        method: str = "POST",
        resource_key: Optional[str] = None,
        op_id: Optional[str] = None,
    ) -> str:
        return self.coordinator.enqueue_write(
            target_endpoint, fields, method=method, resource_key=resource_key, op_id=op_id
        )

    def enqueue_photo(
        self,
        job_id: str,
        photo_type: str,
        content: bytes,
        content_type: str,
        *,
        filename: Optional[str] = None,
    ) -> str:
        fields = [
            BlobField(
                name="photo",
                content=content,
                content_type=content_type,
                filename=filename or f"{photo_type}.{content_type.rsplit('/', 1)[-1]}",
            ),
            TextField(name="type", value=photo_type),
        ]
        return self.enqueue_write(
            f"/api/field/job/{job_id}/photos", fields, resource_key=job_resource_key(job_id)
        )

    def enqueue_transition(
        self,
        job_id: str,
        status: str,
        *,
        skip_reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> str:
        body = {"status": status}
        if skip_reason is not None:
            body["skipReason"] = skip_reason
        if notes is not None:
            body["notes"] = notes
        return self.enqueue_write(
            f"/api/field/job/{job_id}",
            json_payload(body),
            method="PUT",
            resource_key=job_resource_key(job_id),
        )

    # ------------------------------------------------------------------
    # Queue management
    def query_queue_status(self, job_id: Optional[str] = None) -> QueueStatus:
        """Whole-queue snapshot, or only the writes queued for one job."""

        return self.store.status(job_resource_key(job_id) if job_id is not None else None)

    def cancel(self, op_id: str) -> None:
        self.store.cancel(op_id)

    def retry_dead_letter(self, op_id: str) -> QueuedOperation:
        op = self.store.retry_dead_letter(op_id)
        if self.coordinator.online:
            self.coordinator.request_wake()
        return op

    def discard_dead_letter(self, op_id: str) -> None:
        self.store.discard_dead_letter(op_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.bridge.subscribe(listener)

    # ------------------------------------------------------------------
    # Network
    async def fetch(
        self,
        url: str,
        *,
        destination: Optional[str] = None,
        navigate: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        return await self.router.fetch("GET", url, destination=destination, navigate=navigate, **kwargs)

    async def precache(self) -> int:
        return await self.router.install()

    @property
    def online(self) -> bool:
        return self.coordinator.online

    def connectivity_restored(self) -> bool:
        return self.coordinator.on_connectivity_restored()

    def connectivity_lost(self) -> None:
        self.coordinator.on_connectivity_lost()

    async def drain_now(self) -> DrainReport:
        return await self.coordinator.drain_now()


__all__ = ["FieldSyncEngine", "job_resource_key"]
