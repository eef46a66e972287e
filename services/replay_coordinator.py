from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import httpx

from core.errors import CorruptPayloadError
from core.log import get_logger
from core.settings import REPLAY, ReplaySettings
from models.queued_operation import FailureKind, OperationState
from services.cache_router import CacheStrategyRouter
from services.notification_bridge import NotificationBridge
from services.queue_store import DurableQueueStore, QueuedOperation
from services.upload_codec import (
    Field,
    decode_payload_async,
    encode_payload,
    is_json_payload,
    to_request_parts,
)
from storage.config import record_drain


logger = get_logger("replay")


class Outcome(str, Enum):
    DELIVERED = "delivered"
    RETRYING = "retrying"
    DEAD_LETTER = "dead-letter"
    QUARANTINED = "quarantined"
    HELD = "held"
    SKIPPED = "skipped"


@dataclass
class DrainReport:
    outcomes: Dict[str, Outcome] = field(default_factory=dict)

    def ids(self, outcome: Outcome) -> List[str]:
        return [op_id for op_id, value in self.outcomes.items() if value is outcome]

    @property
    def delivered(self) -> List[str]:
        return self.ids(Outcome.DELIVERED)

    @property
    def retrying(self) -> List[str]:
        return self.ids(Outcome.RETRYING)

    @property
    def dead_lettered(self) -> List[str]:
        return self.ids(Outcome.DEAD_LETTER)

    @property
    def quarantined(self) -> List[str]:
        return self.ids(Outcome.QUARANTINED)

    @property
    def held(self) -> List[str]:
        return self.ids(Outcome.HELD)


def _is_retryable(status_code: int, settings: ReplaySettings) -> bool:
    return status_code >= 500 or status_code in settings.retryable_status


def _server_reason(response: httpx.Response) -> str:
    reason = None
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
        body = None
    if isinstance(body, dict):
        reason = body.get("error") or body.get("detail") or body.get("message")
    if not reason:
        reason = response.text[:200] or response.reason_phrase
    return f"HTTP {response.status_code}: {reason}"


class ReplayCoordinator:
    """Drains the queue store into the network, one record at a time.

    At most one drain runs per coordinator. Wake requests that arrive
    while a drain is active join it instead of starting another. Within
    a drain records go out in enqueue order; a record whose resource key
    has an earlier undelivered record (failed in this drain, dead-lettered
    or quarantined) is held back so per-resource order is never broken.
    """

    def __init__(
        self,
        store: DurableQueueStore,
        router: CacheStrategyRouter,
        bridge: NotificationBridge,
        *,
        settings: ReplaySettings = REPLAY,
        device_id: Optional[str] = None,
        config_path: Optional[Path] = None,
    ) -> None:
        self.store = store
        self.router = router
        self.bridge = bridge
        self.settings = settings
        self.device_id = device_id
        self.config_path = config_path
        # Last known link state. Starts unknown (False) until a probe reports in.
        self.online = False
        self._drain_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Enqueue
    def enqueue_write(
        self,
        target_endpoint: str,
        fields: Sequence[Field],
        *,
        method: str = "POST",
        resource_key: Optional[str] = None,
        op_id: Optional[str] = None,
    ) -> str:
        """Persist the write and return its id.

        A drain is started right away only while the link is known to be up;
        offline writes wait for the reconnect signal or an explicit drain so
        they do not spend their attempt budget against a dead network.
        """

        payload = encode_payload(fields)
        op = self.store.create(
            target_endpoint,
            payload,
            method=method,
            op_id=op_id,
            resource_key=resource_key,
        )
        self.bridge.queued(op.id, op.target_endpoint)
        if self.online:
            self.request_wake()
        return op.id

    # ------------------------------------------------------------------
    # Wake-up handling
    @property
    def draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def on_connectivity_restored(self) -> bool:
        logger.info("Connectivity restored, requesting drain")
        self.online = True
        return self.request_wake()

    def on_connectivity_lost(self) -> None:
        logger.info("Connectivity lost, holding new writes until reconnect")
        self.online = False

    def request_wake(self) -> bool:
        """Best-effort: schedule a drain on the running loop, if any."""

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, wake request left for the next drain")
            return False
        self._ensure_drain()
        return True

    async def drain_now(self) -> DrainReport:
        return await asyncio.shield(self._ensure_drain())

    async def shutdown(self) -> None:
        """Cancel an active drain. An interrupted record stays IN_FLIGHT
        until the store recovers it on the next start."""

        task, self._drain_task = self._drain_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _ensure_drain(self) -> asyncio.Task:
        if self.draining:
            logger.debug("Drain already active, coalescing wake request")
            return self._drain_task
        task = asyncio.get_running_loop().create_task(self._drain())
        task.add_done_callback(self._log_drain_failure)
        self._drain_task = task
        return task

    @staticmethod
    def _log_drain_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Drain aborted: %s", exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Drain loop
    async def _drain(self) -> DrainReport:
        report = DrainReport()
        failed_keys: set[str] = set()
        while True:
            batch = [op for op in self.store.list_pending() if op.id not in report.outcomes]
            if not batch:
                break
            blocking = self._blocking_sequences()
            for op in batch:
                if self._is_held(op, failed_keys, blocking):
                    report.outcomes[op.id] = Outcome.HELD
                    if op.resource_key:
                        failed_keys.add(op.resource_key)
                    continue
                outcome = await self._replay_one(op)
                report.outcomes[op.id] = outcome
                if outcome is not Outcome.DELIVERED and op.resource_key:
                    failed_keys.add(op.resource_key)

        logger.info(
            "Drain finished: %s delivered, %s retrying, %s dead-lettered, %s quarantined, %s held",
            len(report.delivered),
            len(report.retrying),
            len(report.dead_lettered),
            len(report.quarantined),
            len(report.held),
        )
        if self.config_path is not None:
            record_drain(self.config_path)
        return report

    def _blocking_sequences(self) -> Dict[str, int]:
        blocking: Dict[str, int] = {}
        for op in self.store.list_all():
            if op.resource_key is None:
                continue
            if op.state in (OperationState.DEAD_LETTER, OperationState.QUARANTINED):
                current = blocking.get(op.resource_key)
                if current is None or op.sequence < current:
                    blocking[op.resource_key] = op.sequence
        return blocking

    @staticmethod
    def _is_held(op: QueuedOperation, failed_keys: set, blocking: Dict[str, int]) -> bool:
        if op.resource_key is None:
            return False
        if op.resource_key in failed_keys:
            return True
        first_blocker = blocking.get(op.resource_key)
        return first_blocker is not None and first_blocker < op.sequence

    async def _replay_one(self, op: QueuedOperation) -> Outcome:
        if op.attempt_count >= self.settings.max_attempts:
            return self._dead_letter(op, op.last_error or "Maximum attempts reached", FailureKind.TRANSIENT)

        try:
            fields = await decode_payload_async(op.payload)
        except CorruptPayloadError as exc:
            self.store.quarantine(op.id, str(exc))
            self.bridge.dead_letter(op.id, op.target_endpoint, f"Stored data was damaged: {exc}")
            return Outcome.QUARANTINED

        if not self.store.mark_in_flight(op.id):
            logger.info("Operation %s left the pending set before replay", op.id)
            return Outcome.SKIPPED

        try:
            response = await asyncio.wait_for(
                self._send(op, fields), timeout=self.settings.request_timeout_sec
            )
        except (httpx.TransportError, asyncio.TimeoutError) as exc:
            return self._retry_later(op, f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception("Replay of %s crashed", op.id)
            return self._retry_later(op, f"{type(exc).__name__}: {exc}")

        if response.is_success:
            self.store.delete(op.id)
            logger.info("Operation %s delivered (%s)", op.id, response.status_code)
            self.bridge.uploaded(op.id, op.target_endpoint)
            return Outcome.DELIVERED

        reason = _server_reason(response)
        if _is_retryable(response.status_code, self.settings):
            return self._retry_later(op, reason)
        return self._dead_letter(op, reason, FailureKind.PERMANENT)

    async def _send(self, op: QueuedOperation, fields: Sequence[Field]) -> httpx.Response:
        headers = {self.settings.idempotency_header: op.id}
        if self.device_id:
            headers[self.settings.device_header] = self.device_id
        kwargs = {}
        if is_json_payload(fields):
            kwargs["content"] = fields[0].value.encode("utf-8")
            headers["Content-Type"] = "application/json"
        else:
            data, files = to_request_parts(fields)
            kwargs["data"] = data
            if files:
                kwargs["files"] = files
        return await self.router.send(
            op.method,
            op.target_endpoint,
            timeout=self.settings.request_timeout_sec,
            headers=headers,
            **kwargs,
        )

    def _retry_later(self, op: QueuedOperation, error: str) -> Outcome:
        updated = self.store.mark_attempted(op.id, error, kind=FailureKind.TRANSIENT)
        logger.warning("Replay of %s failed (attempt %s): %s", op.id, updated.attempt_count, error)
        if updated.attempt_count >= self.settings.max_attempts:
            return self._dead_letter(updated, error, FailureKind.TRANSIENT)
        self.bridge.will_retry(op.id, op.target_endpoint, error)
        return Outcome.RETRYING

    def _dead_letter(self, op: QueuedOperation, error: str, kind: FailureKind) -> Outcome:
        self.store.mark_dead_letter(op.id, error, kind=kind)
        self.bridge.dead_letter(op.id, op.target_endpoint, error)
        return Outcome.DEAD_LETTER


__all__ = ["DrainReport", "Outcome", "ReplayCoordinator"]
