from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from core.log import get_logger


logger = get_logger("bridge")


class ReplayEventKind(str, Enum):
    QUEUED = "queued"
    UPLOADED = "uploaded"
    UPLOAD_FAILED_WILL_RETRY = "upload-failed-will-retry"
    DEAD_LETTER = "dead-letter"


@dataclass(frozen=True)
class ReplayEvent:
    kind: ReplayEventKind
    operation_id: str
    target_endpoint: str
    error: Optional[str] = None

    @property
    def needs_attention(self) -> bool:
        return self.kind is ReplayEventKind.DEAD_LETTER


Listener = Callable[[ReplayEvent], None]


class NotificationBridge:
    """Pushes replay outcomes to whatever client surfaces are open.

    Delivery is best-effort and at most once: no buffering for late
    subscribers and no redelivery. Surfaces recover missed events by
    re-querying queue status.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def publish(self, event: ReplayEvent) -> int:
        delivered = 0
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed on %s", listener, event.kind.value)
                continue
            delivered += 1
        return delivered

    def queued(self, operation_id: str, target_endpoint: str) -> int:
        return self.publish(ReplayEvent(ReplayEventKind.QUEUED, operation_id, target_endpoint))

    def uploaded(self, operation_id: str, target_endpoint: str) -> int:
        return self.publish(ReplayEvent(ReplayEventKind.UPLOADED, operation_id, target_endpoint))

    def will_retry(self, operation_id: str, target_endpoint: str, error: str) -> int:
        return self.publish(
            ReplayEvent(ReplayEventKind.UPLOAD_FAILED_WILL_RETRY, operation_id, target_endpoint, error)
        )

    def dead_letter(self, operation_id: str, target_endpoint: str, error: Optional[str]) -> int:
        return self.publish(ReplayEvent(ReplayEventKind.DEAD_LETTER, operation_id, target_endpoint, error))


__all__ = ["Listener", "NotificationBridge", "ReplayEvent", "ReplayEventKind"]
