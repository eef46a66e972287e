from __future__ import annotations

from typing import Callable, List, Optional

import flet as ft

from core.errors import FieldSyncError
from core.log import get_logger
from models.queued_operation import OperationState
from services.field_sync import FieldSyncEngine
from services.notification_bridge import ReplayEvent, ReplayEventKind
from services.queue_store import QueuedOperation, QueueStatus


logger = get_logger("ui.badge")


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def badge_text(status: QueueStatus) -> str:
    waiting = [
        op
        for op in status.operations
        if op.state in (OperationState.PENDING, OperationState.IN_FLIGHT)
    ]
    if not waiting and not status.needs_attention:
        return "All changes uploaded"
    photos = sum(1 for op in waiting if op.target_endpoint.rstrip("/").endswith("/photos"))
    parts = []
    if photos:
        parts.append(f"{_plural(photos, 'photo')} pending")
    if len(waiting) > photos:
        parts.append(f"{_plural(len(waiting) - photos, 'update')} pending")
    if status.needs_attention:
        verb = "needs" if status.needs_attention == 1 else "need"
        parts.append(f"{status.needs_attention} {verb} your attention")
    return ", ".join(parts)


def badge_hint(status: QueueStatus) -> str:
    if status.needs_attention:
        return "Retry or discard the items below"
    if status.total:
        return "Will upload when online"
    return ""


def event_message(event: ReplayEvent) -> Optional[str]:
    if event.needs_attention:
        return f"Upload failed and needs your attention: {event.error or 'unknown error'}"
    if event.kind is ReplayEventKind.UPLOAD_FAILED_WILL_RETRY:
        return "Upload failed, will retry"
    return None


class QueueBadge:
    """Pending-upload counter with retry/discard for dead letters.

    The badge re-reads queue status whenever it is mounted and on each
    bridge event; events missed while unmounted are not replayed.
    """

    def __init__(self, page: ft.Page, engine: FieldSyncEngine):
        self.page = page
        self.engine = engine
        self._unsubscribe: Optional[Callable[[], None]] = None

        self.title = ft.Text("", weight=ft.FontWeight.BOLD)
        self.hint = ft.Text("", size=12, italic=True)
        self.attention = ft.Column(spacing=4)
        self.sync_button = ft.TextButton("Sync now", on_click=self._on_sync_click)
        self.view = ft.Container(
            content=ft.Column(
                [ft.Row([self.title, self.sync_button], spacing=12), self.hint, self.attention],
                spacing=6,
            ),
            padding=12,
        )

    # ---------- lifecycle ----------
    def mount(self):
        if self._unsubscribe is None:
            self._unsubscribe = self.engine.subscribe(self._on_event)
        self.load()

    def unmount(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ---------- rendering ----------
    def load(self):
        status = self.engine.query_queue_status()
        self.title.value = badge_text(status)
        self.hint.value = badge_hint(status)
        self.attention.controls = [self._attention_row(op) for op in self._needs_attention(status)]
        self._update()

    @staticmethod
    def _needs_attention(status: QueueStatus) -> List[QueuedOperation]:
        wanted = (OperationState.DEAD_LETTER, OperationState.QUARANTINED)
        return [op for op in status.operations if op.state in wanted]

    def _attention_row(self, op: QueuedOperation) -> ft.Control:
        buttons = []
        if op.state is OperationState.DEAD_LETTER:
            buttons.append(ft.TextButton("Retry", on_click=lambda e, op_id=op.id: self._retry(op_id)))
        buttons.append(ft.TextButton("Discard", on_click=lambda e, op_id=op.id: self._discard(op_id)))
        label = f"{op.method} {op.target_endpoint}"
        return ft.Row(
            [ft.Text(label, tooltip=op.last_error or None, expand=True), *buttons],
            spacing=8,
        )

    def _update(self):
        # Before the control is on a page there is nothing to refresh.
        try:
            mounted = self.view.page is not None
        except (AttributeError, RuntimeError):
            mounted = False
        if mounted:
            self.page.update()

    def _toast(self, message: str):
        if hasattr(ft, "SnackBar"):
            self.page.snack_bar = ft.SnackBar(ft.Text(message))
            self.page.snack_bar.open = True
            self._update()

    # ---------- handlers ----------
    def _on_event(self, event: ReplayEvent):
        message = event_message(event)
        if message:
            self._toast(message)
        self.load()

    def _retry(self, op_id: str):
        try:
            self.engine.retry_dead_letter(op_id)
        except FieldSyncError as exc:
            logger.warning("Retry of %s refused: %s", op_id, exc)
        self.load()

    def _discard(self, op_id: str):
        try:
            self.engine.discard_dead_letter(op_id)
        except FieldSyncError as exc:
            logger.warning("Discard of %s refused: %s", op_id, exc)
        self.load()

    def _on_sync_click(self, e: ft.ControlEvent):
        async def _drain():
            await self.engine.drain_now()
            self.load()

        self.page.run_task(_drain)


__all__ = ["QueueBadge", "badge_hint", "badge_text", "event_message"]
