# fieldsync/main.py
import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
import flet as ft

from core.log import get_logger
from core.settings import APP_NAME, CONFIG_PATH, REPLAY
from services.connectivity import ConnectivityProbe
from services.field_sync import FieldSyncEngine
from storage.config import resolve_server_url
from ui.queue_badge import QueueBadge


logger = get_logger("app")


async def main(page: ft.Page):
    page.title = APP_NAME
    page.appbar = ft.AppBar(title=ft.Text(APP_NAME), center_title=False)

    engine = FieldSyncEngine(resolve_server_url(REPLAY.server_url), config_path=CONFIG_PATH)
    await engine.open()

    badge = QueueBadge(page, engine)
    page.add(badge.view)
    badge.mount()

    probe = ConnectivityProbe(
        engine.client, engine.connectivity_restored, on_lost=engine.connectivity_lost
    )
    probe.start()

    def on_lifecycle(e):
        # Coming back to the foreground is treated like a reconnect.
        if str(getattr(e, "data", "")).lower() in ("resume", "show"):
            page.run_task(engine.drain_now)

    if hasattr(page, "on_app_lifecycle_state_change"):
        page.on_app_lifecycle_state_change = on_lifecycle

    async def shutdown():
        badge.unmount()
        await probe.stop()
        await engine.close()

    def on_disconnect(e):
        logger.info("Page disconnected, closing engine")
        page.run_task(shutdown)

    page.on_disconnect = on_disconnect


def run():
    ft.app(target=main)


if __name__ == "__main__":
    run()
