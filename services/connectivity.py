"""Polls the server health endpoint and reports reconnects."""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, Optional

import httpx

from core.log import get_logger
from core.settings import CONNECTIVITY, ConnectivitySettings


logger = get_logger("connectivity")


class ConnectivityState(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectivityProbe:
    """Background health poller.

    ``on_restored`` fires on every OFFLINE -> ONLINE edge, and also on the
    first successful probe after start so a queue filled while the app
    was closed gets drained. ``on_lost`` fires on every edge into OFFLINE.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        on_restored: Callable[[], object],
        *,
        on_lost: Optional[Callable[[], object]] = None,
        settings: ConnectivitySettings = CONNECTIVITY,
    ) -> None:
        self.client = client
        self.on_restored = on_restored
        self.on_lost = on_lost
        self.settings = settings
        self.state = ConnectivityState.UNKNOWN
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check(self) -> ConnectivityState:
        try:
            response = await self.client.get(
                self.settings.health_path, timeout=self.settings.probe_timeout_sec
            )
            online = response.is_success
        except httpx.TransportError as exc:
            logger.debug("Health probe failed: %s", exc)
            online = False
        self._set_state(ConnectivityState.ONLINE if online else ConnectivityState.OFFLINE)
        return self.state

    def _set_state(self, new_state: ConnectivityState) -> None:
        old_state = self.state
        self.state = new_state
        if old_state is new_state:
            return
        logger.info("Connectivity: %s -> %s", old_state.value, new_state.value)
        if new_state is ConnectivityState.ONLINE:
            self.on_restored()
        elif self.on_lost is not None:
            self.on_lost()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.settings.poll_interval_sec)


__all__ = ["ConnectivityProbe", "ConnectivityState"]
