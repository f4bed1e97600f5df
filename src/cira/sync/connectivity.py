"""Connectivity monitor: turn reachability changes into outbox drains."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import requests

from .events import EventBus, SyncEventKind

logger = logging.getLogger(__name__)


class ConnectivityState(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"


def http_probe(url: str, timeout: float = 5.0) -> Callable[[], bool]:
    """Reachability check that GETs ``url``; any response below 500 counts as online."""

    def probe() -> bool:
        try:
            response = requests.get(url, timeout=timeout)
        except requests.RequestException as e:
            logger.debug(f"Probe {url} failed: {e}")
            return False
        return response.status_code < 500

    return probe


class ConnectivityMonitor:
    """Tracks online/offline and starts one drain per offline→online edge.

    ``update`` never blocks: the drain runs as a background task whose
    failure is logged and otherwise ignored.
    """

    def __init__(
        self,
        on_online: Callable[[], Awaitable[Any]],
        *,
        bus: Optional[EventBus] = None,
        initial_online: bool = False,
    ):
        self.on_online = on_online
        self.bus = bus or EventBus()
        self.state = ConnectivityState.ONLINE if initial_online else ConnectivityState.OFFLINE
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_online(self) -> bool:
        return self.state is ConnectivityState.ONLINE

    def update(self, reachable: bool) -> None:
        new_state = ConnectivityState.ONLINE if reachable else ConnectivityState.OFFLINE
        if new_state is self.state:
            return

        previous, self.state = self.state, new_state
        logger.info(f"Connectivity {previous.value} -> {new_state.value}")
        self.bus.publish(SyncEventKind.CONNECTIVITY_CHANGED, detail={"online": reachable})

        if previous is ConnectivityState.OFFLINE and new_state is ConnectivityState.ONLINE:
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Back online but no event loop is running; drain not scheduled")
            return
        task = loop.create_task(self.on_online())
        self._tasks.add(task)
        task.add_done_callback(self._drain_done)

    def _drain_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Drain after reconnect failed: {error}")

    @property
    def pending_drains(self) -> int:
        return len(self._tasks)

    async def wait_idle(self) -> None:
        """Wait for every scheduled drain to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_pending(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run_probe(self, probe: Callable[[], bool], interval: float) -> None:
        """Poll ``probe`` every ``interval`` seconds and feed ``update`` until cancelled."""
        while True:
            reachable = await asyncio.to_thread(probe)
            self.update(reachable)
            await asyncio.sleep(interval)
