"""
Online/offline tracking for the upload queue.

The monitor is fed either by the host platform (`set_online` from a network
change hook) or by its own reachability probe. Callbacks are edge-triggered:
they fire once per transition, never while the state is unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class ConnectivityMonitor:
    def __init__(
        self,
        online: bool = True,
        *,
        probe_url: Optional[str] = None,
        probe_interval: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.probe_url = probe_url
        self.probe_interval = probe_interval
        self._client = client
        self._owns_client = client is None
        self._online_event = asyncio.Event()
        if online:
            self._online_event.set()
        self._subscribers: List[Tuple[Optional[Callback], Optional[Callback]]] = []
        self._probe_task: Optional[asyncio.Task] = None

    @property
    def online(self) -> bool:
        return self._online_event.is_set()

    def subscribe(
        self,
        on_online: Optional[Callback] = None,
        on_offline: Optional[Callback] = None,
    ) -> Callable[[], None]:
        """Register transition callbacks; returns a function that unregisters them."""
        entry = (on_online, on_offline)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """Record the current state; returns True when it was a transition."""
        if online == self.online:
            return False
        if online:
            self._online_event.set()
            logger.info("Connection restored")
        else:
            self._online_event.clear()
            logger.info("Connection lost")

        for on_online, on_offline in list(self._subscribers):
            callback = on_online if online else on_offline
            if callback is None:
                continue
            try:
                callback()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Connectivity callback failed: %s", exc)
        return True

    async def wait_online(self) -> None:
        await self._online_event.wait()

    async def probe(self) -> bool:
        """Check reachability of `probe_url`; any HTTP response counts as online."""
        if not self.probe_url:
            return self.online
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=5.0)
        try:
            await self._client.head(self.probe_url)
            reachable = True
        except httpx.TransportError as exc:
            logger.debug("Connectivity probe failed: %s", exc)
            reachable = False
        self.set_online(reachable)
        return reachable

    async def _probe_loop(self) -> None:
        while True:
            await self.probe()
            await asyncio.sleep(self.probe_interval)

    async def start(self) -> None:
        if self.probe_url and self._probe_task is None:
            self._probe_task = asyncio.create_task(self._probe_loop())

    async def close(self) -> None:
        if self._probe_task is not None:
            self._probe_task.cancel()
            await asyncio.gather(self._probe_task, return_exceptions=True)
            self._probe_task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._subscribers.clear()

    async def __aenter__(self) -> "ConnectivityMonitor":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
