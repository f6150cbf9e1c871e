"""
Connectivity monitor.

Probes the transport and reports down/up transitions to listeners. The
scheduler drains the offline queue and syncs on every down -> up edge.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from ..notify import EventKind, LoggingNotificationSink, NotificationSink
from ..transport.base import SyncTransport

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None]]


class ConnectivityMonitor:
    def __init__(
        self,
        transport: SyncTransport,
        notifier: NotificationSink | None = None,
        initially_online: bool = True,
    ) -> None:
        self.transport = transport
        self.notifier = notifier or LoggingNotificationSink()
        self._online = initially_online
        self._listeners: list[ConnectivityListener] = []

    @property
    def online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> None:
        self._listeners.append(listener)

    async def probe(self) -> bool:
        """Check reachability once, notifying listeners on a transition."""
        try:
            reachable = bool(await self.transport.is_reachable())
        except Exception as e:
            logger.debug("Connectivity probe raised, treating as offline", extra={"error": str(e)})
            reachable = False

        if reachable == self._online:
            return reachable

        self._online = reachable
        logger.info("Connectivity changed", extra={"online": reachable})
        self.notifier.notify(EventKind.CONNECTIVITY_CHANGED, {"online": reachable})
        for listener in list(self._listeners):
            try:
                await listener(reachable)
            except Exception:
                logger.error("Connectivity listener failed", exc_info=True)
        return reachable
