"""
Connectivity tracking for the delivery pipeline.

The host environment reports online/offline transitions; the monitor keeps
the current ``NetworkStatus`` and fans changes out to subscribers (e.g. the
agent, which drains the offline store when connectivity returns).
"""

from __future__ import annotations

import time
from typing import Callable

from loguru import logger

from .types import NetworkCallback, NetworkChange, NetworkStatus


class NetworkMonitor:
    """Current connectivity plus an in-process pub/sub of transitions.

    Subscribers are async callables receiving ``NetworkChange``. They are
    called in registration order; one subscriber's failure does not affect
    the others. Redundant transitions (online → online) publish nothing.

    Example:
        monitor = NetworkMonitor()

        async def on_change(change: NetworkChange):
            if change.restored:
                await drain()

        monitor.subscribe(on_change)
        await monitor.set_online()
    """

    def __init__(self, online: bool = True, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._status = NetworkStatus(is_online=online)
        self._subs: list[NetworkCallback] = []

    @property
    def status(self) -> NetworkStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status.is_online

    def subscribe(self, callback: NetworkCallback) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Network subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: NetworkCallback) -> None:
        """No-op if ``callback`` is not subscribed."""
        try:
            self._subs.remove(callback)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    async def set_online(self) -> bool:
        """Record connectivity restored. Returns True if this was a transition."""
        if self._status.is_online:
            return False
        previous = self._status
        self._status = NetworkStatus(
            is_online=True,
            last_offline_at=previous.last_offline_at,
            last_online_at=self._clock(),
        )
        logger.info("Network connection restored")
        await self._publish(NetworkChange(self._status, previous))
        return True

    async def set_offline(self) -> bool:
        """Record connectivity lost. Returns True if this was a transition."""
        if not self._status.is_online:
            return False
        previous = self._status
        self._status = NetworkStatus(
            is_online=False,
            last_offline_at=self._clock(),
            last_online_at=previous.last_online_at,
        )
        logger.info("Network connection lost")
        await self._publish(NetworkChange(self._status, previous))
        return True

    async def _publish(self, change: NetworkChange) -> None:
        if not self._subs:
            return

        # Iterate over copy to allow unsubscribe during iteration
        for callback in list(self._subs):
            try:
                await callback(change)
            except Exception as exc:
                logger.debug(f"Network subscriber error (ignored): {type(exc).__name__}: {exc}")
