"""
Best-effort terminal delivery on process teardown.

Nothing here waits for a network response. Queued events are first moved
to the offline store, then handed to the transport's fire-and-forget beacon;
they are released from the store only once the beacon is confirmed. Without
a beacon the offline drain delivers them, now or on the next start.
"""

from __future__ import annotations

import atexit
import signal
from typing import Any, Optional

from loguru import logger

from .flush import FlushCoordinator
from .scheduler import Scheduler
from .types import EventRecord, Transport

HIDDEN = "hidden"


class UnloadGuard:
    """Hooks process termination and performs one last delivery attempt."""

    def __init__(self, coordinator: FlushCoordinator, transport: Transport):
        self._coord = coordinator
        self._transport = transport
        self._installed = False
        self._prev_sigterm: Any = None

    @property
    def installed(self) -> bool:
        return self._installed

    def force_flush_on_unload(self) -> bool:
        """Hand queued events to the beacon.

        The events are written to the offline store first and only leave it
        once the beacon reports a 2xx, so a process that exits before the
        request completes still has them on the next start. Returns True if
        the beacon accepted the request; False means delivery is left to the
        offline drain (or there was nothing to send).
        """
        coord = self._coord
        if not coord.ready:
            return False

        records = list(coord.ready)
        stored = coord.move_ready_to_offline()
        coord.cancel_flush_timer()

        if not coord.network.is_online:
            logger.info(f"Unload while offline, {stored} events kept in offline store")
            return False

        envelope = coord.dispatcher.build_envelope(records)
        accepted = self._transport.beacon(
            coord.dispatcher.primary_endpoint,
            envelope.to_wire(),
            coord.dispatcher.headers_for(envelope),
            on_delivered=lambda: self._confirm(records),
        )
        if accepted:
            logger.info(f"Events sent via beacon: {len(records)}")
            return True

        if Scheduler.has_running_loop():
            logger.debug("Beacon unavailable, draining offline store instead")
            coord.scheduler.spawn(coord.drain_offline(), name="unload-drain")
        else:
            logger.info(f"No beacon at unload, {stored} events kept in offline store")
        return False

    def _confirm(self, records: list[EventRecord]) -> None:
        removed = self._coord.offline.remove(records)
        logger.debug(f"Beacon delivery confirmed, {removed} events released from offline store")

    def on_terminate(self) -> bool:
        try:
            return self.force_flush_on_unload()
        except Exception as exc:
            # Teardown must proceed regardless.
            logger.debug(f"Unload flush error (ignored): {type(exc).__name__}: {exc}")
            return False

    def on_visibility_change(self, state: str) -> bool:
        if state == HIDDEN:
            return self.on_terminate()
        return False

    # ---------- process hooks

    def install(self) -> None:
        """Register the atexit hook and a chaining SIGTERM handler."""
        if self._installed:
            return
        atexit.register(self.on_terminate)
        try:
            self._prev_sigterm = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGTERM, self._on_sigterm)
        except ValueError:
            # signal handlers can only be set from the main thread
            self._prev_sigterm = None
            logger.debug("SIGTERM hook not installed (not in main thread)")
        self._installed = True

    def uninstall(self) -> None:
        if not self._installed:
            return
        atexit.unregister(self.on_terminate)
        if self._prev_sigterm is not None:
            try:
                signal.signal(signal.SIGTERM, self._prev_sigterm)
            except ValueError:
                pass
        self._prev_sigterm = None
        self._installed = False

    def _on_sigterm(self, signum: int, frame: Optional[Any]) -> None:
        self.on_terminate()
        prev = self._prev_sigterm
        if callable(prev):
            prev(signum, frame)
        elif prev == signal.SIG_DFL:
            raise SystemExit(128 + signum)
