"""
HTTP transport for batch envelopes.

``send`` is the regular awaited POST used by the dispatcher. ``beacon`` is
the unload primitive: it hands the request to a background thread and
returns immediately, so teardown never waits on the network. The caller
keeps the events durable until ``on_delivered`` confirms a 2xx.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Callable, Mapping, Optional

import httpx
from loguru import logger

from .types import Transport, TransportResponse


class HttpTransport(Transport):
    """httpx-backed transport.

    Args:
        timeout: Per-request timeout for ``send`` (seconds)
        beacon_timeout: Timeout for the fire-and-forget beacon request
        client: Optional pre-built ``httpx.AsyncClient`` (not closed by us)
    """

    def __init__(
        self,
        timeout: float = 10.0,
        beacon_timeout: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self.beacon_timeout = beacon_timeout
        self._client = client
        self._owns_client = client is None
        self._beacons: list[threading.Thread] = []

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send(
        self, endpoint: str, body: dict[str, Any], headers: Mapping[str, str]
    ) -> TransportResponse:
        resp = await self._get_client().post(
            endpoint, content=json.dumps(body, default=str), headers=dict(headers)
        )
        return TransportResponse(status_code=resp.status_code, headers=dict(resp.headers))

    def beacon(
        self,
        endpoint: str,
        body: dict[str, Any],
        headers: Mapping[str, str],
        on_delivered: Optional[Callable[[], None]] = None,
    ) -> bool:
        # Serialize now; the caller's queues move on as soon as we return.
        payload = json.dumps(body, default=str)
        # Non-daemon: a regular interpreter shutdown joins the thread, and the
        # request itself is bounded by beacon_timeout.
        thread = threading.Thread(
            target=self._post_beacon,
            args=(endpoint, payload, dict(headers), on_delivered),
            name="telemetry-beacon",
        )
        try:
            thread.start()
        except RuntimeError as exc:
            logger.debug(f"Beacon thread could not start: {exc}")
            return False
        self._beacons = [t for t in self._beacons if t.is_alive()] + [thread]
        return True

    def _post_beacon(
        self,
        endpoint: str,
        payload: str,
        headers: dict[str, str],
        on_delivered: Optional[Callable[[], None]],
    ) -> None:
        try:
            resp = httpx.post(endpoint, content=payload, headers=headers, timeout=self.beacon_timeout)
        except httpx.HTTPError as exc:
            logger.debug(f"Beacon to {endpoint} failed: {type(exc).__name__}: {exc}")
            return
        logger.debug(f"Beacon to {endpoint} answered {resp.status_code}")
        if resp.is_success and on_delivered is not None:
            on_delivered()

    def join_beacons(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding beacon threads."""
        for thread in list(self._beacons):
            thread.join(timeout)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
