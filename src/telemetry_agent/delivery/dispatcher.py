"""
Network delivery of one batch with endpoint failover and exponential backoff.

The dispatcher only reports outcomes. It never mutates queue state; the
flush coordinator owns the ready queue and the offline store.
"""

from __future__ import annotations

import asyncio
import random
import time
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional, Sequence

from loguru import logger

from ..errors import DeliveryFailed, RateLimited, TransientNetworkError
from ..metrics import metrics_registry as m
from .policy import RetryPolicy
from .types import BatchEnvelope, EventRecord, Transport, TransportResponse

DEFAULT_RETRY_AFTER_S = 60.0


def parse_retry_after(value: Optional[str], now: float, default: float) -> float:
    """Seconds to wait from a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if not value:
        return default
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when is None:
        return default
    return max(0.0, when.timestamp() - now)


class Dispatcher:
    """Sends a batch to ``[endpoint, *fallback_endpoints]``.

    On a network error or non-2xx status the next fallback endpoint is tried
    with a fresh retry counter. Once fallbacks are exhausted the last endpoint
    is retried with exponential backoff up to ``retry_policy.max_retries``
    times, after which ``DeliveryFailed`` is raised. A 429 raises
    ``RateLimited`` immediately so the caller can reschedule instead of
    blocking. Every attempt resends the identical envelope.
    """

    def __init__(
        self,
        transport: Transport,
        endpoint: str,
        fallback_endpoints: Sequence[str] = (),
        retry_policy: Optional[RetryPolicy] = None,
        *,
        default_retry_after: float = DEFAULT_RETRY_AFTER_S,
        workspace_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        agent_id: str = "default",
    ):
        if not endpoint:
            raise ValueError("endpoint required")
        self._transport = transport
        self._endpoints = [endpoint, *[e for e in fallback_endpoints if e]]
        self._policy = retry_policy or RetryPolicy()
        self._default_retry_after = default_retry_after
        self._workspace_id = workspace_id
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._agent_id = agent_id
        self._delivered = 0

    @property
    def endpoints(self) -> list[str]:
        return list(self._endpoints)

    @property
    def primary_endpoint(self) -> str:
        return self._endpoints[0]

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def delivered(self) -> int:
        """Events confirmed delivered by this dispatcher."""
        return self._delivered

    def build_envelope(self, events: Sequence[EventRecord]) -> BatchEnvelope:
        return BatchEnvelope.of(events, self._clock())

    def headers_for(self, envelope: BatchEnvelope) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Batch-Size": str(len(envelope)),
        }
        if self._workspace_id:
            headers["X-Workspace-Id"] = self._workspace_id
        return headers

    async def send(self, events: Sequence[EventRecord]) -> str:
        """Deliver ``events`` as one batch; returns the endpoint that accepted it.

        Raises:
            RateLimited: server answered 429
            DeliveryFailed: failover and retries exhausted
        """
        envelope = self.build_envelope(events)
        body = envelope.to_wire()
        headers = self.headers_for(envelope)

        index = 0
        retries = 0
        attempts = 0
        started = time.perf_counter()

        while True:
            endpoint = self._endpoints[index]
            attempts += 1
            try:
                await self._attempt(endpoint, body, headers)
            except RateLimited as exc:
                m.dispatch_attempts_total.labels(agent=self._agent_id, outcome="rate_limited").inc()
                logger.warning(
                    f"Rate limited by {endpoint}, retry after {exc.retry_after:g}s "
                    f"(batch={envelope.batch_id} size={len(envelope)})"
                )
                raise
            except TransientNetworkError as exc:
                m.dispatch_attempts_total.labels(agent=self._agent_id, outcome="error").inc()

                if index < len(self._endpoints) - 1:
                    index += 1
                    retries = 0
                    logger.info(
                        f"Dispatch to {endpoint} failed ({exc}), "
                        f"trying fallback {index}: {self._endpoints[index]}"
                    )
                    continue

                if retries < self._policy.max_retries:
                    delay = self._policy.next_delay(retries, self._rng)
                    retries += 1
                    logger.debug(
                        f"Retrying batch {envelope.batch_id} on {endpoint} in {delay:.3f}s "
                        f"(attempt {retries}/{self._policy.max_retries})"
                    )
                    await self._sleep(delay)
                    continue

                logger.error(
                    f"Batch {envelope.batch_id} ({len(envelope)} events) undeliverable "
                    f"after {attempts} attempts: {exc}"
                )
                raise DeliveryFailed(attempts, exc) from exc

            self._delivered += len(envelope)
            m.dispatch_attempts_total.labels(agent=self._agent_id, outcome="success").inc()
            m.events_delivered_total.labels(agent=self._agent_id).inc(len(envelope))
            m.dispatch_latency_ms.labels(agent=self._agent_id).observe(
                (time.perf_counter() - started) * 1000.0
            )
            logger.info(f"Batch sent to {endpoint}: {len(envelope)} events")
            return endpoint

    async def _attempt(self, endpoint: str, body: dict, headers: dict[str, str]) -> None:
        try:
            response: TransportResponse = await self._transport.send(endpoint, body, headers)
        except (RateLimited, TransientNetworkError):
            raise
        except Exception as exc:
            raise TransientNetworkError(
                f"{type(exc).__name__}: {exc}", endpoint=endpoint
            ) from exc

        if response.is_success:
            return
        if response.status_code == 429:
            retry_after = parse_retry_after(
                response.header("Retry-After"), self._clock(), self._default_retry_after
            )
            raise RateLimited(retry_after, endpoint=endpoint)
        raise TransientNetworkError(
            f"HTTP {response.status_code}", status_code=response.status_code, endpoint=endpoint
        )
