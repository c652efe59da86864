from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """At most one in-flight run per key, with the outcome shared by all callers.

    A call for a key that is already running awaits that run's result instead
    of starting new work. All keys share one ``asyncio.Lock``, so runs under
    different keys are mutually exclusive too (they queue rather than join).

    Example:
        flight = SingleFlight[FlushResult]()
        result = await flight.run("flush", do_flush)
    """

    def __init__(self, lock: Optional[asyncio.Lock] = None):
        self._lock = lock or asyncio.Lock()
        self._inflight: dict[str, asyncio.Future[T]] = {}

    def in_flight(self, key: Optional[str] = None) -> bool:
        """True while a run for ``key`` (or any key when None) is pending."""
        if key is None:
            return bool(self._inflight)
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        pending = self._inflight.get(key)
        if pending is not None:
            # shield: a cancelled joiner must not cancel the shared run
            return await asyncio.shield(pending)

        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            async with self._lock:
                result = await factory()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except BaseException as exc:
            fut.set_exception(exc)
            fut.exception()  # mark retrieved when nobody joined
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)
