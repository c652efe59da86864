"""
Timers and background tasks for the delivery pipeline.

Every deferred action (batch timers, rate-limit retries, reconnect drains)
goes through a ``Scheduler`` so it can be cancelled explicitly and so tests
can swap in a scheduler driven by a manual clock.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Coroutine, Optional

from loguru import logger

TimerCallback = Callable[[], Any]


class Timer:
    """Cancellable handle for a scheduled callback."""

    def __init__(self, when: float, callback: TimerCallback, name: str = "timer"):
        self.when = when
        self.name = name
        self._callback = callback
        self._cancelled = False
        self._fired = False
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._fired)

    def cancel(self) -> None:
        if self._cancelled or self._fired:
            return
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    def _run(self) -> Any:
        if not self.active:
            return None
        self._fired = True
        return self._callback()


class Scheduler(ABC):
    """Cooperative task scheduler.

    Callbacks may return an awaitable; it is then run as a tracked background
    task whose exceptions are logged, never propagated.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._timers: set[Timer] = set()

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds used for timer deadlines."""
        ...

    @abstractmethod
    def _arm(self, timer: Timer, delay: float) -> None:
        ...

    def call_later(self, delay: float, callback: TimerCallback, name: str = "timer") -> Timer:
        delay = max(0.0, delay)
        timer = Timer(self.now() + delay, callback, name)
        self._timers.add(timer)
        self._arm(timer, delay)
        return timer

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    @property
    def active_timers(self) -> list[Timer]:
        return sorted((t for t in self._timers if t.active), key=lambda t: t.when)

    async def wait_idle(self) -> None:
        """Wait until every background task spawned so far (and their children) finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @staticmethod
    def has_running_loop() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    # ---------- internals

    def _fire(self, timer: Timer) -> None:
        self._timers.discard(timer)
        try:
            result = timer._run()
        except Exception as exc:
            logger.error(f"Timer '{timer.name}' failed: {type(exc).__name__}: {exc}")
            return
        if inspect.isawaitable(result):
            self.spawn(_await(result), name=timer.name)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task '{task.get_name()}' failed: {type(exc).__name__}: {exc}")


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio event loop."""

    def now(self) -> float:
        return time.monotonic()

    def _arm(self, timer: Timer, delay: float) -> None:
        loop = asyncio.get_running_loop()
        timer._handle = loop.call_later(delay, self._fire, timer)


async def _await(awaitable: Any) -> Any:
    return await awaitable
