from __future__ import annotations

from enum import Enum
from typing import Iterable

DEFAULT_CRITICAL_EVENTS = ("purchase", "signup", "subscribe", "lead", "conversion")
DEFAULT_HIGH_PRIORITY_EVENTS = ("add_to_cart", "begin_checkout", "view_item", "search")


class Priority(str, Enum):
    """Delivery tier of an event."""

    CRITICAL = "critical"  # bypasses the ready queue, sent immediately
    HIGH = "high"  # queued, flushed after a short fixed delay
    NORMAL = "normal"  # queued, flushed on interval or batch size


class PriorityClassifier:
    """Tag events by name against the configured critical/high sets.

    A name present in both sets is treated as critical.
    """

    def __init__(
        self,
        critical: Iterable[str] | None = None,
        high: Iterable[str] | None = None,
    ):
        self._critical = frozenset(DEFAULT_CRITICAL_EVENTS if critical is None else critical)
        self._high = frozenset(DEFAULT_HIGH_PRIORITY_EVENTS if high is None else high)

    @property
    def critical_names(self) -> frozenset[str]:
        return self._critical

    @property
    def high_names(self) -> frozenset[str]:
        return self._high

    def classify(self, name: str) -> Priority:
        if name in self._critical:
            return Priority.CRITICAL
        if name in self._high:
            return Priority.HIGH
        return Priority.NORMAL
