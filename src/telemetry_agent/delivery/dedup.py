from __future__ import annotations

from collections import OrderedDict
from typing import Optional

from loguru import logger


class DuplicateFilter:
    """Bounded history of recently accepted content hashes.

    Each hash remembers when it was accepted. A repeat is a duplicate while
    it falls within ``window`` seconds of that moment (a sliding window, not
    aligned to any clock boundary); with ``window=None`` a hash stays a
    duplicate for as long as it is in the history. Once ``history_size``
    hashes are held the least recently accepted is forgotten.
    """

    def __init__(self, history_size: int = 1000):
        if history_size <= 0:
            raise ValueError("history_size must be > 0")
        self._history_size = history_size
        self._seen: OrderedDict[str, float] = OrderedDict()

    @property
    def history_size(self) -> int:
        return self._history_size

    def seen(self, content_hash: str, now: float = 0.0, window: Optional[float] = None) -> bool:
        """Return True if ``content_hash`` is a duplicate; otherwise remember it at ``now``."""
        accepted_at = self._seen.get(content_hash)
        if accepted_at is not None and (window is None or now - accepted_at <= window):
            logger.debug(f"Duplicate content hash {content_hash[:12]}… suppressed")
            return True

        self._seen[content_hash] = now
        self._seen.move_to_end(content_hash)
        while len(self._seen) > self._history_size:
            self._seen.popitem(last=False)
        return False

    def clear(self) -> None:
        self._seen.clear()

    def __contains__(self, content_hash: str) -> bool:
        return content_hash in self._seen

    def __len__(self) -> int:
        return len(self._seen)
