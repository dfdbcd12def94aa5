from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Generic, List, Optional, Protocol, Tuple, TypeVar


logger = logging.getLogger(__name__)


class Timestamped(Protocol):
    timestamp: float


V = TypeVar("V", bound=Timestamped)

# share of max_size dropped at once when an insert hits the ceiling
PROACTIVE_EVICTION_RATIO = 0.1


class TTLCache(Generic[V]):
    """In-memory TTL cache keyed by digest, bounded by window and size.

    Values carry their own ``timestamp``. Eviction is oldest-first by timestamp;
    the dict keeps insertion order so equal timestamps fall back to it.

    Not process-safe. Intended for a single-process worker.
    """

    def __init__(
        self,
        window: float,
        max_size: int,
        clock: Callable[[], float] = time.time,
        name: str = "cache",
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.window = window
        self.max_size = max_size
        self.name = name
        self._clock = clock
        self._entries: Dict[str, V] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, value: V) -> int:
        """Insert ``value`` after making room. Returns how many entries were evicted."""
        with self._lock:
            evicted = 0
            if key not in self._entries:
                evicted = self._make_room_locked(self.max_size)
            # re-inserting moves the key to the end of the insertion order
            self._entries.pop(key, None)
            self._entries[key] = value
            return evicted

    def pop(self, key: str) -> Optional[V]:
        with self._lock:
            return self._entries.pop(key, None)

    def is_fresh_within(self, key: str, window: Optional[float] = None) -> bool:
        window = self.window if window is None else window
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            return self._clock() - entry.timestamp < window

    def evict_expired(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        with self._lock:
            expired = [k for k, v in self._entries.items() if now - v.timestamp > self.window]
            for k in expired:
                self._entries.pop(k, None)
            return len(expired)

    def enforce_ceiling(self, max_size: Optional[int] = None, proactive: bool = False) -> int:
        """Trim the cache to ``max_size``.

        Proactive mode runs before an insert: once the cache is at capacity it
        drops the oldest ~10% in one batch. Reactive mode drops exactly the
        overflow.
        """
        max_size = self.max_size if max_size is None else max_size
        with self._lock:
            if proactive:
                return self._make_room_locked(max_size)
            overflow = len(self._entries) - max_size
            if overflow <= 0:
                return 0
            return self._drop_oldest_locked(overflow)

    def clear(self) -> int:
        with self._lock:
            n = len(self._entries)
            self._entries.clear()
            return n

    def items(self) -> List[Tuple[str, V]]:
        with self._lock:
            return list(self._entries.items())

    def _make_room_locked(self, max_size: int) -> int:
        if len(self._entries) < max_size:
            return 0
        to_remove = max(1, int(max_size * PROACTIVE_EVICTION_RATIO))
        # always land strictly below max_size so the insert fits
        to_remove = max(to_remove, len(self._entries) - max_size + 1)
        evicted = self._drop_oldest_locked(to_remove)
        logger.debug("%s cache at capacity (%d), evicted %d oldest", self.name, max_size, evicted)
        return evicted

    def _drop_oldest_locked(self, count: int) -> int:
        # sorted() is stable, so ties keep insertion order
        oldest = sorted(self._entries.items(), key=lambda kv: kv[1].timestamp)[:count]
        for k, _ in oldest:
            self._entries.pop(k, None)
        return len(oldest)
