"""Time-windowed dedup cache used to suppress double handling of inbound events."""

import time
from collections import OrderedDict


class TtlKeyCache:
    """Remembers keys for a bounded time window.

    Entries older than ``ttl_ms`` are evicted on every check, and the cache
    never holds more than ``max_entries`` keys (oldest dropped first), so a
    long-lived session cannot grow it without bound.
    """

    MIN_TTL_MS = 5_000
    MAX_ENTRIES = 4_096

    def __init__(self, ttl_ms: int, max_entries: int | None = None):
        self.ttl_ms = max(self.MIN_TTL_MS, int(ttl_ms))
        self.max_entries = max_entries or self.MAX_ENTRIES
        self._entries: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        self._evict(self._now_ms())
        return key in self._entries

    def should_process(self, key: str | None) -> bool:
        """Record ``key`` and return True the first time it is seen inside the window.

        Blank keys cannot be deduplicated and always pass.
        """
        if not key or not key.strip():
            return True

        now = self._now_ms()
        self._evict(now)
        if key in self._entries:
            return False

        self._entries[key] = now
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return True

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self, now: float) -> None:
        # Insertion order is processing order, so expired keys sit at the front.
        while self._entries:
            key, processed_at = next(iter(self._entries.items()))
            if now - processed_at <= self.ttl_ms:
                break
            del self._entries[key]

    @staticmethod
    def _now_ms() -> float:
        return time.monotonic() * 1000
