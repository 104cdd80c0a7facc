"""Fixed-window per-key request counter."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

WINDOW_S = 60.0


@dataclass
class RateLimitEntry:
    key: str
    count: int
    reset_at: float


class RateLimiter:
    """Counts requests per key in non-sliding 60 second windows."""

    def __init__(
        self,
        default_limit_per_minute: int = 10,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_limit_per_minute = default_limit_per_minute
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def check(self, key: str, limit_per_minute: int | None = None) -> bool:
        limit = self.default_limit_per_minute if limit_per_minute is None else limit_per_minute
        if limit < 1:
            logger.warning("rate_limit event=exceeded key=%s count=0 limit=%d", key, limit)
            return False
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_at < now:
                self._entries[key] = RateLimitEntry(key=key, count=1, reset_at=now + WINDOW_S)
                return True
            if entry.count >= limit:
                logger.warning(
                    "rate_limit event=exceeded key=%s count=%d limit=%d", key, entry.count, limit
                )
                return False
            entry.count += 1
            return True

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.reset_at < now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("rate_limit event=swept cleaned=%d", len(expired))
        return len(expired)

    def entry(self, key: str) -> RateLimitEntry | None:
        with self._lock:
            current = self._entries.get(key)
            return RateLimitEntry(current.key, current.count, current.reset_at) if current else None
