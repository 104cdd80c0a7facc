"""Two-tier duplicate-delivery filter (in-memory set over a persisted table)."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from chat_orchestrator.models import IncomingMessage, utc_now
from chat_orchestrator.storage.base import DedupRepository

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_S = 300.0


class DedupCache:
    def __init__(self, repository: DedupRepository, *, window_s: float = DEFAULT_WINDOW_S) -> None:
        self.repository = repository
        self.window_s = window_s
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    def claim(self, message: IncomingMessage) -> bool:
        """Atomically mark ``message`` as in flight; False if it was already claimed."""
        with self._lock:
            if message.dedup_key in self._seen:
                return False
            self._seen.add(message.dedup_key)
            return True

    def release(self, message: IncomingMessage) -> None:
        with self._lock:
            self._seen.discard(message.dedup_key)

    def seen_persisted(self, message: IncomingMessage) -> bool:
        return self.repository.exists(message.chat_id, message.message_id)

    def record(self, message: IncomingMessage, task_id: str) -> bool:
        inserted = self.repository.record(
            chat_id=message.chat_id,
            message_id=message.message_id,
            received_at=message.timestamp,
            task_id=task_id,
        )
        if not inserted:
            logger.warning(
                "dedup event=record_conflict key=%s task_id=%s", message.dedup_key, task_id
            )
        return inserted

    def sweep(self, now: datetime | None = None) -> tuple[int, int]:
        with self._lock:
            cleared = len(self._seen)
            self._seen.clear()
        cutoff = (now or utc_now()) - timedelta(seconds=self.window_s)
        purged = self.repository.purge_older_than(cutoff)
        if cleared or purged:
            logger.debug("dedup event=swept cleared=%d purged=%d", cleared, purged)
        return cleared, purged
