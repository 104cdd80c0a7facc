"""Bounded FIFO with a single paced consumer."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

from chat_orchestrator.models import IncomingMessage

logger = logging.getLogger(__name__)

MessageHandler = Callable[[IncomingMessage], None]


class MessageQueue:
    """Thread-safe ingress, one message handled at a time.

    The consumer waits ``drain_delay_s`` after each message before pulling the
    next one. ``drain()`` and the background worker share one processing lock,
    so task creation stays single-flight per queue instance.
    """

    def __init__(
        self,
        handler: MessageHandler | None = None,
        *,
        max_size: int = 100,
        drain_delay_s: float = 0.1,
    ) -> None:
        self.handler = handler
        self.max_size = max_size
        self.drain_delay_s = drain_delay_s
        self._items: deque[IncomingMessage] = deque()
        self._lock = threading.Lock()
        self._processing = threading.Lock()
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._worker: threading.Thread | None = None

    def enqueue(self, message: IncomingMessage) -> bool:
        with self._lock:
            if len(self._items) >= self.max_size:
                logger.warning(
                    "queue event=full size=%d max_size=%d", len(self._items), self.max_size
                )
                return False
            self._items.append(message)
            size = len(self._items)
            self._wakeup.set()
        logger.debug("queue event=enqueued message_id=%s size=%d", message.message_id, size)
        return True

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._wakeup.clear()

    def drain(self) -> int:
        """Process queued messages on the calling thread until the queue is empty."""
        handled = 0
        while self._handle_next():
            handled += 1
            if self.drain_delay_s > 0 and self.size() > 0:
                time.sleep(self.drain_delay_s)
        return handled

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stopping.clear()
        self._worker = threading.Thread(target=self._run, name="message-queue", daemon=True)
        self._worker.start()
        logger.info("queue event=worker_started max_size=%d", self.max_size)

    def stop(self, timeout_s: float = 5.0) -> None:
        self._stopping.set()
        self._wakeup.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout_s)
            self._worker = None
        logger.info("queue event=worker_stopped pending=%d", self.size())

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def _run(self) -> None:
        while not self._stopping.is_set():
            self._wakeup.wait()
            if self._stopping.is_set():
                break
            if self._handle_next():
                self._stopping.wait(self.drain_delay_s)

    def _pop(self) -> IncomingMessage | None:
        with self._lock:
            if not self._items:
                self._wakeup.clear()
                return None
            return self._items.popleft()

    def _handle_next(self) -> bool:
        with self._processing:
            message = self._pop()
            if message is None:
                return False
            if self.handler is None:
                raise RuntimeError("MessageQueue has no handler configured")
            try:
                self.handler(message)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "queue event=handler_failed message_id=%s chat_id=%s",
                    message.message_id,
                    message.chat_id,
                )
            return True
