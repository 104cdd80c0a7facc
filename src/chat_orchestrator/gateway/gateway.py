"""Admission control and sequential dispatch of inbound chat messages."""

from __future__ import annotations

import logging
import secrets
from typing import Callable, Protocol

from chat_orchestrator.errors import AdmissionError
from chat_orchestrator.gateway.dedup import DedupCache
from chat_orchestrator.gateway.queue import MessageQueue
from chat_orchestrator.gateway.rate_limiter import RateLimiter
from chat_orchestrator.models import IncomingMessage, Task, TaskStatus, User
from chat_orchestrator.security.audit import AuditLog
from chat_orchestrator.security.sanitizer import sanitize_text
from chat_orchestrator.storage.base import TaskRepository, UserRepository

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[int, str, str], None]


class TaskProcessor(Protocol):
    def process_task(self, task: Task) -> Task: ...


def generate_task_id() -> str:
    return f"task_{secrets.token_hex(8)}"


def log_completion(user_id: int, task_id: str, text: str) -> None:
    logger.info("completion user_id=%s task_id=%s text=%r", user_id, task_id, text[:200])


class IngestionGateway:
    """Dedup, rate-limit, and enqueue inbound messages; create tasks one at a time."""

    def __init__(
        self,
        *,
        users: UserRepository,
        tasks: TaskRepository,
        engine: TaskProcessor,
        dedup: DedupCache,
        rate_limiter: RateLimiter,
        queue: MessageQueue,
        audit: AuditLog | None = None,
        on_task_complete: CompletionCallback = log_completion,
    ) -> None:
        self.users = users
        self.tasks = tasks
        self.engine = engine
        self.dedup = dedup
        self.rate_limiter = rate_limiter
        self.queue = queue
        self.audit = audit
        self.on_task_complete = on_task_complete
        self.queue.handler = self.handle_message

    def process_message(self, message: IncomingMessage) -> None:
        """Admit and enqueue ``message``; concurrent callers may deliver the same message."""
        if not self.dedup.claim(message):
            logger.debug("gateway event=dropped key=%s reason=duplicate", message.dedup_key)
            return

        try:
            self._admit(message)
        except AdmissionError as exc:
            self.dedup.release(message)
            logger.debug("gateway event=dropped key=%s reason=%s", message.dedup_key, exc)
            return

        if not self.queue.enqueue(message):
            self.dedup.release(message)

    def _admit(self, message: IncomingMessage) -> User:
        if self.dedup.seen_persisted(message):
            raise AdmissionError("duplicate (persisted)")

        user = self.users.find_by_telegram_chat_id(message.chat_id)
        if user is None:
            logger.warning("gateway event=unpaired_user chat_id=%s", message.chat_id)
            raise AdmissionError("unpaired user")
        if not user.is_active:
            logger.warning("gateway event=inactive_user user_id=%s", user.id)
            raise AdmissionError("inactive user")

        if not self.rate_limiter.check(f"user:{user.id}", user.rate_limit_per_minute):
            logger.warning("gateway event=rate_limited user_id=%s", user.id)
            if self.audit is not None:
                self.audit.log_security_event(
                    "rate_limit_exceeded",
                    user_id=user.id,
                    details={"chat_id": message.chat_id, "message_id": message.message_id},
                )
            raise AdmissionError("rate limit exceeded")
        return user

    def handle_message(self, message: IncomingMessage) -> None:
        """Queue consumer: create the task, run it, and report the outcome."""
        user = self.users.find_by_telegram_chat_id(message.chat_id)
        if user is None:
            return

        task_id = generate_task_id()
        try:
            if not self.dedup.record(message, task_id):
                return
            task = self.tasks.create(
                Task(
                    id=task_id,
                    user_id=user.id,
                    telegram_message_id=message.message_id,
                    input_message=sanitize_text(message.text),
                )
            )
            logger.info("gateway event=task_created task_id=%s user_id=%s", task_id, user.id)

            task = self.engine.process_task(task)
            if task.status == TaskStatus.DONE and task.result:
                self.on_task_complete(user.id, task.id, task.result)
            elif task.status == TaskStatus.FAILED and task.error:
                self.on_task_complete(user.id, task.id, f"Error: {task.error}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("gateway event=handle_failed task_id=%s", task_id)
            self.on_task_complete(user.id, task_id, f"System error: {exc}")
