"""Repository interfaces consumed by the gateway, engine, security layer, and tools."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol

from chat_orchestrator.models import (
    AuditEvent,
    PairingToken,
    Permission,
    Reminder,
    Task,
    TaskStatus,
    User,
)


class TaskRepository(Protocol):
    def create(self, task: Task) -> Task: ...

    def update(self, task: Task) -> Task: ...

    def find_by_id(self, task_id: str) -> Task | None: ...

    def find_by_user_id(self, user_id: int, limit: int = 50) -> list[Task]: ...

    def find_by_status(self, status: TaskStatus, limit: int = 50) -> list[Task]: ...

    def find_active(self, limit: int = 50) -> list[Task]: ...


class UserRepository(Protocol):
    def create(
        self,
        *,
        telegram_chat_id: str,
        display_name: str,
        username: str | None = None,
        rate_limit_per_minute: int = 10,
    ) -> User: ...

    def find_by_id(self, user_id: int) -> User | None: ...

    def find_by_telegram_chat_id(self, chat_id: str) -> User | None: ...

    def find_all(self) -> list[User]: ...

    def update(self, user_id: int, changes: dict[str, Any]) -> User | None: ...

    def delete(self, user_id: int) -> bool: ...


class PermissionRepository(Protocol):
    def create(self, permission: Permission) -> Permission: ...

    def find_by_user_id(self, user_id: int) -> list[Permission]: ...

    def find_granted_by_user_id(self, user_id: int) -> list[Permission]: ...

    def has_permission(self, user_id: int, tool_name: str, action: str) -> bool: ...

    def requires_confirmation(self, user_id: int, tool_name: str, action: str) -> bool: ...

    def set_permissions(self, user_id: int, permissions: list[Permission]) -> None: ...

    def delete_by_user_id(self, user_id: int) -> int: ...


class AuditRepository(Protocol):
    def create(self, event: AuditEvent) -> AuditEvent: ...

    def find_by_user_id(self, user_id: int, limit: int = 100) -> list[AuditEvent]: ...

    def find_by_task_id(self, task_id: str) -> list[AuditEvent]: ...

    def find_by_time_range(
        self, start: datetime, end: datetime, limit: int = 100
    ) -> list[AuditEvent]: ...

    def find_by_event_type(self, event_type: str, limit: int = 100) -> list[AuditEvent]: ...


class ReminderRepository(Protocol):
    def create(self, reminder: Reminder) -> Reminder: ...

    def find_by_id(self, reminder_id: str) -> Reminder | None: ...

    def find_by_user_id(self, user_id: int) -> list[Reminder]: ...

    def count_by_user_id(self, user_id: int) -> int: ...

    def delete(self, reminder_id: str) -> bool: ...


class DedupRepository(Protocol):
    def exists(self, chat_id: str, message_id: int) -> bool: ...

    def record(
        self, *, chat_id: str, message_id: int, received_at: datetime, task_id: str
    ) -> bool: ...

    def purge_older_than(self, cutoff: datetime) -> int: ...


class PairingTokenRepository(Protocol):
    def create(self, *, token: str, ttl_minutes: int, is_admin: bool = False) -> PairingToken: ...

    def find_by_token(self, token: str) -> PairingToken | None: ...

    def is_valid(self, token: str) -> bool: ...

    def mark_used(self, token: str, chat_id: str) -> None: ...

    def clean_expired(self) -> int: ...

    def find_active(self) -> list[PairingToken]: ...


@dataclass
class Repositories:
    """Bundle of every repository a running service needs."""

    tasks: TaskRepository
    users: UserRepository
    permissions: PermissionRepository
    audit: AuditRepository
    reminders: ReminderRepository
    dedup: DedupRepository
    pairing_tokens: PairingTokenRepository
    migrate: Callable[[], None] | None = None

    def run_migrations(self) -> None:
        if self.migrate is not None:
            self.migrate()
