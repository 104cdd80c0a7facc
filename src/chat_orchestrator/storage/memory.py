"""In-memory repositories for tests and local development."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any

from chat_orchestrator.models import (
    AuditEvent,
    PairingToken,
    Permission,
    Reminder,
    Task,
    TaskStatus,
    User,
    utc_now,
)
from chat_orchestrator.storage.base import Repositories

_ACTIVE_STATUSES = {
    TaskStatus.QUEUED,
    TaskStatus.PLANNING,
    TaskStatus.EXECUTING,
    TaskStatus.VERIFYING,
}


class InMemoryTaskRepository:
    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = threading.Lock()

    def create(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise KeyError(f"Task {task.id} already exists")
            self._tasks[task.id] = task.model_copy(deep=True)
        return task.model_copy(deep=True)

    def update(self, task: Task) -> Task:
        with self._lock:
            if task.id not in self._tasks:
                raise KeyError(f"Task {task.id} does not exist")
            updated = task.model_copy(deep=True, update={"updated_at": utc_now()})
            self._tasks[task.id] = updated
        return updated.model_copy(deep=True)

    def find_by_id(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def find_by_user_id(self, user_id: int, limit: int = 50) -> list[Task]:
        return self._select(lambda task: task.user_id == user_id, limit)

    def find_by_status(self, status: TaskStatus, limit: int = 50) -> list[Task]:
        return self._select(lambda task: task.status == status, limit)

    def find_active(self, limit: int = 50) -> list[Task]:
        return self._select(lambda task: task.status in _ACTIVE_STATUSES, limit)

    def _select(self, predicate: Any, limit: int) -> list[Task]:
        with self._lock:
            matches = [task for task in self._tasks.values() if predicate(task)]
        matches.sort(key=lambda task: task.created_at, reverse=True)
        return [task.model_copy(deep=True) for task in matches[:limit]]


class InMemoryUserRepository:
    def __init__(self) -> None:
        self._users: dict[int, User] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def create(
        self,
        *,
        telegram_chat_id: str,
        display_name: str,
        username: str | None = None,
        rate_limit_per_minute: int = 10,
    ) -> User:
        with self._lock:
            if any(user.telegram_chat_id == telegram_chat_id for user in self._users.values()):
                raise KeyError(f"User for chat {telegram_chat_id} already exists")
            user = User(
                id=self._next_id,
                telegram_chat_id=telegram_chat_id,
                username=username,
                display_name=display_name,
                rate_limit_per_minute=rate_limit_per_minute,
            )
            self._users[user.id] = user
            self._next_id += 1
        return user.model_copy()

    def find_by_id(self, user_id: int) -> User | None:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    def find_by_telegram_chat_id(self, chat_id: str) -> User | None:
        with self._lock:
            for user in self._users.values():
                if user.telegram_chat_id == chat_id:
                    return user.model_copy()
        return None

    def find_all(self) -> list[User]:
        with self._lock:
            return [user.model_copy() for user in sorted(self._users.values(), key=lambda u: u.id)]

    def update(self, user_id: int, changes: dict[str, Any]) -> User | None:
        allowed = {key: value for key, value in changes.items() if key in _USER_MUTABLE_FIELDS}
        with self._lock:
            current = self._users.get(user_id)
            if current is None:
                return None
            updated = current.model_copy(update={**allowed, "updated_at": utc_now()})
            self._users[user_id] = updated
        return updated.model_copy()

    def delete(self, user_id: int) -> bool:
        with self._lock:
            return self._users.pop(user_id, None) is not None


_USER_MUTABLE_FIELDS = {"is_active", "rate_limit_per_minute", "display_name", "username"}


class InMemoryPermissionRepository:
    def __init__(self) -> None:
        self._permissions: dict[tuple[int, str, str], Permission] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def create(self, permission: Permission) -> Permission:
        key = (permission.user_id, permission.tool_name, permission.action)
        with self._lock:
            existing = self._permissions.get(key)
            permission_id = existing.id if existing else self._next_id
            if existing is None:
                self._next_id += 1
            stored = permission.model_copy(update={"id": permission_id})
            self._permissions[key] = stored
        return stored.model_copy()

    def find_by_user_id(self, user_id: int) -> list[Permission]:
        with self._lock:
            return [
                permission.model_copy()
                for (owner, _, _), permission in sorted(self._permissions.items())
                if owner == user_id
            ]

    def find_granted_by_user_id(self, user_id: int) -> list[Permission]:
        return [permission for permission in self.find_by_user_id(user_id) if permission.granted]

    def has_permission(self, user_id: int, tool_name: str, action: str) -> bool:
        return self._match(user_id, tool_name, action) is not None

    def requires_confirmation(self, user_id: int, tool_name: str, action: str) -> bool:
        match = self._match(user_id, tool_name, action)
        return bool(match and match.requires_confirmation)

    def set_permissions(self, user_id: int, permissions: list[Permission]) -> None:
        self.delete_by_user_id(user_id)
        for permission in permissions:
            self.create(permission.model_copy(update={"user_id": user_id}))

    def delete_by_user_id(self, user_id: int) -> int:
        with self._lock:
            keys = [key for key in self._permissions if key[0] == user_id]
            for key in keys:
                del self._permissions[key]
        return len(keys)

    def _match(self, user_id: int, tool_name: str, action: str) -> Permission | None:
        with self._lock:
            for candidate in (action, "*"):
                permission = self._permissions.get((user_id, tool_name, candidate))
                if permission is not None and permission.granted:
                    return permission
        return None


class InMemoryAuditRepository:
    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def create(self, event: AuditEvent) -> AuditEvent:
        with self._lock:
            stored = event.model_copy(update={"id": len(self._events) + 1})
            self._events.append(stored)
        return stored

    def find_by_user_id(self, user_id: int, limit: int = 100) -> list[AuditEvent]:
        return self._newest(lambda event: event.user_id == user_id, limit)

    def find_by_task_id(self, task_id: str) -> list[AuditEvent]:
        with self._lock:
            return [event for event in self._events if event.task_id == task_id]

    def find_by_time_range(
        self, start: datetime, end: datetime, limit: int = 100
    ) -> list[AuditEvent]:
        return self._newest(lambda event: start <= event.timestamp <= end, limit)

    def find_by_event_type(self, event_type: str, limit: int = 100) -> list[AuditEvent]:
        return self._newest(lambda event: event.event_type == event_type, limit)

    def _newest(self, predicate: Any, limit: int) -> list[AuditEvent]:
        with self._lock:
            matches = [event for event in self._events if predicate(event)]
        return list(reversed(matches))[:limit]


class InMemoryReminderRepository:
    def __init__(self) -> None:
        self._reminders: dict[str, Reminder] = {}
        self._lock = threading.Lock()

    def create(self, reminder: Reminder) -> Reminder:
        with self._lock:
            self._reminders[reminder.id] = reminder.model_copy()
        return reminder.model_copy()

    def find_by_id(self, reminder_id: str) -> Reminder | None:
        with self._lock:
            reminder = self._reminders.get(reminder_id)
        return reminder.model_copy() if reminder else None

    def find_by_user_id(self, user_id: int) -> list[Reminder]:
        with self._lock:
            owned = [r for r in self._reminders.values() if r.user_id == user_id]
        owned.sort(key=lambda reminder: reminder.remind_at)
        return [reminder.model_copy() for reminder in owned]

    def count_by_user_id(self, user_id: int) -> int:
        return len(self.find_by_user_id(user_id))

    def delete(self, reminder_id: str) -> bool:
        with self._lock:
            return self._reminders.pop(reminder_id, None) is not None


class InMemoryDedupRepository:
    def __init__(self) -> None:
        self._rows: dict[tuple[str, int], tuple[datetime, str]] = {}
        self._lock = threading.Lock()

    def exists(self, chat_id: str, message_id: int) -> bool:
        with self._lock:
            return (chat_id, message_id) in self._rows

    def record(
        self, *, chat_id: str, message_id: int, received_at: datetime, task_id: str
    ) -> bool:
        with self._lock:
            if (chat_id, message_id) in self._rows:
                return False
            self._rows[(chat_id, message_id)] = (received_at, task_id)
        return True

    def purge_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [key for key, (received_at, _) in self._rows.items() if received_at < cutoff]
            for key in stale:
                del self._rows[key]
        return len(stale)


class InMemoryPairingTokenRepository:
    def __init__(self) -> None:
        self._tokens: dict[str, PairingToken] = {}
        self._lock = threading.Lock()

    def create(self, *, token: str, ttl_minutes: int, is_admin: bool = False) -> PairingToken:
        now = utc_now()
        record = PairingToken(
            token=token,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            is_admin=is_admin,
        )
        with self._lock:
            self._tokens[token] = record
        return record.model_copy()

    def find_by_token(self, token: str) -> PairingToken | None:
        with self._lock:
            record = self._tokens.get(token)
        return record.model_copy() if record else None

    def is_valid(self, token: str) -> bool:
        record = self.find_by_token(token)
        return record is not None and record.used_at is None and record.expires_at > utc_now()

    def mark_used(self, token: str, chat_id: str) -> None:
        with self._lock:
            record = self._tokens.get(token)
            if record is None:
                raise KeyError(f"Pairing token {token[:6]}... does not exist")
            self._tokens[token] = record.model_copy(
                update={"used_at": utc_now(), "used_by_chat_id": chat_id}
            )

    def clean_expired(self) -> int:
        now = utc_now()
        with self._lock:
            expired = [
                token
                for token, record in self._tokens.items()
                if record.expires_at <= now and record.used_at is None
            ]
            for token in expired:
                del self._tokens[token]
        return len(expired)

    def find_active(self) -> list[PairingToken]:
        now = utc_now()
        with self._lock:
            return [
                record.model_copy()
                for record in self._tokens.values()
                if record.used_at is None and record.expires_at > now
            ]


def build_memory_repositories() -> Repositories:
    return Repositories(
        tasks=InMemoryTaskRepository(),
        users=InMemoryUserRepository(),
        permissions=InMemoryPermissionRepository(),
        audit=InMemoryAuditRepository(),
        reminders=InMemoryReminderRepository(),
        dedup=InMemoryDedupRepository(),
        pairing_tokens=InMemoryPairingTokenRepository(),
    )
