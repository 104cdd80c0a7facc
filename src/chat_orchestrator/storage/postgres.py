"""PostgreSQL-backed repositories with automatic table migration."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta
from typing import Any

from chat_orchestrator.errors import StorageError
from chat_orchestrator.models import (
    AuditEvent,
    ExecutionLog,
    PairingToken,
    Permission,
    Plan,
    Reminder,
    Task,
    TaskStatus,
    User,
)
from chat_orchestrator.storage.base import Repositories

_MIGRATIONS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        telegram_chat_id TEXT NOT NULL UNIQUE,
        username TEXT,
        display_name TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        rate_limit_per_minute INTEGER NOT NULL DEFAULT 10,
        paired_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permissions (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        tool_name TEXT NOT NULL,
        action TEXT NOT NULL,
        granted BOOLEAN NOT NULL DEFAULT TRUE,
        requires_confirmation BOOLEAN NOT NULL DEFAULT FALSE,
        granted_by TEXT NOT NULL DEFAULT 'system',
        created_at TIMESTAMPTZ NOT NULL,
        UNIQUE (user_id, tool_name, action)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        telegram_message_id BIGINT,
        status TEXT NOT NULL,
        input_message TEXT NOT NULL,
        plan_json JSONB,
        execution_log_json JSONB,
        result TEXT,
        error TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_user_id ON tasks(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id BIGSERIAL PRIMARY KEY,
        timestamp TIMESTAMPTZ NOT NULL,
        user_id BIGINT,
        task_id TEXT,
        event_type TEXT NOT NULL,
        tool_name TEXT,
        action TEXT,
        input_data JSONB,
        output_data JSONB,
        success BOOLEAN NOT NULL,
        error TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_user_id ON audit_log(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_task_id ON audit_log(task_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp DESC)",
    """
    CREATE TABLE IF NOT EXISTS reminders (
        id TEXT PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        message TEXT NOT NULL,
        remind_at TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        created_by_task_id TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_dedup (
        telegram_message_id BIGINT NOT NULL,
        telegram_chat_id TEXT NOT NULL,
        received_at TIMESTAMPTZ NOT NULL,
        task_id TEXT,
        UNIQUE (telegram_chat_id, telegram_message_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_dedup_received_at ON message_dedup(received_at)",
    """
    CREATE TABLE IF NOT EXISTS pairing_tokens (
        token TEXT PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        used_by_chat_id TEXT,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
)


class PostgresDatabase:
    """Shared connection factory and schema migration for all repositories."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("CHAT_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self.lock = threading.Lock()
        self._psycopg, self._dict_row, self.json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self.lock, self.connect() as conn:
            for statement in _MIGRATIONS:
                conn.execute(statement)
            conn.commit()

    def connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def fetch_one(self, query: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        with self.lock, self.connect() as conn:
            return conn.execute(query, params).fetchone()

    def fetch_all(self, query: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        with self.lock, self.connect() as conn:
            return list(conn.execute(query, params).fetchall())

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> int:
        with self.lock, self.connect() as conn:
            cursor = conn.execute(query, params)
            conn.commit()
            return int(cursor.rowcount or 0)

    def execute_returning(self, query: str, params: tuple[Any, ...] = ()) -> dict[str, Any]:
        with self.lock, self.connect() as conn:
            row = conn.execute(query, params).fetchone()
            conn.commit()
        if row is None:
            raise StorageError("Insert did not return a row")
        return row

    def json_or_none(self, payload: Any) -> Any:
        return self.json_wrapper(payload) if payload is not None else None

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json


class PostgresTaskRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    def create(self, task: Task) -> Task:
        self.db.execute(
            """
            INSERT INTO tasks (
                id, user_id, telegram_message_id, status, input_message, plan_json,
                execution_log_json, result, error, retry_count, started_at,
                completed_at, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                task.id,
                task.user_id,
                task.telegram_message_id,
                task.status.value,
                task.input_message,
                self._plan_payload(task),
                self._log_payload(task),
                task.result,
                task.error,
                task.retry_count,
                task.started_at,
                task.completed_at,
                task.created_at,
                task.updated_at,
            ),
        )
        return task

    def update(self, task: Task) -> Task:
        updated_at = datetime.now(tz=UTC)
        changed = self.db.execute(
            """
            UPDATE tasks
            SET status = %s,
                plan_json = %s,
                execution_log_json = %s,
                result = %s,
                error = %s,
                retry_count = %s,
                started_at = %s,
                completed_at = %s,
                updated_at = %s
            WHERE id = %s
            """,
            (
                task.status.value,
                self._plan_payload(task),
                self._log_payload(task),
                task.result,
                task.error,
                task.retry_count,
                task.started_at,
                task.completed_at,
                updated_at,
                task.id,
            ),
        )
        if changed == 0:
            raise KeyError(f"Task {task.id} does not exist")
        return task.model_copy(update={"updated_at": updated_at})

    def find_by_id(self, task_id: str) -> Task | None:
        row = self.db.fetch_one("SELECT * FROM tasks WHERE id = %s", (task_id,))
        return _row_to_task(row) if row else None

    def find_by_user_id(self, user_id: int, limit: int = 50) -> list[Task]:
        rows = self.db.fetch_all(
            "SELECT * FROM tasks WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
            (user_id, limit),
        )
        return [_row_to_task(row) for row in rows]

    def find_by_status(self, status: TaskStatus, limit: int = 50) -> list[Task]:
        rows = self.db.fetch_all(
            "SELECT * FROM tasks WHERE status = %s ORDER BY created_at DESC LIMIT %s",
            (TaskStatus(status).value, limit),
        )
        return [_row_to_task(row) for row in rows]

    def find_active(self, limit: int = 50) -> list[Task]:
        rows = self.db.fetch_all(
            """
            SELECT * FROM tasks
            WHERE status IN ('queued', 'planning', 'executing', 'verifying')
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (limit,),
        )
        return [_row_to_task(row) for row in rows]

    def _plan_payload(self, task: Task) -> Any:
        return self.db.json_or_none(task.plan.model_dump(mode="json") if task.plan else None)

    def _log_payload(self, task: Task) -> Any:
        log = task.execution_log
        return self.db.json_or_none(log.model_dump(mode="json") if log else None)


_USER_MUTABLE_COLUMNS = ("is_active", "rate_limit_per_minute", "display_name", "username")


class PostgresUserRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    def create(
        self,
        *,
        telegram_chat_id: str,
        display_name: str,
        username: str | None = None,
        rate_limit_per_minute: int = 10,
    ) -> User:
        now = datetime.now(tz=UTC)
        row = self.db.execute_returning(
            """
            INSERT INTO users (
                telegram_chat_id, username, display_name, is_active,
                rate_limit_per_minute, paired_at, created_at, updated_at
            )
            VALUES (%s, %s, %s, TRUE, %s, %s, %s, %s)
            RETURNING *
            """,
            (telegram_chat_id, username, display_name, rate_limit_per_minute, now, now, now),
        )
        return User.model_validate(row)

    def find_by_id(self, user_id: int) -> User | None:
        row = self.db.fetch_one("SELECT * FROM users WHERE id = %s", (user_id,))
        return User.model_validate(row) if row else None

    def find_by_telegram_chat_id(self, chat_id: str) -> User | None:
        row = self.db.fetch_one("SELECT * FROM users WHERE telegram_chat_id = %s", (chat_id,))
        return User.model_validate(row) if row else None

    def find_all(self) -> list[User]:
        rows = self.db.fetch_all("SELECT * FROM users ORDER BY id")
        return [User.model_validate(row) for row in rows]

    def update(self, user_id: int, changes: dict[str, Any]) -> User | None:
        columns = [key for key in _USER_MUTABLE_COLUMNS if key in changes]
        if not columns:
            return self.find_by_id(user_id)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        params = tuple(changes[column] for column in columns) + (datetime.now(tz=UTC), user_id)
        self.db.execute(f"UPDATE users SET {assignments}, updated_at = %s WHERE id = %s", params)
        return self.find_by_id(user_id)

    def delete(self, user_id: int) -> bool:
        return self.db.execute("DELETE FROM users WHERE id = %s", (user_id,)) > 0


class PostgresPermissionRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    def create(self, permission: Permission) -> Permission:
        row = self.db.execute_returning(
            """
            INSERT INTO permissions (
                user_id, tool_name, action, granted, requires_confirmation, granted_by, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, tool_name, action) DO UPDATE
            SET granted = EXCLUDED.granted,
                requires_confirmation = EXCLUDED.requires_confirmation,
                granted_by = EXCLUDED.granted_by
            RETURNING *
            """,
            (
                permission.user_id,
                permission.tool_name,
                permission.action,
                permission.granted,
                permission.requires_confirmation,
                permission.granted_by,
                permission.created_at,
            ),
        )
        return Permission.model_validate(row)

    def find_by_user_id(self, user_id: int) -> list[Permission]:
        rows = self.db.fetch_all(
            "SELECT * FROM permissions WHERE user_id = %s ORDER BY tool_name, action",
            (user_id,),
        )
        return [Permission.model_validate(row) for row in rows]

    def find_granted_by_user_id(self, user_id: int) -> list[Permission]:
        rows = self.db.fetch_all(
            """
            SELECT * FROM permissions
            WHERE user_id = %s AND granted = TRUE
            ORDER BY tool_name, action
            """,
            (user_id,),
        )
        return [Permission.model_validate(row) for row in rows]

    def has_permission(self, user_id: int, tool_name: str, action: str) -> bool:
        return self._match(user_id, tool_name, action) is not None

    def requires_confirmation(self, user_id: int, tool_name: str, action: str) -> bool:
        row = self._match(user_id, tool_name, action)
        return bool(row and row.get("requires_confirmation"))

    def set_permissions(self, user_id: int, permissions: list[Permission]) -> None:
        with self.db.lock, self.db.connect() as conn:
            conn.execute("DELETE FROM permissions WHERE user_id = %s", (user_id,))
            for permission in permissions:
                conn.execute(
                    """
                    INSERT INTO permissions (
                        user_id, tool_name, action, granted, requires_confirmation,
                        granted_by, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, tool_name, action) DO NOTHING
                    """,
                    (
                        user_id,
                        permission.tool_name,
                        permission.action,
                        permission.granted,
                        permission.requires_confirmation,
                        permission.granted_by,
                        permission.created_at,
                    ),
                )
            conn.commit()

    def delete_by_user_id(self, user_id: int) -> int:
        return self.db.execute("DELETE FROM permissions WHERE user_id = %s", (user_id,))

    def _match(self, user_id: int, tool_name: str, action: str) -> dict[str, Any] | None:
        return self.db.fetch_one(
            """
            SELECT * FROM permissions
            WHERE user_id = %s AND tool_name = %s
              AND (action = %s OR action = '*')
              AND granted = TRUE
            ORDER BY (action = '*') ASC
            LIMIT 1
            """,
            (user_id, tool_name, action),
        )


class PostgresAuditRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    def create(self, event: AuditEvent) -> AuditEvent:
        row = self.db.execute_returning(
            """
            INSERT INTO audit_log (
                timestamp, user_id, task_id, event_type, tool_name, action,
                input_data, output_data, success, error
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                event.timestamp,
                event.user_id,
                event.task_id,
                event.event_type,
                event.tool_name,
                event.action,
                self.db.json_or_none(event.input_data),
                self.db.json_or_none(event.output_data),
                event.success,
                event.error,
            ),
        )
        return event.model_copy(update={"id": int(row["id"])})

    def find_by_user_id(self, user_id: int, limit: int = 100) -> list[AuditEvent]:
        return self._select("user_id = %s", (user_id,), limit)

    def find_by_task_id(self, task_id: str) -> list[AuditEvent]:
        rows = self.db.fetch_all(
            "SELECT * FROM audit_log WHERE task_id = %s ORDER BY id ASC", (task_id,)
        )
        return [_row_to_audit(row) for row in rows]

    def find_by_time_range(
        self, start: datetime, end: datetime, limit: int = 100
    ) -> list[AuditEvent]:
        return self._select("timestamp BETWEEN %s AND %s", (start, end), limit)

    def find_by_event_type(self, event_type: str, limit: int = 100) -> list[AuditEvent]:
        return self._select("event_type = %s", (event_type,), limit)

    def _select(self, where: str, params: tuple[Any, ...], limit: int) -> list[AuditEvent]:
        rows = self.db.fetch_all(
            f"SELECT * FROM audit_log WHERE {where} ORDER BY id DESC LIMIT %s",
            params + (limit,),
        )
        return [_row_to_audit(row) for row in rows]


class PostgresReminderRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    def create(self, reminder: Reminder) -> Reminder:
        self.db.execute(
            """
            INSERT INTO reminders (
                id, user_id, message, remind_at, status, created_by_task_id, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                reminder.id,
                reminder.user_id,
                reminder.message,
                reminder.remind_at,
                reminder.status,
                reminder.created_by_task_id,
                reminder.created_at,
            ),
        )
        return reminder

    def find_by_id(self, reminder_id: str) -> Reminder | None:
        row = self.db.fetch_one("SELECT * FROM reminders WHERE id = %s", (reminder_id,))
        return Reminder.model_validate(row) if row else None

    def find_by_user_id(self, user_id: int) -> list[Reminder]:
        rows = self.db.fetch_all(
            "SELECT * FROM reminders WHERE user_id = %s ORDER BY remind_at ASC", (user_id,)
        )
        return [Reminder.model_validate(row) for row in rows]

    def count_by_user_id(self, user_id: int) -> int:
        row = self.db.fetch_one(
            "SELECT COUNT(*) AS count FROM reminders WHERE user_id = %s", (user_id,)
        )
        return int(row["count"]) if row else 0

    def delete(self, reminder_id: str) -> bool:
        return self.db.execute("DELETE FROM reminders WHERE id = %s", (reminder_id,)) > 0


class PostgresDedupRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    def exists(self, chat_id: str, message_id: int) -> bool:
        row = self.db.fetch_one(
            """
            SELECT COUNT(*) AS count FROM message_dedup
            WHERE telegram_chat_id = %s AND telegram_message_id = %s
            """,
            (chat_id, message_id),
        )
        return bool(row and int(row["count"]) > 0)

    def record(
        self, *, chat_id: str, message_id: int, received_at: datetime, task_id: str
    ) -> bool:
        inserted = self.db.execute(
            """
            INSERT INTO message_dedup (
                telegram_message_id, telegram_chat_id, received_at, task_id
            )
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (telegram_chat_id, telegram_message_id) DO NOTHING
            """,
            (message_id, chat_id, received_at, task_id),
        )
        return inserted > 0

    def purge_older_than(self, cutoff: datetime) -> int:
        return self.db.execute("DELETE FROM message_dedup WHERE received_at < %s", (cutoff,))


class PostgresPairingTokenRepository:
    def __init__(self, db: PostgresDatabase) -> None:
        self.db = db

    def create(self, *, token: str, ttl_minutes: int, is_admin: bool = False) -> PairingToken:
        now = datetime.now(tz=UTC)
        row = self.db.execute_returning(
            """
            INSERT INTO pairing_tokens (token, created_at, expires_at, is_admin)
            VALUES (%s, %s, %s, %s)
            RETURNING *
            """,
            (token, now, now + timedelta(minutes=ttl_minutes), is_admin),
        )
        return PairingToken.model_validate(row)

    def find_by_token(self, token: str) -> PairingToken | None:
        row = self.db.fetch_one("SELECT * FROM pairing_tokens WHERE token = %s", (token,))
        return PairingToken.model_validate(row) if row else None

    def is_valid(self, token: str) -> bool:
        record = self.find_by_token(token)
        if record is None:
            return False
        return record.used_at is None and record.expires_at > datetime.now(tz=UTC)

    def mark_used(self, token: str, chat_id: str) -> None:
        self.db.execute(
            "UPDATE pairing_tokens SET used_at = %s, used_by_chat_id = %s WHERE token = %s",
            (datetime.now(tz=UTC), chat_id, token),
        )

    def clean_expired(self) -> int:
        return self.db.execute(
            "DELETE FROM pairing_tokens WHERE expires_at < %s AND used_at IS NULL",
            (datetime.now(tz=UTC),),
        )

    def find_active(self) -> list[PairingToken]:
        rows = self.db.fetch_all(
            """
            SELECT * FROM pairing_tokens
            WHERE used_at IS NULL AND expires_at > %s
            ORDER BY created_at DESC
            """,
            (datetime.now(tz=UTC),),
        )
        return [PairingToken.model_validate(row) for row in rows]


def build_postgres_repositories(database_url: str) -> Repositories:
    db = PostgresDatabase(database_url)
    return Repositories(
        tasks=PostgresTaskRepository(db),
        users=PostgresUserRepository(db),
        permissions=PostgresPermissionRepository(db),
        audit=PostgresAuditRepository(db),
        reminders=PostgresReminderRepository(db),
        dedup=PostgresDedupRepository(db),
        pairing_tokens=PostgresPairingTokenRepository(db),
        migrate=db.migrate,
    )


def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
    if raw is None:
        return None
    parsed = json.loads(raw) if isinstance(raw, str) else raw
    return parsed if isinstance(parsed, dict) else None


def _row_to_task(row: dict[str, Any]) -> Task:
    plan_payload = _parse_json_optional(row.get("plan_json"))
    log_payload = _parse_json_optional(row.get("execution_log_json"))
    return Task(
        id=str(row["id"]),
        user_id=int(row["user_id"]),
        telegram_message_id=row.get("telegram_message_id"),
        status=TaskStatus(row["status"]),
        input_message=row["input_message"],
        plan=Plan.model_validate(plan_payload) if plan_payload else None,
        execution_log=ExecutionLog.model_validate(log_payload) if log_payload else None,
        result=row.get("result"),
        error=row.get("error"),
        retry_count=int(row.get("retry_count") or 0),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_audit(row: dict[str, Any]) -> AuditEvent:
    return AuditEvent(
        id=int(row["id"]),
        timestamp=row["timestamp"],
        user_id=row.get("user_id"),
        task_id=row.get("task_id"),
        event_type=row["event_type"],
        tool_name=row.get("tool_name"),
        action=row.get("action"),
        input_data=_parse_json_optional(row.get("input_data")),
        output_data=_parse_json_optional(row.get("output_data")),
        success=bool(row["success"]),
        error=row.get("error"),
    )
