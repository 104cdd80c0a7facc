"""Append-only audit trail with recursive secret redaction."""

from __future__ import annotations

import logging
from typing import Any

from chat_orchestrator.models import AuditEvent
from chat_orchestrator.storage.base import AuditRepository

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_KEY_PARTS = ("token", "password", "secret", "key", "api_key", "auth")


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(part in lowered for part in SENSITIVE_KEY_PARTS)


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with secret-like keys masked at any depth."""
    if isinstance(value, dict):
        return {
            key: REDACTED if isinstance(key, str) and is_sensitive_key(key) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def _redact_payload(payload: dict[str, Any] | None) -> dict[str, Any] | None:
    if payload is None:
        return None
    return redact(payload)


class AuditLog:
    """Records one AuditEvent per authorization-relevant action."""

    def __init__(self, repository: AuditRepository) -> None:
        self.repository = repository

    def log(self, event: AuditEvent) -> AuditEvent | None:
        sanitized = event.model_copy(
            update={
                "input_data": _redact_payload(event.input_data),
                "output_data": _redact_payload(event.output_data),
            }
        )
        try:
            stored = self.repository.create(sanitized)
        except Exception:  # noqa: BLE001
            logger.exception(
                "audit event=persist_failed event_type=%s task_id=%s",
                sanitized.event_type,
                sanitized.task_id,
            )
            return None
        logger.info(
            "audit event_type=%s user_id=%s task_id=%s tool=%s action=%s success=%s",
            stored.event_type,
            stored.user_id,
            stored.task_id,
            stored.tool_name,
            stored.action,
            stored.success,
        )
        return stored

    def log_tool_invocation(
        self,
        *,
        user_id: int,
        task_id: str,
        tool_name: str,
        action: str,
        input_data: dict[str, Any],
        success: bool,
        output_data: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> AuditEvent | None:
        return self.log(
            AuditEvent(
                user_id=user_id,
                task_id=task_id,
                event_type="tool_invoked",
                tool_name=tool_name,
                action=action,
                input_data=input_data,
                output_data=output_data,
                success=success,
                error=error,
            )
        )

    def log_task_event(
        self,
        *,
        user_id: int,
        task_id: str,
        event_type: str,
        success: bool,
        error: str | None = None,
    ) -> AuditEvent | None:
        return self.log(
            AuditEvent(
                user_id=user_id,
                task_id=task_id,
                event_type=event_type,
                success=success,
                error=error,
            )
        )

    def log_security_event(
        self,
        event_type: str,
        *,
        user_id: int | None = None,
        details: dict[str, Any] | None = None,
        success: bool = False,
    ) -> AuditEvent | None:
        return self.log(
            AuditEvent(
                user_id=user_id,
                event_type=event_type,
                input_data=details,
                success=success,
            )
        )
