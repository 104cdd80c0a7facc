"""Reminder creation, listing, and deletion."""

from __future__ import annotations

import secrets
from datetime import UTC, datetime
from typing import Any, Mapping

from pydantic import Field

from chat_orchestrator.models import Reminder, utc_now
from chat_orchestrator.storage.base import ReminderRepository
from chat_orchestrator.tools.base import (
    ActionSpec,
    EmptyParams,
    StrictModel,
    ToolContext,
    ToolResult,
    describe_tool,
    execute_action,
)


class CreateReminderParams(StrictModel):
    message: str = Field(min_length=1, max_length=500)
    remind_at: datetime


class DeleteReminderParams(StrictModel):
    reminder_id: str = Field(min_length=1)


def generate_reminder_id() -> str:
    return f"rem_{secrets.token_hex(8)}"


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


class RemindersTool:
    name = "reminders"
    description = "Create, list and delete reminders"

    def __init__(self, repository: ReminderRepository, *, max_per_user: int = 50) -> None:
        self.repository = repository
        self.max_per_user = max_per_user
        self._actions = {
            "create": ActionSpec("Create a new reminder", CreateReminderParams, self._create),
            "list": ActionSpec("List all active reminders", EmptyParams, self._list),
            "delete": ActionSpec("Delete a reminder by ID", DeleteReminderParams, self._delete),
        }

    @property
    def actions(self) -> Mapping[str, ActionSpec]:
        return self._actions

    def get_descriptor(self) -> dict[str, Any]:
        return describe_tool(self)

    def execute(self, action: str, params: dict[str, Any], context: ToolContext) -> ToolResult:
        return execute_action(self, action, params, context)

    def _create(self, params: CreateReminderParams, context: ToolContext) -> ToolResult:
        if self.repository.count_by_user_id(context.user_id) >= self.max_per_user:
            return ToolResult.fail(f"Maximum of {self.max_per_user} reminders per user reached")

        remind_at = params.remind_at
        if remind_at.tzinfo is None:
            remind_at = remind_at.replace(tzinfo=UTC)
        if remind_at <= utc_now():
            return ToolResult.fail("Reminder time must be in the future")

        reminder = self.repository.create(
            Reminder(
                id=generate_reminder_id(),
                user_id=context.user_id,
                message=params.message,
                remind_at=remind_at,
                created_by_task_id=context.task_id,
            )
        )
        return ToolResult.ok(
            {
                "reminder_id": reminder.id,
                "message": reminder.message,
                "remind_at": _iso(reminder.remind_at),
            }
        )

    def _list(self, _: EmptyParams, context: ToolContext) -> ToolResult:
        reminders = self.repository.find_by_user_id(context.user_id)
        return ToolResult.ok(
            {
                "reminders": [
                    {"id": r.id, "message": r.message, "remind_at": _iso(r.remind_at)}
                    for r in reminders
                ],
                "count": len(reminders),
            }
        )

    def _delete(self, params: DeleteReminderParams, context: ToolContext) -> ToolResult:
        reminder = self.repository.find_by_id(params.reminder_id)
        if reminder is None:
            return ToolResult.fail("Reminder not found")
        if reminder.user_id != context.user_id:
            return ToolResult.fail("Permission denied: reminder belongs to another user")
        if not self.repository.delete(params.reminder_id):
            return ToolResult.fail("Failed to delete reminder")
        return ToolResult.ok({"reminder_id": params.reminder_id, "deleted": True})
