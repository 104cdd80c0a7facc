"""Pydantic models shared across gateway, engine, tools, security, and storage.

Terms used in this file:
- Plan: ordered tool/action steps proposed by the LLM, validated once.
- StepLog: recorded outcome of one step, positionally aligned with the plan.
- ExecutionLog: the StepLogs of one execution attempt (fail-fast).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class TaskStatus(str, Enum):
    QUEUED = "queued"
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.FAILED)


class StepStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class VerificationType(str, Enum):
    FILE_EXISTS = "file_exists"
    REMINDER_CREATED = "reminder_created"
    DATA_RETRIEVED = "data_retrieved"
    NONE = "none"


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid")


class Verification(StrictModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: VerificationType
    params: dict[str, Any] = Field(default_factory=dict)


class PlanStep(StrictModel):
    """One planned tool invocation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    tool: str = Field(min_length=1)
    action: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    # Advisory only; execution does not block on it.
    requires_confirmation: bool = False
    verification: Verification


class Plan(StrictModel):
    """Ordered steps plus the tools they are expected to touch."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    steps: list[PlanStep] = Field(default_factory=list)
    estimated_tools: list[str] = Field(default_factory=list)

    def derived_tools(self) -> list[str]:
        seen: list[str] = []
        for step in self.steps:
            if step.tool not in seen:
                seen.append(step.tool)
        return seen


class StepLog(BaseModel):
    id: str
    status: StepStatus = StepStatus.RUNNING
    result: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class ExecutionLog(BaseModel):
    steps: list[StepLog] = Field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        return [
            step.error or "Tool execution failed"
            for step in self.steps
            if step.status == StepStatus.ERROR
        ]

    @property
    def has_errors(self) -> bool:
        return any(step.status == StepStatus.ERROR for step in self.steps)


class VerificationResult(BaseModel):
    all_passed: bool
    failures: list[str] = Field(default_factory=list)


class Task(BaseModel):
    """Canonical task record; created by the gateway, mutated by the engine."""

    id: str
    user_id: int
    status: TaskStatus = TaskStatus.QUEUED
    input_message: str
    telegram_message_id: int | None = None
    plan: Plan | None = None
    execution_log: ExecutionLog | None = None
    result: str | None = None
    error: str | None = None
    retry_count: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class IncomingMessage(BaseModel):
    """Inbound chat message as delivered by a connector."""

    message_id: int
    chat_id: str = Field(min_length=1)
    text: str
    user_display_name: str = "Unknown User"
    username: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def dedup_key(self) -> str:
        return f"{self.chat_id}:{self.message_id}"


class User(BaseModel):
    id: int
    telegram_chat_id: str
    username: str | None = None
    display_name: str
    is_active: bool = True
    rate_limit_per_minute: int = 10
    paired_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Permission(BaseModel):
    id: int | None = None
    user_id: int
    tool_name: str
    action: str
    granted: bool = True
    requires_confirmation: bool = False
    granted_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)


class Reminder(BaseModel):
    id: str
    user_id: int
    message: str
    remind_at: datetime
    status: str = "pending"
    created_by_task_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class PairingToken(BaseModel):
    token: str
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    used_at: datetime | None = None
    used_by_chat_id: str | None = None
    is_admin: bool = False


class AuditEvent(BaseModel):
    """Append-only audit record; payloads are redacted before storage."""

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    user_id: int | None = None
    task_id: str | None = None
    event_type: str
    tool_name: str | None = None
    action: str | None = None
    input_data: dict[str, Any] | None = None
    output_data: dict[str, Any] | None = None
    success: bool = True
    error: str | None = None
