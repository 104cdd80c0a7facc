"""Tool contract and the shared validate-then-dispatch helper."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)


class StrictModel(BaseModel):
    """Base model for strict action parameter validation."""

    model_config = ConfigDict(extra="forbid")


class EmptyParams(StrictModel):
    pass


@dataclass(frozen=True)
class ToolContext:
    user_id: int
    task_id: str
    user_message: str | None = None


class ToolResult(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> ToolResult:
        return cls(success=True, data=data if data is not None else {})

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


ActionHandler = Callable[[Any, ToolContext], ToolResult]


@dataclass(frozen=True)
class ActionSpec:
    description: str
    params_model: type[BaseModel]
    handler: ActionHandler


class Tool(Protocol):
    name: str
    description: str

    @property
    def actions(self) -> Mapping[str, ActionSpec]: ...

    def get_descriptor(self) -> dict[str, Any]: ...

    def execute(
        self, action: str, params: dict[str, Any], context: ToolContext
    ) -> ToolResult: ...


def describe_tool(tool: Tool) -> dict[str, Any]:
    return {
        "name": tool.name,
        "description": tool.description,
        "actions": {
            action_name: {
                "description": spec.description,
                "parameters": spec.params_model.model_json_schema(),
            }
            for action_name, spec in tool.actions.items()
        },
    }


def execute_action(
    tool: Tool, action: str, params: dict[str, Any] | None, context: ToolContext
) -> ToolResult:
    """Look up ``action``, validate ``params`` against its model, and run the handler.

    Every failure, including exceptions raised by the handler, comes back as
    ``ToolResult(success=False, error=...)``.
    """
    spec = tool.actions.get(action)
    if spec is None:
        return ToolResult.fail(f"Unknown action: {action}")

    try:
        payload = spec.params_model.model_validate(params or {})
    except ValidationError as exc:
        return ToolResult.fail(f"Invalid parameters: {_validation_summary(exc)}")

    try:
        return spec.handler(payload, context)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "tool event=handler_error tool=%s action=%s task_id=%s error=%s",
            tool.name,
            action,
            context.task_id,
            exc,
        )
        return ToolResult.fail(str(exc) or exc.__class__.__name__)


def _validation_summary(exc: ValidationError) -> str:
    parts: list[str] = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "params"
        parts.append(f"{location}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)
