from __future__ import annotations

import platform
import time
from typing import Any, Mapping

from chat_orchestrator import __version__
from chat_orchestrator.tools.base import (
    ActionSpec,
    EmptyParams,
    ToolContext,
    ToolResult,
    describe_tool,
    execute_action,
)

_STARTED_AT = time.monotonic()


class SystemInfoTool:
    name = "system_info"
    description = "Get basic system information"

    def __init__(self) -> None:
        self._actions = {"get": ActionSpec("Get system information", EmptyParams, self._get)}

    @property
    def actions(self) -> Mapping[str, ActionSpec]:
        return self._actions

    def get_descriptor(self) -> dict[str, Any]:
        return describe_tool(self)

    def execute(self, action: str, params: dict[str, Any], context: ToolContext) -> ToolResult:
        return execute_action(self, action, params, context)

    def _get(self, _: EmptyParams, __: ToolContext) -> ToolResult:
        return ToolResult.ok(
            {
                "platform": platform.system().lower(),
                "machine": platform.machine(),
                "python_version": platform.python_version(),
                "uptime_seconds": round(time.monotonic() - _STARTED_AT, 2),
                "app_version": __version__,
            }
        )
