"""Tool registry and the settings-driven registry builder."""

from __future__ import annotations

import logging
from typing import Any

from chat_orchestrator.config.settings import Settings
from chat_orchestrator.storage.base import Repositories
from chat_orchestrator.tools.base import Tool
from chat_orchestrator.tools.files_readonly import FilesReadonlyTool
from chat_orchestrator.tools.files_write import FilesWriteTool
from chat_orchestrator.tools.reminders import RemindersTool
from chat_orchestrator.tools.system_exec import SystemExecTool
from chat_orchestrator.tools.system_info import SystemInfoTool
from chat_orchestrator.tools.web_sandbox import WebSandboxTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[tool.name] = tool
        logger.info("tool_registry event=registered tool=%s", tool.name)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return sorted(self._tools)

    def get_descriptor(self, name: str) -> dict[str, Any] | None:
        tool = self._tools.get(name)
        return tool.get_descriptor() if tool is not None else None

    def get_all_descriptors(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        """Descriptors for every registered tool, or only for ``names`` when given."""
        selected = self.names() if names is None else [n for n in names if n in self._tools]
        return [self._tools[name].get_descriptor() for name in selected]


def build_registry(settings: Settings, repositories: Repositories) -> ToolRegistry:
    registry = ToolRegistry()
    if settings.tool_enabled("reminders"):
        registry.register(
            RemindersTool(repositories.reminders, max_per_user=settings.reminders_max_per_user)
        )
    if settings.tool_enabled("system_info"):
        registry.register(SystemInfoTool())
    if settings.tool_enabled("files_readonly"):
        registry.register(
            FilesReadonlyTool(
                settings.files_safe_root,
                max_file_size_mb=settings.files_max_size_mb,
                allowed_extensions=settings.files_allowed_extensions,
            )
        )
    if settings.tool_enabled("files_write"):
        registry.register(
            FilesWriteTool(settings.files_safe_root, max_file_size_mb=settings.files_max_size_mb)
        )
    if settings.tool_enabled("web_sandbox"):
        registry.register(
            WebSandboxTool(
                settings.web_allowed_domains,
                timeout_s=settings.web_timeout_s,
                max_response_mb=settings.web_max_response_mb,
            )
        )
    if settings.tool_enabled("system_exec"):
        registry.register(
            SystemExecTool(
                settings.system_exec_allowed_commands,
                blocked_commands=settings.system_exec_blocked_commands,
                allowed_working_dirs=settings.system_exec_allowed_working_dirs,
                timeout_s=settings.system_exec_timeout_s,
                max_output_bytes=settings.system_exec_max_output_bytes,
            )
        )
    return registry
