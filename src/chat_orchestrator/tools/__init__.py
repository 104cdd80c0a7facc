from chat_orchestrator.tools.base import (
    ActionSpec,
    EmptyParams,
    Tool,
    ToolContext,
    ToolResult,
    describe_tool,
    execute_action,
)
from chat_orchestrator.tools.files_readonly import FilesReadonlyTool
from chat_orchestrator.tools.files_write import FilesWriteTool
from chat_orchestrator.tools.registry import ToolRegistry, build_registry
from chat_orchestrator.tools.reminders import RemindersTool
from chat_orchestrator.tools.system_exec import SystemExecTool
from chat_orchestrator.tools.system_info import SystemInfoTool
from chat_orchestrator.tools.web_sandbox import WebSandboxTool

__all__ = [
    "ActionSpec",
    "EmptyParams",
    "FilesReadonlyTool",
    "FilesWriteTool",
    "RemindersTool",
    "SystemExecTool",
    "SystemInfoTool",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "WebSandboxTool",
    "build_registry",
    "describe_tool",
    "execute_action",
]
