"""Read-only file access confined to the safe root."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import Field

from chat_orchestrator.security.paths import PathValidator
from chat_orchestrator.tools.base import (
    ActionSpec,
    StrictModel,
    ToolContext,
    ToolResult,
    describe_tool,
    execute_action,
)

OUTSIDE_ROOT_ERROR = "Path is outside safe directory or contains invalid characters"


class ListFilesParams(StrictModel):
    path: str = "."


class ReadFileParams(StrictModel):
    path: str = Field(min_length=1)


class FilesReadonlyTool:
    name = "files_readonly"
    description = "Read and list files in the safe directory"

    def __init__(
        self,
        safe_root: str,
        *,
        max_file_size_mb: float = 10.0,
        allowed_extensions: list[str] | None = None,
    ) -> None:
        self.paths = PathValidator(safe_root)
        self.max_file_size_mb = max_file_size_mb
        self.allowed_extensions = [ext.lower() for ext in (allowed_extensions or [".txt", ".md"])]
        self._actions = {
            "list": ActionSpec("List files in a directory", ListFilesParams, self._list),
            "read": ActionSpec("Read file contents", ReadFileParams, self._read),
        }

    @property
    def actions(self) -> Mapping[str, ActionSpec]:
        return self._actions

    def get_descriptor(self) -> dict[str, Any]:
        return describe_tool(self)

    def execute(self, action: str, params: dict[str, Any], context: ToolContext) -> ToolResult:
        return execute_action(self, action, params, context)

    def _list(self, params: ListFilesParams, _: ToolContext) -> ToolResult:
        resolved = self.paths.resolve_path_safely(params.path)
        if resolved is None:
            return ToolResult.fail(OUTSIDE_ROOT_ERROR)
        try:
            entries = [
                {
                    "name": entry.name,
                    "type": "directory" if entry.is_dir() else "file",
                    "size": entry.stat().st_size if entry.is_file() else None,
                    "modified": entry.stat().st_mtime,
                }
                for entry in sorted(resolved.iterdir())
            ]
        except OSError as exc:
            return ToolResult.fail(f"Failed to list directory: {exc}")
        return ToolResult.ok({"path": params.path, "entries": entries})

    def _read(self, params: ReadFileParams, _: ToolContext) -> ToolResult:
        resolved = self.paths.resolve_path_safely(params.path)
        if resolved is None:
            return ToolResult.fail(OUTSIDE_ROOT_ERROR)

        extension = resolved.suffix.lower()
        if extension not in self.allowed_extensions:
            return ToolResult.fail(f"File extension {extension or '(none)'} is not allowed")

        try:
            if not resolved.is_file():
                return ToolResult.fail("Path is not a file")
            size = resolved.stat().st_size
            if size > self.max_file_size_mb * 1024 * 1024:
                return ToolResult.fail(
                    f"File size exceeds maximum of {self.max_file_size_mb:g}MB"
                )
            content = resolved.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            return ToolResult.fail(f"Failed to read file: {exc}")
        return ToolResult.ok({"path": params.path, "content": content, "size": size})
