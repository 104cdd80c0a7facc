"""File writes confined to the safe root, with timestamped backups."""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
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
from chat_orchestrator.tools.files_readonly import OUTSIDE_ROOT_ERROR

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1_000_000


class WriteFileParams(StrictModel):
    path: str = Field(min_length=1)
    content: str = Field(max_length=MAX_CONTENT_LENGTH)
    create_dirs: bool = True
    overwrite: bool = True


class AppendFileParams(StrictModel):
    path: str = Field(min_length=1)
    content: str = Field(max_length=MAX_CONTENT_LENGTH)


class EditFileParams(StrictModel):
    path: str = Field(min_length=1)
    old_text: str = Field(min_length=1)
    new_text: str
    replace_all: bool = False


class DeleteFileParams(StrictModel):
    path: str = Field(min_length=1)


class FilesWriteTool:
    name = "files_write"
    description = "Write, append, edit and delete files in the safe directory"

    def __init__(
        self,
        safe_root: str,
        *,
        max_file_size_mb: float = 10.0,
        backup_enabled: bool = True,
        backup_dir_name: str = ".backups",
    ) -> None:
        self.paths = PathValidator(safe_root)
        self.max_file_size_mb = max_file_size_mb
        self.backup_enabled = backup_enabled
        self.backup_dir_name = backup_dir_name
        self._actions = {
            "write": ActionSpec("Write content to a file", WriteFileParams, self._write),
            "append": ActionSpec("Append content to a file", AppendFileParams, self._append),
            "edit": ActionSpec("Edit file by replacing text", EditFileParams, self._edit),
            "delete": ActionSpec("Delete a file", DeleteFileParams, self._delete),
        }

    @property
    def actions(self) -> Mapping[str, ActionSpec]:
        return self._actions

    def get_descriptor(self) -> dict[str, Any]:
        return describe_tool(self)

    def execute(self, action: str, params: dict[str, Any], context: ToolContext) -> ToolResult:
        return execute_action(self, action, params, context)

    def _write(self, params: WriteFileParams, _: ToolContext) -> ToolResult:
        resolved = self.paths.resolve_path_safely(params.path)
        if resolved is None:
            return ToolResult.fail(OUTSIDE_ROOT_ERROR)
        if resolved.exists() and not params.overwrite:
            return ToolResult.fail("File already exists and overwrite=false")
        if self._too_large(len(params.content.encode("utf-8"))):
            return ToolResult.fail(f"Content exceeds maximum of {self.max_file_size_mb:g}MB")

        if params.create_dirs:
            resolved.parent.mkdir(parents=True, exist_ok=True)
        if resolved.exists():
            self._backup(resolved)
        written = resolved.write_text(params.content, encoding="utf-8")
        return ToolResult.ok({"path": params.path, "bytes_written": written})

    def _append(self, params: AppendFileParams, _: ToolContext) -> ToolResult:
        resolved = self.paths.resolve_path_safely(params.path)
        if resolved is None:
            return ToolResult.fail(OUTSIDE_ROOT_ERROR)
        current_size = resolved.stat().st_size if resolved.exists() else 0
        if self._too_large(current_size + len(params.content.encode("utf-8"))):
            return ToolResult.fail(f"Content exceeds maximum of {self.max_file_size_mb:g}MB")

        resolved.parent.mkdir(parents=True, exist_ok=True)
        with resolved.open("a", encoding="utf-8") as handle:
            written = handle.write(params.content)
        return ToolResult.ok({"path": params.path, "bytes_written": written})

    def _edit(self, params: EditFileParams, _: ToolContext) -> ToolResult:
        resolved = self.paths.resolve_path_safely(params.path)
        if resolved is None:
            return ToolResult.fail(OUTSIDE_ROOT_ERROR)
        if not resolved.is_file():
            return ToolResult.fail("File not found")

        original = resolved.read_text(encoding="utf-8")
        occurrences = original.count(params.old_text)
        if occurrences == 0:
            return ToolResult.fail("Old text not found in file")

        count = -1 if params.replace_all else 1
        updated = original.replace(params.old_text, params.new_text, count)
        self._backup(resolved)
        resolved.write_text(updated, encoding="utf-8")
        return ToolResult.ok(
            {"path": params.path, "replacements": occurrences if params.replace_all else 1}
        )

    def _delete(self, params: DeleteFileParams, _: ToolContext) -> ToolResult:
        resolved = self.paths.resolve_path_safely(params.path)
        if resolved is None:
            return ToolResult.fail(OUTSIDE_ROOT_ERROR)
        if not resolved.is_file():
            return ToolResult.fail("File not found")

        self._backup(resolved)
        resolved.unlink()
        return ToolResult.ok({"path": params.path, "deleted": True})

    def _too_large(self, size_bytes: int) -> bool:
        return size_bytes > self.max_file_size_mb * 1024 * 1024

    def _backup(self, resolved: Path) -> None:
        if not self.backup_enabled:
            return
        backup_dir = self.paths.safe_root / self.backup_dir_name
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            target = backup_dir / f"{resolved.name}.{int(time.time() * 1000)}.bak"
            shutil.copy2(resolved, target)
        except OSError as exc:
            logger.warning("files_write event=backup_failed path=%s error=%s", resolved, exc)
