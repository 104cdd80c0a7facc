"""Allow-listed command execution.

``run_command`` executes one program with validated arguments and no shell.
``execute`` accepts a short shell line, but only when every segment starts
with an allowed command and nothing matches the destructive patterns or
uses substitution or redirection.
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Mapping

from pydantic import Field

from chat_orchestrator.tools.base import (
    ActionSpec,
    StrictModel,
    ToolContext,
    ToolResult,
    describe_tool,
    execute_action,
)

logger = logging.getLogger(__name__)

MAX_ARGS = 32
MAX_ARG_LENGTH = 200

_SAFE_TOKEN = re.compile(r"^[a-zA-Z0-9._:/=+@%-]+$")
_SEGMENT_SPLIT = re.compile(r"[\n;|&]+")
_SHELL_EXPANSION = re.compile(r"[`$<>()]")

DANGEROUS_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"rm\s+-rf\s+/", re.IGNORECASE),
    re.compile(r"\bdd\s+if=", re.IGNORECASE),
    re.compile(r"\bmkfs", re.IGNORECASE),
    re.compile(r":\(\)\s*\{.*\}"),
    re.compile(r"\bshutdown\b|\breboot\b", re.IGNORECASE),
)


class RunCommandParams(StrictModel):
    command: str = Field(min_length=1, max_length=64)
    args: list[str] = Field(default_factory=list, max_length=MAX_ARGS)
    timeout_s: float | None = Field(default=None, ge=1.0, le=120.0)
    working_dir: str | None = Field(default=None, min_length=1, max_length=512)


class ShellCommandParams(StrictModel):
    command: str = Field(min_length=1, max_length=2000)
    timeout_s: float | None = Field(default=None, ge=1.0, le=120.0)
    working_dir: str | None = Field(default=None, min_length=1, max_length=512)


class SystemExecTool:
    name = "system_exec"
    description = "Run a small set of allow-listed commands with safety checks"

    def __init__(
        self,
        allowed_commands: list[str],
        *,
        blocked_commands: list[str] | None = None,
        allowed_working_dirs: list[str] | None = None,
        timeout_s: float = 15.0,
        max_output_bytes: int = 20_000,
    ) -> None:
        self.allowed_commands = set(allowed_commands)
        self.blocked_commands = set(blocked_commands or [])
        self.allowed_working_dirs = [Path(d).resolve() for d in allowed_working_dirs or []]
        self.timeout_s = timeout_s
        self.max_output_bytes = max_output_bytes
        self._actions = {
            "run_command": ActionSpec(
                "Run an allow-listed command without a shell", RunCommandParams, self._run_command
            ),
            "execute": ActionSpec(
                "Run a shell line whose commands are all allow-listed",
                ShellCommandParams,
                self._execute,
            ),
        }

    @property
    def actions(self) -> Mapping[str, ActionSpec]:
        return self._actions

    def get_descriptor(self) -> dict[str, Any]:
        return describe_tool(self)

    def execute(self, action: str, params: dict[str, Any], context: ToolContext) -> ToolResult:
        return execute_action(self, action, params, context)

    def is_allowed_command(self, command: str) -> bool:
        return command not in self.blocked_commands and command in self.allowed_commands

    def is_shell_command_allowed(self, command: str) -> bool:
        if any(pattern.search(command) for pattern in DANGEROUS_PATTERNS):
            return False
        if _SHELL_EXPANSION.search(command):
            return False
        segments = [part.strip() for part in _SEGMENT_SPLIT.split(command) if part.strip()]
        if not segments:
            return False
        return all(self.is_allowed_command(segment.split()[0]) for segment in segments)

    def _run_command(self, params: RunCommandParams, _: ToolContext) -> ToolResult:
        if not self.is_allowed_command(params.command):
            return ToolResult.fail(f'Command "{params.command}" is not allowed')
        for arg in params.args:
            if len(arg) > MAX_ARG_LENGTH:
                return ToolResult.fail("Argument too long")
            if not _SAFE_TOKEN.match(arg):
                return ToolResult.fail(f'Argument "{arg}" contains invalid characters')
            if arg.startswith("-"):
                return ToolResult.fail(f'Argument "{arg}" looks like a flag and is not allowed')

        cwd, error = self._resolve_working_dir(params.working_dir)
        if error:
            return ToolResult.fail(error)
        return self._run(
            [params.command, *params.args],
            timeout_s=params.timeout_s,
            cwd=cwd,
            shell=False,
        )

    def _execute(self, params: ShellCommandParams, _: ToolContext) -> ToolResult:
        if not self.is_shell_command_allowed(params.command):
            return ToolResult.fail("Command not allowed by allowlist")
        cwd, error = self._resolve_working_dir(params.working_dir)
        if error:
            return ToolResult.fail(error)
        return self._run(params.command, timeout_s=params.timeout_s, cwd=cwd, shell=True)

    def _resolve_working_dir(self, working_dir: str | None) -> tuple[Path | None, str | None]:
        if working_dir is None:
            return None, None
        if not self.allowed_working_dirs:
            return None, "Custom working_dir is not allowed"
        resolved = Path(working_dir).resolve()
        for base in self.allowed_working_dirs:
            if resolved == base or base in resolved.parents:
                return resolved, None
        return None, f'working_dir "{working_dir}" is not allowed'

    def _run(
        self,
        command: str | list[str],
        *,
        timeout_s: float | None,
        cwd: Path | None,
        shell: bool,
    ) -> ToolResult:
        timeout = timeout_s or self.timeout_s
        try:
            completed = subprocess.run(
                command,
                shell=shell,
                cwd=cwd,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return ToolResult.fail(f"Command timed out after {timeout:g}s")
        except OSError as exc:
            return ToolResult.fail(f"Failed to run command: {exc}")

        data = {
            "command": command,
            "exit_code": completed.returncode,
            "stdout": self._clip(completed.stdout),
            "stderr": self._clip(completed.stderr),
        }
        if completed.returncode != 0:
            logger.warning(
                "system_exec event=nonzero_exit command=%r code=%d", command, completed.returncode
            )
            return ToolResult(
                success=False,
                data=data,
                error=f"Command failed with code {completed.returncode}",
            )
        return ToolResult.ok(data)

    def _clip(self, output: str) -> str:
        encoded = output.strip().encode("utf-8")
        if len(encoded) <= self.max_output_bytes:
            return output.strip()
        return encoded[: self.max_output_bytes].decode("utf-8", errors="ignore")
