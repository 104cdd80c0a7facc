from __future__ import annotations

import io
import subprocess
from datetime import timedelta
from email.message import Message
from pathlib import Path
from typing import Any
from urllib import error

import pytest

from chat_orchestrator.models import utc_now
from chat_orchestrator.storage import Repositories
from chat_orchestrator.tools.base import ToolContext
from chat_orchestrator.tools.files_readonly import OUTSIDE_ROOT_ERROR, FilesReadonlyTool
from chat_orchestrator.tools.files_write import FilesWriteTool
from chat_orchestrator.tools.registry import ToolRegistry, build_registry
from chat_orchestrator.tools.reminders import RemindersTool
from chat_orchestrator.tools.system_exec import SystemExecTool
from chat_orchestrator.tools.system_info import SystemInfoTool
from chat_orchestrator.tools.web_sandbox import WebSandboxTool

CONTEXT = ToolContext(user_id=1, task_id="task_1")
OTHER_USER = ToolContext(user_id=2, task_id="task_2")


def test_execute_action_rejects_unknown_action_and_bad_params(
    repositories: Repositories,
) -> None:
    tool = RemindersTool(repositories.reminders)

    unknown = tool.execute("snooze", {}, CONTEXT)
    assert not unknown.success
    assert unknown.error == "Unknown action: snooze"

    invalid = tool.execute("create", {"message": ""}, CONTEXT)
    assert not invalid.success
    assert invalid.error is not None
    assert invalid.error.startswith("Invalid parameters:")
    assert "message" in invalid.error and "remind_at" in invalid.error

    extra = SystemInfoTool().execute("get", {"verbose": True}, CONTEXT)
    assert not extra.success


def test_descriptor_lists_actions_with_schemas(repositories: Repositories) -> None:
    descriptor = RemindersTool(repositories.reminders).get_descriptor()

    assert descriptor["name"] == "reminders"
    assert set(descriptor["actions"]) == {"create", "list", "delete"}
    create_schema = descriptor["actions"]["create"]["parameters"]
    assert set(create_schema["required"]) == {"message", "remind_at"}


def test_reminders_lifecycle_and_ownership(repositories: Repositories) -> None:
    tool = RemindersTool(repositories.reminders, max_per_user=2)
    remind_at = (utc_now() + timedelta(hours=2)).isoformat()

    created = tool.execute("create", {"message": "stretch", "remind_at": remind_at}, CONTEXT)
    assert created.success and created.data is not None
    reminder_id = created.data["reminder_id"]
    assert reminder_id.startswith("rem_")
    assert repositories.reminders.find_by_id(reminder_id) is not None

    listed = tool.execute("list", {}, CONTEXT)
    assert listed.data == {
        "reminders": [
            {"id": reminder_id, "message": "stretch", "remind_at": created.data["remind_at"]}
        ],
        "count": 1,
    }

    foreign = tool.execute("delete", {"reminder_id": reminder_id}, OTHER_USER)
    assert not foreign.success
    assert "another user" in (foreign.error or "")

    deleted = tool.execute("delete", {"reminder_id": reminder_id}, CONTEXT)
    assert deleted.success
    assert repositories.reminders.find_by_id(reminder_id) is None


def test_reminders_reject_past_time_and_cap(repositories: Repositories) -> None:
    tool = RemindersTool(repositories.reminders, max_per_user=1)
    past = (utc_now() - timedelta(minutes=1)).isoformat()
    future = (utc_now() + timedelta(minutes=5)).isoformat()

    assert tool.execute("create", {"message": "late", "remind_at": past}, CONTEXT).error == (
        "Reminder time must be in the future"
    )
    assert tool.execute("create", {"message": "one", "remind_at": future}, CONTEXT).success
    capped = tool.execute("create", {"message": "two", "remind_at": future}, CONTEXT)
    assert capped.error == "Maximum of 1 reminders per user reached"


def test_system_info_reports_versions() -> None:
    result = SystemInfoTool().execute("get", {}, CONTEXT)

    assert result.success and result.data is not None
    assert {"platform", "python_version", "uptime_seconds", "app_version"} <= set(result.data)


def test_files_readonly_list_and_read(safe_root: Path) -> None:
    (safe_root / "notes.md").write_text("# hello", encoding="utf-8")
    (safe_root / "binary.exe").write_bytes(b"\x00\x01")
    (safe_root / "docs").mkdir()
    tool = FilesReadonlyTool(str(safe_root), allowed_extensions=[".md", ".txt"])

    listed = tool.execute("list", {}, CONTEXT)
    assert listed.success and listed.data is not None
    names = {entry["name"]: entry["type"] for entry in listed.data["entries"]}
    assert names == {"binary.exe": "file", "docs": "directory", "notes.md": "file"}

    read = tool.execute("read", {"path": "notes.md"}, CONTEXT)
    assert read.data is not None and read.data["content"] == "# hello"

    assert tool.execute("read", {"path": "binary.exe"}, CONTEXT).error == (
        "File extension .exe is not allowed"
    )
    assert tool.execute("read", {"path": "../etc/passwd.txt"}, CONTEXT).error == OUTSIDE_ROOT_ERROR


def test_files_readonly_enforces_size_cap(safe_root: Path) -> None:
    (safe_root / "big.txt").write_text("x" * 2048, encoding="utf-8")
    tool = FilesReadonlyTool(str(safe_root), max_file_size_mb=0.001)

    result = tool.execute("read", {"path": "big.txt"}, CONTEXT)
    assert not result.success
    assert "exceeds maximum" in (result.error or "")


def test_files_write_operations_keep_backups(safe_root: Path) -> None:
    tool = FilesWriteTool(str(safe_root))

    written = tool.execute("write", {"path": "out/report.txt", "content": "alpha"}, CONTEXT)
    assert written.success and written.data == {"path": "out/report.txt", "bytes_written": 5}

    refused = tool.execute(
        "write", {"path": "out/report.txt", "content": "x", "overwrite": False}, CONTEXT
    )
    assert refused.error == "File already exists and overwrite=false"

    assert tool.execute("append", {"path": "out/report.txt", "content": " beta"}, CONTEXT).success
    edited = tool.execute(
        "edit", {"path": "out/report.txt", "old_text": "alpha", "new_text": "gamma"}, CONTEXT
    )
    assert edited.data is not None and edited.data["replacements"] == 1
    assert (safe_root / "out" / "report.txt").read_text(encoding="utf-8") == "gamma beta"

    assert tool.execute("delete", {"path": "out/report.txt"}, CONTEXT).success
    assert not (safe_root / "out" / "report.txt").exists()
    backups = list((safe_root / ".backups").glob("report.txt.*.bak"))
    assert backups

    assert tool.execute("delete", {"path": "../escape.txt"}, CONTEXT).error == OUTSIDE_ROOT_ERROR


def test_file_tools_refuse_symlinked_directory(safe_root: Path, tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("secret", encoding="utf-8")
    (safe_root / "link").symlink_to(outside, target_is_directory=True)

    reader = FilesReadonlyTool(str(safe_root))
    writer = FilesWriteTool(str(safe_root))

    read = reader.execute("read", {"path": "link/secret.txt"}, CONTEXT)
    assert read.error == OUTSIDE_ROOT_ERROR
    written = writer.execute("write", {"path": "link/planted.txt", "content": "x"}, CONTEXT)
    assert written.error == OUTSIDE_ROOT_ERROR
    assert not (outside / "planted.txt").exists()


class FakeResponse(io.BytesIO):
    def __init__(self, body: bytes, status: int = 200) -> None:
        super().__init__(body)
        self.status = status
        self.headers = Message()
        self.headers["Content-Length"] = str(len(body))


class FakeOpener:
    def __init__(self, routes: dict[str, Any]) -> None:
        self.routes = routes
        self.visited: list[str] = []

    def open(self, req: Any, timeout: float | None = None) -> Any:
        url = req.full_url
        self.visited.append(url)
        outcome = self.routes[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _redirect(url: str, location: str) -> error.HTTPError:
    headers = Message()
    headers["Location"] = location
    return error.HTTPError(url, 302, "Found", headers, None)


def test_web_sandbox_fetches_allowed_domain_and_follows_redirects() -> None:
    opener = FakeOpener(
        {
            "https://example.com/start": _redirect("https://example.com/start", "/final"),
            "https://example.com/final": FakeResponse(b"hello world"),
        }
    )
    tool = WebSandboxTool(["example.com"], opener=opener)  # type: ignore[arg-type]

    result = tool.execute("fetch", {"url": "https://example.com/start"}, CONTEXT)

    assert result.success and result.data is not None
    assert result.data["content"] == "hello world"
    assert result.data["final_url"] == "https://example.com/final"
    assert opener.visited == ["https://example.com/start", "https://example.com/final"]


def test_web_sandbox_blocks_disallowed_destinations() -> None:
    opener = FakeOpener(
        {"https://example.com/hop": _redirect("https://example.com/hop", "http://127.0.0.1/admin")}
    )
    tool = WebSandboxTool(["example.com"], opener=opener)  # type: ignore[arg-type]

    assert tool.execute("fetch", {"url": "ftp://example.com"}, CONTEXT).error == (
        "Invalid URL format"
    )
    assert tool.execute("fetch", {"url": "http://192.168.0.1/"}, CONTEXT).error == (
        "Access to private IP addresses is forbidden"
    )
    assert tool.execute("fetch", {"url": "https://evil.test/"}, CONTEXT).error == (
        "Domain evil.test is not in allowlist"
    )
    assert tool.execute("fetch", {"url": "https://example.com/hop"}, CONTEXT).error == (
        "Access to private IP addresses is forbidden"
    )


def test_web_sandbox_limits_redirects_and_size() -> None:
    loop = {
        f"https://example.com/{i}": _redirect(f"https://example.com/{i}", f"/{i + 1}")
        for i in range(10)
    }
    tool = WebSandboxTool(["example.com"], opener=FakeOpener(loop))  # type: ignore[arg-type]
    assert tool.execute("fetch", {"url": "https://example.com/0"}, CONTEXT).error == (
        "Too many redirects (max 5)"
    )

    big = FakeOpener({"https://example.com/big": FakeResponse(b"x" * 2048)})
    small = WebSandboxTool(
        ["example.com"], max_response_mb=0.001, opener=big  # type: ignore[arg-type]
    )
    result = small.execute("fetch", {"url": "https://example.com/big"}, CONTEXT)
    assert result.error == "Response size exceeds maximum of 0.001MB"


def test_registry_honours_tool_switches(settings: Any, repositories: Repositories) -> None:
    registry = build_registry(settings, repositories)
    assert registry.names() == ["files_readonly", "files_write", "reminders", "system_info"]
    assert registry.get("web_sandbox") is None

    with pytest.raises(ValueError):
        registry.register(SystemInfoTool())

    only = registry.get_all_descriptors(["system_info", "missing"])
    assert [descriptor["name"] for descriptor in only] == ["system_info"]


def test_empty_registry() -> None:
    registry = ToolRegistry()
    assert registry.names() == []
    assert registry.get_descriptor("system_info") is None
    assert not registry.has("system_info")


@pytest.fixture
def exec_tool(tmp_path: Path) -> SystemExecTool:
    return SystemExecTool(
        ["echo", "ls", "date"],
        blocked_commands=["date"],
        allowed_working_dirs=[str(tmp_path)],
        timeout_s=5.0,
    )


def test_system_exec_runs_allowed_command_without_shell(
    exec_tool: SystemExecTool, tmp_path: Path
) -> None:
    result = exec_tool.execute("run_command", {"command": "echo", "args": ["hello"]}, CONTEXT)
    assert result.success and result.data is not None
    assert result.data["stdout"] == "hello"
    assert result.data["exit_code"] == 0

    (tmp_path / "marker.txt").write_text("", encoding="utf-8")
    listed = exec_tool.execute(
        "run_command", {"command": "ls", "working_dir": str(tmp_path)}, CONTEXT
    )
    assert listed.data is not None and "marker.txt" in listed.data["stdout"]


@pytest.mark.parametrize(
    "params, message",
    [
        ({"command": "cat", "args": ["/etc/passwd"]}, 'Command "cat" is not allowed'),
        ({"command": "date"}, 'Command "date" is not allowed'),
        ({"command": "ls", "args": ["-la"]}, 'Argument "-la" looks like a flag and is not allowed'),
        ({"command": "echo", "args": ["a;b"]}, 'Argument "a;b" contains invalid characters'),
        ({"command": "echo", "args": ["x" * 201]}, "Argument too long"),
        ({"command": "ls", "working_dir": "/"}, 'working_dir "/" is not allowed'),
    ],
)
def test_system_exec_rejects_unsafe_run_command(
    exec_tool: SystemExecTool, params: dict[str, Any], message: str
) -> None:
    result = exec_tool.execute("run_command", params, CONTEXT)
    assert not result.success
    assert result.error == message


def test_system_exec_without_working_dirs_refuses_custom_cwd(tmp_path: Path) -> None:
    tool = SystemExecTool(["ls"])

    result = tool.execute("run_command", {"command": "ls", "working_dir": str(tmp_path)}, CONTEXT)
    assert result.error == "Custom working_dir is not allowed"


@pytest.mark.parametrize(
    "command",
    [
        "echo hi; rm -rf /",
        "echo $(whoami)",
        "echo `id`",
        "echo hi > /tmp/out",
        "echo hi | sh",
        "reboot",
        "",
    ],
)
def test_system_exec_shell_line_allow_list(exec_tool: SystemExecTool, command: str) -> None:
    assert not exec_tool.is_shell_command_allowed(command)


def test_system_exec_runs_allowed_shell_line(exec_tool: SystemExecTool) -> None:
    assert exec_tool.is_shell_command_allowed("echo one && echo two")

    result = exec_tool.execute("execute", {"command": "echo one && echo two"}, CONTEXT)
    assert result.success and result.data is not None
    assert result.data["stdout"].split() == ["one", "two"]

    refused = exec_tool.execute("execute", {"command": "echo $(whoami)"}, CONTEXT)
    assert refused.error == "Command not allowed by allowlist"


def test_system_exec_reports_nonzero_exit(exec_tool: SystemExecTool, tmp_path: Path) -> None:
    result = exec_tool.execute(
        "run_command",
        {"command": "ls", "args": ["missing-file"], "working_dir": str(tmp_path)},
        CONTEXT,
    )
    assert not result.success
    assert result.data is not None and result.data["exit_code"] != 0
    assert result.error == f"Command failed with code {result.data['exit_code']}"


def test_system_exec_timeout_and_output_cap(
    exec_tool: SystemExecTool, monkeypatch: pytest.MonkeyPatch
) -> None:
    def too_slow(*args: Any, **kwargs: Any) -> None:
        raise subprocess.TimeoutExpired(cmd="echo", timeout=kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", too_slow)
    result = exec_tool.execute("run_command", {"command": "echo", "timeout_s": 2}, CONTEXT)
    assert result.error == "Command timed out after 2s"

    monkeypatch.undo()
    small = SystemExecTool(["echo"], max_output_bytes=4)
    clipped = small.execute("run_command", {"command": "echo", "args": ["abcdefgh"]}, CONTEXT)
    assert clipped.data is not None and clipped.data["stdout"] == "abcd"


def test_registry_enables_system_exec_on_switch(
    settings: Any, repositories: Repositories
) -> None:
    enabled = settings.model_copy(update={"tools_system_exec_enabled": True})

    registry = build_registry(enabled, repositories)

    assert "system_exec" in registry.names()
    descriptor = registry.get_all_descriptors(["system_exec"])[0]
    assert set(descriptor["actions"]) == {"run_command", "execute"}
