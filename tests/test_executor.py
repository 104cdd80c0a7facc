from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Mapping

from chat_orchestrator.engine.executor import TaskExecutor
from chat_orchestrator.engine.verifier import TaskVerifier
from chat_orchestrator.models import (
    ExecutionLog,
    PlanStep,
    Reminder,
    StepLog,
    StepStatus,
    Verification,
    VerificationType,
    utc_now,
)
from chat_orchestrator.security.audit import AuditLog
from chat_orchestrator.security.permissions import PermissionManager
from chat_orchestrator.storage import Repositories
from chat_orchestrator.tools.base import (
    ActionSpec,
    EmptyParams,
    ToolContext,
    ToolResult,
    describe_tool,
    execute_action,
)
from chat_orchestrator.tools.registry import ToolRegistry
from chat_orchestrator.tools.system_info import SystemInfoTool


class SleepyTool:
    name = "sleepy"
    description = "Sleeps longer than any sensible timeout"

    def __init__(self, delay_s: float) -> None:
        self.delay_s = delay_s
        self._actions = {"nap": ActionSpec("Sleep", EmptyParams, self._nap)}

    @property
    def actions(self) -> Mapping[str, ActionSpec]:
        return self._actions

    def get_descriptor(self) -> dict[str, Any]:
        return describe_tool(self)

    def execute(self, action: str, params: dict[str, Any], context: ToolContext) -> ToolResult:
        return execute_action(self, action, params, context)

    def _nap(self, _: EmptyParams, __: ToolContext) -> ToolResult:
        time.sleep(self.delay_s)
        return ToolResult.ok({"slept": self.delay_s})


def _step(step_id: str, tool: str, action: str, check: str = "none", **params: Any) -> PlanStep:
    return PlanStep(
        id=step_id,
        tool=tool,
        action=action,
        params=params,
        verification=Verification(type=VerificationType(check)),
    )


def _executor(repositories: Repositories, *tools: Any, timeout_s: float = 2.0) -> TaskExecutor:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return TaskExecutor(
        registry=registry, audit=AuditLog(repositories.audit), tool_timeout_s=timeout_s
    )


def test_snapshot_decides_authorization(repositories: Repositories) -> None:
    permissions = PermissionManager(repositories.permissions)
    permissions.grant(1, "system_info", "get")
    snapshot = permissions.create_snapshot(1)
    permissions.revoke(1, "system_info", "get")
    permissions.grant(1, "ghost", "*")

    log = _executor(repositories, SystemInfoTool()).execute_steps(
        task_id="t1",
        user_id=1,
        user_message="info",
        steps=[_step("s1", "system_info", "get"), _step("s2", "ghost", "boo")],
        snapshot=snapshot,
    )

    assert log.steps[0].status == StepStatus.SUCCESS
    assert log.steps[1].status == StepStatus.ERROR
    assert log.steps[1].error == "Permission denied: ghost.boo"


def test_missing_tool_stops_execution(repositories: Repositories) -> None:
    permissions = PermissionManager(repositories.permissions)
    permissions.grant(1, "ghost", "*")
    permissions.grant(1, "system_info", "*")

    log = _executor(repositories, SystemInfoTool()).execute_steps(
        task_id="t2",
        user_id=1,
        user_message="",
        steps=[_step("s1", "ghost", "boo"), _step("s2", "system_info", "get")],
        snapshot=permissions.create_snapshot(1),
    )

    assert [step.id for step in log.steps] == ["s1"]
    assert log.steps[0].error == "Tool not found: ghost"
    assert log.errors == ["Tool not found: ghost"]


def test_tool_timeout_is_reported_and_audited(repositories: Repositories) -> None:
    permissions = PermissionManager(repositories.permissions)
    permissions.grant(1, "sleepy", "nap")

    log = _executor(repositories, SleepyTool(0.5), timeout_s=0.05).execute_steps(
        task_id="t3",
        user_id=1,
        user_message="",
        steps=[_step("s1", "sleepy", "nap")],
        snapshot=permissions.create_snapshot(1),
    )

    assert log.steps[0].status == StepStatus.ERROR
    assert log.steps[0].error == "Tool 'sleepy' timed out after 0.05s"
    [event] = repositories.audit.find_by_task_id("t3")
    assert event.event_type == "tool_invoked"
    assert not event.success


def test_verifier_checks_each_successful_step(repositories: Repositories, tmp_path: Path) -> None:
    (tmp_path / "present.txt").write_text("ok", encoding="utf-8")
    repositories.reminders.create(
        Reminder(id="rem_real", user_id=1, message="m", remind_at=utc_now())
    )
    verifier = TaskVerifier(repositories.reminders, files_safe_root=tmp_path)
    steps = [
        _step("s1", "reminders", "create", "reminder_created"),
        _step("s2", "reminders", "create", "reminder_created"),
        _step("s3", "files_write", "write", "file_exists"),
        _step("s4", "files_write", "write", "file_exists"),
        _step("s5", "system_info", "get", "data_retrieved"),
        _step("s6", "system_info", "get", "none"),
        _step("s7", "files_write", "write", "file_exists"),
    ]
    log = ExecutionLog(
        steps=[
            StepLog(id="s1", status=StepStatus.SUCCESS, result={"reminder_id": "rem_real"}),
            StepLog(id="s2", status=StepStatus.SUCCESS, result={}),
            StepLog(id="s3", status=StepStatus.SUCCESS, result={"path": "present.txt"}),
            StepLog(id="s4", status=StepStatus.SUCCESS, result={"path": "absent.txt"}),
            StepLog(id="s5", status=StepStatus.SUCCESS, result={}),
            StepLog(id="s6", status=StepStatus.SUCCESS, result=None),
            StepLog(id="s7", status=StepStatus.SUCCESS, result={}),
        ]
    )

    result = verifier.verify(steps, log)

    assert not result.all_passed
    assert result.failures == [
        "Step s2: no reminder_id in result",
        "Step s4: file not found at absent.txt",
        "Step s5: no data retrieved",
        "Step s7: no file path specified",
    ]


def test_verifier_skips_failed_and_missing_steps(repositories: Repositories) -> None:
    verifier = TaskVerifier(repositories.reminders, files_safe_root=".")
    steps = [
        _step("s1", "reminders", "create", "reminder_created"),
        _step("s2", "reminders", "create", "reminder_created"),
    ]
    log = ExecutionLog(steps=[StepLog(id="s1", status=StepStatus.ERROR, error="boom")])

    assert verifier.verify(steps, log).all_passed


def test_denied_step_is_audited_as_failed_invocation(repositories: Repositories) -> None:
    snapshot = PermissionManager(repositories.permissions).create_snapshot(1)

    log = _executor(repositories, SystemInfoTool()).execute_steps(
        task_id="t6",
        user_id=1,
        user_message="",
        steps=[_step("s1", "system_info", "get"), _step("s2", "system_info", "get")],
        snapshot=snapshot,
    )

    assert [step.id for step in log.steps] == ["s1"]
    [event] = repositories.audit.find_by_task_id("t6")
    assert event.event_type == "tool_invoked"
    assert (event.tool_name, event.action) == ("system_info", "get")
    assert not event.success
    assert event.error == "Permission denied: system_info.get"


def test_missing_tool_is_audited_as_failed_invocation(repositories: Repositories) -> None:
    permissions = PermissionManager(repositories.permissions)
    permissions.grant(1, "ghost", "*")

    _executor(repositories).execute_steps(
        task_id="t7",
        user_id=1,
        user_message="",
        steps=[_step("s1", "ghost", "boo")],
        snapshot=permissions.create_snapshot(1),
    )

    [event] = repositories.audit.find_by_task_id("t7")
    assert event.tool_name == "ghost"
    assert not event.success
    assert event.error == "Tool not found: ghost"
