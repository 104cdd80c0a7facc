"""Fail-fast sequential execution of plan steps."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError

from chat_orchestrator.models import ExecutionLog, PlanStep, StepLog, StepStatus, utc_now
from chat_orchestrator.security.audit import AuditLog
from chat_orchestrator.security.permissions import PermissionManager, PermissionSnapshot
from chat_orchestrator.tools.base import Tool, ToolContext, ToolResult
from chat_orchestrator.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class TaskExecutor:
    def __init__(
        self,
        *,
        registry: ToolRegistry,
        audit: AuditLog,
        tool_timeout_s: float = 30.0,
    ) -> None:
        self.registry = registry
        self.audit = audit
        self.tool_timeout_s = tool_timeout_s

    def execute_steps(
        self,
        *,
        task_id: str,
        user_id: int,
        user_message: str,
        steps: list[PlanStep],
        snapshot: PermissionSnapshot,
    ) -> ExecutionLog:
        """Run ``steps`` in order and stop at the first error.

        Authorization is checked against ``snapshot`` only, so grants or
        revocations made during the run do not change its outcome.
        """
        execution_log = ExecutionLog()
        context = ToolContext(user_id=user_id, task_id=task_id, user_message=user_message)

        for step in steps:
            step_log = StepLog(id=step.id)
            execution_log.steps.append(step_log)

            decision = PermissionManager.check_against_snapshot(snapshot, step.tool, step.action)
            if not decision.granted:
                error = f"Permission denied: {step.tool}.{step.action}"
                self._fail_step(step_log, error)
                self._audit_failure(task_id, user_id, step, error)
                logger.warning(
                    "executor event=permission_denied task_id=%s step=%s tool=%s action=%s",
                    task_id,
                    step.id,
                    step.tool,
                    step.action,
                )
                break

            tool = self.registry.get(step.tool)
            if tool is None:
                error = f"Tool not found: {step.tool}"
                self._fail_step(step_log, error)
                self._audit_failure(task_id, user_id, step, error)
                break

            logger.info(
                "executor event=step_start task_id=%s step=%s tool=%s action=%s",
                task_id,
                step.id,
                step.tool,
                step.action,
            )
            try:
                result = self._invoke(tool, step, context)
            except Exception as exc:  # noqa: BLE001
                error = str(exc) or exc.__class__.__name__
                self._fail_step(step_log, error)
                self._audit_failure(task_id, user_id, step, error)
                break

            self.audit.log_tool_invocation(
                user_id=user_id,
                task_id=task_id,
                tool_name=step.tool,
                action=step.action,
                input_data=step.params,
                success=result.success,
                output_data=result.data,
                error=result.error,
            )
            if not result.success:
                self._fail_step(step_log, result.error or "Tool execution failed")
                break

            step_log.status = StepStatus.SUCCESS
            step_log.result = result.data
            step_log.completed_at = utc_now()

        return execution_log

    def _invoke(self, tool: Tool, step: PlanStep, context: ToolContext) -> ToolResult:
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(tool.execute, step.action, dict(step.params), context)
            try:
                return future.result(timeout=self.tool_timeout_s)
            except TimeoutError as exc:
                raise TimeoutError(
                    f"Tool '{step.tool}' timed out after {self.tool_timeout_s:.2f}s"
                ) from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _audit_failure(self, task_id: str, user_id: int, step: PlanStep, error: str) -> None:
        self.audit.log_tool_invocation(
            user_id=user_id,
            task_id=task_id,
            tool_name=step.tool,
            action=step.action,
            input_data=step.params,
            success=False,
            error=error,
        )

    @staticmethod
    def _fail_step(step_log: StepLog, error: str) -> None:
        step_log.status = StepStatus.ERROR
        step_log.error = error
        step_log.completed_at = utc_now()
