"""Task lifecycle: plan, execute, verify, complete.

Each phase is a LangGraph node. Nodes update the task in place, persist it,
and set ``outcome`` to steer the conditional edges. Failures in any phase
route to the ``fail`` node. The exception is ``complete``, which has no
outgoing fail edge and marks a task without an execution log failed itself.
Exceptions escaping the graph are turned into "Unexpected error" failures
by ``process_task``.

Execution retries rerun the whole plan from its first step.
"""

from __future__ import annotations

import logging
from typing import Protocol

from chat_orchestrator.agent.runtime import AgentRuntime, PlanningContext
from chat_orchestrator.engine.executor import TaskExecutor
from chat_orchestrator.engine.state import TaskState, initial_state
from chat_orchestrator.engine.verifier import TaskVerifier
from chat_orchestrator.engine.workflow import build_graph, recursion_limit
from chat_orchestrator.models import Task, TaskStatus, utc_now
from chat_orchestrator.security.audit import AuditLog
from chat_orchestrator.security.permissions import PermissionManager
from chat_orchestrator.storage.base import TaskRepository
from chat_orchestrator.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

NO_TOOLS_ERROR = "No tools available for this user"
UNAUTHORIZED_PLAN_ERROR = "Plan contains unauthorized tool usage"
NO_PLAN_ERROR = "No plan available"
NO_EXECUTION_LOG_ERROR = "No execution log available"


class InteractionMemory(Protocol):
    def record_interaction(
        self, user_id: int, user_message: str, assistant_message: str
    ) -> None: ...


class TaskEngine:
    def __init__(
        self,
        *,
        tasks: TaskRepository,
        runtime: AgentRuntime,
        executor: TaskExecutor,
        verifier: TaskVerifier,
        permissions: PermissionManager,
        registry: ToolRegistry,
        audit: AuditLog,
        max_retries: int = 3,
        memory: InteractionMemory | None = None,
    ) -> None:
        self.tasks = tasks
        self.runtime = runtime
        self.executor = executor
        self.verifier = verifier
        self.permissions = permissions
        self.registry = registry
        self.audit = audit
        self.max_retries = max(0, max_retries)
        self.memory = memory
        self._graph = build_graph(self)

    def process_task(self, task: Task) -> Task:
        logger.info("task_run event=start task_id=%s user_id=%s", task.id, task.user_id)
        try:
            final_state = self._graph.invoke(
                initial_state(task, self.max_retries),
                config={"recursion_limit": recursion_limit(self.max_retries)},
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_run event=unexpected_error task_id=%s", task.id)
            return self._mark_failed(task, f"Unexpected error: {exc}")
        return final_state["task"]

    def plan(self, state: TaskState) -> TaskState:
        task = state["task"]
        task.started_at = utc_now()
        self._transition(task, TaskStatus.PLANNING)

        granted = self.permissions.granted_tools(task.user_id)
        available = [name for name in self.registry.names() if name in granted]
        if not available:
            return {"task": task, "outcome": "fail", "failure": NO_TOOLS_ERROR}

        try:
            plan = self.runtime.generate_plan(
                PlanningContext(user_message=task.input_message, available_tools=available)
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_run event=planning_failed task_id=%s error=%s", task.id, exc)
            return {"task": task, "outcome": "fail", "failure": f"Planning failed: {exc}"}

        unauthorized = [
            f"{step.tool}.{step.action}"
            for step in plan.steps
            if not self.permissions.has_permission(task.user_id, step.tool, step.action)
        ]
        if unauthorized:
            logger.warning(
                "task_run event=unauthorized_plan task_id=%s steps=%s",
                task.id,
                ",".join(unauthorized),
            )
            return {"task": task, "outcome": "fail", "failure": UNAUTHORIZED_PLAN_ERROR}

        task.plan = plan
        self._persist(task)
        return {"task": task, "outcome": "continue", "failure": None}

    def execute(self, state: TaskState) -> TaskState:
        task = state["task"]
        if task.plan is None:
            return {"task": task, "outcome": "fail", "failure": NO_PLAN_ERROR}
        if task.status != TaskStatus.EXECUTING:
            self._transition(task, TaskStatus.EXECUTING)

        try:
            snapshot = self.permissions.create_snapshot(task.user_id)
            execution_log = self.executor.execute_steps(
                task_id=task.id,
                user_id=task.user_id,
                user_message=task.input_message,
                steps=task.plan.steps,
                snapshot=snapshot,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_run event=execution_error task_id=%s error=%s", task.id, exc)
            return {"task": task, "outcome": "fail", "failure": f"Execution error: {exc}"}

        task.execution_log = execution_log
        if not execution_log.has_errors:
            self._persist(task)
            return {"task": task, "outcome": "continue", "failure": None}

        max_retries = state.get("max_retries", self.max_retries)
        if task.retry_count < max_retries:
            task.retry_count += 1
            logger.warning(
                "task_run event=retry task_id=%s attempt=%d/%d error=%s",
                task.id,
                task.retry_count,
                max_retries,
                execution_log.errors[0],
            )
            self._persist(task)
            return {"task": task, "outcome": "retry", "failure": None}

        self._persist(task)
        return {
            "task": task,
            "outcome": "fail",
            "failure": f"Execution failed: {execution_log.errors[0]}",
        }

    def verify(self, state: TaskState) -> TaskState:
        task = state["task"]
        if task.plan is None:
            return {"task": task, "outcome": "fail", "failure": NO_PLAN_ERROR}
        if task.execution_log is None:
            return {"task": task, "outcome": "fail", "failure": NO_EXECUTION_LOG_ERROR}
        self._transition(task, TaskStatus.VERIFYING)

        verification = self.verifier.verify(task.plan.steps, task.execution_log)
        if not verification.all_passed:
            reasons = ", ".join(verification.failures)
            return {"task": task, "outcome": "fail", "failure": f"Verification failed: {reasons}"}
        return {"task": task, "outcome": "continue", "failure": None}

    def complete(self, state: TaskState) -> TaskState:
        task = state["task"]
        if task.execution_log is None:
            failed = self._mark_failed(task, NO_EXECUTION_LOG_ERROR)
            return {"task": failed, "outcome": "fail", "failure": NO_EXECUTION_LOG_ERROR}
        task.result = self.runtime.generate_final_response(
            task.input_message, task.execution_log
        )
        task.completed_at = utc_now()
        self._transition(task, TaskStatus.DONE)
        self.audit.log_task_event(
            user_id=task.user_id, task_id=task.id, event_type="task_completed", success=True
        )
        if self.memory is not None:
            self.memory.record_interaction(task.user_id, task.input_message, task.result)
        logger.info(
            "task_run event=completed task_id=%s retries=%d", task.id, task.retry_count
        )
        return {"task": task, "outcome": "continue", "failure": None}

    def fail(self, state: TaskState) -> TaskState:
        task = state["task"]
        reason = state.get("failure") or "Task failed"
        return {"task": self._mark_failed(task, reason), "outcome": "fail", "failure": reason}

    def _mark_failed(self, task: Task, reason: str) -> Task:
        task.error = reason
        task.completed_at = utc_now()
        self._transition(task, TaskStatus.FAILED)
        self.audit.log_task_event(
            user_id=task.user_id,
            task_id=task.id,
            event_type="task_failed",
            success=False,
            error=reason,
        )
        logger.warning("task_run event=failed task_id=%s error=%s", task.id, reason)
        return task

    def _transition(self, task: Task, status: TaskStatus) -> None:
        task.status = status
        logger.info("task_run event=phase task_id=%s phase=%s", task.id, status.value)
        self._persist(task)

    def _persist(self, task: Task) -> None:
        task.updated_at = utc_now()
        self.tasks.update(task)
