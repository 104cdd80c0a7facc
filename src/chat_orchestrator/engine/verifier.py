"""Post-condition checks over a finished execution log."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from chat_orchestrator.models import (
    ExecutionLog,
    PlanStep,
    StepLog,
    StepStatus,
    VerificationResult,
    VerificationType,
)
from chat_orchestrator.storage.base import ReminderRepository

logger = logging.getLogger(__name__)


class TaskVerifier:
    def __init__(self, reminders: ReminderRepository, *, files_safe_root: str | Path) -> None:
        self.reminders = reminders
        self.files_safe_root = Path(files_safe_root)

    def verify(self, steps: list[PlanStep], execution_log: ExecutionLog) -> VerificationResult:
        failures: list[str] = []
        for index, step in enumerate(steps):
            if index >= len(execution_log.steps):
                continue
            step_log = execution_log.steps[index]
            if step_log.status != StepStatus.SUCCESS:
                continue
            try:
                failure = self._verify_step(step, step_log)
            except Exception as exc:  # noqa: BLE001
                failure = f"Step {step.id}: verification error - {exc}"
            if failure:
                failures.append(failure)

        if failures:
            logger.warning("verifier event=failed failures=%s", "; ".join(failures))
        return VerificationResult(all_passed=not failures, failures=failures)

    def _verify_step(self, step: PlanStep, step_log: StepLog) -> str | None:
        check = step.verification.type
        result = step_log.result or {}
        if check == VerificationType.REMINDER_CREATED:
            return self._reminder_created(step.id, result)
        if check == VerificationType.FILE_EXISTS:
            return self._file_exists(step.id, step.verification.params, result)
        if check == VerificationType.DATA_RETRIEVED:
            return None if step_log.result else f"Step {step.id}: no data retrieved"
        if check == VerificationType.NONE:
            return None
        return f"Step {step.id}: unknown verification type"

    def _reminder_created(self, step_id: str, result: dict[str, Any]) -> str | None:
        reminder_id = result.get("reminder_id")
        if not reminder_id:
            return f"Step {step_id}: no reminder_id in result"
        if self.reminders.find_by_id(str(reminder_id)) is None:
            return f"Step {step_id}: reminder not found in database"
        return None

    def _file_exists(
        self, step_id: str, params: dict[str, Any], result: dict[str, Any]
    ) -> str | None:
        raw_path = params.get("path") or result.get("path")
        if not raw_path:
            return f"Step {step_id}: no file path specified"
        path = Path(str(raw_path))
        if not path.is_absolute():
            path = self.files_safe_root / path
        if not path.exists():
            return f"Step {step_id}: file not found at {raw_path}"
        return None
