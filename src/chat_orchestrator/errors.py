"""Exception taxonomy for admission, task phases, and collaborators."""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base class for orchestration failures."""


class AdmissionError(OrchestratorError):
    """Inbound message rejected before a task exists (never user-visible)."""


class PlanningError(OrchestratorError):
    """Planning phase failure; the task fails without retry."""


class ExecutionError(OrchestratorError):
    """Tool step failure; retried at whole-plan granularity."""


class VerificationError(OrchestratorError):
    """Post-condition check failure; the task fails without retry."""


class LLMError(OrchestratorError):
    """LLM provider request or response failure."""


class StorageError(OrchestratorError):
    """Repository operation failure."""
