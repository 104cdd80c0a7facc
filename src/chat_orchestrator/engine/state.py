"""Typed state contract for the task workflow graph."""

from typing import Literal, TypedDict

from chat_orchestrator.models import Task

Outcome = Literal["continue", "retry", "fail"]


class TaskState(TypedDict, total=False):
    task: Task
    outcome: Outcome
    failure: str | None
    max_retries: int


def initial_state(task: Task, max_retries: int = 3) -> TaskState:
    return {
        "task": task,
        "outcome": "continue",
        "failure": None,
        "max_retries": max_retries,
    }
