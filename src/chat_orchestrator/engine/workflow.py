"""LangGraph workflow assembly for the task state machine."""

from __future__ import annotations

from typing import Protocol

from langgraph.graph import END, StateGraph

from chat_orchestrator.engine.state import TaskState


class TaskPhases(Protocol):
    def plan(self, state: TaskState) -> TaskState: ...

    def execute(self, state: TaskState) -> TaskState: ...

    def verify(self, state: TaskState) -> TaskState: ...

    def complete(self, state: TaskState) -> TaskState: ...

    def fail(self, state: TaskState) -> TaskState: ...


def _after_plan(state: TaskState) -> str:
    return "fail" if state.get("outcome") == "fail" else "execute"


def _after_execute(state: TaskState) -> str:
    outcome = state.get("outcome")
    if outcome == "fail":
        return "fail"
    if outcome == "retry":
        return "retry"
    return "verify"


def _after_verify(state: TaskState) -> str:
    return "fail" if state.get("outcome") == "fail" else "complete"


def build_graph(phases: TaskPhases):
    graph = StateGraph(TaskState)

    graph.add_node("plan", phases.plan)
    graph.add_node("execute", phases.execute)
    graph.add_node("verify", phases.verify)
    graph.add_node("complete", phases.complete)
    graph.add_node("fail", phases.fail)

    graph.set_entry_point("plan")
    graph.add_conditional_edges("plan", _after_plan, {"execute": "execute", "fail": "fail"})
    graph.add_conditional_edges(
        "execute",
        _after_execute,
        {"retry": "execute", "verify": "verify", "fail": "fail"},
    )
    graph.add_conditional_edges("verify", _after_verify, {"complete": "complete", "fail": "fail"})
    graph.add_edge("complete", END)
    graph.add_edge("fail", END)

    return graph.compile()


def recursion_limit(max_retries: int) -> int:
    # plan, each execute attempt, verify, and one terminal node, plus headroom
    return max_retries + 10
