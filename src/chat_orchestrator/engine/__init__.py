from chat_orchestrator.engine.executor import TaskExecutor
from chat_orchestrator.engine.task_engine import InteractionMemory, TaskEngine
from chat_orchestrator.engine.verifier import TaskVerifier

__all__ = ["InteractionMemory", "TaskEngine", "TaskExecutor", "TaskVerifier"]
