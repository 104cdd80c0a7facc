from chat_orchestrator.agent.llm import (
    LLMMessage,
    LLMProvider,
    LLMRequest,
    LLMResponse,
    MockLLMProvider,
    OpenAIChatProvider,
    build_llm_provider,
)
from chat_orchestrator.agent.plan_parser import ParseResult, PlanParser
from chat_orchestrator.agent.runtime import AgentRuntime, PlanningContext

__all__ = [
    "AgentRuntime",
    "LLMMessage",
    "LLMProvider",
    "LLMRequest",
    "LLMResponse",
    "MockLLMProvider",
    "OpenAIChatProvider",
    "ParseResult",
    "PlanParser",
    "PlanningContext",
    "build_llm_provider",
]
