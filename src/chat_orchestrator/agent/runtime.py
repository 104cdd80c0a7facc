"""LLM-backed planning and final response generation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from chat_orchestrator.agent.llm import (
    FINAL_RESPONSE_MARKER,
    LLMMessage,
    LLMProvider,
    LLMRequest,
)
from chat_orchestrator.agent.plan_parser import ParseResult, PlanParser
from chat_orchestrator.errors import PlanningError
from chat_orchestrator.models import ExecutionLog, Plan, StepStatus
from chat_orchestrator.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

_RESPONSE_CONTRACT = """{
  "steps": [
    {
      "id": "step_1",
      "tool": "tool_name",
      "action": "action_name",
      "params": { "param1": "value1" },
      "requires_confirmation": false,
      "verification": {
        "type": "reminder_created",
        "params": {}
      }
    }
  ],
  "estimated_tools": ["tool_name"]
}"""

_REPAIR_INSTRUCTION = (
    "Your previous response was not valid JSON. Respond again with ONLY the JSON "
    "execution plan, no markdown, no code fences and no additional text."
)


@dataclass(frozen=True)
class PlanningContext:
    user_message: str
    available_tools: list[str]


class AgentRuntime:
    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        *,
        temperature: float = 0.1,
        max_tokens: int = 1500,
        parser: PlanParser | None = None,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.parser = parser or PlanParser()

    def generate_plan(self, context: PlanningContext) -> Plan:
        """Ask the provider for a plan, repairing malformed JSON at most once.

        Raises ``PlanningError`` when no valid plan comes back.
        """
        result = self.request_plan(context)
        if result.plan is None:
            raise PlanningError(result.error or "Plan generation failed")
        logger.info(
            "agent_runtime event=plan_generated provider=%s steps=%d tools=%s",
            self.provider.get_name(),
            len(result.plan.steps),
            ",".join(result.plan.estimated_tools),
        )
        return result.plan

    def request_plan(self, context: PlanningContext) -> ParseResult:
        descriptors = self.registry.get_all_descriptors(context.available_tools)
        messages = [
            LLMMessage(role="system", content=self._system_prompt(descriptors)),
            LLMMessage(role="user", content=self._user_prompt(context.user_message)),
        ]
        response = self.provider.complete(
            LLMRequest(
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        )

        def repair(previous: str) -> str:
            repaired = self.provider.complete(
                LLMRequest(
                    messages=[
                        *messages,
                        LLMMessage(role="assistant", content=previous),
                        LLMMessage(role="user", content=_REPAIR_INSTRUCTION),
                    ],
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                )
            )
            return repaired.content

        return self.parser.parse_with_repair(response.content, repair)

    def generate_final_response(self, user_message: str, execution_log: ExecutionLog) -> str:
        canned = _deterministic_response(execution_log)
        if canned is not None:
            return canned

        system_prompt = (
            "You are a helpful task execution assistant.\n"
            "Generate a friendly, concise response to the user based on the execution "
            "results.\nKeep it short (2-3 sentences maximum). Use the user's language."
        )
        user_prompt = (
            f'User request: "{user_message}"\n\n'
            "Execution results:\n"
            f"{json.dumps(execution_log.model_dump(mode='json'), indent=2)}\n\n"
            f"{FINAL_RESPONSE_MARKER}"
        )
        response = self.provider.complete(
            LLMRequest(
                messages=[
                    LLMMessage(role="system", content=system_prompt),
                    LLMMessage(role="user", content=user_prompt),
                ],
                temperature=0.7,
                max_tokens=200,
            )
        )
        return response.content.strip()

    @staticmethod
    def _system_prompt(descriptors: list[dict[str, Any]]) -> str:
        return (
            "You are a task execution planning assistant.\n\n"
            "Your role is to generate a structured execution plan in JSON format.\n\n"
            "Available tools:\n"
            f"{json.dumps(descriptors, indent=2)}\n\n"
            "CRITICAL RULES:\n"
            "1. Only use tools from the available tools list\n"
            "2. Each step must specify: id, tool, action, params, "
            "requires_confirmation, verification\n"
            "3. Set requires_confirmation to true for destructive actions "
            "(delete, modify files)\n"
            "4. Choose appropriate verification type: file_exists, reminder_created, "
            "data_retrieved, or none\n"
            "5. Return ONLY valid JSON, no additional text\n\n"
            f"Response format:\n{_RESPONSE_CONTRACT}"
        )

    @staticmethod
    def _user_prompt(user_message: str) -> str:
        return f'User request: "{user_message}"\n\nGenerate the execution plan in JSON format.'


def _deterministic_response(execution_log: ExecutionLog) -> str | None:
    successful = [
        step.result
        for step in execution_log.steps
        if step.status == StepStatus.SUCCESS and step.result
    ]
    if not successful:
        return None

    last = successful[-1]
    if "reminder_id" in last and "remind_at" in last:
        return f"Reminder created: \"{last.get('message', '')}\" at {last['remind_at']}."
    if "reminders" in last and "count" in last:
        reminders = last["reminders"]
        if not reminders:
            return "You have no active reminders."
        lines = [f"You have {last['count']} reminder(s):"]
        lines.extend(f"- {item['message']} ({item['remind_at']})" for item in reminders)
        return "\n".join(lines)
    return None
