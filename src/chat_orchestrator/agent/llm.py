from __future__ import annotations

import json
import logging
import time
from datetime import timedelta
from typing import Any, Literal, Protocol
from urllib import error, request

from pydantic import BaseModel, Field

from chat_orchestrator.config.settings import Settings
from chat_orchestrator.errors import LLMError
from chat_orchestrator.models import utc_now

logger = logging.getLogger(__name__)

FINAL_RESPONSE_MARKER = "Generate a natural language response for the user."


class LLMMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class LLMUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMRequest(BaseModel):
    messages: list[LLMMessage]
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1500, ge=1)


class LLMResponse(BaseModel):
    content: str
    usage: LLMUsage | None = None


class LLMProvider(Protocol):
    """Interface for chat-style text completions."""

    def complete(self, llm_request: LLMRequest) -> LLMResponse: ...

    def get_name(self) -> str: ...


class OpenAIChatProvider:
    """OpenAI chat completions over plain urllib."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def get_name(self) -> str:
        return "openai"

    def complete(self, llm_request: LLMRequest) -> LLMResponse:
        payload = {
            "model": self.model,
            "messages": [message.model_dump() for message in llm_request.messages],
            "temperature": llm_request.temperature,
            "max_tokens": llm_request.max_tokens,
        }
        response_json = self._request_with_retry(payload)
        try:
            content = self._extract_content(response_json)
        except ValueError as exc:
            raise LLMError(str(exc)) from exc
        usage = response_json.get("usage")
        return LLMResponse(
            content=content,
            usage=LLMUsage.model_validate(usage) if isinstance(usage, dict) else None,
        )

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, error.URLError) as exc:
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        raise LLMError(f"OpenAI request failed: {last_error}") from last_error

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        return json.loads(body)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise ValueError("OpenAI response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise ValueError("OpenAI response content could not be parsed as text")


class MockLLMProvider:
    """Deterministic keyword-based plans for development and tests."""

    def get_name(self) -> str:
        return "mock"

    def complete(self, llm_request: LLMRequest) -> LLMResponse:
        user_message = next(
            (m.content for m in llm_request.messages if m.role == "user"), ""
        )
        if FINAL_RESPONSE_MARKER in user_message:
            content = "Done. Your request was completed successfully."
        else:
            content = json.dumps(self._plan_for(user_message.lower()))
        return LLMResponse(
            content=content,
            usage=LLMUsage(prompt_tokens=50, completion_tokens=100, total_tokens=150),
        )

    @staticmethod
    def _plan_for(text: str) -> dict[str, Any]:
        if "reminder" in text or "recordatorio" in text:
            remind_at = (utc_now() + timedelta(hours=1)).isoformat()
            step = _mock_step(
                "reminders",
                "create",
                {"message": "Test reminder", "remind_at": remind_at},
                "reminder_created",
            )
        elif "list" in text or "listar" in text:
            step = _mock_step("reminders", "list", {}, "data_retrieved")
        else:
            step = _mock_step("system_info", "get", {}, "data_retrieved")
        return {"steps": [step], "estimated_tools": [step["tool"]]}


def _mock_step(tool: str, action: str, params: dict[str, Any], check: str) -> dict[str, Any]:
    return {
        "id": "step_1",
        "tool": tool,
        "action": action,
        "params": params,
        "requires_confirmation": False,
        "verification": {"type": check, "params": {}},
    }


def build_llm_provider(settings: Settings) -> LLMProvider:
    provider = settings.llm_provider.strip().lower()
    if provider == "mock":
        return MockLLMProvider()
    if provider != "openai":
        raise ValueError(f"Unsupported LLM provider: {settings.llm_provider}")

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        raise ValueError("OpenAI provider selected but no API key is configured")
    return OpenAIChatProvider(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )
