from __future__ import annotations

import json
from collections import deque
from pathlib import Path
from typing import Any

import pytest

from chat_orchestrator.agent.llm import LLMRequest, LLMResponse
from chat_orchestrator.config.settings import Settings
from chat_orchestrator.models import IncomingMessage, User
from chat_orchestrator.services import Services, build_services
from chat_orchestrator.storage import Repositories, build_memory_repositories

ADMIN_TOKEN = "test-admin-token"


class ScriptedLLM:
    """Test double that replays queued responses and records every request."""

    def __init__(self, *responses: str | dict[str, Any]) -> None:
        self.responses: deque[str] = deque(
            item if isinstance(item, str) else json.dumps(item) for item in responses
        )
        self.requests: list[LLMRequest] = []
        self.fallback = "All done."

    def queue(self, *responses: str | dict[str, Any]) -> None:
        for item in responses:
            self.responses.append(item if isinstance(item, str) else json.dumps(item))

    def complete(self, llm_request: LLMRequest) -> LLMResponse:
        self.requests.append(llm_request)
        content = self.responses.popleft() if self.responses else self.fallback
        return LLMResponse(content=content)

    def get_name(self) -> str:
        return "scripted"


def plan_step(
    step_id: str,
    tool: str,
    action: str,
    params: dict[str, Any] | None = None,
    verification: str = "none",
) -> dict[str, Any]:
    return {
        "id": step_id,
        "tool": tool,
        "action": action,
        "params": params or {},
        "requires_confirmation": False,
        "verification": {"type": verification, "params": {}},
    }


def plan_payload(*steps: dict[str, Any]) -> dict[str, Any]:
    return {"steps": list(steps), "estimated_tools": sorted({step["tool"] for step in steps})}


def make_message(message_id: int, text: str = "what system am I on?", chat_id: str = "chat-1"):
    return IncomingMessage(message_id=message_id, chat_id=chat_id, text=text)


@pytest.fixture
def safe_root(tmp_path: Path) -> Path:
    root = tmp_path / "safe_root"
    root.mkdir()
    return root


@pytest.fixture
def settings(safe_root: Path) -> Settings:
    return Settings(
        admin_token=ADMIN_TOKEN,
        database_url="",
        llm_provider="mock",
        queue_drain_delay_s=0.0,
        tool_timeout_s=2.0,
        files_safe_root=str(safe_root),
        tools_files_write_enabled=True,
    )


@pytest.fixture
def repositories() -> Repositories:
    return build_memory_repositories()


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def completions() -> list[tuple[int, str, str]]:
    return []


@pytest.fixture
def services(
    settings: Settings,
    repositories: Repositories,
    llm: ScriptedLLM,
    completions: list[tuple[int, str, str]],
) -> Services:
    return build_services(
        settings,
        repositories=repositories,
        llm_provider=llm,
        on_task_complete=lambda user_id, task_id, text: completions.append(
            (user_id, task_id, text)
        ),
    )


@pytest.fixture
def paired_user(services: Services) -> User:
    token, _ = services.pairing.create_pairing_token()
    result = services.pairing.pair_user(token=token, chat_id="chat-1", display_name="Test User")
    assert result.success and result.user_id is not None
    user = services.repositories.users.find_by_id(result.user_id)
    assert user is not None
    return user
