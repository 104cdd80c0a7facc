from __future__ import annotations

from datetime import timedelta

import pytest

from chat_orchestrator.agent.llm import (
    FINAL_RESPONSE_MARKER,
    LLMMessage,
    LLMRequest,
    MockLLMProvider,
    OpenAIChatProvider,
    build_llm_provider,
)
from chat_orchestrator.config.settings import Settings
from chat_orchestrator.models import Permission, Task, TaskStatus, utc_now
from chat_orchestrator.services import Services, build_repositories
from chat_orchestrator.storage import Repositories


def test_task_repository_filters_and_updates(repositories: Repositories) -> None:
    tasks = repositories.tasks
    first = tasks.create(Task(id="task_a", user_id=1, input_message="a"))
    tasks.create(Task(id="task_b", user_id=1, input_message="b", status=TaskStatus.DONE))
    tasks.create(Task(id="task_c", user_id=2, input_message="c"))

    first.status = TaskStatus.EXECUTING
    tasks.update(first)

    assert {task.id for task in tasks.find_by_user_id(1)} == {"task_a", "task_b"}
    assert [task.id for task in tasks.find_by_status(TaskStatus.DONE)] == ["task_b"]
    assert {task.id for task in tasks.find_active()} == {"task_a", "task_c"}
    stored = tasks.find_by_id("task_a")
    assert stored is not None and stored.status == TaskStatus.EXECUTING
    assert tasks.find_by_id("missing") is None


def test_user_repository_updates_only_known_fields(repositories: Repositories) -> None:
    users = repositories.users
    user = users.create(telegram_chat_id="chat-7", display_name="Dee")

    updated = users.update(user.id, {"is_active": False, "telegram_chat_id": "hijack"})

    assert updated is not None
    assert not updated.is_active
    assert updated.telegram_chat_id == "chat-7"
    assert users.find_by_telegram_chat_id("chat-7") is not None
    assert users.update(999, {"is_active": True}) is None
    assert users.delete(user.id)
    assert not users.delete(user.id)


def test_permission_upsert_and_wildcard(repositories: Repositories) -> None:
    permissions = repositories.permissions
    permissions.create(Permission(user_id=1, tool_name="reminders", action="*"))
    permissions.create(
        Permission(user_id=1, tool_name="reminders", action="*", requires_confirmation=True)
    )
    permissions.create(
        Permission(user_id=1, tool_name="files_write", action="write", granted=False)
    )

    assert len(permissions.find_by_user_id(1)) == 2
    assert [p.tool_name for p in permissions.find_granted_by_user_id(1)] == ["reminders"]
    assert permissions.has_permission(1, "reminders", "delete")
    assert permissions.requires_confirmation(1, "reminders", "delete")
    assert not permissions.has_permission(1, "files_write", "write")
    assert not permissions.has_permission(2, "reminders", "list")

    permissions.set_permissions(1, [Permission(user_id=99, tool_name="system_info", action="get")])
    assert [(p.user_id, p.tool_name) for p in permissions.find_by_user_id(1)] == [
        (1, "system_info")
    ]
    assert permissions.delete_by_user_id(1) == 1


def test_dedup_record_conflict_and_purge(repositories: Repositories) -> None:
    dedup = repositories.dedup
    old = utc_now() - timedelta(hours=1)

    assert dedup.record(chat_id="c", message_id=1, received_at=old, task_id="task_1")
    assert not dedup.record(chat_id="c", message_id=1, received_at=utc_now(), task_id="task_2")
    assert dedup.record(chat_id="c", message_id=2, received_at=utc_now(), task_id="task_3")

    assert dedup.purge_older_than(utc_now() - timedelta(minutes=5)) == 1
    assert not dedup.exists("c", 1)
    assert dedup.exists("c", 2)


def test_pairing_tokens_expire_and_are_single_use(repositories: Repositories) -> None:
    tokens = repositories.pairing_tokens
    tokens.create(token="live", ttl_minutes=10)
    tokens.create(token="dead", ttl_minutes=0)

    assert tokens.is_valid("live")
    assert not tokens.is_valid("dead")
    assert not tokens.is_valid("unknown")
    assert [record.token for record in tokens.find_active()] == ["live"]

    tokens.mark_used("live", "chat-1")
    used = tokens.find_by_token("live")
    assert used is not None and used.used_by_chat_id == "chat-1"
    assert not tokens.is_valid("live")
    with pytest.raises(KeyError):
        tokens.mark_used("unknown", "chat-1")

    assert tokens.clean_expired() == 1
    assert tokens.find_by_token("dead") is None
    assert tokens.find_by_token("live") is not None


def test_build_repositories_defaults_to_memory(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)

    repositories = build_repositories(settings)

    assert repositories.migrate is None
    assert repositories.tasks.find_by_id("anything") is None


def test_maintenance_run_all_sweeps_each_cache(services: Services) -> None:
    services.repositories.pairing_tokens.create(token="stale", ttl_minutes=0)
    services.gateway.rate_limiter.check("user:1")

    results = services.maintenance.run_all()

    assert set(results) == {"dedup_sweep", "rate_limit_sweep", "pairing_token_sweep"}
    assert results["pairing_token_sweep"] == 1
    assert not services.maintenance.running


def test_mock_provider_plans_by_keyword() -> None:
    provider = MockLLMProvider()

    def plan_for(text: str) -> str:
        request = LLMRequest(messages=[LLMMessage(role="user", content=text)])
        return provider.complete(request).content

    assert '"reminders", "action": "create"' in plan_for("Set a reminder for tomorrow")
    assert '"action": "list"' in plan_for("list my stuff")
    assert '"system_info"' in plan_for("hello")
    final = plan_for(f"{FINAL_RESPONSE_MARKER}\nlog")
    assert final.startswith("Done.")


def test_build_llm_provider_selection(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    assert isinstance(build_llm_provider(Settings(llm_provider="mock")), MockLLMProvider)
    with pytest.raises(ValueError, match="Unsupported LLM provider"):
        build_llm_provider(Settings(llm_provider="carrier-pigeon"))
    with pytest.raises(ValueError, match="no API key"):
        build_llm_provider(Settings(llm_provider="openai", openai_api_key=""))

    provider = build_llm_provider(Settings(llm_provider="openai", openai_api_key="sk-test"))
    assert isinstance(provider, OpenAIChatProvider)
    assert provider.get_name() == "openai"
