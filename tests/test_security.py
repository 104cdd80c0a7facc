from __future__ import annotations

from pathlib import Path

import pytest

from chat_orchestrator.models import AuditEvent
from chat_orchestrator.security.audit import REDACTED, AuditLog, redact
from chat_orchestrator.security.pairing import TOKEN_LENGTH, PairingManager
from chat_orchestrator.security.paths import PathValidator
from chat_orchestrator.security.permissions import PermissionManager
from chat_orchestrator.security.sanitizer import (
    is_private_ip,
    sanitize_text,
    sanitize_url,
    validate_domain,
)
from chat_orchestrator.storage import Repositories


@pytest.fixture
def permissions(repositories: Repositories) -> PermissionManager:
    return PermissionManager(repositories.permissions)


@pytest.fixture
def pairing(repositories: Repositories, permissions: PermissionManager) -> PairingManager:
    return PairingManager(
        tokens=repositories.pairing_tokens,
        users=repositories.users,
        permissions=permissions,
        audit=AuditLog(repositories.audit),
    )


def test_snapshot_ignores_later_revocation(permissions: PermissionManager) -> None:
    permissions.grant(1, "reminders", "create")
    permissions.grant(1, "system_info", "*")
    snapshot = permissions.create_snapshot(1)

    permissions.revoke(1, "reminders", "create")

    assert not permissions.has_permission(1, "reminders", "create")
    assert PermissionManager.check_against_snapshot(snapshot, "reminders", "create").granted
    assert PermissionManager.check_against_snapshot(snapshot, "system_info", "get").granted
    assert not PermissionManager.check_against_snapshot(snapshot, "files_write", "write").granted
    with pytest.raises(TypeError):
        granted = snapshot.entries["reminders:create"]
        snapshot.entries["files_write:*"] = granted  # type: ignore[index]


def test_wildcard_and_confirmation_flags(permissions: PermissionManager) -> None:
    permissions.grant_default_permissions(5)

    assert permissions.has_permission(5, "system_info", "anything")
    assert permissions.has_permission(5, "reminders", "delete")
    assert permissions.requires_confirmation(5, "reminders", "delete")
    assert not permissions.requires_confirmation(5, "reminders", "create")
    assert not permissions.has_permission(5, "files_write", "write")
    assert permissions.granted_tools(5) == {"system_info", "reminders", "files_readonly"}


def test_pairing_flow_grants_defaults_and_consumes_token(
    pairing: PairingManager, repositories: Repositories, permissions: PermissionManager
) -> None:
    token, expires_at = pairing.create_pairing_token()
    assert len(token) == TOKEN_LENGTH
    assert repositories.pairing_tokens.is_valid(token)

    result = pairing.pair_user(token=token, chat_id="chat-9", display_name="Ana")
    assert result.success and not result.is_admin
    assert pairing.is_user_paired("chat-9")
    assert result.user_id is not None
    assert permissions.has_permission(result.user_id, "reminders", "create")
    assert not permissions.has_permission(result.user_id, "files_write", "write")

    reused = pairing.pair_user(token=token, chat_id="chat-10", display_name="Bo")
    assert not reused.success
    assert reused.error == "Invalid or expired pairing token"
    assert [event.event_type for event in repositories.audit.find_by_event_type("user_paired")]


def test_admin_token_grants_admin_set(
    pairing: PairingManager, permissions: PermissionManager
) -> None:
    token, _ = pairing.create_pairing_token(is_admin=True)
    result = pairing.pair_user(token=token, chat_id="admin-chat", display_name="Root")

    assert result.success and result.is_admin and result.user_id is not None
    assert permissions.has_permission(result.user_id, "files_write", "delete")
    assert permissions.has_permission(result.user_id, "web_sandbox", "fetch")
    assert permissions.has_permission(result.user_id, "system_exec", "run_command")
    assert permissions.requires_confirmation(result.user_id, "system_exec", "execute")


def test_already_paired_chat_is_rejected(pairing: PairingManager) -> None:
    first, _ = pairing.create_pairing_token()
    second, _ = pairing.create_pairing_token()
    assert pairing.pair_user(token=first, chat_id="c", display_name="A").success

    again = pairing.pair_user(token=second, chat_id="c", display_name="A")
    assert not again.success
    assert again.error == "User already paired"


def test_redaction_masks_nested_secrets() -> None:
    payload = {
        "url": "https://example.com",
        "api_key": "sk-123",
        "nested": {"Password": "hunter2", "items": [{"auth_header": "Bearer x"}, {"ok": 1}]},
    }

    cleaned = redact(payload)

    assert cleaned["url"] == "https://example.com"
    assert cleaned["api_key"] == REDACTED
    assert cleaned["nested"]["Password"] == REDACTED
    assert cleaned["nested"]["items"][0]["auth_header"] == REDACTED
    assert cleaned["nested"]["items"][1] == {"ok": 1}
    assert payload["api_key"] == "sk-123"


def test_audit_log_redacts_before_persisting(repositories: Repositories) -> None:
    audit = AuditLog(repositories.audit)
    audit.log_tool_invocation(
        user_id=1,
        task_id="task_1",
        tool_name="web_sandbox",
        action="fetch",
        input_data={"url": "https://a.example", "token": "abc"},
        success=True,
        output_data={"secret_value": "s"},
    )

    [event] = repositories.audit.find_by_task_id("task_1")
    assert event.input_data == {"url": "https://a.example", "token": REDACTED}
    assert event.output_data == {"secret_value": REDACTED}


def test_audit_log_swallows_persistence_failure() -> None:
    class BrokenRepository:
        def create(self, event: AuditEvent) -> AuditEvent:
            raise RuntimeError("database down")

    audit = AuditLog(BrokenRepository())  # type: ignore[arg-type]
    assert audit.log_security_event("pairing_failed") is None


def test_sanitize_text_strips_dangerous_content() -> None:
    assert sanitize_text("a\x00b") == "ab"
    assert "javascript:" not in sanitize_text("click javascript:alert(1)")
    assert "onclick=" not in sanitize_text('<a onclick="x">')
    assert sanitize_text("x" * 50, max_length=10) == "x" * 10


def test_url_and_network_checks() -> None:
    assert sanitize_url("https://example.com/path?q=1") == "https://example.com/path?q=1"
    assert sanitize_url("ftp://example.com") is None
    assert sanitize_url("not a url") is None

    for host in ("localhost", "127.0.0.1", "10.1.2.3", "172.16.0.1", "192.168.1.1", "::1"):
        assert is_private_ip(host), host
    assert not is_private_ip("93.184.216.34")
    assert not is_private_ip("example.com")

    assert validate_domain("example.com", ["example.com"])
    assert validate_domain("api.example.com", ["example.com"])
    assert not validate_domain("badexample.com", ["example.com"])


def test_path_validator_confines_to_root(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    (root / "notes.txt").write_text("hi", encoding="utf-8")
    outside = tmp_path / "outside.txt"
    outside.write_text("secret", encoding="utf-8")
    (root / "link.txt").symlink_to(outside)

    validator = PathValidator(root)

    assert validator.resolve_path_safely("notes.txt") == (root / "notes.txt").resolve()
    assert validator.is_path_safe("new/dir/file.txt")
    assert not validator.is_path_safe("../outside.txt")
    assert not validator.is_path_safe("sub/../../outside.txt")
    assert not validator.is_path_safe(str(outside))
    assert not validator.is_path_safe("bad\x00name")
    assert not validator.is_path_safe("link.txt")
    assert validator.resolve_path_safely("../outside.txt") is None


def test_path_validator_rejects_symlinked_directory(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("secret", encoding="utf-8")
    (root / "link").symlink_to(outside, target_is_directory=True)
    (root / "real").mkdir()
    (root / "inner").symlink_to(root / "real", target_is_directory=True)

    validator = PathValidator(root)

    assert validator.resolve_path_safely("link/secret.txt") is None
    assert not validator.is_path_safe("link/new.txt")
    assert not validator.is_path_safe("link/nested/new.txt")
    assert validator.resolve_path_safely("inner/file.txt") == (root / "real" / "file.txt").resolve()
