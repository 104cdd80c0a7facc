"""Per-user, per-tool, per-action authorization with point-in-time snapshots."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Mapping

from chat_orchestrator.models import Permission, utc_now
from chat_orchestrator.storage.base import PermissionRepository

logger = logging.getLogger(__name__)

WILDCARD_ACTION = "*"


@dataclass(frozen=True)
class PermissionDecision:
    granted: bool
    requires_confirmation: bool = False


DENIED = PermissionDecision(granted=False, requires_confirmation=False)


@dataclass(frozen=True)
class PermissionSnapshot:
    """Immutable view of one user's granted permissions at ``taken_at``.

    Keys are ``"tool:action"`` or ``"tool:*"``. Grants or revocations made
    after the snapshot is taken are not reflected here.
    """

    user_id: int
    entries: Mapping[str, PermissionDecision]
    taken_at: datetime

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)


# (tool, action, requires_confirmation)
DEFAULT_GRANTS: tuple[tuple[str, str, bool], ...] = (
    ("system_info", WILDCARD_ACTION, False),
    ("reminders", "create", False),
    ("reminders", "list", False),
    ("reminders", "delete", True),
    ("files_readonly", "list", False),
    ("files_readonly", "read", False),
)

ADMIN_GRANTS: tuple[tuple[str, str, bool], ...] = DEFAULT_GRANTS + (
    ("reminders", WILDCARD_ACTION, False),
    ("files_readonly", WILDCARD_ACTION, False),
    ("files_write", WILDCARD_ACTION, True),
    ("web_sandbox", "fetch", False),
    ("system_exec", "run_command", True),
    ("system_exec", "execute", True),
)


def permission_key(tool_name: str, action: str) -> str:
    return f"{tool_name}:{action}"


class PermissionManager:
    """Answers authorization queries against the live permission store."""

    def __init__(self, repository: PermissionRepository) -> None:
        self.repository = repository

    def has_permission(self, user_id: int, tool_name: str, action: str) -> bool:
        return self.repository.has_permission(user_id, tool_name, action)

    def requires_confirmation(self, user_id: int, tool_name: str, action: str) -> bool:
        return self.repository.requires_confirmation(user_id, tool_name, action)

    def granted_tools(self, user_id: int) -> set[str]:
        granted = self.repository.find_granted_by_user_id(user_id)
        return {permission.tool_name for permission in granted}

    def create_snapshot(self, user_id: int) -> PermissionSnapshot:
        entries: dict[str, PermissionDecision] = {}
        for permission in self.repository.find_granted_by_user_id(user_id):
            entries[permission_key(permission.tool_name, permission.action)] = PermissionDecision(
                granted=permission.granted,
                requires_confirmation=permission.requires_confirmation,
            )
        logger.debug("permission_snapshot user_id=%s entries=%d", user_id, len(entries))
        return PermissionSnapshot(
            user_id=user_id,
            entries=MappingProxyType(entries),
            taken_at=utc_now(),
        )

    @staticmethod
    def check_against_snapshot(
        snapshot: PermissionSnapshot, tool_name: str, action: str
    ) -> PermissionDecision:
        exact = snapshot.entries.get(permission_key(tool_name, action))
        if exact is not None:
            return exact
        wildcard = snapshot.entries.get(permission_key(tool_name, WILDCARD_ACTION))
        if wildcard is not None:
            return wildcard
        return DENIED

    def grant(
        self,
        user_id: int,
        tool_name: str,
        action: str,
        *,
        requires_confirmation: bool = False,
        granted_by: str = "system",
    ) -> Permission:
        return self.repository.create(
            Permission(
                user_id=user_id,
                tool_name=tool_name,
                action=action,
                granted=True,
                requires_confirmation=requires_confirmation,
                granted_by=granted_by,
            )
        )

    def revoke(
        self, user_id: int, tool_name: str, action: str, *, revoked_by: str = "system"
    ) -> Permission:
        return self.repository.create(
            Permission(
                user_id=user_id,
                tool_name=tool_name,
                action=action,
                granted=False,
                granted_by=revoked_by,
            )
        )

    def grant_default_permissions(self, user_id: int) -> None:
        self._grant_all(user_id, DEFAULT_GRANTS)
        logger.info(
            "permissions_granted user_id=%s set=default count=%d", user_id, len(DEFAULT_GRANTS)
        )

    def grant_admin_permissions(self, user_id: int) -> None:
        self._grant_all(user_id, ADMIN_GRANTS)
        logger.info(
            "permissions_granted user_id=%s set=admin count=%d", user_id, len(ADMIN_GRANTS)
        )

    def _grant_all(self, user_id: int, grants: tuple[tuple[str, str, bool], ...]) -> None:
        for tool_name, action, requires_confirmation in grants:
            self.grant(
                user_id,
                tool_name,
                action,
                requires_confirmation=requires_confirmation,
            )
