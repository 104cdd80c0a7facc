"""One-time pairing tokens that bind a chat identity to a user."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime

from chat_orchestrator.security.audit import AuditLog
from chat_orchestrator.security.permissions import PermissionManager
from chat_orchestrator.storage.base import PairingTokenRepository, UserRepository

logger = logging.getLogger(__name__)

TOKEN_LENGTH = 24


@dataclass(frozen=True)
class PairingResult:
    success: bool
    user_id: int | None = None
    is_admin: bool = False
    error: str | None = None


def generate_token(length: int = TOKEN_LENGTH) -> str:
    # token_urlsafe yields ~1.3 chars per byte
    return secrets.token_urlsafe(length)[:length]


class PairingManager:
    def __init__(
        self,
        *,
        tokens: PairingTokenRepository,
        users: UserRepository,
        permissions: PermissionManager,
        audit: AuditLog,
        default_ttl_minutes: int = 60,
        default_rate_limit_per_minute: int = 10,
    ) -> None:
        self.tokens = tokens
        self.users = users
        self.permissions = permissions
        self.audit = audit
        self.default_ttl_minutes = default_ttl_minutes
        self.default_rate_limit_per_minute = default_rate_limit_per_minute

    def create_pairing_token(
        self, ttl_minutes: int | None = None, is_admin: bool = False
    ) -> tuple[str, datetime]:
        ttl = ttl_minutes or self.default_ttl_minutes
        record = self.tokens.create(token=generate_token(), ttl_minutes=ttl, is_admin=is_admin)
        logger.info(
            "pairing event=token_created token=%s... ttl_minutes=%s is_admin=%s",
            record.token[:6],
            ttl,
            is_admin,
        )
        return record.token, record.expires_at

    def pair_user(
        self,
        *,
        token: str,
        chat_id: str,
        display_name: str,
        username: str | None = None,
    ) -> PairingResult:
        if not self.tokens.is_valid(token):
            logger.warning("pairing event=rejected reason=invalid_token token=%s...", token[:6])
            self.audit.log_security_event("pairing_failed", details={"chat_id": chat_id})
            return PairingResult(success=False, error="Invalid or expired pairing token")

        if self.users.find_by_telegram_chat_id(chat_id) is not None:
            logger.warning("pairing event=rejected reason=already_paired chat_id=%s", chat_id)
            return PairingResult(success=False, error="User already paired")

        record = self.tokens.find_by_token(token)
        is_admin = bool(record and record.is_admin)
        user = self.users.create(
            telegram_chat_id=chat_id,
            display_name=display_name,
            username=username,
            rate_limit_per_minute=self.default_rate_limit_per_minute,
        )
        self.tokens.mark_used(token, chat_id)

        self.permissions.grant_default_permissions(user.id)
        if is_admin:
            self.permissions.grant_admin_permissions(user.id)

        self.audit.log_security_event(
            "user_paired",
            user_id=user.id,
            details={"chat_id": chat_id, "is_admin": is_admin},
            success=True,
        )
        logger.info("pairing event=paired user_id=%s chat_id=%s", user.id, chat_id)
        return PairingResult(success=True, user_id=user.id, is_admin=is_admin)

    def is_user_paired(self, chat_id: str) -> bool:
        user = self.users.find_by_telegram_chat_id(chat_id)
        return user is not None and user.is_active

    def clean_expired_tokens(self) -> int:
        count = self.tokens.clean_expired()
        if count > 0:
            logger.info("pairing event=expired_cleaned count=%d", count)
        return count
