"""Authorization, audit, pairing, and input confinement."""

from chat_orchestrator.security.audit import AuditLog, redact
from chat_orchestrator.security.pairing import PairingManager, PairingResult
from chat_orchestrator.security.paths import PathValidator
from chat_orchestrator.security.permissions import (
    PermissionDecision,
    PermissionManager,
    PermissionSnapshot,
)

__all__ = [
    "AuditLog",
    "PairingManager",
    "PairingResult",
    "PathValidator",
    "PermissionDecision",
    "PermissionManager",
    "PermissionSnapshot",
    "redact",
]
