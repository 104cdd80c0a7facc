"""Repository interfaces and storage backends."""

from chat_orchestrator.storage.base import (
    AuditRepository,
    DedupRepository,
    PairingTokenRepository,
    PermissionRepository,
    ReminderRepository,
    Repositories,
    TaskRepository,
    UserRepository,
)
from chat_orchestrator.storage.memory import build_memory_repositories
from chat_orchestrator.storage.postgres import build_postgres_repositories

__all__ = [
    "AuditRepository",
    "DedupRepository",
    "PairingTokenRepository",
    "PermissionRepository",
    "ReminderRepository",
    "Repositories",
    "TaskRepository",
    "UserRepository",
    "build_memory_repositories",
    "build_postgres_repositories",
]
