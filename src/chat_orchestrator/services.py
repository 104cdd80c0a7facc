"""Composition root: builds every collaborator from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chat_orchestrator.agent.llm import LLMProvider, build_llm_provider
from chat_orchestrator.agent.runtime import AgentRuntime
from chat_orchestrator.config.settings import Settings
from chat_orchestrator.engine.executor import TaskExecutor
from chat_orchestrator.engine.task_engine import InteractionMemory, TaskEngine
from chat_orchestrator.engine.verifier import TaskVerifier
from chat_orchestrator.gateway.dedup import DedupCache
from chat_orchestrator.gateway.gateway import CompletionCallback, IngestionGateway, log_completion
from chat_orchestrator.gateway.queue import MessageQueue
from chat_orchestrator.gateway.rate_limiter import RateLimiter
from chat_orchestrator.maintenance import MaintenanceScheduler
from chat_orchestrator.security.audit import AuditLog
from chat_orchestrator.security.pairing import PairingManager
from chat_orchestrator.security.permissions import PermissionManager
from chat_orchestrator.storage import (
    Repositories,
    build_memory_repositories,
    build_postgres_repositories,
)
from chat_orchestrator.tools.registry import ToolRegistry, build_registry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    repositories: Repositories
    audit: AuditLog
    permissions: PermissionManager
    pairing: PairingManager
    registry: ToolRegistry
    llm: LLMProvider
    engine: TaskEngine
    gateway: IngestionGateway
    maintenance: MaintenanceScheduler

    def start(self) -> None:
        self.gateway.queue.start()
        self.maintenance.start()

    def stop(self) -> None:
        self.maintenance.shutdown()
        self.gateway.queue.stop()


def build_repositories(settings: Settings) -> Repositories:
    database_url = settings.resolved_database_url()
    if not database_url:
        logger.warning("storage event=memory_backend reason=no_database_url")
        return build_memory_repositories()
    repositories = build_postgres_repositories(database_url)
    repositories.run_migrations()
    return repositories


def build_services(
    settings: Settings,
    *,
    repositories: Repositories | None = None,
    llm_provider: LLMProvider | None = None,
    on_task_complete: CompletionCallback | None = None,
    memory: InteractionMemory | None = None,
) -> Services:
    repositories = repositories or build_repositories(settings)
    audit = AuditLog(repositories.audit)
    permissions = PermissionManager(repositories.permissions)
    pairing = PairingManager(
        tokens=repositories.pairing_tokens,
        users=repositories.users,
        permissions=permissions,
        audit=audit,
        default_ttl_minutes=settings.pairing_token_ttl_minutes,
        default_rate_limit_per_minute=settings.rate_limit_per_minute,
    )
    registry = build_registry(settings, repositories)
    llm = llm_provider or build_llm_provider(settings)

    engine = TaskEngine(
        tasks=repositories.tasks,
        runtime=AgentRuntime(
            llm,
            registry,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        ),
        executor=TaskExecutor(
            registry=registry, audit=audit, tool_timeout_s=settings.tool_timeout_s
        ),
        verifier=TaskVerifier(repositories.reminders, files_safe_root=settings.files_safe_root),
        permissions=permissions,
        registry=registry,
        audit=audit,
        max_retries=settings.max_retry_attempts,
        memory=memory,
    )

    dedup = DedupCache(repositories.dedup, window_s=settings.dedup_window_s)
    rate_limiter = RateLimiter(settings.rate_limit_per_minute)
    gateway = IngestionGateway(
        users=repositories.users,
        tasks=repositories.tasks,
        engine=engine,
        dedup=dedup,
        rate_limiter=rate_limiter,
        queue=MessageQueue(
            max_size=settings.queue_max_size, drain_delay_s=settings.queue_drain_delay_s
        ),
        audit=audit,
        on_task_complete=on_task_complete or log_completion,
    )
    maintenance = MaintenanceScheduler(
        dedup=dedup,
        rate_limiter=rate_limiter,
        pairing=pairing,
        dedup_interval_s=settings.dedup_window_s,
        rate_limit_interval_s=settings.rate_limit_sweep_s,
        pairing_interval_s=settings.pairing_sweep_s,
    )
    logger.info(
        "services event=built llm=%s tools=%s max_retries=%d",
        llm.get_name(),
        ",".join(registry.names()),
        settings.max_retry_attempts,
    )
    return Services(
        settings=settings,
        repositories=repositories,
        audit=audit,
        permissions=permissions,
        pairing=pairing,
        registry=registry,
        llm=llm,
        engine=engine,
        gateway=gateway,
        maintenance=maintenance,
    )
