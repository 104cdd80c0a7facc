"""FastAPI app entrypoint for chat-orchestrator."""

from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from chat_orchestrator.config.settings import Settings, get_settings
from chat_orchestrator.models import (
    AuditEvent,
    IncomingMessage,
    PairingToken,
    Permission,
    Task,
    TaskStatus,
    User,
    utc_now,
)
from chat_orchestrator.services import Services, build_services


class CreatePairingTokenRequest(BaseModel):
    ttl_minutes: int | None = Field(default=None, ge=1)
    is_admin: bool = False


class CreatePairingTokenResponse(BaseModel):
    token: str
    expires_at: datetime


class PairUserRequest(BaseModel):
    token: str = Field(min_length=1)
    chat_id: str = Field(min_length=1)
    display_name: str = "Unknown User"
    username: str | None = None


class PairUserResponse(BaseModel):
    user_id: int
    is_admin: bool


class UpdateUserRequest(BaseModel):
    is_active: bool | None = None
    rate_limit_per_minute: int | None = Field(default=None, ge=1)
    display_name: str | None = None
    username: str | None = None


class PermissionEntry(BaseModel):
    tool_name: str = Field(min_length=1)
    action: str = Field(min_length=1)
    granted: bool = True
    requires_confirmation: bool = False


class SetPermissionsRequest(BaseModel):
    permissions: list[PermissionEntry]


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    services_override: Services | None,
) -> None:
    if not hasattr(app.state, "services"):
        app.state.services = services_override or build_services(settings)

    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    services: Services | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, services_override=services)
        app.state.services.start()
        try:
            yield
        finally:
            app.state.services.stop()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if services is not None:
        _ensure_runtime_state(app, settings=settings, services_override=services)

    def get_services(request: Request) -> Services:
        if not hasattr(request.app.state, "services"):
            _ensure_runtime_state(request.app, settings=settings, services_override=services)
        return request.app.state.services

    def require_admin(authorization: str | None = Header(default=None)) -> None:
        expected = settings.admin_token
        scheme, _, supplied = (authorization or "").partition(" ")
        if (
            not expected
            or scheme.lower() != "bearer"
            or not secrets.compare_digest(supplied.strip(), expected)
        ):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing admin token",
                headers={"WWW-Authenticate": "Bearer"},
            )

    admin = [Depends(require_admin)]

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post(
        "/api/v1/pairing/tokens",
        response_model=CreatePairingTokenResponse,
        status_code=status.HTTP_201_CREATED,
        dependencies=admin,
    )
    def create_pairing_token(
        payload: CreatePairingTokenRequest, request: Request
    ) -> CreatePairingTokenResponse:
        token, expires_at = get_services(request).pairing.create_pairing_token(
            ttl_minutes=payload.ttl_minutes, is_admin=payload.is_admin
        )
        return CreatePairingTokenResponse(token=token, expires_at=expires_at)

    @app.get("/api/v1/pairing/tokens", response_model=list[PairingToken], dependencies=admin)
    def list_pairing_tokens(request: Request) -> list[PairingToken]:
        return get_services(request).repositories.pairing_tokens.find_active()

    @app.post("/api/v1/pairing", response_model=PairUserResponse, dependencies=admin)
    def pair_user(payload: PairUserRequest, request: Request) -> PairUserResponse:
        result = get_services(request).pairing.pair_user(
            token=payload.token,
            chat_id=payload.chat_id,
            display_name=payload.display_name,
            username=payload.username,
        )
        if not result.success or result.user_id is None:
            raise HTTPException(status_code=400, detail=result.error or "Pairing failed")
        return PairUserResponse(user_id=result.user_id, is_admin=result.is_admin)

    @app.get("/api/v1/users", response_model=list[User], dependencies=admin)
    def list_users(request: Request) -> list[User]:
        return get_services(request).repositories.users.find_all()

    @app.patch("/api/v1/users/{user_id}", response_model=User, dependencies=admin)
    def update_user(user_id: int, payload: UpdateUserRequest, request: Request) -> User:
        changes = payload.model_dump(exclude_unset=True)
        user = get_services(request).repositories.users.update(user_id, changes)
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    @app.delete("/api/v1/users/{user_id}", dependencies=admin)
    def delete_user(user_id: int, request: Request) -> dict[str, Any]:
        svc = get_services(request)
        if svc.repositories.users.find_by_id(user_id) is None:
            raise HTTPException(status_code=404, detail="User not found")
        svc.repositories.permissions.delete_by_user_id(user_id)
        svc.repositories.users.delete(user_id)
        svc.audit.log_security_event("user_deleted", user_id=user_id, success=True)
        return {"user_id": user_id, "deleted": True}

    @app.get(
        "/api/v1/users/{user_id}/permissions",
        response_model=list[Permission],
        dependencies=admin,
    )
    def get_permissions(user_id: int, request: Request) -> list[Permission]:
        svc = get_services(request)
        if svc.repositories.users.find_by_id(user_id) is None:
            raise HTTPException(status_code=404, detail="User not found")
        return svc.repositories.permissions.find_by_user_id(user_id)

    @app.put(
        "/api/v1/users/{user_id}/permissions",
        response_model=list[Permission],
        dependencies=admin,
    )
    def set_permissions(
        user_id: int, payload: SetPermissionsRequest, request: Request
    ) -> list[Permission]:
        svc = get_services(request)
        if svc.repositories.users.find_by_id(user_id) is None:
            raise HTTPException(status_code=404, detail="User not found")
        svc.repositories.permissions.set_permissions(
            user_id,
            [
                Permission(user_id=user_id, granted_by="admin", **entry.model_dump())
                for entry in payload.permissions
            ],
        )
        svc.audit.log_security_event(
            "permissions_updated",
            user_id=user_id,
            details={"count": len(payload.permissions)},
            success=True,
        )
        return svc.repositories.permissions.find_by_user_id(user_id)

    @app.get("/api/v1/tasks", response_model=list[Task], dependencies=admin)
    def list_tasks(
        request: Request,
        user_id: int | None = None,
        task_status: TaskStatus | None = Query(default=None, alias="status"),
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[Task]:
        tasks = get_services(request).repositories.tasks
        if user_id is not None:
            found = tasks.find_by_user_id(user_id, limit=limit)
            if task_status is not None:
                found = [task for task in found if task.status == task_status]
            return found
        if task_status is not None:
            return tasks.find_by_status(task_status, limit=limit)
        return tasks.find_active(limit=limit)

    @app.get("/api/v1/tasks/{task_id}", response_model=Task, dependencies=admin)
    def get_task(task_id: str, request: Request) -> Task:
        task = get_services(request).repositories.tasks.find_by_id(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.get("/api/v1/audit", response_model=list[AuditEvent], dependencies=admin)
    def list_audit(
        request: Request,
        user_id: int | None = None,
        task_id: str | None = None,
        event_type: str | None = None,
        start: datetime | None = Query(default=None, alias="from"),
        end: datetime | None = Query(default=None, alias="to"),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> list[AuditEvent]:
        audit = get_services(request).repositories.audit
        if task_id is not None:
            return audit.find_by_task_id(task_id)[:limit]
        if user_id is not None:
            return audit.find_by_user_id(user_id, limit=limit)
        if event_type is not None:
            return audit.find_by_event_type(event_type, limit=limit)
        if start is not None or end is not None:
            return audit.find_by_time_range(
                _aware(start) if start else datetime.min.replace(tzinfo=UTC),
                _aware(end) if end else utc_now(),
                limit=limit,
            )
        raise HTTPException(
            status_code=400,
            detail="Provide one of user_id, task_id, event_type, from or to",
        )

    @app.post(
        "/api/v1/messages",
        status_code=status.HTTP_202_ACCEPTED,
        dependencies=admin,
    )
    def receive_message(message: IncomingMessage, request: Request) -> dict[str, Any]:
        get_services(request).gateway.process_message(message)
        return {"status": "accepted", "chat_id": message.chat_id, "message_id": message.message_id}

    @app.get("/api/v1/tools", dependencies=admin)
    def list_tools(request: Request) -> dict[str, list[dict[str, Any]]]:
        return {"tools": get_services(request).registry.get_all_descriptors()}

    return app


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


app = create_app()
