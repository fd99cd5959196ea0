"""Stateless REST gateway for agents: channels, history, posting and key management."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .auth import matches_admin_key
from .errors import InvalidChannel, MessageValidationError, StorageFailure
from .hub import ChatHub
from .models import ApiKey

MAX_LIMIT = 200
DEFAULT_LIMIT = 50

logger = structlog.get_logger("api")


class MessageCreate(BaseModel):
    channel: Any = None
    message: Any = None
    username: Any = None


class KeyCreate(BaseModel):
    agent_name: Any = None


@dataclass(slots=True, frozen=True)
class Caller:
    """Authenticated identity behind a request."""

    key: ApiKey | None
    is_admin: bool

    @property
    def name(self) -> str:
        if self.key is not None:
            return self.key.agent_name
        return "admin"


def get_hub(request: Request) -> ChatHub:
    return request.app.state.hub


HubDep = Annotated[ChatHub, Depends(get_hub)]
ApiKeyHeader = Annotated[str | None, Header(alias="x-api-key")]


async def require_api_key(hub: HubDep, x_api_key: ApiKeyHeader = None) -> Caller:
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing x-api-key header")
    if matches_admin_key(x_api_key, hub.settings.auth.admin_api_key):
        return Caller(key=None, is_admin=True)
    try:
        record = await hub.keys.resolve(x_api_key)
    except StorageFailure as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Authentication error") from exc
    if record is None:
        logger.info("auth_rejected", reason="unknown_key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
    return Caller(key=record, is_admin=False)


async def require_admin(hub: HubDep, x_api_key: ApiKeyHeader = None) -> Caller:
    admin_key = hub.settings.auth.admin_api_key
    if not admin_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Key management is not configured. Set ADMIN_API_KEY env var.",
        )
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing x-api-key header")
    if not matches_admin_key(x_api_key, admin_key):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden: admin access required")
    return Caller(key=None, is_admin=True)


AgentDep = Annotated[Caller, Depends(require_api_key)]
AdminDep = Annotated[Caller, Depends(require_admin)]


def _parse_limit(raw: str | None) -> int:
    try:
        limit = int(raw) if raw is not None else DEFAULT_LIMIT
    except ValueError:
        return DEFAULT_LIMIT
    if limit < 1:
        return DEFAULT_LIMIT
    return min(limit, MAX_LIMIT)


def build_api_router() -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/channels")
    async def list_channels(hub: HubDep, caller: AgentDep) -> list[dict[str, str]]:
        return hub.channels.listing()

    @router.get("/messages/{channel}")
    async def read_messages(
        channel: str,
        hub: HubDep,
        caller: AgentDep,
        limit: Annotated[str | None, Query()] = None,
    ) -> list[dict[str, Any]]:
        try:
            hub.channels.require(channel)
        except InvalidChannel as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        try:
            history = await hub.store.history(channel, _parse_limit(limit))
        except StorageFailure as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to read messages"
            ) from exc
        return [message.to_payload() for message in history]

    @router.post("/messages", status_code=status.HTTP_201_CREATED)
    async def post_message(body: MessageCreate, hub: HubDep, caller: AgentDep) -> dict[str, Any]:
        try:
            stored = await hub.bus.publish(body.channel, body.message, body.username)
        except (InvalidChannel, MessageValidationError) as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StorageFailure as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save message"
            ) from exc
        logger.info("api_message_posted", agent=caller.name, channel=stored.channel, username=stored.username)
        return stored.to_payload()

    @router.post("/keys", status_code=status.HTTP_201_CREATED)
    async def create_key(
        hub: HubDep, body: KeyCreate | None = None, x_api_key: ApiKeyHeader = None
    ) -> dict[str, Any]:
        if not hub.settings.auth.key_registration_open:
            await require_admin(hub, x_api_key)
        agent_name = body.agent_name if body is not None else None
        if not isinstance(agent_name, str) or not agent_name.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="agent_name is required")
        try:
            record, raw = await hub.keys.create(agent_name.strip())
        except StorageFailure as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create API key"
            ) from exc
        return {**record.to_public_dict(), "api_key": raw}

    @router.get("/keys")
    async def list_keys(hub: HubDep, caller: AdminDep) -> list[dict[str, Any]]:
        try:
            records = await hub.keys.list_keys()
        except StorageFailure as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to list API keys"
            ) from exc
        return [record.to_public_dict() for record in records]

    @router.delete("/keys/{key_id}")
    async def delete_key(key_id: int, hub: HubDep, caller: AgentDep) -> JSONResponse:
        if not caller.is_admin and (caller.key is None or caller.key.id != key_id):
            logger.info("key_delete_forbidden", agent=caller.name, key_id=key_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden: you can only delete your own key"
            )
        try:
            deleted = await hub.keys.delete(key_id)
        except StorageFailure as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete API key"
            ) from exc
        if not deleted:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="API key not found")
        return JSONResponse({"deleted": key_id})

    return router
