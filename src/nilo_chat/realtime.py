"""Socket.IO event handlers feeding connection sessions."""

from __future__ import annotations

from typing import Any

import socketio
import structlog

from .hub import ChatHub

logger = structlog.get_logger("realtime")


def _payload(data: Any) -> dict[str, Any]:
    return data if isinstance(data, dict) else {}


def build_socket_server(hub: ChatHub) -> socketio.AsyncServer:
    """Create the live transport; every socket gets its own ConnectionSession."""
    settings = hub.settings
    cors_origins: Any = (settings.cors.origins or "*") if settings.cors.enabled else None
    sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=cors_origins)

    def _emitter(sid: str):
        async def emit(event: str, data: Any) -> None:
            await sio.emit(event, data, to=sid)

        return emit

    @sio.event
    async def connect(sid: str, environ: dict[str, Any], auth: Any = None) -> None:
        hub.sessions.open(sid, _emitter(sid))
        logger.debug("socket_connected", sid=sid, sessions=len(hub.sessions))

    @sio.event
    async def disconnect(sid: str, *args: Any) -> None:
        hub.sessions.close(sid)

    @sio.on("user_connected")
    async def user_connected(sid: str, data: Any = None) -> None:
        session = hub.sessions.get(sid)
        if session is None:
            return
        payload = _payload(data)
        await session.connect(
            payload.get("username"),
            payload.get("channel"),
            returning=bool(payload.get("isReturningUser", True)),
        )

    @sio.on("join_channel")
    async def join_channel(sid: str, data: Any = None) -> None:
        session = hub.sessions.get(sid)
        if session is None:
            return
        await session.switch_channel(_payload(data).get("channel"))

    @sio.on("chat_message")
    async def chat_message(sid: str, data: Any = None) -> None:
        session = hub.sessions.get(sid)
        if session is None:
            return
        payload = _payload(data)
        await session.submit_message(payload.get("message"), payload.get("channel"), payload.get("username"))

    @sio.on("username_change")
    async def username_change(sid: str, data: Any = None) -> None:
        session = hub.sessions.get(sid)
        if session is None:
            return
        payload = _payload(data)
        await session.rename(payload.get("oldUsername"), payload.get("newUsername"), payload.get("channel"))

    return sio
