"""Per-socket session state machine and the registry that owns live sessions."""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from .channels import ChannelRegistry
from .errors import ChatError, InvalidChannel, MessageValidationError, StorageFailure
from .fanout import FanoutBus
from .models import StoredMessage, _utcnow_naive, iso_timestamp
from .store import SYSTEM_USERNAME, MessageStore

Emitter = Callable[[str, Any], Awaitable[None]]

DEFAULT_USERNAME = "Unknown User"

logger = structlog.get_logger("session")


class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    ACTIVE = "active"


class ConnectionSession:
    """Identity, active channel and joined channels for one socket.

    Every transition that lands in ``ACTIVE`` replays the active channel's
    history to this socket only. Writes go through the shared
    :class:`FanoutBus`; failures are reported back on the ``error`` event.
    """

    def __init__(
        self,
        sid: str,
        emit: Emitter,
        *,
        registry: ChannelRegistry,
        store: MessageStore,
        bus: FanoutBus,
        history_limit: int = 500,
        greeter_name: str | None = None,
        greeter_channel: str | None = None,
    ) -> None:
        self.sid = sid
        self._emit = emit
        self.registry = registry
        self.store = store
        self.bus = bus
        self.history_limit = history_limit
        self.greeter_name = greeter_name
        self.greeter_channel = greeter_channel
        self.username = DEFAULT_USERNAME
        self.state = SessionState.CONNECTING
        self.active_channel: str | None = None
        self.joined: set[str] = set()

    def __repr__(self) -> str:
        return f"ConnectionSession(sid={self.sid!r}, username={self.username!r}, state={self.state.value}, channel={self.active_channel!r})"

    # Subscriber protocol -------------------------------------------------

    def is_member(self, channel: str) -> bool:
        return channel in self.joined

    async def deliver(self, payload: dict[str, Any]) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        await self._emit("chat_message", payload)

    # Transitions ---------------------------------------------------------

    async def connect(self, username: str | None, channel: str | None = None, *, returning: bool = True) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        target = channel or self.registry.default
        try:
            self.registry.require(target)
        except InvalidChannel as exc:
            await self._report(exc, event="user_connected")
            return
        if username:
            self.username = username
        self.joined.add(target)
        self.joined.update(self.registry.direct)
        self.active_channel = target
        self.state = SessionState.ACTIVE
        logger.info("user_connected", sid=self.sid, username=self.username, channel=target)
        await self._replay(target)
        if not returning:
            await self._greet()

    async def switch_channel(self, channel: str | None) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        target = channel or self.registry.default
        try:
            self.registry.require(target)
        except InvalidChannel as exc:
            await self._report(exc, event="join_channel")
            return
        self.joined.difference_update(self.registry.public)
        self.joined.add(target)
        self.active_channel = target
        self.state = SessionState.ACTIVE
        logger.debug("channel_switched", sid=self.sid, channel=target)
        await self._replay(target)

    async def submit_message(
        self, text: Any, channel: str | None = None, username: str | None = None
    ) -> StoredMessage | None:
        if self.state is SessionState.DISCONNECTED:
            return None
        target = channel or self.active_channel or self.registry.default
        author = username or self.username
        try:
            return await self.bus.publish(target, text, author)
        except ChatError as exc:
            await self._report(exc, event="chat_message")
            return None

    async def rename(self, old: str | None, new: str | None, channel: str | None = None) -> StoredMessage | None:
        if self.state is SessionState.DISCONNECTED:
            return None
        if not new or not new.strip():
            await self._report(MessageValidationError("Username is required"), event="username_change")
            return None
        previous = old or self.username
        self.username = new
        target = channel or self.active_channel or self.registry.default
        notice = f"{previous} changed their username to {new}"
        try:
            return await self.bus.publish(
                target, notice, SYSTEM_USERNAME, exclude=self.sid, members_only=True
            )
        except ChatError as exc:
            await self._report(exc, event="username_change")
            return None

    def disconnect(self) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        self.state = SessionState.DISCONNECTED
        self.bus.unsubscribe(self.sid)
        self.joined.clear()
        logger.info("user_disconnected", sid=self.sid, username=self.username)

    # Helpers -------------------------------------------------------------

    async def _replay(self, channel: str) -> None:
        try:
            history = await self.store.history(channel, self.history_limit)
        except StorageFailure as exc:
            await self._report(exc, event="message_history")
            return
        await self._emit("message_history", [message.to_payload() for message in history])

    async def _greet(self) -> None:
        if not self.greeter_channel or not self.registry.is_valid(self.greeter_channel):
            return
        self.joined.add(self.greeter_channel)
        await self._emit(
            "chat_message",
            {
                "timestamp": iso_timestamp(_utcnow_naive()),
                "username": self.greeter_name or SYSTEM_USERNAME,
                "message": (
                    f"Hello {self.username}! Welcome to nilo.chat! "
                    "Let me know if you need any help getting started."
                ),
                "channel": self.greeter_channel,
            },
        )

    async def _report(self, exc: ChatError, *, event: str) -> None:
        if isinstance(exc, StorageFailure):
            logger.error("session_storage_failure", sid=self.sid, event=event, error=str(exc))
            text = "Failed to save message" if event in {"chat_message", "username_change"} else "Failed to load history"
        else:
            logger.info("session_rejected", sid=self.sid, event=event, error=str(exc))
            text = str(exc)
        await self._emit("error", {"message": text})


class SessionRegistry:
    """Live sessions keyed by socket id; constructed once per server instance."""

    def __init__(
        self,
        *,
        registry: ChannelRegistry,
        store: MessageStore,
        bus: FanoutBus,
        history_limit: int = 500,
        greeter_name: str | None = None,
        greeter_channel: str | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.bus = bus
        self.history_limit = history_limit
        self.greeter_name = greeter_name
        self.greeter_channel = greeter_channel
        self._sessions: dict[str, ConnectionSession] = {}

    def open(self, sid: str, emit: Emitter) -> ConnectionSession:
        session = ConnectionSession(
            sid,
            emit,
            registry=self.registry,
            store=self.store,
            bus=self.bus,
            history_limit=self.history_limit,
            greeter_name=self.greeter_name,
            greeter_channel=self.greeter_channel,
        )
        self._sessions[sid] = session
        self.bus.subscribe(session)
        return session

    def get(self, sid: str) -> ConnectionSession | None:
        return self._sessions.get(sid)

    def close(self, sid: str) -> ConnectionSession | None:
        session = self._sessions.pop(sid, None)
        if session is not None:
            session.disconnect()
        return session

    def usernames(self) -> list[str]:
        return sorted({s.username for s in self._sessions.values() if s.state is SessionState.ACTIVE})

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, sid: object) -> bool:
        return sid in self._sessions
