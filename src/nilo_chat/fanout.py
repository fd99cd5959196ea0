"""Single persist-then-broadcast path shared by socket sessions and the REST gateway."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import structlog

from .channels import ChannelRegistry
from .errors import MessageValidationError
from .models import StoredMessage
from .store import MessageStore

MAX_MESSAGE_LENGTH = 2000

logger = structlog.get_logger("fanout")


class Subscriber(Protocol):
    """Anything that wants live ``chat_message`` delivery."""

    sid: str

    def is_member(self, channel: str) -> bool: ...

    async def deliver(self, payload: dict[str, Any]) -> None: ...


def validate_message(registry: ChannelRegistry, channel: str | None, text: Any, username: Any) -> None:
    """Reject a write before it can reach the store."""
    registry.require(channel)
    if not isinstance(text, str) or not text.strip():
        raise MessageValidationError("Message cannot be empty")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise MessageValidationError(f"Message exceeds maximum length of {MAX_MESSAGE_LENGTH} characters")
    if not isinstance(username, str) or not username.strip():
        raise MessageValidationError("Username is required")


class FanoutBus:
    """Appends a validated message to the store, then delivers it live.

    Live delivery is global: every subscriber receives every message whatever
    channel it has open, so clients can keep unread counters for channels they
    are not viewing. Channel membership only decides which history a session
    replays on join.
    """

    def __init__(self, registry: ChannelRegistry, store: MessageStore) -> None:
        self.registry = registry
        self.store = store
        self._subscribers: dict[str, Subscriber] = {}

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers[subscriber.sid] = subscriber

    def unsubscribe(self, subscriber: Subscriber | str) -> None:
        sid = subscriber if isinstance(subscriber, str) else subscriber.sid
        self._subscribers.pop(sid, None)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(
        self,
        channel: str,
        text: str,
        username: str,
        *,
        exclude: str | None = None,
        members_only: bool = False,
    ) -> StoredMessage:
        validate_message(self.registry, channel, text, username)
        stored = await self.store.append(username, text, channel)
        await self.broadcast(stored, exclude=exclude, members_only=members_only)
        return stored

    async def broadcast(
        self,
        message: StoredMessage,
        *,
        exclude: str | None = None,
        members_only: bool = False,
    ) -> int:
        """Deliver an already stored message; returns the number of targets."""
        payload = message.to_payload()
        targets = [
            sub
            for sid, sub in list(self._subscribers.items())
            if sid != exclude and (not members_only or sub.is_member(message.channel))
        ]
        if targets:
            await asyncio.gather(*(self._deliver(sub, payload) for sub in targets))
        logger.debug(
            "message_broadcast",
            channel=message.channel,
            username=message.username,
            targets=len(targets),
            members_only=members_only,
        )
        return len(targets)

    async def _deliver(self, subscriber: Subscriber, payload: dict[str, Any]) -> None:
        try:
            await subscriber.deliver(payload)
        except Exception as exc:
            logger.warning("delivery_failed", sid=subscriber.sid, channel=payload.get("channel"), error=str(exc))
