"""Composition root: one registry, store, bus and session table per server instance."""

from __future__ import annotations

from dataclasses import dataclass

from .auth import ApiKeyStore
from .channels import ChannelRegistry
from .config import Settings, get_settings
from .fanout import FanoutBus
from .sessions import SessionRegistry
from .store import MessageStore, SessionFactory


@dataclass(slots=True)
class ChatHub:
    settings: Settings
    channels: ChannelRegistry
    store: MessageStore
    bus: FanoutBus
    sessions: SessionRegistry
    keys: ApiKeyStore


def build_hub(settings: Settings | None = None, *, session_factory: SessionFactory | None = None) -> ChatHub:
    """Wire the shared objects; both ingestion paths receive the same bus."""
    resolved = settings or get_settings()
    channels = ChannelRegistry.from_settings(resolved)
    store = MessageStore(session_factory)
    bus = FanoutBus(channels, store)
    sessions = SessionRegistry(
        registry=channels,
        store=store,
        bus=bus,
        history_limit=resolved.chat.history_limit,
        greeter_name=resolved.chat.greeter_name,
        greeter_channel=resolved.chat.greeter_channel,
    )
    return ChatHub(
        settings=resolved,
        channels=channels,
        store=store,
        bus=bus,
        sessions=sessions,
        keys=ApiKeyStore(session_factory),
    )
