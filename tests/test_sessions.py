from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
from sqlalchemy.exc import OperationalError

from nilo_chat.channels import ChannelRegistry
from nilo_chat.fanout import FanoutBus
from nilo_chat.sessions import DEFAULT_USERNAME, SessionRegistry, SessionState
from nilo_chat.store import SYSTEM_USERNAME, MessageStore


def _registry(store: MessageStore, channels: ChannelRegistry | None = None, **kwargs) -> SessionRegistry:
    channels = channels or ChannelRegistry()
    return SessionRegistry(registry=channels, store=store, bus=FanoutBus(channels, store), **kwargs)


@pytest.fixture
def sessions(isolated_env) -> SessionRegistry:
    return _registry(MessageStore())


@pytest.mark.asyncio
async def test_connect_activates_and_replays_history(sessions, emitter_factory):
    await sessions.store.append("Old", "earlier", "general")
    emit = emitter_factory()
    session = sessions.open("s1", emit)
    assert session.state is SessionState.CONNECTING
    assert session.username == DEFAULT_USERNAME

    await session.connect("Ana", "general")

    assert session.state is SessionState.ACTIVE
    assert session.active_channel == "general"
    assert session.joined == {"general"}
    (history,) = emit.of("message_history")
    assert [row["message"] for row in history] == ["earlier"]


@pytest.mark.asyncio
async def test_connect_with_invalid_channel_reports_error(sessions, emitter_factory):
    emit = emitter_factory()
    session = sessions.open("s1", emit)
    await session.connect("Ana", "bogus")
    assert session.state is SessionState.CONNECTING
    (error,) = emit.of("error")
    assert "Invalid channel" in error["message"]
    assert emit.of("message_history") == []


@pytest.mark.asyncio
async def test_two_sessions_receive_identical_delivery(sessions, emitter_factory):
    emit_a, emit_b = emitter_factory(), emitter_factory()
    a = sessions.open("a", emit_a)
    b = sessions.open("b", emit_b)
    await a.connect("Ana", "general")
    await b.connect("Ben", "general")

    stored = await a.submit_message("hello")

    assert stored is not None
    assert emit_a.of("chat_message") == emit_b.of("chat_message") == [stored.to_payload()]
    history = await sessions.store.history("general", 10)
    assert [m.text for m in history] == ["hello"]


@pytest.mark.asyncio
async def test_live_delivery_ignores_active_channel(sessions, emitter_factory):
    emit_a, emit_b = emitter_factory(), emitter_factory()
    a = sessions.open("a", emit_a)
    b = sessions.open("b", emit_b)
    await a.connect("Ana", "general")
    await b.connect("Ben", "feedback")

    await a.submit_message("cross-channel", "general")

    assert [p["channel"] for p in emit_b.of("chat_message")] == ["general"]


@pytest.mark.asyncio
async def test_switch_channel_leaves_public_but_keeps_direct(isolated_env, emitter_factory):
    channels = ChannelRegistry(direct=["dm_self", "dm_steve"])
    sessions = _registry(MessageStore(), channels)
    await sessions.store.append("Ana", "growth note", "growth")
    emit = emitter_factory()
    session = sessions.open("s1", emit)
    await session.connect("Ana", "general")
    assert session.joined == {"general", "dm_self", "dm_steve"}
    emit.clear()

    await session.switch_channel("growth")
    assert session.joined == {"growth", "dm_self", "dm_steve"}
    assert session.active_channel == "growth"
    (history,) = emit.of("message_history")
    assert [row["message"] for row in history] == ["growth note"]

    await session.switch_channel("dm_steve")
    assert session.joined == {"dm_steve", "dm_self"}
    assert session.active_channel == "dm_steve"


@pytest.mark.asyncio
async def test_switch_to_invalid_channel_keeps_state(sessions, emitter_factory):
    emit = emitter_factory()
    session = sessions.open("s1", emit)
    await session.connect("Ana", "general")
    await session.switch_channel("bogus")
    assert session.active_channel == "general"
    assert session.joined == {"general"}
    assert "Invalid channel" in emit.of("error")[0]["message"]


@pytest.mark.asyncio
async def test_invalid_submit_reports_error_without_store_write(sessions, emitter_factory):
    emit = emitter_factory()
    session = sessions.open("s1", emit)
    await session.connect("Ana", "general")
    assert await session.submit_message("", "general") is None
    assert await session.submit_message("hi", "bogus") is None
    messages = [e["message"] for e in emit.of("error")]
    assert messages[0] == "Message cannot be empty"
    assert messages[1].startswith('Invalid channel "bogus"')
    assert await sessions.store.count("general") == 0


@pytest.mark.asyncio
async def test_rename_notifies_peers_but_not_renamer(sessions, emitter_factory):
    emit_a, emit_b, emit_c = emitter_factory(), emitter_factory(), emitter_factory()
    a = sessions.open("a", emit_a)
    b = sessions.open("b", emit_b)
    c = sessions.open("c", emit_c)
    await a.connect("Ana", "general")
    await b.connect("Ben", "general")
    await c.connect("Cy", "growth")

    stored = await a.rename("Ana", "Anabel")

    assert a.username == "Anabel"
    assert stored is not None
    assert stored.username == SYSTEM_USERNAME
    assert stored.text == "Ana changed their username to Anabel"
    assert emit_a.of("chat_message") == []
    assert [p["message"] for p in emit_b.of("chat_message")] == [stored.text]
    assert emit_c.of("chat_message") == []
    history = await sessions.store.history("general", 10)
    assert [m.text for m in history] == [stored.text]


@pytest.mark.asyncio
async def test_rename_requires_new_name(sessions, emitter_factory):
    emit = emitter_factory()
    session = sessions.open("s1", emit)
    await session.connect("Ana", "general")
    assert await session.rename("Ana", "  ") is None
    assert session.username == "Ana"
    assert emit.of("error") == [{"message": "Username is required"}]


@pytest.mark.asyncio
async def test_first_visit_greeting_goes_only_to_new_user(isolated_env, emitter_factory):
    channels = ChannelRegistry(direct=["dm_steve"])
    sessions = _registry(MessageStore(), channels, greeter_name="steve", greeter_channel="dm_steve")
    emit_new, emit_other = emitter_factory(), emitter_factory()
    other = sessions.open("other", emit_other)
    await other.connect("Ben", "general")
    newcomer = sessions.open("new", emit_new)

    await newcomer.connect("Ana", "general", returning=False)

    (greeting,) = emit_new.of("chat_message")
    assert greeting["username"] == "steve"
    assert greeting["channel"] == "dm_steve"
    assert "Hello Ana!" in greeting["message"]
    assert emit_other.of("chat_message") == []
    assert await sessions.store.count("dm_steve") == 0


@pytest.mark.asyncio
async def test_disconnect_stops_delivery_and_is_reentrant(sessions, emitter_factory):
    emit_a, emit_b = emitter_factory(), emitter_factory()
    a = sessions.open("a", emit_a)
    b = sessions.open("b", emit_b)
    await a.connect("Ana", "general")
    await b.connect("Ben", "general")

    closed = sessions.close("a")
    assert closed is a
    assert a.state is SessionState.DISCONNECTED
    assert "a" not in sessions
    a.disconnect()
    assert sessions.close("a") is None

    await b.submit_message("after")
    assert emit_a.of("chat_message") == []
    assert await a.submit_message("ghost") is None
    assert sessions.usernames() == ["Ben"]
    assert len(sessions) == 1


class GatedStore(MessageStore):
    """Holds every append until ``gate`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def append(self, username, text, channel):
        self.entered.set()
        await self.gate.wait()
        return await super().append(username, text, channel)


@pytest.mark.asyncio
async def test_publish_in_flight_completes_after_sender_disconnects(isolated_env, emitter_factory):
    store = GatedStore()
    sessions = _registry(store)
    emit_a, emit_b = emitter_factory(), emitter_factory()
    a = sessions.open("a", emit_a)
    b = sessions.open("b", emit_b)
    store.gate.set()
    await a.connect("Ana", "general")
    await b.connect("Ben", "general")
    store.gate.clear()
    store.entered.clear()

    pending = asyncio.create_task(a.submit_message("last words"))
    await store.entered.wait()
    sessions.close("a")
    store.gate.set()
    stored = await pending

    assert stored is not None
    assert emit_b.of("chat_message") == [stored.to_payload()]
    assert emit_a.of("chat_message") == []
    history = await store.history("general", 10)
    assert [m.text for m in history] == ["last words"]


@asynccontextmanager
async def _broken_session():
    raise OperationalError("INSERT", {}, Exception("disk I/O error"))
    yield  # pragma: no cover


@pytest.mark.asyncio
async def test_storage_failure_is_reported_and_session_survives(emitter_factory):
    sessions = _registry(MessageStore(session_factory=_broken_session))
    emit = emitter_factory()
    session = sessions.open("s1", emit)

    await session.connect("Ana", "general")
    assert session.state is SessionState.ACTIVE
    assert emit.of("error") == [{"message": "Failed to load history"}]

    emit.clear()
    assert await session.submit_message("hi") is None
    assert emit.of("error") == [{"message": "Failed to save message"}]
    assert emit.of("chat_message") == []
