from __future__ import annotations

import asyncio
from typing import Any

import pytest
import socketio

from nilo_chat import bot as bot_module
from nilo_chat.bot import BotClient, BotState, ReconnectPolicy
from nilo_chat.channels import ChannelRegistry
from nilo_chat.errors import BotConnectionError, InvalidChannel, NotConnected


class FakeSocket:
    """Stands in for socketio.AsyncClient; ``failures`` connect attempts raise first."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.handlers: dict[str, Any] = {}
        self.emitted: list[tuple[str, Any]] = []
        self.connect_calls = 0
        self.disconnected = False
        self.gate: asyncio.Event | None = None

    def on(self, event: str, handler: Any) -> None:
        self.handlers[event] = handler

    async def connect(self, url: str, **kwargs: Any) -> None:
        self.connect_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.failures > 0:
            self.failures -= 1
            raise socketio.exceptions.ConnectionError("refused")

    async def emit(self, event: str, data: Any = None, **kwargs: Any) -> None:
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self.disconnected = True
        await self.handlers["disconnect"]()

    async def push(self, event: str, data: Any = None) -> None:
        handler = self.handlers[event]
        if data is None:
            await handler()
        else:
            await handler(data)


def _bot(fake: FakeSocket, **kwargs: Any) -> BotClient:
    return BotClient("http://localhost:3000/", "TestBot", client_factory=lambda: fake, **kwargs)


def test_constructor_requires_url_and_username():
    with pytest.raises(ValueError, match="server_url is required"):
        BotClient("", "Bot")
    with pytest.raises(ValueError, match="username is required"):
        BotClient("http://localhost:3000", "")
    with pytest.raises(InvalidChannel):
        BotClient("http://localhost:3000", "Bot", channel="bogus")


def test_reconnect_policy_doubles_then_caps():
    policy = ReconnectPolicy(max_attempts=10, delay=2.0, delay_max=30.0)
    assert [policy.delay_for(n) for n in range(1, 7)] == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


@pytest.mark.asyncio
async def test_connect_announces_identity():
    fake = FakeSocket()
    bot = _bot(fake)
    assert bot.state is BotState.DISCONNECTED
    await bot.connect()
    assert bot.connected
    assert bot.state is BotState.CONNECTED
    assert fake.emitted == [
        ("user_connected", {"username": "TestBot", "channel": "general", "isReturningUser": True})
    ]


@pytest.mark.asyncio
async def test_connect_rejects_before_handshake():
    fake = FakeSocket(failures=1)
    bot = _bot(fake)
    with pytest.raises(BotConnectionError, match="Connection failed"):
        await bot.connect()
    assert bot.state is BotState.DISCONNECTED
    assert not bot.connected
    assert fake.emitted == []


@pytest.mark.asyncio
async def test_operations_require_connection():
    bot = _bot(FakeSocket())
    with pytest.raises(NotConnected, match="Not connected"):
        await bot.send_message("general", "hi")
    with pytest.raises(NotConnected):
        await bot.join_channel("growth")


@pytest.mark.asyncio
async def test_send_message_switches_channel_first():
    fake = FakeSocket()
    bot = _bot(fake)
    await bot.connect()
    fake.emitted.clear()

    await bot.send_message("feedback", "bug report")
    await bot.send_message("feedback", "again")

    assert fake.emitted == [
        ("join_channel", {"channel": "feedback"}),
        ("chat_message", {"username": "TestBot", "message": "bug report", "channel": "feedback"}),
        ("chat_message", {"username": "TestBot", "message": "again", "channel": "feedback"}),
    ]
    assert bot.current_channel == "feedback"


@pytest.mark.asyncio
async def test_invalid_channel_rejected_before_emit():
    fake = FakeSocket()
    bot = _bot(fake)
    await bot.connect()
    fake.emitted.clear()
    with pytest.raises(InvalidChannel):
        await bot.send_message("bogus", "hi")
    with pytest.raises(InvalidChannel):
        await bot.join_channel("bogus")
    assert fake.emitted == []
    assert bot.current_channel == "general"


@pytest.mark.asyncio
async def test_listeners_are_additive_and_may_be_async():
    fake = FakeSocket()
    bot = _bot(fake)
    seen: list[tuple[str, Any]] = []

    async def async_listener(msg):
        seen.append(("async", msg["message"]))

    bot.on_message(lambda msg: seen.append(("sync", msg["message"])))
    bot.on_message(async_listener)
    bot.on_history(lambda history: seen.append(("history", len(history))))
    bot.on_error(lambda err: seen.append(("error", err["message"])))
    await bot.connect()

    await fake.push("chat_message", {"username": "Ana", "message": "hey", "channel": "general"})
    await fake.push("message_history", [{"message": "a"}, {"message": "b"}])
    await fake.push("error", {"message": "Failed to save message"})

    assert seen == [("sync", "hey"), ("async", "hey"), ("history", 2), ("error", "Failed to save message")]


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_others():
    fake = FakeSocket()
    bot = _bot(fake)
    seen: list[str] = []

    def broken(msg):
        raise RuntimeError("listener bug")

    bot.on_message(broken)
    bot.on_message(lambda msg: seen.append(msg["message"]))
    await bot.connect()
    await fake.push("chat_message", {"username": "Ana", "message": "hey", "channel": "general"})
    assert seen == ["hey"]


@pytest.mark.asyncio
async def test_unread_counts_follow_live_messages():
    fake = FakeSocket()
    bot = _bot(fake)
    await bot.connect()
    for _ in range(3):
        await fake.push("chat_message", {"username": "Ana", "message": "x", "channel": "feedback"})
    await fake.push("chat_message", {"username": "Ana", "message": "x", "channel": "general"})
    assert bot.unread.get("feedback") == 3
    assert bot.unread.get("general") == 0
    await bot.join_channel("feedback")
    assert bot.unread.get("feedback") == 0


@pytest.mark.asyncio
async def test_transport_loss_after_handshake_reconnects_without_raising(monkeypatch):
    delays: list[float] = []

    async def fast_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(bot_module.asyncio, "sleep", fast_sleep)
    fake = FakeSocket()
    bot = _bot(fake, policy=ReconnectPolicy(max_attempts=5, delay=1.0, delay_max=3.0))
    await bot.connect()

    fake.failures = 2
    fake.emitted.clear()
    await fake.push("connect_error", {"message": "ECONNRESET"})
    await fake.push("disconnect")
    assert not bot.connected
    await bot._reconnect_task

    assert bot.connected
    assert delays == [1.0, 2.0, 3.0]
    assert fake.emitted == [
        ("user_connected", {"username": "TestBot", "channel": "general", "isReturningUser": True})
    ]


@pytest.mark.asyncio
async def test_reconnect_gives_up_after_max_attempts(monkeypatch):
    async def fast_sleep(delay: float) -> None:
        return None

    monkeypatch.setattr(bot_module.asyncio, "sleep", fast_sleep)
    fake = FakeSocket()
    bot = _bot(fake, policy=ReconnectPolicy(max_attempts=3, delay=1.0, delay_max=1.0))
    await bot.connect()

    fake.failures = 10
    await fake.push("disconnect")
    await bot._reconnect_task

    assert bot.state is BotState.DISCONNECTED
    assert fake.connect_calls == 4


@pytest.mark.asyncio
async def test_explicit_disconnect_does_not_reconnect():
    fake = FakeSocket()
    bot = _bot(fake)
    await bot.connect()
    await bot.disconnect()
    await asyncio.sleep(0)
    assert fake.disconnected
    assert bot.state is BotState.DISCONNECTED
    assert bot._reconnect_task is None
    assert fake.connect_calls == 1


def test_custom_registry_allows_direct_channels():
    registry = ChannelRegistry(direct=["dm_steve"])
    bot = BotClient("http://localhost:3000", "Bot", channel="dm_steve", registry=registry)
    assert bot.current_channel == "dm_steve"
    assert "dm_steve" in bot.unread.counts()


@pytest.mark.asyncio
async def test_connect_during_reconnect_backoff_replaces_the_loop():
    fake = FakeSocket()
    bot = _bot(fake, policy=ReconnectPolicy(max_attempts=3, delay=60.0, delay_max=60.0))
    await bot.connect()
    await fake.push("disconnect")
    pending = bot._reconnect_task
    assert pending is not None and not pending.done()

    await bot.connect()

    assert pending.cancelled()
    assert bot._reconnect_task is None
    assert bot.connected
    assert fake.connect_calls == 2


@pytest.mark.asyncio
async def test_concurrent_connect_waits_for_pending_handshake():
    fake = FakeSocket()
    fake.gate = asyncio.Event()
    bot = _bot(fake)
    first = asyncio.create_task(bot.connect())
    while bot.state is not BotState.CONNECTING:
        await asyncio.sleep(0)

    second = asyncio.create_task(bot.connect())
    await asyncio.sleep(0)
    assert not second.done()

    fake.gate.set()
    await asyncio.gather(first, second)
    assert bot.connected
    assert fake.connect_calls == 1
    assert [event for event, _ in fake.emitted] == ["user_connected"]
