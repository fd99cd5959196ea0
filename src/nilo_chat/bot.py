"""Reconnecting Socket.IO client used by autonomous agents."""

from __future__ import annotations

import asyncio
import contextlib
import enum
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import socketio
import structlog

from .channels import ChannelRegistry
from .config import Settings, get_settings
from .errors import BotConnectionError, NotConnected
from .unread import UnreadTracker

logger = structlog.get_logger("bot")

Listener = Callable[[Any], Any]


class SocketClient(Protocol):
    """Subset of ``socketio.AsyncClient`` the bot relies on."""

    def on(self, event: str, handler: Callable[..., Any]) -> Any: ...

    async def connect(self, url: str, **kwargs: Any) -> None: ...

    async def emit(self, event: str, data: Any = None, **kwargs: Any) -> None: ...

    async def disconnect(self) -> None: ...


class BotState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(slots=True, frozen=True)
class ReconnectPolicy:
    """Bounded retry schedule: doubling delay capped at ``delay_max``."""

    max_attempts: int = 10
    delay: float = 2.0
    delay_max: float = 30.0

    def delay_for(self, attempt: int) -> float:
        return min(self.delay * 2 ** max(attempt - 1, 0), self.delay_max)

    @classmethod
    def from_settings(cls, settings: Settings) -> ReconnectPolicy:
        return cls(
            max_attempts=settings.bot.reconnect_attempts,
            delay=settings.bot.reconnect_delay,
            delay_max=settings.bot.reconnect_delay_max,
        )


def _default_client() -> SocketClient:
    # Reconnection is driven by BotClient so the retry counter stays observable.
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


class BotClient:
    """Joins channels, sends messages and relays live events to listeners.

    ``connect()`` raises only when the very first handshake fails. After that,
    transport loss is handled by a bounded reconnect loop and is visible to
    callers only through :attr:`connected` and :attr:`state`.
    """

    def __init__(
        self,
        server_url: str,
        username: str,
        *,
        channel: str = "general",
        registry: ChannelRegistry | None = None,
        policy: ReconnectPolicy | None = None,
        client_factory: Callable[[], SocketClient] | None = None,
        wait_timeout: float = 5.0,
    ) -> None:
        if not server_url:
            raise ValueError("server_url is required")
        if not username:
            raise ValueError("username is required")
        self.server_url = server_url.rstrip("/")
        self.username = username
        self._registry = registry or ChannelRegistry()
        self._registry.require(channel)
        self._channel = channel
        self._policy = policy or ReconnectPolicy()
        self._client_factory = client_factory or _default_client
        self._wait_timeout = wait_timeout
        self._client: SocketClient | None = None
        self._state = BotState.DISCONNECTED
        self._handshaken = False
        self._closing = False
        self._reconnect_task: asyncio.Task[None] | None = None
        self._opening: asyncio.Future[None] | None = None
        self._message_listeners: list[Listener] = []
        self._history_listeners: list[Listener] = []
        self._error_listeners: list[Listener] = []
        self.unread = UnreadTracker(self._registry.names, active=channel)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> BotClient:
        resolved = settings or get_settings()
        kwargs.setdefault("registry", ChannelRegistry.from_settings(resolved))
        kwargs.setdefault("policy", ReconnectPolicy.from_settings(resolved))
        return cls(resolved.bot.server_url, resolved.bot.username, **kwargs)

    @property
    def state(self) -> BotState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is BotState.CONNECTED

    @property
    def current_channel(self) -> str:
        return self._channel

    def on_message(self, listener: Listener) -> None:
        self._message_listeners.append(listener)

    def on_history(self, listener: Listener) -> None:
        self._history_listeners.append(listener)

    def on_error(self, listener: Listener) -> None:
        self._error_listeners.append(listener)

    async def connect(self) -> None:
        """Open the socket and announce identity; raises BotConnectionError on first failure."""
        if self._state is BotState.CONNECTED:
            return
        if self._state is BotState.CONNECTING and self._opening is not None:
            await asyncio.shield(self._opening)
            return
        # A reconnect loop waiting between attempts would race this handshake.
        await self._stop_reconnect()
        self._closing = False
        await self._open()

    async def join_channel(self, channel: str) -> None:
        client = self._require_client()
        self._registry.require(channel)
        self._channel = channel
        self.unread.activate(channel)
        await client.emit("join_channel", {"channel": channel})

    async def send_message(self, channel: str, text: str) -> None:
        client = self._require_client()
        self._registry.require(channel)
        if channel != self._channel:
            await self.join_channel(channel)
        await client.emit("chat_message", {"username": self.username, "message": text, "channel": channel})

    async def change_username(self, new_username: str) -> None:
        client = self._require_client()
        if not new_username or new_username == self.username:
            return
        old, self.username = self.username, new_username
        await client.emit(
            "username_change",
            {"oldUsername": old, "newUsername": new_username, "channel": self._channel},
        )

    async def disconnect(self) -> None:
        self._closing = True
        await self._stop_reconnect()
        client = self._client
        self._state = BotState.DISCONNECTED
        if client is not None:
            await client.disconnect()

    def _require_client(self) -> SocketClient:
        if self._state is not BotState.CONNECTED or self._client is None:
            raise NotConnected()
        return self._client

    def _build_client(self) -> SocketClient:
        client = self._client_factory()
        client.on("disconnect", self._handle_disconnect)
        client.on("connect_error", self._handle_connect_error)
        client.on("chat_message", self._handle_message)
        client.on("message_history", self._handle_history)
        client.on("error", self._handle_error)
        return client

    async def _open(self) -> None:
        """Run one handshake as a task so concurrent connect() calls can share it."""
        opening = asyncio.ensure_future(self._handshake())
        self._opening = opening
        try:
            await opening
        finally:
            if self._opening is opening:
                self._opening = None

    async def _stop_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _handshake(self) -> None:
        if self._client is None:
            self._client = self._build_client()
        self._state = BotState.CONNECTING
        try:
            await self._client.connect(
                self.server_url,
                transports=["websocket", "polling"],
                wait_timeout=self._wait_timeout,
            )
        except asyncio.CancelledError:
            self._state = BotState.DISCONNECTED
            raise
        except (socketio.exceptions.ConnectionError, OSError) as exc:
            self._state = BotState.DISCONNECTED
            raise BotConnectionError(f"Connection failed: {exc}") from exc
        self._state = BotState.CONNECTED
        self._handshaken = True
        logger.info("bot_connected", username=self.username, channel=self._channel, url=self.server_url)
        self.unread.activate(self._channel)
        await self._client.emit(
            "user_connected",
            {"username": self.username, "channel": self._channel, "isReturningUser": True},
        )

    async def _handle_disconnect(self, *args: Any) -> None:
        if self._closing:
            self._state = BotState.DISCONNECTED
            return
        if self._state is BotState.DISCONNECTED:
            return
        self._state = BotState.DISCONNECTED
        logger.warning("bot_disconnected", username=self.username)
        if self._handshaken and (self._reconnect_task is None or self._reconnect_task.done()):
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        for attempt in range(1, self._policy.max_attempts + 1):
            delay = self._policy.delay_for(attempt)
            logger.info("bot_reconnect_scheduled", attempt=attempt, delay=delay)
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                await self._open()
            except BotConnectionError as exc:
                logger.warning("bot_reconnect_failed", attempt=attempt, error=str(exc))
                continue
            logger.info("bot_reconnected", attempt=attempt)
            return
        logger.error("bot_reconnect_exhausted", attempts=self._policy.max_attempts)

    async def _handle_connect_error(self, data: Any = None) -> None:
        logger.warning("bot_connect_error", error=str(data), handshaken=self._handshaken)

    async def _handle_message(self, message: Any) -> None:
        if isinstance(message, dict):
            self.unread.observe(message)
        await self._dispatch(self._message_listeners, message)

    async def _handle_history(self, history: Any) -> None:
        await self._dispatch(self._history_listeners, history)

    async def _handle_error(self, error: Any) -> None:
        await self._dispatch(self._error_listeners, error)

    async def _dispatch(self, listeners: list[Listener], payload: Any) -> None:
        for listener in list(listeners):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("bot_listener_failed", listener=getattr(listener, "__name__", repr(listener)))
