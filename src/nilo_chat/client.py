"""Agent-side helpers: REST gateway client and a self-filtering live feed."""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from .bot import BotClient
from .config import Settings, get_settings
from .errors import ChatError

logger = structlog.get_logger("client")


class GatewayError(ChatError):
    """Non-2xx response from the REST gateway."""

    def __init__(self, method: str, path: str, status_code: int, body: str) -> None:
        super().__init__(f"API {method} {path} failed ({status_code}): {body}")
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body


class GatewayClient:
    """Thin async wrapper over the ``/api`` routes using one pooled httpx client."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        username: str = "OpenClaw",
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        self.username = username
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout, transport=transport
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs: Any) -> GatewayClient:
        resolved = settings or get_settings()
        return cls(resolved.bot.server_url, resolved.bot.api_key, resolved.bot.username, **kwargs)

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._http.request(method, path, **kwargs)
        if response.is_error:
            logger.warning("gateway_request_failed", method=method, path=path, status=response.status_code)
            raise GatewayError(method, path, response.status_code, response.text)
        return response.json()

    async def list_channels(self) -> list[dict[str, str]]:
        return await self._request("GET", "/api/channels")

    async def read_messages(self, channel: str, limit: int = 50) -> list[dict[str, Any]]:
        return await self._request("GET", f"/api/messages/{quote(channel, safe='')}", params={"limit": limit})

    async def send_message(self, channel: str, message: str, username: str | None = None) -> dict[str, Any]:
        body = {"channel": channel, "message": message, "username": username or self.username}
        return await self._request("POST", "/api/messages", json=body)

    async def create_key(self, agent_name: str) -> dict[str, Any]:
        return await self._request("POST", "/api/keys", json={"agent_name": agent_name})

    async def list_keys(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/api/keys")

    async def delete_key(self, key_id: int) -> dict[str, Any]:
        return await self._request("DELETE", f"/api/keys/{key_id}")


class LiveFeed:
    """Forwards live messages from a bot connection, skipping the bot's own posts."""

    def __init__(self, bot: BotClient) -> None:
        self.bot = bot
        self._callback: Callable[[dict[str, Any]], Any] | None = None
        self._registered = False

    @property
    def running(self) -> bool:
        return self._callback is not None and self.bot.connected

    async def start(self, callback: Callable[[dict[str, Any]], Any]) -> None:
        self._callback = callback
        if not self._registered:
            self.bot.on_message(self._forward)
            self._registered = True
        if not self.bot.connected:
            await self.bot.connect()

    async def stop(self) -> None:
        self._callback = None
        await self.bot.disconnect()

    async def _forward(self, message: Any) -> None:
        callback = self._callback
        if callback is None or not isinstance(message, dict):
            return
        if message.get("username") == self.bot.username:
            return
        result = callback(message)
        if inspect.isawaitable(result):
            await result
