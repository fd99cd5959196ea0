"""HTTP transport: FastAPI gateway plus the Socket.IO live endpoint in one ASGI app."""

from __future__ import annotations

import argparse
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import socketio
import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from .api import build_api_router
from .config import Settings, get_settings
from .db import ensure_schema, get_session
from .errors import StorageFailure
from .hub import ChatHub, build_hub
from .realtime import build_socket_server

__all__ = ["build_asgi_app", "build_http_app", "main"]

_LOGGING_CONFIGURED = False


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "channel", "sid"]))
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)
    _LOGGING_CONFIGURED = True


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, *, rich_enabled: bool) -> None:
        super().__init__(app)
        self._rich_enabled = rich_enabled
        self._console = Console(width=100, stderr=True)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = int((time.perf_counter() - start) * 1000)
        status_code = getattr(response, "status_code", 0)
        client = request.client.host if request.client else "-"
        structlog.get_logger("http").info(
            "request",
            method=request.method,
            path=request.url.path,
            status=status_code,
            duration_ms=dur_ms,
            client_ip=client,
        )
        if self._rich_enabled:
            title = Text.assemble(
                (request.method, "bold blue"),
                "  ",
                (request.url.path, "bold white"),
                "  ",
                (f"{status_code}", "bold green" if 200 <= status_code < 400 else "bold red"),
                "  ",
                (f"{dur_ms}ms", "bold yellow"),
            )
            self._console.print(Panel(Text.assemble(("client: ", "cyan"), (client, "white")), title=title, border_style="dim"))
        return response


async def readiness_check() -> None:
    await ensure_schema()
    async with get_session() as session:
        await session.execute(text("SELECT 1"))


def build_http_app(settings: Settings | None = None, hub: ChatHub | None = None) -> FastAPI:
    """REST gateway and health checks; ``app.state.hub`` holds the shared objects."""
    settings = settings or get_settings()
    _configure_logging(settings)
    hub = hub or build_hub(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await ensure_schema(settings)
        try:
            await hub.store.seed_greetings(hub.channels)
        except StorageFailure as exc:
            structlog.get_logger("startup").error("greeting_seed_failed", error=str(exc))
        structlog.get_logger("startup").info(
            "server_ready", channels=hub.channels.names, environment=settings.environment
        )
        yield

    fastapi_app = FastAPI(title="nilo-chat", lifespan=lifespan)
    fastapi_app.state.hub = hub

    if settings.http.request_log_enabled:
        fastapi_app.add_middleware(RequestLoggingMiddleware, rich_enabled=settings.log_rich_enabled)

    # CORS last so it can handle preflight and attach headers to errors
    if settings.cors.enabled:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.origins or ["*"],
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods or ["*"],
            allow_headers=settings.cors.allow_headers or ["*"],
        )

    @fastapi_app.get("/health/liveness")
    async def liveness() -> JSONResponse:
        return JSONResponse({"status": "alive", "sessions": len(hub.sessions)})

    @fastapi_app.get("/health/readiness")
    async def readiness() -> JSONResponse:
        try:
            await readiness_check()
        except Exception as exc:
            structlog.get_logger("health").error("readiness_error", error=str(exc))
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return JSONResponse({"status": "ready"})

    fastapi_app.include_router(build_api_router())
    return fastapi_app


def build_asgi_app(settings: Settings | None = None, hub: ChatHub | None = None) -> socketio.ASGIApp:
    """Socket.IO endpoint at ``/socket.io/`` wrapping the REST app; both share one hub."""
    settings = settings or get_settings()
    hub = hub or build_hub(settings)
    fastapi_app = build_http_app(settings, hub)
    sio = build_socket_server(hub)
    return socketio.ASGIApp(sio, other_asgi_app=fastapi_app)


def main() -> None:
    """Run the combined server using settings-specified host/port."""

    parser = argparse.ArgumentParser(description="Run the nilo-chat server")
    parser.add_argument("--host", help="Override HTTP host", default=None)
    parser.add_argument("--port", help="Override HTTP port", type=int, default=None)
    parser.add_argument("--log-level", help="Uvicorn log level", default="info")
    args = parser.parse_args()

    settings = get_settings()
    host = args.host or settings.http.host
    port = args.port or settings.http.port

    app = build_asgi_app(settings)
    with contextlib.suppress(KeyboardInterrupt):
        uvicorn.run(app, host=host, port=port, log_level=args.log_level)


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
