"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI/tests): read only os.environ and fall back to defaults.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP transport related settings."""

    host: str
    port: int
    public_base_url: str
    request_log_enabled: bool


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool


@dataclass(slots=True, frozen=True)
class CorsSettings:
    """CORS configuration for the HTTP app and the socket endpoint."""

    enabled: bool
    origins: list[str]
    allow_credentials: bool
    allow_methods: list[str]
    allow_headers: list[str]


@dataclass(slots=True, frozen=True)
class AuthSettings:
    """Agent credential settings."""

    admin_api_key: str | None
    key_registration_open: bool


@dataclass(slots=True, frozen=True)
class ChatSettings:
    """Channel and session behaviour."""

    direct_channels: list[str]
    history_limit: int
    greeter_name: str
    greeter_channel: str | None


@dataclass(slots=True, frozen=True)
class BotSettings:
    """Defaults for the reconnecting bot client."""

    server_url: str
    username: str
    api_key: str | None
    reconnect_attempts: int
    reconnect_delay: float
    reconnect_delay_max: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    database: DatabaseSettings
    cors: CorsSettings
    auth: AuthSettings
    chat: ChatSettings
    bot: BotSettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _csv(name: str, default: str) -> list[str]:
    raw = _decouple_config(name, default=default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    port = _int(_decouple_config("HTTP_PORT", default="3000"), default=3000)
    host = _decouple_config("HTTP_HOST", default="127.0.0.1")
    public_base_url = _decouple_config("PUBLIC_BASE_URL", default=f"http://{host}:{port}").rstrip("/")

    http_settings = HttpSettings(
        host=host,
        port=port,
        public_base_url=public_base_url,
        request_log_enabled=_bool(_decouple_config("HTTP_REQUEST_LOG_ENABLED", default="false"), default=False),
    )

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./nilo_chat.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
    )

    cors_settings = CorsSettings(
        enabled=_bool(_decouple_config("HTTP_CORS_ENABLED", default="false"), default=False),
        origins=_csv("HTTP_CORS_ORIGINS", default=""),
        allow_credentials=_bool(_decouple_config("HTTP_CORS_ALLOW_CREDENTIALS", default="false"), default=False),
        allow_methods=_csv("HTTP_CORS_ALLOW_METHODS", default="*"),
        allow_headers=_csv("HTTP_CORS_ALLOW_HEADERS", default="*"),
    )

    auth_settings = AuthSettings(
        admin_api_key=_decouple_config("ADMIN_API_KEY", default="") or None,
        key_registration_open=_bool(_decouple_config("KEY_REGISTRATION_OPEN", default="true"), default=True),
    )

    chat_settings = ChatSettings(
        direct_channels=_csv("CHAT_DIRECT_CHANNELS", default=""),
        history_limit=max(1, _int(_decouple_config("CHAT_HISTORY_LIMIT", default="500"), default=500)),
        greeter_name=_decouple_config("CHAT_GREETER_NAME", default="steve"),
        greeter_channel=_decouple_config("CHAT_GREETER_CHANNEL", default="") or None,
    )

    bot_settings = BotSettings(
        server_url=_decouple_config("BOT_SERVER_URL", default=public_base_url),
        username=_decouple_config("BOT_USERNAME", default="OpenClaw"),
        api_key=_decouple_config("BOT_API_KEY", default="") or None,
        reconnect_attempts=_int(_decouple_config("BOT_RECONNECT_ATTEMPTS", default="10"), default=10),
        reconnect_delay=_float(_decouple_config("BOT_RECONNECT_DELAY", default="2.0"), default=2.0),
        reconnect_delay_max=_float(_decouple_config("BOT_RECONNECT_DELAY_MAX", default="30.0"), default=30.0),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        database=database_settings,
        cors=cors_settings,
        auth=auth_settings,
        chat=chat_settings,
        bot=bot_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
