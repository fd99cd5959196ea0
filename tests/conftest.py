from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from nilo_chat.config import clear_settings_cache, get_settings
from nilo_chat.db import reset_database_state
from nilo_chat.hub import build_hub


class RecordingEmitter:
    """Collects (event, payload) pairs a session would send to its socket."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    async def __call__(self, event: str, data: Any) -> None:
        self.events.append((event, data))

    def of(self, event: str) -> list[Any]:
        return [data for name, data in self.events if name == event]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("HTTP_PORT", "8765")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("ADMIN_API_KEY", "admin-secret")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    reset_database_state()
    try:
        yield
    finally:
        clear_settings_cache()
        reset_database_state()
        if db_path.exists():
            db_path.unlink()


@pytest.fixture
def hub(isolated_env):
    return build_hub(get_settings())


@pytest.fixture
def emitter_factory():
    def _make() -> RecordingEmitter:
        return RecordingEmitter()

    return _make
