"""Durable, append-only per-channel message log backed by SQLModel."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

import structlog
from sqlalchemy import desc, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .channels import ChannelRegistry
from .db import ensure_schema, get_session
from .errors import StorageFailure
from .models import StoredMessage, _utcnow_naive, iso_timestamp, parse_timestamp

SYSTEM_USERNAME = "System"

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

logger = structlog.get_logger("store")


def format_line(message: StoredMessage) -> str:
    """Line-oriented record shape: ``timestamp|username|message``."""
    return f"{iso_timestamp(message.timestamp)}|{message.username}|{message.text}"


def parse_line(line: str, channel: str) -> StoredMessage | None:
    """Parse one legacy log line; the message part may itself contain ``|``."""
    stripped = line.rstrip("\r\n")
    if not stripped.strip():
        return None
    parts = stripped.split("|", 2)
    if len(parts) != 3:
        return None
    raw_ts, username, text = parts
    try:
        timestamp = parse_timestamp(raw_ts)
    except ValueError:
        return None
    return StoredMessage(timestamp=timestamp, username=username, text=text, channel=channel)


@dataclass(slots=True)
class ImportResult:
    imported: int
    skipped: int


class MessageStore:
    """Source of truth for channel history.

    The store assigns the authoritative timestamp when ``append`` is called.
    Callers validate channels before writing; the store does not retry, any
    database error surfaces as :class:`StorageFailure`.
    """

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory
        self._uses_default_db = session_factory is None

    def _session(self) -> AbstractAsyncContextManager[AsyncSession]:
        factory = self._session_factory or get_session
        return factory()

    async def _prepare(self) -> None:
        if self._uses_default_db:
            await ensure_schema()

    async def append(self, username: str, text: str, channel: str) -> StoredMessage:
        message = StoredMessage(timestamp=_utcnow_naive(), username=username, text=text, channel=channel)
        try:
            await self._prepare()
            async with self._session() as session:
                session.add(message)
                await session.commit()
                await session.refresh(message)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("append_failed", channel=channel, error=str(exc))
            raise StorageFailure(f"Failed to store message in '{channel}': {exc}") from exc
        return message

    async def history(self, channel: str, limit: int) -> list[StoredMessage]:
        """Return up to ``limit`` most recent messages, oldest first."""
        if limit < 1:
            return []
        stmt = (
            select(StoredMessage)
            .where(StoredMessage.channel == channel)
            .order_by(desc(StoredMessage.timestamp), desc(StoredMessage.id))
            .limit(limit)
        )
        try:
            await self._prepare()
            async with self._session() as session:
                result = await session.execute(stmt)
                newest_first = list(result.scalars().all())
        except (SQLAlchemyError, OSError) as exc:
            logger.error("history_failed", channel=channel, error=str(exc))
            raise StorageFailure(f"Failed to read history for '{channel}': {exc}") from exc
        newest_first.reverse()
        return newest_first

    async def count(self, channel: str) -> int:
        try:
            await self._prepare()
            async with self._session() as session:
                result = await session.execute(
                    select(func.count()).select_from(StoredMessage).where(StoredMessage.channel == channel)
                )
                return int(result.scalar_one())
        except (SQLAlchemyError, OSError) as exc:
            raise StorageFailure(f"Failed to count messages for '{channel}': {exc}") from exc

    async def seed_greetings(self, registry: ChannelRegistry) -> list[str]:
        """Write each direct channel's greeting into it if the channel is still empty."""
        seeded: list[str] = []
        for channel in registry.channels():
            if channel.kind != "direct" or not channel.greeting:
                continue
            if await self.count(channel.name) > 0:
                continue
            await self.append(channel.greeting_author or SYSTEM_USERNAME, channel.greeting, channel.name)
            seeded.append(channel.name)
        if seeded:
            logger.info("greetings_seeded", channels=seeded)
        return seeded

    async def import_lines(self, channel: str, lines: Iterable[str]) -> ImportResult:
        """Load a legacy ``timestamp|username|message`` log, keeping its timestamps."""
        parsed: list[StoredMessage] = []
        skipped = 0
        for line in lines:
            if not line.strip():
                continue
            message = parse_line(line, channel)
            if message is None:
                skipped += 1
                continue
            parsed.append(message)
        try:
            await self._prepare()
            async with self._session() as session:
                session.add_all(parsed)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            logger.error("import_failed", channel=channel, error=str(exc))
            raise StorageFailure(f"Failed to import log into '{channel}': {exc}") from exc
        logger.info("log_imported", channel=channel, imported=len(parsed), skipped=skipped)
        return ImportResult(imported=len(parsed), skipped=skipped)
