"""API key generation, hashing and persistence for agent callers."""

from __future__ import annotations

import hashlib
import secrets
from contextlib import AbstractAsyncContextManager

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import ensure_schema, get_session
from .errors import StorageFailure
from .models import ApiKey
from .store import SessionFactory

logger = structlog.get_logger("auth")


def hash_key(raw_key: str) -> str:
    """SHA-256 hex digest; keys are high-entropy so a fast hash is sufficient."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_key() -> str:
    """Return a new 64-character hex secret (32 random bytes)."""
    return secrets.token_hex(32)


def matches_admin_key(raw_key: str | None, admin_key: str | None) -> bool:
    if not raw_key or not admin_key:
        return False
    return secrets.compare_digest(raw_key.encode("utf-8"), admin_key.encode("utf-8"))


class ApiKeyStore:
    """Agent credentials; only the hash of a secret is ever stored."""

    def __init__(self, session_factory: SessionFactory | None = None) -> None:
        self._session_factory = session_factory

    def _session(self) -> AbstractAsyncContextManager[AsyncSession]:
        factory = self._session_factory or get_session
        return factory()

    async def _prepare(self) -> None:
        if self._session_factory is None:
            await ensure_schema()

    async def create(self, agent_name: str) -> tuple[ApiKey, str]:
        """Persist a new key and return it with the raw secret (shown once)."""
        raw = generate_key()
        record = ApiKey(agent_name=agent_name, key_hash=hash_key(raw))
        try:
            await self._prepare()
            async with self._session() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
        except SQLAlchemyError as exc:
            logger.error("key_create_failed", agent_name=agent_name, error=str(exc))
            raise StorageFailure(f"Failed to create API key: {exc}") from exc
        logger.info("key_created", key_id=record.id, agent_name=agent_name)
        return record, raw

    async def resolve(self, raw_key: str) -> ApiKey | None:
        digest = hash_key(raw_key)
        try:
            await self._prepare()
            async with self._session() as session:
                result = await session.execute(select(ApiKey).where(ApiKey.key_hash == digest))
                return result.scalars().first()
        except SQLAlchemyError as exc:
            logger.error("key_lookup_failed", error=str(exc))
            raise StorageFailure(f"Failed to look up API key: {exc}") from exc

    async def list_keys(self) -> list[ApiKey]:
        try:
            await self._prepare()
            async with self._session() as session:
                result = await session.execute(select(ApiKey).order_by(ApiKey.id))
                return list(result.scalars().all())
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to list API keys: {exc}") from exc

    async def get(self, key_id: int) -> ApiKey | None:
        try:
            await self._prepare()
            async with self._session() as session:
                return await session.get(ApiKey, key_id)
        except SQLAlchemyError as exc:
            raise StorageFailure(f"Failed to read API key {key_id}: {exc}") from exc

    async def delete(self, key_id: int) -> bool:
        """Remove a key; returns False when no such id exists."""
        try:
            await self._prepare()
            async with self._session() as session:
                record = await session.get(ApiKey, key_id)
                if record is None:
                    return False
                await session.delete(record)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("key_delete_failed", key_id=key_id, error=str(exc))
            raise StorageFailure(f"Failed to delete API key {key_id}: {exc}") from exc
        logger.info("key_revoked", key_id=key_id)
        return True
