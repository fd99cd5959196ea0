"""SQLModel tables for channel messages and agent API keys."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Index
from sqlmodel import Field, SQLModel


def _utcnow_naive() -> datetime:
    """Return current UTC time as a naive datetime for SQLite compatibility.

    SQLite stores datetimes without timezone info. Using naive UTC datetimes
    throughout keeps ordering comparisons consistent across drivers.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def iso_timestamp(dt: datetime) -> str:
    """Render a stored (naive UTC) datetime as ISO-8601 with millisecond precision."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="milliseconds") + "Z"


def parse_timestamp(raw: str) -> datetime:
    """Parse an ISO-8601 instant (``Z`` or offset suffix) into naive UTC."""
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class StoredMessage(SQLModel, table=True):
    __tablename__ = "messages"
    __table_args__ = (Index("idx_messages_channel_ts", "channel", "timestamp", "id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=_utcnow_naive)
    username: str = Field(max_length=255)
    text: str = Field(max_length=2000)
    channel: str = Field(index=True, max_length=64)

    def to_payload(self) -> dict[str, Any]:
        """Wire shape used for live delivery, history replay and the REST API."""
        return {
            "timestamp": iso_timestamp(self.timestamp),
            "username": self.username,
            "message": self.text,
            "channel": self.channel,
        }


class ApiKey(SQLModel, table=True):
    __tablename__ = "api_keys"

    id: Optional[int] = Field(default=None, primary_key=True)
    agent_name: str = Field(index=True, max_length=128)
    key_hash: str = Field(index=True, unique=True, max_length=64)
    created_at: datetime = Field(default_factory=_utcnow_naive)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_name": self.agent_name,
            "created_at": iso_timestamp(self.created_at),
        }
