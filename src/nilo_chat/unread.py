"""Client-local unread counters derived from the live delivery stream."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any


class UnreadTracker:
    """Per-channel unread counts relative to the active channel.

    Every live message for a channel other than the active one bumps that
    channel's counter. Messages with no channel count as the active channel
    and leave every counter alone.
    """

    def __init__(self, channels: Iterable[str] = (), active: str | None = None) -> None:
        self._counts: dict[str, int] = {}
        self._active = active
        self.reset(channels)

    @property
    def active(self) -> str | None:
        return self._active

    def observe(self, message: Mapping[str, Any]) -> None:
        channel = message.get("channel")
        if not channel or channel == self._active:
            return
        self._counts[channel] = self._counts.get(channel, 0) + 1

    def activate(self, channel: str) -> None:
        self._active = channel
        self._counts[channel] = 0

    def reset(self, channels: Iterable[str] | None = None) -> None:
        """Start over with zeroed counters for ``channels`` (or the known set)."""
        names = list(channels) if channels is not None else list(self._counts)
        self._counts = {name: 0 for name in names}
        if self._active is not None:
            self._counts[self._active] = 0

    def get(self, channel: str) -> int:
        return self._counts.get(channel, 0)

    def counts(self) -> dict[str, int]:
        return dict(self._counts)

    @property
    def total(self) -> int:
        return sum(self._counts.values())
