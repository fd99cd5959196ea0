"""Exception types shared by the store, fanout, gateway and bot client."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for nilo-chat failures."""


class InvalidChannel(ChatError, ValueError):
    """Raised when a write, join or history fetch names an unknown channel."""

    def __init__(self, channel: object, valid: list[str] | tuple[str, ...] = ()) -> None:
        self.channel = channel
        self.valid = tuple(valid)
        label = f'"{channel}"' if channel else "(none)"
        message = f"Invalid channel {label}."
        if self.valid:
            message += f" Must be one of: {', '.join(self.valid)}"
        super().__init__(message)


class MessageValidationError(ChatError, ValueError):
    """Raised for empty or oversized message text and missing usernames."""


class StorageFailure(ChatError, RuntimeError):
    """The message or key store could not complete a read or write."""


class NotConnected(ChatError, RuntimeError):
    """A bot operation was attempted while the socket is down."""

    def __init__(self, message: str = "Not connected") -> None:
        super().__init__(message)


class BotConnectionError(ChatError, ConnectionError):
    """The first connection attempt failed before a handshake completed."""
