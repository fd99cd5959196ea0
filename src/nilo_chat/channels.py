"""Channel catalog: the closed set of public channels plus configured direct channels."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

from .config import Settings
from .errors import InvalidChannel

ChannelKind = Literal["public", "direct"]

DEFAULT_CHANNEL = "general"

PUBLIC_CHANNELS: tuple[tuple[str, str], ...] = (
    ("welcome", "Say hi — no account needed."),
    ("general", "Announcements and workspace updates."),
    ("growth", "Outreach, experiments, and new user activity."),
    ("feedback", "Bugs, ideas, and feature requests."),
)

DIRECT_GREETINGS: dict[str, tuple[str, str]] = {
    "dm_steve": (
        "steve",
        "Welcome to nilo.chat! I'm steve, your friendly assistant. Let me know if you need any help!",
    ),
    "dm_self": (
        "System",
        (
            "This is your personal space. You can change your username using the /nick command "
            "followed by your new username. Example: /nick SuperCoder"
        ),
    ),
}


@dataclass(slots=True, frozen=True)
class Channel:
    name: str
    kind: ChannelKind
    description: str
    greeting: str | None = None
    greeting_author: str | None = None

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "description": self.description, "kind": self.kind}


class ChannelRegistry:
    """Validates channel names; every write and join goes through here first."""

    def __init__(
        self,
        public: Iterable[tuple[str, str]] = PUBLIC_CHANNELS,
        direct: Iterable[str] = (),
        *,
        default: str = DEFAULT_CHANNEL,
    ) -> None:
        channels: dict[str, Channel] = {}
        for name, description in public:
            channels[name] = Channel(name=name, kind="public", description=description)
        for name in direct:
            if name in channels:
                continue
            author, greeting = DIRECT_GREETINGS.get(name, (None, None))
            channels[name] = Channel(
                name=name,
                kind="direct",
                description=f"Direct messages ({name})",
                greeting=greeting,
                greeting_author=author,
            )
        if default not in channels:
            raise ValueError(f"Default channel '{default}' is not a registered channel.")
        self._channels = channels
        self.default = default

    @classmethod
    def from_settings(cls, settings: Settings) -> ChannelRegistry:
        return cls(direct=settings.chat.direct_channels)

    @property
    def names(self) -> list[str]:
        return list(self._channels)

    @property
    def public(self) -> list[str]:
        return [c.name for c in self._channels.values() if c.kind == "public"]

    @property
    def direct(self) -> list[str]:
        return [c.name for c in self._channels.values() if c.kind == "direct"]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name in self._channels

    def is_valid(self, name: object) -> bool:
        return isinstance(name, str) and name in self._channels

    def is_direct(self, name: object) -> bool:
        channel = self._channels.get(name) if isinstance(name, str) else None
        return channel is not None and channel.kind == "direct"

    def require(self, name: object) -> Channel:
        """Return the channel or raise InvalidChannel listing the valid names."""
        if not isinstance(name, str) or name not in self._channels:
            raise InvalidChannel(name, self.names)
        return self._channels[name]

    def describe(self, name: str) -> str:
        return self.require(name).description

    def get(self, name: str) -> Channel | None:
        return self._channels.get(name)

    def channels(self) -> list[Channel]:
        return list(self._channels.values())

    def listing(self) -> list[dict[str, str]]:
        return [channel.to_dict() for channel in self._channels.values()]
