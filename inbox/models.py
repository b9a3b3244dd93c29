"""Data models for the chat inbox: channels, counters, threads, conversations."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum


class Channel(Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    MAX = "max"
    CHATOS = "chatos"
    EMAIL = "email"
    CALLS = "calls"

    @classmethod
    def from_tag(cls, tag) -> Channel | None:
        """Return the channel for a stored tag, or None for empty/unknown tags."""
        if isinstance(tag, Channel):
            return tag
        if not tag:
            return None
        try:
            return cls(str(tag).strip().lower())
        except ValueError:
            return None


# Channels that carry a per-channel profile picture
AVATAR_CHANNELS = (Channel.WHATSAPP, Channel.TELEGRAM, Channel.MAX)


@dataclass(frozen=True)
class ChannelCounters:
    """Per-channel unread counts.  Every channel is always present."""

    whatsapp: int = 0
    telegram: int = 0
    max: int = 0
    chatos: int = 0
    email: int = 0
    calls: int = 0

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"Counter {f.name} must be a non-negative int, got {value!r}")

    @property
    def total(self) -> int:
        return sum(getattr(self, f.name) for f in fields(self))

    def get(self, channel: Channel) -> int:
        return getattr(self, channel.value)

    def adjusted(self, channel: Channel, delta: int) -> ChannelCounters:
        """Return a copy with *delta* applied to one channel, floored at zero."""
        current = getattr(self, channel.value)
        return replace(self, **{channel.value: max(0, current + delta)})

    def to_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict | None) -> ChannelCounters:
        """Build from a ``{channel: count}`` mapping; unknown keys are ignored."""
        data = data or {}
        values = {}
        for f in fields(cls):
            raw = data.get(f.name)
            values[f.name] = max(0, int(raw or 0))
        return cls(**values)

    @classmethod
    def from_row(cls, row, prefix: str = "unread_") -> ChannelCounters:
        """Build from ``unread_whatsapp``-style columns of a summary row."""
        r = dict(row)
        return cls.from_dict({f.name: r.get(f"{prefix}{f.name}") for f in fields(cls)})


@dataclass(frozen=True)
class LastMessage:
    text: str = ""
    timestamp: datetime | None = None
    channel: Channel | None = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "channel": self.channel.value if self.channel else None,
        }


@dataclass(frozen=True)
class MessageRow:
    """A single chat message as stored in ``chat_messages``."""

    id: str
    client_id: str
    text: str = ""
    message_type: str | None = "client"
    messenger_type: str | None = None
    is_read: bool | None = None
    is_outgoing: bool = False
    created_at: datetime | None = None
    system_type: str | None = None
    status: str | None = None
    file_url: str | None = None
    file_name: str | None = None
    file_type: str | None = None
    external_message_id: str | None = None
    call_duration: str | None = None

    @classmethod
    def from_row(cls, row) -> MessageRow:
        """Construct from a sqlite3.Row or dict."""
        r = dict(row)
        is_read = r.get("is_read")
        return cls(
            id=str(r.get("id") or ""),
            client_id=str(r.get("client_id") or ""),
            text=r.get("message_text") or "",
            message_type=r.get("message_type"),
            messenger_type=r.get("messenger_type"),
            is_read=None if is_read is None else bool(is_read),
            is_outgoing=bool(r.get("is_outgoing") or 0),
            created_at=parse_timestamp(r.get("created_at")),
            system_type=r.get("system_type"),
            status=r.get("status"),
            file_url=r.get("file_url"),
            file_name=r.get("file_name"),
            file_type=r.get("file_type"),
            external_message_id=r.get("external_message_id"),
            call_duration=r.get("call_duration"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "message_text": self.text,
            "message_type": self.message_type,
            "messenger_type": self.messenger_type,
            "is_read": self.is_read,
            "is_outgoing": self.is_outgoing,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "system_type": self.system_type,
            "status": self.status,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "external_message_id": self.external_message_id,
            "call_duration": self.call_duration,
        }


@dataclass(frozen=True)
class ConversationThread:
    """Aggregated, per-client view of activity across every channel.

    ``unread_count`` is derived from ``unread_by_channel`` so the two can
    never disagree; ``last_unread_channel`` is None exactly when nothing is
    unread.
    """

    id: str
    display_name: str = ""
    phone: str = ""
    branch: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    avatar_url: str | None = None
    avatar_by_channel: dict[Channel, str | None] = field(default_factory=dict)
    last_message: LastMessage = field(default_factory=LastMessage)
    unread_by_channel: ChannelCounters = field(default_factory=ChannelCounters)
    last_unread_channel: Channel | None = None
    last_message_failed: bool = False

    def __post_init__(self) -> None:
        if self.unread_count == 0 and self.last_unread_channel is not None:
            raise ValueError(f"Thread {self.id}: last_unread_channel set with nothing unread")
        if self.unread_count > 0 and self.last_unread_channel is None:
            raise ValueError(f"Thread {self.id}: unread activity without last_unread_channel")

    @property
    def unread_count(self) -> int:
        return self.unread_by_channel.total

    def with_avatar(self, channel: Channel, url: str | None) -> ConversationThread:
        avatars = dict(self.avatar_by_channel)
        avatars[channel] = url
        return replace(self, avatar_by_channel=avatars)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "phone": self.phone,
            "branch": self.branch,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "avatar_url": self.avatar_url,
            "avatar_by_channel": {ch.value: url for ch, url in self.avatar_by_channel.items()},
            "last_message": self.last_message.to_dict(),
            "unread_count": self.unread_count,
            "unread_by_channel": self.unread_by_channel.to_dict(),
            "last_unread_channel": (
                self.last_unread_channel.value if self.last_unread_channel else None
            ),
            "last_message_failed": self.last_message_failed,
        }


@dataclass(frozen=True)
class ConversationDetail:
    """Assembled data for one open conversation: message window, unread, avatars."""

    client_id: str
    messages: list[MessageRow] = field(default_factory=list)
    has_more: bool = False
    total_count: int = 0
    unread: ChannelCounters = field(default_factory=ChannelCounters)
    last_unread_channel: Channel | None = None
    avatars: dict[Channel, str | None] = field(default_factory=dict)

    @property
    def unread_count(self) -> int:
        return self.unread.total

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "messages": [m.to_dict() for m in self.messages],
            "has_more": self.has_more,
            "total_count": self.total_count,
            "unread_count": self.unread_count,
            "unread_by_channel": self.unread.to_dict(),
            "last_unread_channel": (
                self.last_unread_channel.value if self.last_unread_channel else None
            ),
            "avatars": {ch.value: url for ch, url in self.avatars.items()},
        }


def parse_timestamp(value) -> datetime | None:
    """Parse a stored timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip())
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# Sort key for missing timestamps: older than anything real
EPOCH_MIN = datetime.min.replace(tzinfo=timezone.utc)