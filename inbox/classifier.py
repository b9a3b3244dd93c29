"""Channel classification and inclusion rules for thread and message rows.

Every function here is pure: no I/O, no state, the same input always gives
the same answer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .models import Channel

# Explicit tag columns, checked in order
_TAG_KEYS = ("channel", "messenger_type", "last_messenger_type", "last_unread_messenger")

# Identifier columns used to infer the channel when no tag is present.
# Order is the inference priority: telegram > whatsapp > max.
_ID_KEYS = (
    ("telegram_chat_id", Channel.TELEGRAM),
    ("whatsapp_chat_id", Channel.WHATSAPP),
    ("max_chat_id", Channel.MAX),
)

_NAME_KEYS = ("client_name", "name", "display_name")

# Telegram supergroups and channels live in the -100XXXXXXXXXX id space
TELEGRAM_GROUP_PREFIX = "-100"

# WhatsApp group JIDs
WHATSAPP_GROUP_SUFFIX = "@g.us"

# Lower-case substrings marking community/group chats imported as clients
GROUP_NAME_PATTERNS = (
    "support",
    "community",
    "group chat",
    "| group",
    "residents",
    "find a tutor",
    "tutor requests",
)

# Lower-case substrings marking internal staff threads
SYSTEM_THREAD_PATTERNS = (
    "corporate",
    "teachers",
    "teacher:",
)

# Rows whose text starts with this prefix are written by CRM automation
SYSTEM_MESSAGE_PREFIX = "crm_system_"

# Message types that never count as counterparty activity
SYSTEM_MESSAGE_TYPES = frozenset({"system", "comment"})

# Lower-case markers of automation lines that should not appear as a preview
_PREVIEW_SYSTEM_MARKERS = (
    "crm_system_state_changed",
    'task "',
    "task created",
    "task completed",
    "task cancelled",
    "marked: no reply needed",
    "confirmed payment",
)


@dataclass(frozen=True)
class Classification:
    channel: Channel
    include: bool
    reason: str | None = None


def _text(value) -> str:
    return "" if value is None else str(value).strip()


def resolve_channel(descriptor: Mapping) -> Channel:
    """Resolve the channel of a thread/message descriptor.

    Explicit tag first, then whichever channel identifier is populated
    (telegram > whatsapp > max), then whatsapp.
    """
    for key in _TAG_KEYS:
        channel = Channel.from_tag(descriptor.get(key))
        if channel is not None:
            return channel
    for key, channel in _ID_KEYS:
        if _text(descriptor.get(key)):
            return channel
    return Channel.WHATSAPP


def is_telegram_group(chat_id) -> bool:
    return _text(chat_id).startswith(TELEGRAM_GROUP_PREFIX)


def is_whatsapp_group(chat_id) -> bool:
    return _text(chat_id).lower().endswith(WHATSAPP_GROUP_SUFFIX)


def is_group_chat_name(name) -> bool:
    lower = _text(name).lower()
    if not lower:
        return False
    return any(pattern in lower for pattern in GROUP_NAME_PATTERNS)


def is_system_thread_name(name) -> bool:
    lower = _text(name).lower()
    if not lower:
        return False
    return any(pattern in lower for pattern in SYSTEM_THREAD_PATTERNS)


def _descriptor_name(descriptor: Mapping) -> str:
    for key in _NAME_KEYS:
        value = _text(descriptor.get(key))
        if value:
            return value
    return ""


def classify(descriptor: Mapping) -> Classification:
    """Return the channel and inclusion decision for a raw thread descriptor.

    Group conversations are excluded by identifier convention first, then by
    name pattern; internal staff threads are excluded by name pattern.
    """
    channel = resolve_channel(descriptor)

    if is_telegram_group(descriptor.get("telegram_chat_id")):
        return Classification(channel, False, "telegram_group")
    if is_whatsapp_group(descriptor.get("whatsapp_chat_id")):
        return Classification(channel, False, "whatsapp_group")

    name = _descriptor_name(descriptor)
    if is_group_chat_name(name):
        return Classification(channel, False, "group_name")
    if is_system_thread_name(name):
        return Classification(channel, False, "system_thread")

    return Classification(channel, True)


def is_system_message(message_type, text, system_type=None) -> bool:
    """True for automation rows: system/comment tag, system_type set, or reserved prefix."""
    if (message_type or "").lower() in SYSTEM_MESSAGE_TYPES:
        return True
    if system_type:
        return True
    return _text(text).lower().startswith(SYSTEM_MESSAGE_PREFIX)


def is_system_preview(text) -> bool:
    """True when *text* is an automation line that should not be shown as a preview."""
    lower = _text(text).lower()
    if not lower:
        return False
    return any(marker in lower for marker in _PREVIEW_SYSTEM_MARKERS)


def preview_text(text) -> str:
    """Return the preview for a last message, blanking automation lines."""
    return "" if is_system_preview(text) else _text(text)
