"""Unread counting per channel for one client conversation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from .classifier import is_system_message, resolve_channel
from .models import EPOCH_MIN, Channel, ChannelCounters, MessageRow


@dataclass(frozen=True)
class UnreadSummary:
    by_channel: ChannelCounters = field(default_factory=ChannelCounters)
    last_unread_channel: Channel | None = None
    last_unread_at: datetime | None = None

    @property
    def total(self) -> int:
        return self.by_channel.total


def message_channel(row: MessageRow) -> Channel:
    return resolve_channel({"messenger_type": row.messenger_type})


def is_unread(row: MessageRow) -> bool:
    """Unread, inbound, and not written by automation.

    A missing read flag counts as unread.
    """
    if row.is_read:
        return False
    if row.is_outgoing:
        return False
    if ((row.message_type or "").strip().lower() or "client") != "client":
        return False
    return not is_system_message(row.message_type, row.text, row.system_type)


def count(rows: Iterable[MessageRow]) -> UnreadSummary:
    """Count unread rows per channel and find the channel of the newest one.

    Ties on timestamp keep the first row seen, so callers should pass rows
    already ordered newest first.
    """
    counters: dict[Channel, int] = {}
    last_channel: Channel | None = None
    last_at: datetime | None = None

    for row in rows:
        if not is_unread(row):
            continue
        channel = message_channel(row)
        counters[channel] = counters.get(channel, 0) + 1
        ts = row.created_at or EPOCH_MIN
        if last_channel is None or ts > last_at:
            last_channel = channel
            last_at = ts

    by_channel = ChannelCounters.from_dict({ch.value: n for ch, n in counters.items()})
    if last_at == EPOCH_MIN:
        last_at = None
    return UnreadSummary(by_channel, last_channel, last_at)


def add_missed_calls(
    summary: UnreadSummary,
    missed_count: int,
    latest_missed_at: datetime | None = None,
) -> UnreadSummary:
    """Add missed calls into the ``calls`` slot only.

    ``calls`` becomes the last unread channel when the newest missed call is
    more recent than the newest unread message.
    """
    if missed_count <= 0:
        return summary

    by_channel = summary.by_channel.adjusted(Channel.CALLS, missed_count)
    last_channel = summary.last_unread_channel
    last_at = summary.last_unread_at

    if last_channel is None:
        last_channel, last_at = Channel.CALLS, latest_missed_at
    elif latest_missed_at is not None and (last_at is None or latest_missed_at > last_at):
        last_channel, last_at = Channel.CALLS, latest_missed_at

    return UnreadSummary(by_channel, last_channel, last_at)
