"""Tests for the thread and counter data models."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from inbox.models import (
    Channel,
    ChannelCounters,
    ConversationThread,
    LastMessage,
    parse_timestamp,
)


class TestChannelCounters:
    def test_always_full_shape(self):
        assert set(ChannelCounters().to_dict()) == {c.value for c in Channel}

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            ChannelCounters(whatsapp=-1)

    def test_adjusted_floors_at_zero(self):
        counters = ChannelCounters(email=1).adjusted(Channel.EMAIL, -5)
        assert counters.email == 0

    def test_from_row_ignores_missing_columns(self):
        counters = ChannelCounters.from_row({"unread_telegram": 2, "unread_calls": None})
        assert counters.telegram == 2
        assert counters.total == 2


class TestConversationThread:
    def test_unread_count_derived(self):
        thread = ConversationThread(
            id="t1",
            unread_by_channel=ChannelCounters(whatsapp=2, telegram=1),
            last_unread_channel=Channel.TELEGRAM,
        )
        assert thread.unread_count == 3
        assert thread.to_dict()["unread_count"] == 3

    def test_last_unread_channel_requires_unread(self):
        with pytest.raises(ValueError):
            ConversationThread(id="t1", last_unread_channel=Channel.WHATSAPP)

    def test_unread_requires_last_unread_channel(self):
        with pytest.raises(ValueError):
            ConversationThread(id="t1", unread_by_channel=ChannelCounters(max=1))

    def test_with_avatar_leaves_other_channels(self):
        thread = ConversationThread(
            id="t1",
            avatar_by_channel={Channel.WHATSAPP: "wa.jpg", Channel.TELEGRAM: None},
        )
        patched = thread.with_avatar(Channel.TELEGRAM, "tg.jpg")
        assert patched.avatar_by_channel == {Channel.WHATSAPP: "wa.jpg", Channel.TELEGRAM: "tg.jpg"}
        assert thread.avatar_by_channel[Channel.TELEGRAM] is None

    def test_to_dict_last_message(self):
        ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
        thread = ConversationThread(id="t1", last_message=LastMessage("hi", ts, Channel.MAX))
        assert thread.to_dict()["last_message"] == {
            "text": "hi", "timestamp": ts.isoformat(), "channel": "max",
        }


class TestParseTimestamp:
    def test_naive_is_utc(self):
        assert parse_timestamp("2026-01-01T10:00:00") == datetime(2026, 1, 1, 10, tzinfo=timezone.utc)

    def test_invalid(self):
        assert parse_timestamp("yesterday") is None

    def test_empty(self):
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None
