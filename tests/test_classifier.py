"""Tests for channel resolution and thread/message inclusion rules."""

from __future__ import annotations

import pytest

from inbox.classifier import (
    classify,
    is_group_chat_name,
    is_system_message,
    is_system_preview,
    is_system_thread_name,
    preview_text,
    resolve_channel,
)
from inbox.models import Channel


# ===========================================================================
# resolve_channel
# ===========================================================================

class TestResolveChannel:
    def test_explicit_tag_wins(self):
        row = {"messenger_type": "telegram", "whatsapp_chat_id": "123"}
        assert resolve_channel(row) is Channel.TELEGRAM

    def test_tag_is_case_insensitive(self):
        assert resolve_channel({"messenger_type": "  Email "}) is Channel.EMAIL

    def test_last_messenger_type_used_for_summary_rows(self):
        assert resolve_channel({"last_messenger_type": "max"}) is Channel.MAX

    def test_infers_telegram_before_whatsapp(self):
        row = {"telegram_chat_id": "555", "whatsapp_chat_id": "14155550101"}
        assert resolve_channel(row) is Channel.TELEGRAM

    def test_infers_whatsapp_before_max(self):
        row = {"whatsapp_chat_id": "14155550101", "max_chat_id": "m-1"}
        assert resolve_channel(row) is Channel.WHATSAPP

    def test_infers_max(self):
        assert resolve_channel({"max_chat_id": "m-1"}) is Channel.MAX

    def test_blank_identifier_ignored(self):
        assert resolve_channel({"telegram_chat_id": "  ", "max_chat_id": "m-1"}) is Channel.MAX

    def test_defaults_to_whatsapp(self):
        assert resolve_channel({}) is Channel.WHATSAPP

    def test_unknown_tag_falls_through(self):
        assert resolve_channel({"messenger_type": "carrier-pigeon"}) is Channel.WHATSAPP


# ===========================================================================
# classify
# ===========================================================================

class TestClassify:
    def test_plain_client_included(self):
        result = classify({"client_name": "Alice Smith", "whatsapp_chat_id": "14155550101"})
        assert result.include is True
        assert result.channel is Channel.WHATSAPP
        assert result.reason is None

    def test_telegram_group_excluded_even_when_otherwise_valid(self):
        row = {
            "client_name": "Alice Smith",
            "messenger_type": "telegram",
            "telegram_chat_id": "-1001234567890",
            "unread_telegram": 4,
        }
        result = classify(row)
        assert result.include is False
        assert result.reason == "telegram_group"
        assert result.channel is Channel.TELEGRAM

    def test_private_negative_telegram_id_not_a_group(self):
        assert classify({"client_name": "Bob", "telegram_chat_id": "-42"}).include is True

    def test_whatsapp_group_excluded(self):
        result = classify({"client_name": "Family", "whatsapp_chat_id": "12036302@g.us"})
        assert result.include is False
        assert result.reason == "whatsapp_group"

    def test_group_name_excluded(self):
        result = classify({"client_name": "Riverside Residents"})
        assert result.include is False
        assert result.reason == "group_name"

    def test_system_thread_excluded(self):
        result = classify({"client_name": "CORPORATE announcements"})
        assert result.include is False
        assert result.reason == "system_thread"

    def test_name_from_display_name(self):
        assert classify({"display_name": "Teachers lounge"}).include is False

    @pytest.mark.parametrize("row", [
        {},
        {"client_name": None},
        {"client_name": "Alice", "telegram_chat_id": "-100999"},
        {"messenger_type": "bogus", "max_chat_id": "m"},
    ])
    def test_idempotent(self, row):
        assert classify(row) == classify(dict(row))


class TestNamePatterns:
    def test_group_name_substring(self):
        assert is_group_chat_name("Maths Tutor Requests | Group")

    def test_group_name_negative(self):
        assert not is_group_chat_name("Alice Smith")

    def test_empty_names(self):
        assert not is_group_chat_name(None)
        assert not is_system_thread_name("")

    def test_system_thread_prefix(self):
        assert is_system_thread_name("Teacher: Maria")


# ===========================================================================
# System messages and previews
# ===========================================================================

class TestSystemMessages:
    def test_system_type_tag(self):
        assert is_system_message("system", "Task created")

    def test_comment_type(self):
        assert is_system_message("comment", "internal note")

    def test_system_type_column(self):
        assert is_system_message("client", "hello", system_type="status_change")

    def test_reserved_prefix(self):
        assert is_system_message("client", "crm_system_state_changed: closed")

    def test_prefix_case_insensitive(self):
        assert is_system_message(None, "CRM_SYSTEM_ping")

    def test_regular_message(self):
        assert not is_system_message("client", "Hello there")


class TestPreview:
    def test_masks_automation_line(self):
        assert preview_text("crm_system_state_changed: closed") == ""
        assert is_system_preview('Task "Call back" completed')

    def test_keeps_regular_text(self):
        assert preview_text("  See you tomorrow ") == "See you tomorrow"

    def test_none(self):
        assert preview_text(None) == ""
