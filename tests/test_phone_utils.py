"""Tests for phone normalization and display formatting."""

from __future__ import annotations

import pytest

from inbox.phone_utils import format_phone, normalize_phone, thread_phone


@pytest.fixture(autouse=True)
def us_default(monkeypatch):
    monkeypatch.setattr("inbox.config.DEFAULT_PHONE_COUNTRY", "US")


# ===========================================================================
# normalize_phone
# ===========================================================================

class TestNormalizePhone:
    def test_us_number_with_dashes(self):
        assert normalize_phone("440-462-6500") == "+14404626500"

    def test_us_number_with_parens(self):
        assert normalize_phone("(440) 462-6500") == "+14404626500"

    def test_already_e164(self):
        assert normalize_phone("+14404626500") == "+14404626500"

    def test_explicit_country(self):
        assert normalize_phone("020 7946 0958", "GB") == "+442079460958"

    def test_default_country_from_config(self, monkeypatch):
        monkeypatch.setattr("inbox.config.DEFAULT_PHONE_COUNTRY", "GB")
        assert normalize_phone("020 7946 0958") == "+442079460958"

    def test_lowercase_country(self):
        assert normalize_phone("020 7946 0958", "gb") == "+442079460958"

    def test_international_ignores_default(self):
        assert normalize_phone("+7 912 345-67-89") == "+79123456789"

    def test_invalid_too_short(self):
        assert normalize_phone("123") is None

    def test_invalid_letters(self):
        assert normalize_phone("not-a-number") is None

    def test_empty_string(self):
        assert normalize_phone("") is None

    def test_none(self):
        assert normalize_phone(None) is None


# ===========================================================================
# format_phone
# ===========================================================================

class TestFormatPhone:
    def test_national_format_us(self):
        assert format_phone("+14404626500", "US") == "(440) 462-6500"

    def test_international_for_foreign(self):
        assert format_phone("+442079460958", "US") == "+44 20 7946 0958"

    def test_national_format_gb(self):
        assert format_phone("+442079460958", "GB") == "020 7946 0958"

    def test_unparseable_fallback(self):
        assert format_phone("garbage", "US") == "garbage"

    def test_empty(self):
        assert format_phone("") == ""

    def test_impossible_length_unchanged(self):
        assert format_phone("+1 555", "US") == "+1 555"


# ===========================================================================
# thread_phone
# ===========================================================================

class TestThreadPhone:
    def test_normalized(self):
        assert thread_phone(" (440) 462-6500 ") == "+14404626500"

    def test_unparseable_kept_trimmed(self):
        assert thread_phone("  ask reception ") == "ask reception"

    def test_missing(self):
        assert thread_phone(None) == ""
        assert thread_phone("") == ""
