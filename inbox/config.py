"""Configuration loading from environment variables and defaults."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

# Load .env from project root
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)


# Database
DB_PATH = Path(_env("INBOX_DB_PATH", "") or str(_PROJECT_ROOT / "data" / "inbox.db"))

# Thread list paging
PAGE_SIZE = int(_env("INBOX_PAGE_SIZE", "50"))
PRIORITY_LIMIT = int(_env("INBOX_PRIORITY_LIMIT", "50"))

# Pinned and search injection: ids per by-ids query
PINNED_CHUNK_SIZE = int(_env("INBOX_PINNED_CHUNK_SIZE", "20"))

# Branch scopes kept as live thread lists; the least recently used is dropped
THREAD_LIST_SCOPES = int(_env("INBOX_THREAD_LIST_SCOPES", "32"))

# Conversation detail window
DETAIL_LIMIT = int(_env("INBOX_DETAIL_LIMIT", "100"))

# Thread cache
CACHE_TTL_SECONDS = float(_env("INBOX_CACHE_TTL_SECONDS", "300"))
CACHE_SWEEP_SECONDS = float(_env("INBOX_CACHE_SWEEP_SECONDS", "60"))
PREFETCH_FRESH_SECONDS = float(_env("INBOX_PREFETCH_FRESH_SECONDS", "30"))

# Phone display
DEFAULT_PHONE_COUNTRY = _env("INBOX_DEFAULT_PHONE_COUNTRY", "US")

# Timezone for display (all storage remains UTC)
_tz_name = _env("INBOX_TIMEZONE", "UTC")
try:
    ZoneInfo(_tz_name)
    INBOX_TIMEZONE = _tz_name
except (KeyError, Exception):
    logging.getLogger(__name__).warning(
        "Invalid INBOX_TIMEZONE %r, falling back to UTC", _tz_name,
    )
    INBOX_TIMEZONE = "UTC"
