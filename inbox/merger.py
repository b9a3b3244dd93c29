"""Combine the four thread producers into one deduplicated, sorted list."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import EPOCH_MIN, ConversationThread

log = logging.getLogger(__name__)


def thread_sort_key(thread: ConversationThread):
    """Unread threads first, then newest activity first."""
    ts = thread.last_message.timestamp or EPOCH_MIN
    return (thread.unread_count == 0, -ts.timestamp())


def merge(
    unread_priority: Iterable[ConversationThread] | None,
    paginated: Iterable[ConversationThread] | None,
    pinned: Iterable[ConversationThread] | None = None,
    search_injected: Iterable[ConversationThread] | None = None,
) -> list[ConversationThread]:
    """Merge thread lists by precedence, then sort.

    Precedence for a duplicated id: unread-priority, then paginated, then
    pinned, then search results.  The first copy wins whole; later copies
    are dropped without combining fields.  Any input may be empty or None.
    """
    seen: set[str] = set()
    merged: list[ConversationThread] = []
    dropped = 0

    for source in (unread_priority, paginated, pinned, search_injected):
        for thread in source or ():
            if thread.id in seen:
                dropped += 1
                continue
            seen.add(thread.id)
            merged.append(thread)

    # Stable sort: equal keys keep precedence order
    merged.sort(key=thread_sort_key)
    if dropped:
        log.debug("Merged %d threads (%d duplicates dropped)", len(merged), dropped)
    return merged
