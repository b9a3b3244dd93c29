"""Per-conversation data: read-through detail access and realtime patches."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable

from . import config
from .degradation import DegradationController
from .models import EPOCH_MIN, Channel, ConversationDetail, MessageRow
from .sources import CONVERSATION_DETAIL_SOURCE, resolve_last_unread
from .thread_cache import ThreadCache
from .unread import count, is_unread, message_channel

log = logging.getLogger(__name__)


def _message_key(message: MessageRow):
    return message.created_at or EPOCH_MIN


def _last_unread_after(detail: ConversationDetail, messages: list[MessageRow], counters) -> Channel | None:
    """Pick the last unread channel for *counters* after a patch.

    Prefers the newest unread message in the loaded window, then the
    channel already recorded, then any channel with a count.
    """
    if counters.total == 0:
        return None
    newest = count(reversed(messages)).last_unread_channel
    if newest is not None and counters.get(newest) > 0:
        return newest
    return resolve_last_unread(counters, detail.last_unread_channel)


class ConversationDataService:
    """Cached conversation detail keyed by client id."""

    def __init__(
        self,
        controller: DegradationController,
        cache: ThreadCache[ConversationDetail] | None = None,
        *,
        db_path=None,
        limit: int | None = None,
    ) -> None:
        self.controller = controller
        self.cache: ThreadCache[ConversationDetail] = cache if cache is not None else ThreadCache()
        self.db_path = db_path
        self.limit = limit or config.DETAIL_LIMIT

    def _fetcher(self, client_id: str, limit: int | None = None):
        async def _fetch() -> ConversationDetail:
            return await self.controller.run(
                CONVERSATION_DETAIL_SOURCE, client_id, limit or self.limit, db_path=self.db_path,
            )

        return _fetch

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, client_id: str) -> ConversationDetail | None:
        """Fresh cached detail, never fetching."""
        return self.cache.get(client_id)

    async def read_through(
        self,
        client_id: str,
        *,
        limit: int | None = None,
        background: bool = False,
    ) -> ConversationDetail:
        return await self.cache.read_through(
            client_id, self._fetcher(client_id, limit), background=background,
        )

    def prefetch(self, client_id: str) -> asyncio.Task | None:
        """Warm the cache in the background unless the entry is very recent."""
        age = self.cache.age(client_id)
        if age is not None and age < config.PREFETCH_FRESH_SECONDS:
            log.debug("Skipping prefetch of %s (age %.1fs)", client_id, age)
            return None
        return self.cache.refresh(client_id, self._fetcher(client_id))

    def invalidate(self, client_id: str) -> None:
        self.cache.invalidate(client_id)

    def clear(self) -> None:
        self.cache.clear()

    def subscribe(self, listener: Callable[[str, object], None]) -> Callable[[], None]:
        return self.cache.subscribe(listener)

    # ------------------------------------------------------------------
    # Realtime patches
    # ------------------------------------------------------------------

    def apply_insert(self, message: MessageRow) -> ConversationDetail | None:
        """Add a new message to the cached window, ordered by timestamp."""

        def _insert(detail: ConversationDetail) -> ConversationDetail:
            if any(m.id == message.id for m in detail.messages):
                return detail
            messages = sorted([*detail.messages, message], key=_message_key)
            counters = detail.unread
            if is_unread(message):
                counters = counters.adjusted(message_channel(message), 1)
            return replace(
                detail,
                messages=messages,
                total_count=detail.total_count + 1,
                unread=counters,
                last_unread_channel=_last_unread_after(detail, messages, counters),
            )

        return self.cache.patch(message.client_id, _insert)

    def apply_update(self, message: MessageRow) -> ConversationDetail | None:
        """Replace a cached message, moving the unread counter with its read state."""

        def _update(detail: ConversationDetail) -> ConversationDetail:
            old = next((m for m in detail.messages if m.id == message.id), None)
            if old is None:
                return detail
            messages = sorted(
                [message if m.id == message.id else m for m in detail.messages],
                key=_message_key,
            )
            counters = detail.unread
            if is_unread(old):
                counters = counters.adjusted(message_channel(old), -1)
            if is_unread(message):
                counters = counters.adjusted(message_channel(message), 1)
            return replace(
                detail,
                messages=messages,
                unread=counters,
                last_unread_channel=_last_unread_after(detail, messages, counters),
            )

        return self.cache.patch(message.client_id, _update)

    def apply_delete(self, client_id: str, message_id: str) -> ConversationDetail | None:
        """Drop a message from the cached window."""

        def _delete(detail: ConversationDetail) -> ConversationDetail:
            old = next((m for m in detail.messages if m.id == message_id), None)
            if old is None:
                return detail
            messages = [m for m in detail.messages if m.id != message_id]
            counters = detail.unread
            if is_unread(old):
                counters = counters.adjusted(message_channel(old), -1)
            return replace(
                detail,
                messages=messages,
                total_count=max(0, detail.total_count - 1),
                unread=counters,
                last_unread_channel=_last_unread_after(detail, messages, counters),
            )

        return self.cache.patch(client_id, _delete)

    def update_avatar(self, client_id: str, channel: Channel, url: str | None) -> ConversationDetail | None:
        """Patch one channel's avatar, leaving the rest of the entry untouched."""

        def _avatar(detail: ConversationDetail) -> ConversationDetail:
            avatars = dict(detail.avatars)
            avatars[channel] = url
            return replace(detail, avatars=avatars)

        return self.cache.patch(client_id, _avatar)
