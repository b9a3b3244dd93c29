"""Process-wide container for the inbox singletons."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable

from . import config
from .conversation_data import ConversationDataService
from .degradation import DegradationController, SourceAvailability
from .models import Channel, ConversationDetail, MessageRow
from .thread_cache import ThreadCache
from .thread_list import ThreadList

log = logging.getLogger(__name__)

MESSAGE_EVENTS = ("insert", "update", "delete")


class InboxEngine:
    """Owns source availability, the thread cache, and the thread lists.

    Build one per process; a fresh engine is the only way to re-enable a
    degraded source.
    """

    def __init__(
        self,
        db_path=None,
        *,
        availability: SourceAvailability | None = None,
        cache: ThreadCache[ConversationDetail] | None = None,
        clock: Callable[[], float] = time.monotonic,
        page_size: int | None = None,
    ) -> None:
        self.db_path = db_path
        self.availability = availability or SourceAvailability()
        self.controller = DegradationController(self.availability)
        self.cache: ThreadCache[ConversationDetail] = (
            cache if cache is not None else ThreadCache(clock=clock)
        )
        self.conversations = ConversationDataService(self.controller, self.cache, db_path=db_path)
        self._clock = clock
        self._page_size = page_size
        self._lists: OrderedDict[tuple[str, ...], ThreadList] = OrderedDict()

    def thread_list(self, branches=None) -> ThreadList:
        """Return the shared thread list for a branch scope, creating it on first use.

        At most ``config.THREAD_LIST_SCOPES`` lists are kept; the least
        recently used one is dropped to make room.
        """
        key = tuple(sorted({b for b in branches or () if b}))
        thread_list = self._lists.get(key)
        if thread_list is not None:
            self._lists.move_to_end(key)
        else:
            thread_list = ThreadList(
                self.controller,
                branches=key,
                db_path=self.db_path,
                page_size=self._page_size,
                clock=self._clock,
            )
            self._lists[key] = thread_list
            while len(self._lists) > max(1, config.THREAD_LIST_SCOPES):
                dropped, _ = self._lists.popitem(last=False)
                log.debug("Dropped thread list for branches %s", dropped or "(all)")
        return thread_list

    @property
    def thread_lists(self) -> list[ThreadList]:
        return list(self._lists.values())

    def sources(self) -> dict[str, dict]:
        return self.availability.snapshot()

    def start(self) -> None:
        """Start background work on the running loop."""
        self.cache.start_sweeper()

    async def stop(self) -> None:
        await self.cache.stop_sweeper()

    async def handle_message_event(self, event: str, message: MessageRow) -> None:
        """Apply a realtime message event to the cached conversation and thread lists."""
        if event not in MESSAGE_EVENTS:
            raise ValueError(f"Unknown message event {event!r}")
        if event == "insert":
            self.conversations.apply_insert(message)
        elif event == "update":
            self.conversations.apply_update(message)
        else:
            self.conversations.apply_delete(message.client_id, message.id)

        lists = [tl for tl in self._lists.values() if tl.loaded]
        results = await asyncio.gather(
            *(tl.refresh_thread(message.client_id) for tl in lists),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                log.warning("Refreshing thread %s failed: %s", message.client_id, result)

    def update_avatar(self, client_id: str, channel: Channel, url: str | None) -> None:
        self.conversations.update_avatar(client_id, channel, url)
        for thread_list in self._lists.values():
            thread_list.update_avatar(client_id, channel, url)
