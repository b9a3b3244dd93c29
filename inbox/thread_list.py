"""The current thread list: four concurrent producers merged into one value.

Producers are the unread-priority fetch, the paginated fetch, the pinned
fetch and the search-injection fetch.  Each copy of a thread remembers when
its fetch completed; before merging, a copy is swapped for a newer copy of
the same id from another fetch, so a thread that changed while two fetches
raced shows whichever result landed last.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from . import config
from .degradation import DegradationController
from .merger import merge
from .models import Channel, ConversationThread
from .pagination import PaginationEngine
from .sources import (
    PAGINATED_SOURCE,
    THREADS_BY_IDS_SOURCE,
    UNREAD_PRIORITY_SOURCE,
    build_threads,
    is_thread_id,
    search_clients,
)

log = logging.getLogger(__name__)

PRODUCERS = ("unread_priority", "paginated", "pinned", "search")

Stamped = tuple[list[ConversationThread], float]


@dataclass(frozen=True)
class ThreadListState:
    threads: list[ConversationThread] = field(default_factory=list)
    is_loading: bool = False
    is_fetching: bool = False
    is_fetching_next_page: bool = False
    has_next_page: bool = True
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "threads": [t.to_dict() for t in self.threads],
            "is_loading": self.is_loading,
            "is_fetching": self.is_fetching,
            "is_fetching_next_page": self.is_fetching_next_page,
            "has_next_page": self.has_next_page,
            "error": self.error,
        }


def _chunks(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class ThreadList:
    """Reactive merged thread list for one branch scope."""

    def __init__(
        self,
        controller: DegradationController,
        *,
        branches=None,
        db_path=None,
        page_size: int | None = None,
        priority_limit: int | None = None,
        chunk_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.controller = controller
        self.branches = tuple(branches) if branches else ()
        self.db_path = db_path
        self.priority_limit = priority_limit or config.PRIORITY_LIMIT
        self.chunk_size = chunk_size or config.PINNED_CHUNK_SIZE
        self._clock = clock
        self.paginator: PaginationEngine[ConversationThread] = PaginationEngine(
            self._fetch_page_rows, build_threads, page_size=page_size, clock=clock,
        )

        self._priority: Stamped = ([], 0.0)
        self._pinned_ids: tuple[str, ...] = ()
        self._pinned: Stamped = ([], 0.0)
        self._search_query = ""
        self._search: Stamped = ([], 0.0)
        self._refreshed: dict[str, tuple[ConversationThread | None, float]] = {}
        self._refresh_seq: dict[str, int] = {}
        self._refresh_counter = itertools.count(1)
        self._avatar_patches: dict[str, dict[Channel, tuple[str | None, float]]] = {}

        self._generation = 0
        self._in_flight = 0
        self._loaded = False
        self._threads: list[ConversationThread] = []
        self.error: str | None = None
        self._listeners: list[Callable[[ThreadListState], None]] = []

    # ------------------------------------------------------------------
    # State and subscription
    # ------------------------------------------------------------------

    @property
    def threads(self) -> list[ConversationThread]:
        return list(self._threads)

    @property
    def state(self) -> ThreadListState:
        return ThreadListState(
            threads=list(self._threads),
            is_loading=not self._loaded and self._in_flight > 0,
            is_fetching=self._in_flight > 0,
            is_fetching_next_page=self.paginator.is_fetching_next_page,
            has_next_page=self.paginator.has_more,
            error=self.error,
        )

    @property
    def loaded(self) -> bool:
        return self._loaded

    def subscribe(self, listener: Callable[[ThreadListState], None]) -> Callable[[], None]:
        """Register ``listener(state)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        state = self.state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                log.exception("Thread list listener failed")

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def _fetch_page_rows(self, limit: int, offset: int) -> list[dict]:
        return await self.controller.run(
            PAGINATED_SOURCE, limit, offset, branches=self.branches, db_path=self.db_path,
        )

    async def _fetch_priority(self) -> Stamped:
        rows = await self.controller.run(
            UNREAD_PRIORITY_SOURCE, self.priority_limit,
            branches=self.branches, db_path=self.db_path,
        )
        return build_threads(rows), self._clock()

    async def fetch_by_ids(self, ids) -> list[ConversationThread]:
        """Fetch threads for *ids* in concurrent chunks, within the branch scope.

        A failed chunk is logged and skipped; if every chunk fails the first
        error is raised.
        """
        ids = list(dict.fromkeys(ids))
        if not ids:
            return []
        chunks = _chunks(ids, self.chunk_size)
        results = await asyncio.gather(
            *(self.controller.run(
                THREADS_BY_IDS_SOURCE, chunk, branches=self.branches, db_path=self.db_path,
            ) for chunk in chunks),
            return_exceptions=True,
        )
        rows: list[dict] = []
        errors: list[BaseException] = []
        for chunk, result in zip(chunks, results):
            if isinstance(result, BaseException):
                log.warning("Fetching %d thread(s) by id failed: %s", len(chunk), result)
                errors.append(result)
            else:
                rows.extend(result)
        if errors and len(errors) == len(chunks):
            raise errors[0]
        return build_threads(rows)

    def _loaded_ids(self) -> set[str]:
        ids = {t.id for t in self._priority[0]}
        ids.update(t.id for t in self.paginator.items)
        return ids

    async def _fetch_pinned(self) -> Stamped:
        loaded = self._loaded_ids()
        missing = [i for i in self._pinned_ids if i not in loaded]
        threads = await self.fetch_by_ids(missing) if missing else []
        return threads, self._clock()

    async def _fetch_search(self) -> Stamped:
        if not self._search_query:
            return [], self._clock()
        ids = await asyncio.to_thread(
            search_clients, self._search_query, branches=self.branches, db_path=self.db_path,
        )
        loaded = self._loaded_ids()
        missing = [i for i in ids if i not in loaded]
        threads = await self.fetch_by_ids(missing) if missing else []
        return threads, self._clock()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def refetch(self) -> ThreadListState:
        """Re-run every producer concurrently and recompute the list.

        A failed producer contributes nothing (the paginated producer keeps
        its loaded pages); ``error`` is set only when every producer with
        something to fetch failed.
        """
        self._generation += 1
        generation = self._generation
        started_at = self._clock()
        self._in_flight += 1
        self._notify()
        try:
            results = await asyncio.gather(
                self._fetch_priority(),
                self.paginator.reload(),
                self._fetch_pinned(),
                self._fetch_search(),
                return_exceptions=True,
            )
        finally:
            self._in_flight -= 1

        if generation != self._generation:
            log.debug("Discarding superseded refetch")
            self._notify()
            return self.state

        failures = []
        for name, result in zip(PRODUCERS, results):
            if isinstance(result, BaseException):
                log.warning("Thread producer %s failed: %s", name, result)
                failures.append(f"{name}: {result}")

        priority, _, pinned, search = results
        self._priority = ([], started_at) if isinstance(priority, BaseException) else priority
        self._pinned = ([], started_at) if isinstance(pinned, BaseException) else pinned
        self._search = ([], started_at) if isinstance(search, BaseException) else search

        self._refreshed = {k: v for k, v in self._refreshed.items() if v[1] >= started_at}
        self._prune_avatar_patches()
        # Idle pinned/search producers cannot fail, so they do not count
        active = 2 + bool(self._pinned_ids) + bool(self._search_query)
        self._loaded = True
        self.error = "; ".join(failures) if len(failures) >= active else None
        self._recompute()
        log.info(
            "Thread list refetched: %d thread(s), %d page(s), %d producer failure(s)",
            len(self._threads), len(self.paginator.pages), len(failures),
        )
        return self.state

    async def ensure_loaded(self) -> ThreadListState:
        if not self._loaded:
            return await self.refetch()
        return self.state

    async def load_more(self) -> ThreadListState:
        """Load the next page of the paginated producer.

        Errors are raised to the caller; loaded pages stay as they were.
        """
        task = asyncio.ensure_future(self.paginator.load_more())
        await asyncio.sleep(0)
        self._notify()
        try:
            page = await task
        finally:
            self._notify()
        if page is not None:
            self._recompute()
        return self.state

    async def set_pinned(self, ids) -> ThreadListState:
        """Replace the pinned id set; only well-formed ids not already listed are fetched."""
        self._pinned_ids = tuple(dict.fromkeys(str(i) for i in ids or () if is_thread_id(i)))
        try:
            self._pinned = await self._fetch_pinned()
        except Exception as exc:
            log.warning("Pinned thread fetch failed: %s", exc)
            self._pinned = ([], self._clock())
        self._recompute()
        return self.state

    async def set_search(self, query: str | None) -> ThreadListState:
        """Inject threads matching *query* that are not already listed."""
        self._search_query = (query or "").strip()
        try:
            self._search = await self._fetch_search()
        except Exception as exc:
            log.warning("Search injection for %r failed: %s", self._search_query, exc)
            self._search = ([], self._clock())
        self._recompute()
        return self.state

    async def refresh_thread(self, client_id: str) -> ConversationThread | None:
        """Re-fetch one thread by id and replace its copy in the list.

        Only the latest request per client is applied.  Returns the fresh
        thread, or None if it no longer exists or the result was superseded.
        """
        seq = next(self._refresh_counter)
        self._refresh_seq[client_id] = seq
        try:
            threads = await self.fetch_by_ids([client_id])
        finally:
            superseded = self._refresh_seq.get(client_id) != seq
            if not superseded:
                del self._refresh_seq[client_id]
        if superseded:
            log.debug("Discarding superseded refresh of %s", client_id)
            return None
        thread = next((t for t in threads if t.id == client_id), None)
        self._refreshed[client_id] = (thread, self._clock())
        self._recompute()
        return thread

    def update_avatar(self, client_id: str, channel: Channel, url: str | None) -> None:
        """Patch one channel's avatar on any listed copy of *client_id*."""
        self._avatar_patches.setdefault(client_id, {})[channel] = (url, self._clock())
        self._recompute()

    def _prune_avatar_patches(self) -> None:
        """Forget patches older than every copy currently held; they can no longer apply."""
        held = [self._priority[1], self._pinned[1], self._search[1]]
        held.extend(page.completed_at for page in self.paginator.pages)
        held.extend(at for _, at in self._refreshed.values())
        oldest = min(held)
        for client_id in list(self._avatar_patches):
            patches = {
                channel: patch for channel, patch in self._avatar_patches[client_id].items()
                if patch[1] >= oldest
            }
            if patches:
                self._avatar_patches[client_id] = patches
            else:
                del self._avatar_patches[client_id]

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def _resolve(
        self,
        thread: ConversationThread,
        fetched_at: float,
        page_copies: dict[str, tuple[ConversationThread, float]],
    ) -> ConversationThread | None:
        """Return the newest copy of *thread* across fetches, with avatar patches applied."""
        best, best_at = thread, fetched_at
        for candidate in (page_copies.get(thread.id), self._refreshed.get(thread.id)):
            if candidate is not None and candidate[1] > best_at:
                best, best_at = candidate
        if best is None:
            return None
        for channel, (url, patched_at) in self._avatar_patches.get(best.id, {}).items():
            if patched_at >= best_at:
                best = best.with_avatar(channel, url)
        return best

    def _resolve_all(self, threads, fetched_at, page_copies) -> list[ConversationThread]:
        resolved = []
        for thread in threads:
            current = self._resolve(thread, fetched_at, page_copies)
            if current is not None:
                resolved.append(current)
        return resolved

    def _recompute(self) -> None:
        page_copies: dict[str, tuple[ConversationThread, float]] = {}
        paginated: list[ConversationThread] = []
        for page in self.paginator.pages:
            for thread in page.items:
                known = page_copies.get(thread.id)
                if known is None or page.completed_at > known[1]:
                    page_copies[thread.id] = (thread, page.completed_at)
        for page in self.paginator.pages:
            paginated.extend(self._resolve_all(page.items, page.completed_at, page_copies))

        priority = self._resolve_all(*self._priority, page_copies)
        pinned = self._resolve_all(*self._pinned, page_copies)
        search = self._resolve_all(*self._search, page_copies)

        # Refreshed threads that no producer returned are shown with search results
        listed = {t.id for t in priority + paginated + pinned + search}
        for client_id, (thread, refreshed_at) in self._refreshed.items():
            if thread is not None and client_id not in listed:
                resolved = self._resolve(thread, refreshed_at, {})
                if resolved is not None:
                    search.append(resolved)

        self._threads = merge(priority, paginated, pinned, search)
        self._notify()
