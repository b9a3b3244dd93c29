"""Offset pagination over the bulk "all threads" query."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, TypeVar

from . import config

log = logging.getLogger(__name__)

T = TypeVar("T")

RowFetcher = Callable[[int, int], Awaitable[list]]


@dataclass(frozen=True)
class Page(Generic[T]):
    index: int
    items: list[T] = field(default_factory=list)
    has_more: bool = False
    completed_at: float = 0.0


class PaginationEngine(Generic[T]):
    """Fetch fixed-size pages, over-fetching one row to detect more pages.

    ``fetch_rows(limit, offset)`` returns raw rows; ``build(rows)`` turns the
    first ``page_size`` of them into items (and may filter some out, which
    does not affect ``has_more``).  Pages are only ever appended in order
    through :meth:`load_more`.
    """

    def __init__(
        self,
        fetch_rows: RowFetcher,
        build: Callable[[list], list[T]] | None = None,
        *,
        page_size: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.page_size = page_size or config.PAGE_SIZE
        self._fetch_rows = fetch_rows
        self._build = build or list
        self._clock = clock
        self._pages: list[Page[T]] = []
        self._generation = 0
        self._in_flight: asyncio.Task | None = None
        self.error: Exception | None = None

    @property
    def pages(self) -> list[Page[T]]:
        return list(self._pages)

    @property
    def items(self) -> list[T]:
        return [item for page in self._pages for item in page.items]

    @property
    def has_more(self) -> bool:
        if not self._pages:
            return True
        return self._pages[-1].has_more

    @property
    def is_fetching_next_page(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    async def fetch_page(self, page_index: int) -> Page[T]:
        """Fetch one page.  Only already-loaded indices or the next one are allowed."""
        if page_index < 0 or page_index > len(self._pages):
            raise ValueError(
                f"Page {page_index} would leave a gap ({len(self._pages)} pages loaded)"
            )
        size = self.page_size
        rows = await self._fetch_rows(size + 1, page_index * size)
        rows = list(rows or [])
        has_more = len(rows) > size
        items = self._build(rows[:size])
        log.debug("Fetched page %d: %d items, has_more=%s", page_index, len(items), has_more)
        return Page(index=page_index, items=items, has_more=has_more, completed_at=self._clock())

    async def load_more(self) -> Page[T] | None:
        """Load the next page.

        Returns None when there is nothing more to load, when a load is
        already running, or when a reset/reload superseded this load.  A
        failed load leaves loaded pages untouched and can simply be retried.
        """
        if self.is_fetching_next_page or not self.has_more:
            return None

        generation = self._generation
        self._in_flight = asyncio.ensure_future(self.fetch_page(len(self._pages)))
        try:
            page = await self._in_flight
        except Exception as exc:
            self.error = exc
            log.warning("Loading page %d failed: %s", len(self._pages), exc)
            raise
        finally:
            self._in_flight = None

        if generation != self._generation or page.index != len(self._pages):
            log.debug("Discarding superseded page %d", page.index)
            return None
        self._pages.append(page)
        self.error = None
        return page

    async def reload(self) -> list[Page[T]]:
        """Re-fetch every loaded page (at least the first) and swap them in together.

        If any page fails the previous pages are kept and the error raised.
        """
        self._generation += 1
        generation = self._generation
        count = max(1, len(self._pages))
        try:
            pages = await asyncio.gather(*(self.fetch_page(i) for i in range(count)))
        except Exception as exc:
            self.error = exc
            log.warning("Reloading %d page(s) failed: %s", count, exc)
            raise

        if generation != self._generation:
            log.debug("Discarding superseded reload")
            return self.pages

        # Drop trailing pages after the first one that reports no more rows
        kept: list[Page[T]] = []
        for page in pages:
            kept.append(page)
            if not page.has_more:
                break
        self._pages = kept
        self.error = None
        return self.pages

