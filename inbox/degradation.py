"""Per-source degradation: primary/fallback routing with sticky schema failures.

A "structural" failure (the endpoint, table or column does not exist) will
not heal within the process, so the source is switched to its fallback for
the rest of the process lifetime.  Anything else (network, permission,
timeout, lock) is raised to the caller for that call only.

This module is the only place that inspects raw error shapes.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

# Source identifiers
UNREAD_PRIORITY = "unread_priority_rpc"
PAGINATED = "paginated_rpc"
THREADS_BY_IDS = "threads_by_ids_rpc"
CONVERSATION_DETAIL = "conversation_detail_rpc"

ALL_SOURCES = (UNREAD_PRIORITY, PAGINATED, THREADS_BY_IDS, CONVERSATION_DETAIL)

_STRUCTURAL_SQLITE_PREFIXES = (
    "no such table",
    "no such view",
    "no such column",
    "no such function",
)


class StructuralSourceError(Exception):
    """Raised by a non-SQLite source whose endpoint or schema is missing."""


class SourceDegradedError(RuntimeError):
    """A source is degraded and has no fallback path."""

    def __init__(self, source_id: str, reason: str | None = None) -> None:
        self.source_id = source_id
        self.reason = reason
        super().__init__(f"Source {source_id} is unavailable: {reason or 'degraded'}")


def is_structural_error(exc: BaseException) -> bool:
    """Return True for "endpoint/schema missing" errors."""
    if isinstance(exc, StructuralSourceError):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        message = str(exc).strip().lower()
        return message.startswith(_STRUCTURAL_SQLITE_PREFIXES)
    return False


class SourceAvailability:
    """Availability flag per data source, valid for the process lifetime.

    Flags start True and flip to False at most once; nothing turns them back
    on short of building a new instance (i.e. a restart).
    """

    def __init__(self, sources=ALL_SOURCES) -> None:
        self._available: dict[str, bool] = {s: True for s in sources}
        self._reasons: dict[str, str] = {}

    def is_available(self, source_id: str) -> bool:
        return self._available.get(source_id, True)

    def disable(self, source_id: str, reason: str) -> bool:
        """Mark *source_id* unavailable.  Returns False if it already was."""
        if not self._available.get(source_id, True):
            return False
        self._available[source_id] = False
        self._reasons[source_id] = reason
        return True

    def reason(self, source_id: str) -> str | None:
        return self._reasons.get(source_id)

    def snapshot(self) -> dict[str, dict]:
        return {
            source_id: {"available": available, "reason": self._reasons.get(source_id)}
            for source_id, available in sorted(self._available.items())
        }


@dataclass(frozen=True)
class DataSource(Generic[T]):
    """A named primary fetch with an optional fallback of the same shape."""

    source_id: str
    primary: Callable[..., Awaitable[T]]
    fallback: Callable[..., Awaitable[T]] | None = None


class DegradationController:
    """Route calls through a source's primary path until it proves structurally broken."""

    def __init__(self, availability: SourceAvailability | None = None) -> None:
        self.availability = availability or SourceAvailability()

    async def guard(
        self,
        source_id: str,
        primary_fetch: Callable[[], Awaitable[T]],
        fallback_fetch: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        if not self.availability.is_available(source_id):
            return await self._fallback(source_id, fallback_fetch)

        try:
            return await primary_fetch()
        except Exception as exc:
            if not is_structural_error(exc):
                log.warning("Source %s failed (transient): %s", source_id, exc)
                raise
            if self.availability.disable(source_id, str(exc)):
                log.info("Disabling source %s, switching to fallback: %s", source_id, exc)
            return await self._fallback(source_id, fallback_fetch)

    async def _fallback(
        self,
        source_id: str,
        fallback_fetch: Callable[[], Awaitable[T]] | None,
    ) -> T:
        if fallback_fetch is None:
            raise SourceDegradedError(source_id, self.availability.reason(source_id))
        return await fallback_fetch()

    async def run(self, source: DataSource[T], *args, **kwargs) -> T:
        """Call *source* with the given arguments through :meth:`guard`."""
        fallback = None
        if source.fallback is not None:
            fallback = lambda: source.fallback(*args, **kwargs)  # noqa: E731
        return await self.guard(
            source.source_id,
            lambda: source.primary(*args, **kwargs),
            fallback,
        )
