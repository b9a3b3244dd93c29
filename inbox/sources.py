"""Thread and conversation queries against the chat data service.

Each query has a fast path that reads the ``chat_thread_summaries`` /
``chat_unread_threads`` views and a direct path that reads the base tables
and assembles the same summary rows client-side.  Both return rows of the
same shape, which :func:`build_thread` turns into ``ConversationThread``s.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from datetime import datetime

from .classifier import classify, preview_text
from .database import get_connection, placeholders
from .degradation import (
    CONVERSATION_DETAIL,
    PAGINATED,
    THREADS_BY_IDS,
    UNREAD_PRIORITY,
    DataSource,
)
from .models import (
    AVATAR_CHANNELS,
    Channel,
    ChannelCounters,
    ConversationDetail,
    ConversationThread,
    LastMessage,
    MessageRow,
    parse_timestamp,
)
from .phone_utils import thread_phone
from .unread import add_missed_calls, count

log = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

# Base-table pre-filter for rows that may be unread; the exact predicate is
# applied by unread.is_unread.
_UNREAD_CANDIDATE_SQL = (
    "COALESCE({p}is_read, 0) = 0 AND COALESCE({p}is_outgoing, 0) = 0 "
    "AND COALESCE(NULLIF(LOWER(TRIM({p}message_type, char(32, 9, 10, 13))), ''), 'client') = 'client'"
)


def _unread_candidate(alias: str = "") -> str:
    return _UNREAD_CANDIDATE_SQL.format(p=f"{alias}." if alias else "")


_MESSAGE_COLUMNS = (
    "id, client_id, message_text, message_type, system_type, messenger_type, "
    "is_read, is_outgoing, status, file_url, file_name, file_type, "
    "external_message_id, call_duration, created_at"
)


class ClientNotFoundError(LookupError):
    """No client row exists for the requested conversation."""


def is_thread_id(value) -> bool:
    """True for well-formed client ids (UUIDs); shortcut ids like "corporate" are not."""
    return bool(value) and bool(_UUID_RE.match(str(value)))


def _branch_clause(branches, column: str) -> tuple[str, list]:
    """Branch scoping, fail-open toward rows without a branch."""
    if not branches:
        return "", []
    branches = list(branches)
    return f" AND ({column} IN ({placeholders(branches)}) OR {column} IS NULL)", branches


# ---------------------------------------------------------------------------
# Materialization
# ---------------------------------------------------------------------------

def describe_call(direction: str | None, status: str | None) -> str:
    label = "Incoming call" if (direction or "").lower() in ("incoming", "inbound") else "Outgoing call"
    return f"{label} ({status})" if status else label


def _display_name(r: dict) -> str:
    name = (r.get("client_name") or "").strip()
    if name:
        return name
    parts = [r.get("first_name"), r.get("middle_name"), r.get("last_name")]
    joined = " ".join(p.strip() for p in parts if p and p.strip())
    return joined or (r.get("client_phone") or "")


def resolve_last_unread(counters: ChannelCounters, tag) -> Channel | None:
    """Keep the tagged channel when consistent with *counters*."""
    if counters.total == 0:
        return None
    channel = Channel.from_tag(tag)
    if channel is not None and counters.get(channel) > 0:
        return channel
    for candidate in Channel:
        if counters.get(candidate) > 0:
            return candidate
    return None


def _last_activity(r: dict, message_channel: Channel) -> LastMessage:
    """Newest of last message and last call, compared by timestamp."""
    msg_at = parse_timestamp(r.get("last_message_time"))
    call_at = parse_timestamp(r.get("last_call_time"))
    if call_at is not None and (msg_at is None or call_at > msg_at):
        text = describe_call(r.get("last_call_direction"), r.get("last_call_status"))
        return LastMessage(text=text, timestamp=call_at, channel=Channel.CALLS)
    if msg_at is None:
        return LastMessage()
    return LastMessage(
        text=preview_text(r.get("last_message_text")),
        timestamp=msg_at,
        channel=message_channel,
    )


def build_thread(row) -> ConversationThread | None:
    """Turn a summary row into a thread, or None if the row is excluded."""
    r = dict(row)
    decision = classify(r)
    if not decision.include:
        log.debug("Excluding thread %s (%s)", r.get("client_id"), decision.reason)
        return None

    counters = ChannelCounters.from_row(r)
    return ConversationThread(
        id=str(r.get("client_id") or ""),
        display_name=_display_name(r),
        phone=thread_phone(r.get("client_phone")),
        branch=r.get("client_branch"),
        first_name=r.get("first_name"),
        last_name=r.get("last_name"),
        avatar_url=r.get("avatar_url"),
        avatar_by_channel={ch: r.get(f"{ch.value}_avatar_url") for ch in AVATAR_CHANNELS},
        last_message=_last_activity(r, decision.channel),
        unread_by_channel=counters,
        last_unread_channel=resolve_last_unread(counters, r.get("last_unread_messenger")),
        last_message_failed=bool(r.get("last_message_failed")),
    )


def build_threads(rows) -> list[ConversationThread]:
    threads = []
    for row in rows or ():
        thread = build_thread(row)
        if thread is not None:
            threads.append(thread)
    return threads


# ---------------------------------------------------------------------------
# Direct assembly from base tables
# ---------------------------------------------------------------------------

def _first_per_client(rows, key: str = "client_id") -> dict[str, dict]:
    result: dict[str, dict] = {}
    for row in rows:
        r = dict(row)
        result.setdefault(r[key], r)
    return result


def _assemble_summaries(conn, clients) -> list[dict]:
    """Build view-shaped summary rows for *clients* from the base tables."""
    clients = [dict(c) for c in clients]
    if not clients:
        return []
    ids = [c["id"] for c in clients]
    ph = placeholders(ids)

    last_messages = _first_per_client(conn.execute(
        f"""SELECT client_id, message_text, created_at, messenger_type, is_outgoing, status
            FROM (
                SELECT client_id, message_text, created_at, messenger_type, is_outgoing, status,
                       ROW_NUMBER() OVER (
                           PARTITION BY client_id ORDER BY created_at DESC, rowid ASC
                       ) AS rn
                FROM chat_messages WHERE client_id IN ({ph})
            ) WHERE rn = 1""",
        ids,
    ).fetchall())

    last_calls = _first_per_client(conn.execute(
        f"""SELECT client_id, status, direction, started_at FROM call_logs
            WHERE client_id IN ({ph})
            ORDER BY started_at DESC, rowid ASC""",
        ids,
    ).fetchall())

    unread_rows: dict[str, list[MessageRow]] = {}
    for row in conn.execute(
        f"""SELECT {_MESSAGE_COLUMNS} FROM chat_messages
            WHERE client_id IN ({ph}) AND {_unread_candidate()}
            ORDER BY created_at DESC, rowid ASC""",
        ids,
    ).fetchall():
        msg = MessageRow.from_row(row)
        unread_rows.setdefault(msg.client_id, []).append(msg)

    missed = {
        r["client_id"]: (r["missed"], r["last_missed_at"])
        for r in conn.execute(
            f"""SELECT client_id, COUNT(*) AS missed, MAX(started_at) AS last_missed_at
                FROM call_logs
                WHERE status = 'missed' AND client_id IN ({ph})
                GROUP BY client_id""",
            ids,
        ).fetchall()
    }

    phones = _first_per_client(conn.execute(
        f"""SELECT client_id, phone FROM client_phone_numbers
            WHERE client_id IN ({ph})
            ORDER BY is_primary DESC, created_at ASC""",
        ids,
    ).fetchall())

    summaries = []
    for c in clients:
        cid = c["id"]
        summary = count(unread_rows.get(cid, []))
        missed_count, last_missed_at = missed.get(cid, (0, None))
        summary = add_missed_calls(summary, missed_count, parse_timestamp(last_missed_at))

        lm = last_messages.get(cid) or {}
        lc = last_calls.get(cid) or {}
        extra_phone = (phones.get(cid) or {}).get("phone")
        row = {
            "client_id": cid,
            "client_name": c.get("name"),
            "first_name": c.get("first_name"),
            "last_name": c.get("last_name"),
            "middle_name": c.get("middle_name"),
            "client_phone": c.get("phone") or extra_phone,
            "client_branch": c.get("branch"),
            "avatar_url": c.get("avatar_url"),
            "whatsapp_avatar_url": c.get("whatsapp_avatar_url"),
            "telegram_avatar_url": c.get("telegram_avatar_url"),
            "max_avatar_url": c.get("max_avatar_url"),
            "whatsapp_chat_id": c.get("whatsapp_chat_id"),
            "telegram_chat_id": c.get("telegram_chat_id"),
            "max_chat_id": c.get("max_chat_id"),
            "is_active": c.get("is_active"),
            "last_message_at": c.get("last_message_at"),
            "last_message_text": lm.get("message_text"),
            "last_message_time": lm.get("created_at"),
            "last_messenger_type": lm.get("messenger_type"),
            "last_message_failed": int(bool(lm.get("is_outgoing")) and lm.get("status") == "failed"),
            "last_call_time": lc.get("started_at"),
            "last_call_direction": lc.get("direction"),
            "last_call_status": lc.get("status"),
            "last_unread_messenger": (
                summary.last_unread_channel.value if summary.last_unread_channel else None
            ),
        }
        row.update({f"unread_{k}": v for k, v in summary.by_channel.to_dict().items()})
        summaries.append(row)
    return summaries


# ---------------------------------------------------------------------------
# Paginated threads
# ---------------------------------------------------------------------------

def fetch_paginated_summaries(limit: int, offset: int, *, branches=None, db_path=None) -> list[dict]:
    """One page of thread summaries, most recent activity first (view path)."""
    clause, params = _branch_clause(branches, "client_branch")
    with get_connection(db_path) as conn:
        rows = conn.execute(
            f"""SELECT * FROM chat_thread_summaries
                WHERE is_active = 1 AND last_message_at IS NOT NULL{clause}
                ORDER BY last_message_at DESC, client_id ASC
                LIMIT ? OFFSET ?""",
            params + [limit, offset],
        ).fetchall()
    return [dict(r) for r in rows]


def fetch_paginated_summaries_direct(limit: int, offset: int, *, branches=None, db_path=None) -> list[dict]:
    """One page of thread summaries assembled from the base tables."""
    clause, params = _branch_clause(branches, "branch")
    with get_connection(db_path) as conn:
        clients = conn.execute(
            f"""SELECT * FROM clients
                WHERE is_active = 1 AND last_message_at IS NOT NULL{clause}
                ORDER BY last_message_at DESC, id ASC
                LIMIT ? OFFSET ?""",
            params + [limit, offset],
        ).fetchall()
        return _assemble_summaries(conn, clients)


# ---------------------------------------------------------------------------
# Priority unread threads
# ---------------------------------------------------------------------------

def fetch_unread_summaries(limit: int, *, branches=None, db_path=None) -> list[dict]:
    """Threads with unread activity, most recent first (view path)."""
    clause, params = _branch_clause(branches, "client_branch")
    with get_connection(db_path) as conn:
        rows = conn.execute(
            f"""SELECT * FROM chat_unread_threads
                WHERE is_active = 1{clause}
                ORDER BY last_message_at IS NULL, last_message_at DESC, client_id ASC
                LIMIT ?""",
            params + [limit],
        ).fetchall()
    return [dict(r) for r in rows]


def fetch_unread_summaries_direct(limit: int, *, branches=None, db_path=None) -> list[dict]:
    """Threads with unread activity assembled from the base tables."""
    clause, params = _branch_clause(branches, "c.branch")
    with get_connection(db_path) as conn:
        # Over-fetch: some candidates only carry automation rows and drop out
        clients = conn.execute(
            f"""SELECT c.* FROM clients c
                WHERE c.is_active = 1{clause}
                  AND (
                    EXISTS (SELECT 1 FROM chat_messages m
                            WHERE m.client_id = c.id AND {_unread_candidate('m')})
                    OR EXISTS (SELECT 1 FROM call_logs cl
                               WHERE cl.client_id = c.id AND cl.status = 'missed')
                  )
                ORDER BY c.last_message_at IS NULL, c.last_message_at DESC, c.id ASC
                LIMIT ?""",
            params + [limit * 2],
        ).fetchall()
        summaries = _assemble_summaries(conn, clients)

    unread = [
        s for s in summaries
        if sum(v for k, v in s.items() if k.startswith("unread_")) > 0
    ]
    return unread[:limit]


# ---------------------------------------------------------------------------
# Threads by explicit id list (pinned and search injection)
# ---------------------------------------------------------------------------

def fetch_summaries_by_ids(ids, *, branches=None, db_path=None) -> list[dict]:
    ids = list(ids)
    if not ids:
        return []
    clause, params = _branch_clause(branches, "client_branch")
    with get_connection(db_path) as conn:
        rows = conn.execute(
            f"""SELECT * FROM chat_thread_summaries
                WHERE is_active = 1 AND client_id IN ({placeholders(ids)}){clause}""",
            ids + params,
        ).fetchall()
    return [dict(r) for r in rows]


def fetch_summaries_by_ids_direct(ids, *, branches=None, db_path=None) -> list[dict]:
    ids = list(ids)
    if not ids:
        return []
    clause, params = _branch_clause(branches, "branch")
    with get_connection(db_path) as conn:
        clients = conn.execute(
            f"SELECT * FROM clients WHERE is_active = 1 AND id IN ({placeholders(ids)}){clause}",
            ids + params,
        ).fetchall()
        return _assemble_summaries(conn, clients)


def search_clients(query: str, *, limit: int = 20, branches=None, db_path=None) -> list[str]:
    """Return ids of active clients whose name, phone or email contains *query*."""
    query = (query or "").strip()
    if not query:
        return []
    like = f"%{query}%"
    conditions = ["name LIKE ?", "first_name LIKE ?", "last_name LIKE ?", "email LIKE ?", "phone LIKE ?"]
    params: list = [like] * len(conditions)
    digits = re.sub(r"\D", "", query)
    if len(digits) >= 3:
        conditions.append(
            "REPLACE(REPLACE(REPLACE(REPLACE(phone, ' ', ''), '-', ''), '(', ''), ')', '') LIKE ?"
        )
        params.append(f"%{digits}%")
    clause, branch_params = _branch_clause(branches, "branch")
    with get_connection(db_path) as conn:
        rows = conn.execute(
            f"""SELECT id FROM clients
                WHERE is_active = 1 AND ({' OR '.join(conditions)}){clause}
                ORDER BY last_message_at IS NULL, last_message_at DESC
                LIMIT ?""",
            params + branch_params + [limit],
        ).fetchall()
    return [r["id"] for r in rows]


# ---------------------------------------------------------------------------
# Missed calls
# ---------------------------------------------------------------------------

def missed_call_count(client_id: str, *, db_path=None) -> int:
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM call_logs WHERE client_id = ? AND status = 'missed'",
            (client_id,),
        ).fetchone()
    return int(row["cnt"] or 0)


def latest_missed_call_at(client_id: str, *, db_path=None) -> datetime | None:
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT MAX(started_at) AS ts FROM call_logs WHERE client_id = ? AND status = 'missed'",
            (client_id,),
        ).fetchone()
    return parse_timestamp(row["ts"]) if row else None


# ---------------------------------------------------------------------------
# Conversation detail
# ---------------------------------------------------------------------------

def _message_window(conn, client_id: str, limit: int) -> tuple[list[MessageRow], bool]:
    rows = conn.execute(
        f"""SELECT {_MESSAGE_COLUMNS} FROM chat_messages
            WHERE client_id = ?
            ORDER BY created_at DESC, rowid ASC
            LIMIT ?""",
        (client_id, limit + 1),
    ).fetchall()
    has_more = len(rows) > limit
    messages = [MessageRow.from_row(r) for r in rows[:limit]]
    messages.reverse()
    return messages, has_more


def fetch_conversation_detail(client_id: str, limit: int, *, db_path=None) -> ConversationDetail:
    """Message window, unread counts and avatars in one connection (view path)."""
    with get_connection(db_path) as conn:
        summary = conn.execute(
            "SELECT * FROM chat_thread_summaries WHERE client_id = ?",
            (client_id,),
        ).fetchone()
        if summary is None:
            raise ClientNotFoundError(client_id)
        messages, has_more = _message_window(conn, client_id, limit)

    s = dict(summary)
    counters = ChannelCounters.from_row(s)
    return ConversationDetail(
        client_id=client_id,
        messages=messages,
        has_more=has_more,
        total_count=len(messages),
        unread=counters,
        last_unread_channel=resolve_last_unread(counters, s.get("last_unread_messenger")),
        avatars={ch: s.get(f"{ch.value}_avatar_url") for ch in AVATAR_CHANNELS},
    )


def fetch_conversation_detail_direct(client_id: str, limit: int, *, db_path=None) -> ConversationDetail:
    """The same detail from three narrower queries plus the missed-call counts."""
    with get_connection(db_path) as conn:
        client = conn.execute(
            "SELECT whatsapp_avatar_url, telegram_avatar_url, max_avatar_url "
            "FROM clients WHERE id = ?",
            (client_id,),
        ).fetchone()
        if client is None:
            raise ClientNotFoundError(client_id)
        messages, has_more = _message_window(conn, client_id, limit)
        unread_rows = [
            MessageRow.from_row(r)
            for r in conn.execute(
                f"""SELECT {_MESSAGE_COLUMNS} FROM chat_messages
                    WHERE client_id = ? AND {_unread_candidate()}
                    ORDER BY created_at DESC, rowid ASC""",
                (client_id,),
            ).fetchall()
        ]

    summary = add_missed_calls(
        count(unread_rows),
        missed_call_count(client_id, db_path=db_path),
        latest_missed_call_at(client_id, db_path=db_path),
    )
    c = dict(client)
    return ConversationDetail(
        client_id=client_id,
        messages=messages,
        has_more=has_more,
        total_count=len(messages),
        unread=summary.by_channel,
        last_unread_channel=summary.last_unread_channel,
        avatars={ch: c.get(f"{ch.value}_avatar_url") for ch in AVATAR_CHANNELS},
    )


# ---------------------------------------------------------------------------
# Async data sources
# ---------------------------------------------------------------------------

def in_thread(fn):
    """Wrap a blocking query so it runs in a worker thread."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    return wrapper


PAGINATED_SOURCE = DataSource(
    PAGINATED,
    in_thread(fetch_paginated_summaries),
    in_thread(fetch_paginated_summaries_direct),
)

UNREAD_PRIORITY_SOURCE = DataSource(
    UNREAD_PRIORITY,
    in_thread(fetch_unread_summaries),
    in_thread(fetch_unread_summaries_direct),
)

THREADS_BY_IDS_SOURCE = DataSource(
    THREADS_BY_IDS,
    in_thread(fetch_summaries_by_ids),
    in_thread(fetch_summaries_by_ids_direct),
)

CONVERSATION_DETAIL_SOURCE = DataSource(
    CONVERSATION_DETAIL,
    in_thread(fetch_conversation_detail),
    in_thread(fetch_conversation_detail_direct),
)
