"""SQLite connection management, schema initialization, and helpers."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from . import config

log = logging.getLogger(__name__)

_SCHEMA_SQL = """\
-- Counterparties (one conversation thread per client)
CREATE TABLE IF NOT EXISTS clients (
    id                  TEXT PRIMARY KEY,
    name                TEXT,
    first_name          TEXT,
    last_name           TEXT,
    middle_name         TEXT,
    phone               TEXT,
    email               TEXT,
    branch              TEXT,
    avatar_url          TEXT,
    whatsapp_avatar_url TEXT,
    telegram_avatar_url TEXT,
    max_avatar_url      TEXT,
    whatsapp_chat_id    TEXT,
    telegram_chat_id    TEXT,
    max_chat_id         TEXT,
    is_active           INTEGER DEFAULT 1,
    last_message_at     TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

-- Additional phone numbers per client
CREATE TABLE IF NOT EXISTS client_phone_numbers (
    id         TEXT PRIMARY KEY,
    client_id  TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    phone      TEXT NOT NULL,
    is_primary INTEGER DEFAULT 0,
    created_at TEXT NOT NULL
);

-- Messages from every messenger channel (written by the ingestion side)
CREATE TABLE IF NOT EXISTS chat_messages (
    id                  TEXT PRIMARY KEY,
    client_id           TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    message_text        TEXT,
    message_type        TEXT DEFAULT 'client',
    system_type         TEXT,
    messenger_type      TEXT,
    is_read             INTEGER,
    is_outgoing         INTEGER DEFAULT 0,
    status              TEXT,
    file_url            TEXT,
    file_name           TEXT,
    file_type           TEXT,
    external_message_id TEXT,
    call_duration       TEXT,
    created_at          TEXT NOT NULL
);

-- Telephony call records
CREATE TABLE IF NOT EXISTS call_logs (
    id               TEXT PRIMARY KEY,
    client_id        TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    status           TEXT NOT NULL,
    direction        TEXT,
    started_at       TEXT NOT NULL,
    duration_seconds INTEGER
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_clients_last_message   ON clients(last_message_at);
CREATE INDEX IF NOT EXISTS idx_clients_branch         ON clients(branch);
CREATE INDEX IF NOT EXISTS idx_cpn_client             ON client_phone_numbers(client_id);
CREATE INDEX IF NOT EXISTS idx_chat_messages_client   ON chat_messages(client_id, created_at);
CREATE INDEX IF NOT EXISTS idx_chat_messages_unread   ON chat_messages(client_id, is_read);
CREATE INDEX IF NOT EXISTS idx_call_logs_client       ON call_logs(client_id, started_at);
"""

# Server-side thread summaries.  These are the fast paths; a database
# created without them is served by the direct-query fallbacks.
_VIEWS_SQL = """\
CREATE VIEW IF NOT EXISTS chat_thread_summaries AS
WITH unread AS (
    SELECT m.client_id, m.created_at, m.rowid AS rid,
           CASE
               WHEN LOWER(TRIM(m.messenger_type, char(32, 9, 10, 13)))
                    IN ('telegram', 'max', 'chatos', 'email', 'calls')
                   THEN LOWER(TRIM(m.messenger_type, char(32, 9, 10, 13)))
               ELSE 'whatsapp'
           END AS channel
    FROM chat_messages m
    WHERE COALESCE(m.is_read, 0) = 0
      AND COALESCE(m.is_outgoing, 0) = 0
      AND COALESCE(NULLIF(LOWER(TRIM(m.message_type, char(32, 9, 10, 13))), ''), 'client') = 'client'
      AND NULLIF(m.system_type, '') IS NULL
      AND LTRIM(COALESCE(m.message_text, ''), char(32, 9, 10, 13)) NOT LIKE 'crm!_system!_%' ESCAPE '!'
),
unread_counts AS (
    SELECT client_id,
           SUM(channel = 'whatsapp') AS unread_whatsapp,
           SUM(channel = 'telegram') AS unread_telegram,
           SUM(channel = 'max')      AS unread_max,
           SUM(channel = 'chatos')   AS unread_chatos,
           SUM(channel = 'email')    AS unread_email,
           SUM(channel = 'calls')    AS unread_call_messages
    FROM unread
    GROUP BY client_id
),
latest_unread AS (
    SELECT client_id, channel, created_at FROM (
        SELECT client_id, channel, created_at,
               ROW_NUMBER() OVER (
                   PARTITION BY client_id ORDER BY created_at DESC, rid ASC
               ) AS rn
        FROM unread
    ) WHERE rn = 1
),
missed AS (
    SELECT client_id, COUNT(*) AS missed_calls, MAX(started_at) AS last_missed_at
    FROM call_logs
    WHERE status = 'missed'
    GROUP BY client_id
),
last_msg AS (
    SELECT client_id, message_text, created_at, messenger_type, is_outgoing, status FROM (
        SELECT m.client_id, m.message_text, m.created_at, m.messenger_type,
               m.is_outgoing, m.status,
               ROW_NUMBER() OVER (
                   PARTITION BY m.client_id ORDER BY m.created_at DESC, m.rowid ASC
               ) AS rn
        FROM chat_messages m
    ) WHERE rn = 1
),
last_call AS (
    SELECT client_id, status, direction, started_at FROM (
        SELECT cl.client_id, cl.status, cl.direction, cl.started_at,
               ROW_NUMBER() OVER (
                   PARTITION BY cl.client_id ORDER BY cl.started_at DESC, cl.rowid ASC
               ) AS rn
        FROM call_logs cl
    ) WHERE rn = 1
)
SELECT
    c.id                  AS client_id,
    c.name                AS client_name,
    c.first_name,
    c.last_name,
    c.middle_name,
    COALESCE(NULLIF(c.phone, ''), (
        SELECT p.phone FROM client_phone_numbers p
        WHERE p.client_id = c.id
        ORDER BY p.is_primary DESC, p.created_at ASC
        LIMIT 1
    ))                    AS client_phone,
    c.branch              AS client_branch,
    c.avatar_url,
    c.whatsapp_avatar_url,
    c.telegram_avatar_url,
    c.max_avatar_url,
    c.whatsapp_chat_id,
    c.telegram_chat_id,
    c.max_chat_id,
    c.is_active,
    c.last_message_at,
    lm.message_text       AS last_message_text,
    lm.created_at         AS last_message_time,
    lm.messenger_type     AS last_messenger_type,
    CASE WHEN lm.is_outgoing = 1 AND lm.status = 'failed' THEN 1 ELSE 0 END
                          AS last_message_failed,
    lc.started_at         AS last_call_time,
    lc.direction          AS last_call_direction,
    lc.status             AS last_call_status,
    COALESCE(uc.unread_whatsapp, 0) AS unread_whatsapp,
    COALESCE(uc.unread_telegram, 0) AS unread_telegram,
    COALESCE(uc.unread_max, 0)      AS unread_max,
    COALESCE(uc.unread_chatos, 0)   AS unread_chatos,
    COALESCE(uc.unread_email, 0)    AS unread_email,
    COALESCE(uc.unread_call_messages, 0) + COALESCE(mi.missed_calls, 0)
                          AS unread_calls,
    CASE
        WHEN mi.last_missed_at IS NOT NULL
             AND (lu.created_at IS NULL OR mi.last_missed_at > lu.created_at)
            THEN 'calls'
        ELSE lu.channel
    END                   AS last_unread_messenger
FROM clients c
LEFT JOIN last_msg lm      ON lm.client_id = c.id
LEFT JOIN last_call lc     ON lc.client_id = c.id
LEFT JOIN unread_counts uc ON uc.client_id = c.id
LEFT JOIN latest_unread lu ON lu.client_id = c.id
LEFT JOIN missed mi        ON mi.client_id = c.id;

CREATE VIEW IF NOT EXISTS chat_unread_threads AS
SELECT * FROM chat_thread_summaries
WHERE unread_whatsapp + unread_telegram + unread_max + unread_chatos
      + unread_email + unread_calls > 0;
"""

VIEW_NAMES = ("chat_unread_threads", "chat_thread_summaries")


def _db_path() -> Path:
    return config.DB_PATH


def init_db(db_path: Path | None = None, *, with_views: bool = True) -> None:
    """Create the database file and initialize all tables and indexes.

    ``with_views=False`` leaves out the thread summary views, which is what
    an older deployment of the data service looks like.
    """
    path = db_path or _db_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path))
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.executescript(_SCHEMA_SQL)
        conn.executescript(_INDEX_SQL)
        if with_views:
            conn.executescript(_VIEWS_SQL)
        conn.commit()
        log.info("Database initialized at %s (views: %s)", path, with_views)
    finally:
        conn.close()


def install_views(db_path: Path | None = None) -> None:
    """Create the thread summary views on an existing database."""
    with get_connection(db_path) as conn:
        conn.executescript(_VIEWS_SQL)
    log.info("Installed thread summary views")


def drop_views(db_path: Path | None = None) -> None:
    """Remove the thread summary views, if present."""
    with get_connection(db_path) as conn:
        for name in VIEW_NAMES:
            conn.execute(f"DROP VIEW IF EXISTS {name}")
    log.info("Dropped thread summary views")


@contextmanager
def get_connection(db_path: Path | None = None) -> Iterator[sqlite3.Connection]:
    """Context manager yielding a SQLite connection with WAL and FK enforcement.

    Commits on clean exit, rolls back on exception.
    """
    path = db_path or _db_path()
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def placeholders(values) -> str:
    """Return ``?, ?, ?`` for an IN clause over *values*."""
    return ", ".join("?" for _ in values)
