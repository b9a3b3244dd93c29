"""Tests for the JSON API (/api/v1/)."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from inbox.database import drop_views, get_connection, init_db
from inbox.engine import InboxEngine

_NOW = datetime.now(timezone.utc).isoformat()

ANNA = "00000000-0000-4000-8000-0000000000a1"
BORIS = "00000000-0000-4000-8000-0000000000b2"
CLARA = "00000000-0000-4000-8000-0000000000c3"


def _ts(hour: int, minute: int = 0) -> str:
    return f"2026-02-01T{hour:02d}:{minute:02d}:00+00:00"


def _seed():
    with get_connection() as conn:
        for cid, name, branch, last in [
            (ANNA, "Anna Petrova", "north", _ts(10)),
            (BORIS, "Boris Ivanov", "south", _ts(11)),
            (CLARA, "Clara Diaz", None, _ts(9)),
        ]:
            conn.execute(
                "INSERT INTO clients (id, name, branch, phone, is_active, last_message_at, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, 1, ?, ?, ?)",
                (cid, name, branch, None, last, _NOW, _NOW),
            )
        conn.execute(
            "INSERT INTO chat_messages (id, client_id, message_text, messenger_type, is_read, created_at) "
            "VALUES ('a1', ?, 'Need a lesson', 'whatsapp', 0, ?)",
            (ANNA, _ts(10)),
        )
        conn.execute(
            "INSERT INTO chat_messages (id, client_id, message_text, messenger_type, is_read, created_at) "
            "VALUES ('b1', ?, 'Thanks!', 'telegram', 1, ?)",
            (BORIS, _ts(11)),
        )
        conn.execute(
            "INSERT INTO chat_messages (id, client_id, message_text, messenger_type, is_read, created_at) "
            "VALUES ('c1', ?, 'See you', 'max', 1, ?)",
            (CLARA, _ts(9)),
        )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def tmp_db(tmp_path, monkeypatch):
    db_file = tmp_path / "test.db"
    monkeypatch.setattr("inbox.config.DB_PATH", db_file)
    init_db(db_file)
    _seed()
    return db_file


def _make_client():
    from inbox.web.app import create_app

    return TestClient(create_app(InboxEngine()), raise_server_exceptions=False)


@pytest.fixture()
def client(tmp_db):
    with _make_client() as c:
        yield c


@pytest.fixture()
def degraded_client(tmp_db):
    # Startup runs init_db, so the views go after it
    with _make_client() as c:
        drop_views()
        yield c


def _ids(payload):
    return [t["id"] for t in payload["threads"]]


# ===========================================================================
# Health and sources
# ===========================================================================

class TestHealth:
    def test_health(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_sources_all_available(self, client):
        data = client.get("/api/v1/sources").json()
        assert all(info["available"] for info in data.values())
        assert "paginated_rpc" in data


# ===========================================================================
# Threads
# ===========================================================================

class TestThreads:
    def test_first_call_loads(self, client):
        resp = client.get("/api/v1/threads")
        assert resp.status_code == 200
        data = resp.json()
        assert _ids(data) == [ANNA, BORIS, CLARA]
        assert data["is_loading"] is False
        assert data["has_next_page"] is False
        assert data["error"] is None

    def test_thread_payload(self, client):
        anna = client.get("/api/v1/threads").json()["threads"][0]
        assert anna["display_name"] == "Anna Petrova"
        assert anna["unread_count"] == 1
        assert anna["unread_by_channel"]["whatsapp"] == 1
        assert anna["last_unread_channel"] == "whatsapp"
        assert anna["last_message"]["text"] == "Need a lesson"
        assert set(anna["avatar_by_channel"]) == {"whatsapp", "telegram", "max"}

    def test_branch_scope(self, client):
        data = client.get("/api/v1/threads", params={"branch": "north"}).json()
        assert _ids(data) == [ANNA, CLARA]

    def test_refetch_picks_up_new_rows(self, client):
        client.get("/api/v1/threads")
        with get_connection() as conn:
            conn.execute(
                "INSERT INTO chat_messages (id, client_id, message_text, messenger_type, is_read, created_at) "
                "VALUES ('c2', ?, 'One more thing', 'max', 0, ?)",
                (CLARA, _ts(12)),
            )
        data = client.post("/api/v1/threads/refetch").json()
        clara = next(t for t in data["threads"] if t["id"] == CLARA)
        assert clara["unread_count"] == 1

    def test_load_more_when_exhausted(self, client):
        resp = client.post("/api/v1/threads/load-more")
        assert resp.status_code == 200
        assert len(resp.json()["threads"]) == 3

    def test_pinned(self, client):
        resp = client.put("/api/v1/threads/pinned", json=[ANNA, "corporate"])
        assert resp.status_code == 200
        assert _ids(resp.json()) == [ANNA, BORIS, CLARA]

    def test_pinned_invalid_body(self, client):
        resp = client.put("/api/v1/threads/pinned", json={"ids": [ANNA]})
        assert resp.status_code == 400

    def test_search(self, client):
        resp = client.get("/api/v1/threads/search", params={"q": "Clara"})
        assert resp.status_code == 200
        assert CLARA in _ids(resp.json())

    def test_degraded_views_still_serve_threads(self, degraded_client):
        data = degraded_client.get("/api/v1/threads").json()
        assert _ids(data) == [ANNA, BORIS, CLARA]
        sources = degraded_client.get("/api/v1/sources").json()
        assert sources["paginated_rpc"]["available"] is False
        assert sources["unread_priority_rpc"]["available"] is False


# ===========================================================================
# Conversations
# ===========================================================================

class TestConversations:
    def test_detail(self, client):
        resp = client.get(f"/api/v1/conversations/{ANNA}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["client_id"] == ANNA
        assert [m["message_text"] for m in data["messages"]] == ["Need a lesson"]
        assert data["unread_count"] == 1
        assert data["has_more"] is False

    def test_unknown_conversation(self, client):
        resp = client.get("/api/v1/conversations/no-such-client")
        assert resp.status_code == 404

    def test_invalid_limit(self, client):
        resp = client.get(f"/api/v1/conversations/{ANNA}", params={"limit": 0})
        assert resp.status_code == 422

    def test_cached_until_invalidated(self, client):
        client.get(f"/api/v1/conversations/{BORIS}")
        with get_connection() as conn:
            conn.execute(
                "INSERT INTO chat_messages (id, client_id, message_text, messenger_type, is_read, created_at) "
                "VALUES ('b2', ?, 'Hello again', 'telegram', 0, ?)",
                (BORIS, _ts(12)),
            )
        assert client.get(f"/api/v1/conversations/{BORIS}").json()["unread_count"] == 0

        client.post(f"/api/v1/conversations/{BORIS}/invalidate")
        assert client.get(f"/api/v1/conversations/{BORIS}").json()["unread_count"] == 1

    def test_avatar_patch(self, client):
        client.get("/api/v1/threads")
        client.get(f"/api/v1/conversations/{ANNA}")
        resp = client.put(
            f"/api/v1/conversations/{ANNA}/avatars/telegram", json={"url": "https://cdn.example/tg.jpg"},
        )
        assert resp.status_code == 200

        detail = client.get(f"/api/v1/conversations/{ANNA}").json()
        assert detail["avatars"]["telegram"] == "https://cdn.example/tg.jpg"
        anna = client.get("/api/v1/threads").json()["threads"][0]
        assert anna["avatar_by_channel"]["telegram"] == "https://cdn.example/tg.jpg"

    def test_avatar_unknown_channel(self, client):
        resp = client.put(f"/api/v1/conversations/{ANNA}/avatars/fax", json={"url": "x"})
        assert resp.status_code == 400

    def test_prefetch(self, client):
        assert client.post(f"/api/v1/conversations/{ANNA}/prefetch").json() == {"scheduled": True}
        client.get(f"/api/v1/conversations/{ANNA}")
        assert client.post(f"/api/v1/conversations/{ANNA}/prefetch").json() == {"scheduled": False}

    def test_degraded_detail(self, degraded_client):
        data = degraded_client.get(f"/api/v1/conversations/{ANNA}").json()
        assert data["unread_count"] == 1
        sources = degraded_client.get("/api/v1/sources").json()
        assert sources["conversation_detail_rpc"]["available"] is False


# ===========================================================================
# Realtime events
# ===========================================================================

class TestMessageEvents:
    def test_insert_patches_detail_and_list(self, client):
        client.get("/api/v1/threads")
        client.get(f"/api/v1/conversations/{BORIS}")

        # The ingestion side writes the row, then announces it
        with get_connection() as conn:
            conn.execute(
                "INSERT INTO chat_messages (id, client_id, message_text, messenger_type, is_read, created_at) "
                "VALUES ('b3', ?, 'Are you free?', 'telegram', 0, ?)",
                (BORIS, _ts(13)),
            )
        resp = client.post("/api/v1/events/messages", json={
            "event": "insert",
            "message": {"id": "b3", "client_id": BORIS, "message_text": "Are you free?",
                        "messenger_type": "telegram", "is_read": 0, "created_at": _ts(13)},
        })
        assert resp.status_code == 200

        detail = client.get(f"/api/v1/conversations/{BORIS}").json()
        assert detail["unread_count"] == 1
        assert detail["messages"][-1]["id"] == "b3"

        threads = client.get("/api/v1/threads").json()
        assert _ids(threads)[0] == BORIS
        assert threads["threads"][0]["unread_by_channel"]["telegram"] == 1

    def test_unknown_event(self, client):
        resp = client.post("/api/v1/events/messages", json={"event": "upsert", "message": {}})
        assert resp.status_code == 400

    def test_message_required(self, client):
        resp = client.post("/api/v1/events/messages", json={"event": "insert", "message": {"id": "x"}})
        assert resp.status_code == 400


# ===========================================================================
# Startup
# ===========================================================================

class TestStartup:
    def test_initializes_the_engine_database(self, tmp_path, monkeypatch):
        monkeypatch.setattr("inbox.config.DB_PATH", tmp_path / "default.db")
        from inbox.web.app import create_app

        engine_db = tmp_path / "engine.db"
        app = create_app(InboxEngine(db_path=engine_db))
        with TestClient(app, raise_server_exceptions=False) as c:
            resp = c.get("/api/v1/threads")
            sources = c.get("/api/v1/sources").json()

        assert resp.status_code == 200
        assert resp.json()["threads"] == []
        assert all(info["available"] for info in sources.values())
        with get_connection(engine_db) as conn:
            views = {r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'view'")}
        assert {"chat_thread_summaries", "chat_unread_threads"} <= views
        assert not (tmp_path / "default.db").exists()
