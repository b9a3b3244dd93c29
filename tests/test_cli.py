"""Tests for the command line entry point."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from inbox.__main__ import build_parser, main
from inbox.database import get_connection, init_db

_NOW = datetime.now(timezone.utc).isoformat()

CLIENT = "00000000-0000-4000-8000-0000000000d1"


@pytest.fixture()
def tmp_db(tmp_path, monkeypatch):
    db_file = tmp_path / "test.db"
    monkeypatch.setattr("inbox.config.DB_PATH", db_file)
    init_db(db_file)
    with get_connection() as conn:
        conn.execute(
            "INSERT INTO clients (id, name, branch, is_active, last_message_at, created_at, updated_at) "
            "VALUES (?, 'Dmitri', 'north', 1, '2026-02-01T10:00:00+00:00', ?, ?)",
            (CLIENT, _NOW, _NOW),
        )
        conn.execute(
            "INSERT INTO chat_messages (id, client_id, message_text, messenger_type, is_read, created_at) "
            "VALUES ('d1', ?, 'Privet', 'telegram', 0, '2026-02-01T10:00:00+00:00')",
            (CLIENT,),
        )
    return db_file


def _run(monkeypatch, *argv):
    monkeypatch.setattr("sys.argv", ["inbox", *argv])
    main()


class TestParser:
    def test_threads_defaults(self):
        args = build_parser().parse_args(["threads"])
        assert args.pages == 1
        assert args.branch == []
        assert args.pin == []
        assert args.search is None

    def test_repeatable_branch(self):
        args = build_parser().parse_args(["threads", "--branch", "north", "--branch", "south"])
        assert args.branch == ["north", "south"]

    def test_no_command_exits(self, monkeypatch):
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch)
        assert exc.value.code == 1


class TestCommands:
    def test_init_db_without_views(self, tmp_path, monkeypatch):
        db_file = tmp_path / "fresh.db"
        monkeypatch.setattr("inbox.config.DB_PATH", db_file)
        _run(monkeypatch, "init-db", "--no-views")
        with get_connection() as conn:
            views = conn.execute("SELECT name FROM sqlite_master WHERE type = 'view'").fetchall()
        assert views == []

    def test_threads(self, tmp_db, monkeypatch, capsys):
        _run(monkeypatch, "threads", "--branch", "north")
        out = capsys.readouterr().out
        assert "Dmitri" in out
        assert "paginated_rpc" in out

    def test_thread(self, tmp_db, monkeypatch, capsys):
        _run(monkeypatch, "thread", CLIENT)
        assert "Privet" in capsys.readouterr().out

    def test_thread_not_found(self, tmp_db, monkeypatch):
        with pytest.raises(SystemExit) as exc:
            _run(monkeypatch, "thread", "missing")
        assert exc.value.code == 1
