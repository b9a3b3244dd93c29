"""CLI entry point for the chat inbox.

Usage:
    python -m inbox init-db [--no-views]     # create tables (and summary views)
    python -m inbox threads                  # print the merged thread list
    python -m inbox thread CLIENT_ID         # print one conversation
    python -m inbox serve                    # launch the JSON API
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

from . import config
from .database import init_db
from .display import display_conversation, display_sources, display_threads

console = Console()


# ---------------------------------------------------------------------------
# Subcommand: init-db
# ---------------------------------------------------------------------------

def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the database schema."""
    init_db(with_views=not args.no_views)
    console.print(f"[green]Database ready at {config.DB_PATH}[/green]")


# ---------------------------------------------------------------------------
# Subcommand: threads
# ---------------------------------------------------------------------------

async def _load_threads(args: argparse.Namespace):
    from .engine import InboxEngine

    engine = InboxEngine()
    thread_list = engine.thread_list(args.branch)
    if args.pin:
        await thread_list.set_pinned(args.pin)
    if args.search:
        await thread_list.set_search(args.search)
    state = await thread_list.refetch()
    for _ in range(args.pages - 1):
        if not state.has_next_page:
            break
        state = await thread_list.load_more()
    return state, engine.sources()


def cmd_threads(args: argparse.Namespace) -> None:
    """Load and display the merged thread list."""
    state, sources = asyncio.run(_load_threads(args))
    if state.error:
        console.print(f"[red]All thread sources failed:[/red] {state.error}")
        sys.exit(1)
    display_threads(state.threads)
    if state.has_next_page:
        console.print("[dim]More threads available (use --pages).[/dim]")
    display_sources(sources)


# ---------------------------------------------------------------------------
# Subcommand: thread
# ---------------------------------------------------------------------------

async def _load_conversation(client_id: str, limit: int):
    from .engine import InboxEngine

    engine = InboxEngine()
    detail = await engine.conversations.read_through(client_id, limit=limit)
    return detail, engine.sources()


def cmd_thread(args: argparse.Namespace) -> None:
    """Display one conversation."""
    from .sources import ClientNotFoundError

    try:
        detail, sources = asyncio.run(_load_conversation(args.client_id, args.limit))
    except ClientNotFoundError:
        console.print(f"[red]Client not found: {args.client_id}[/red]")
        sys.exit(1)
    display_conversation(detail)
    display_sources(sources)


# ---------------------------------------------------------------------------
# Subcommand: serve
# ---------------------------------------------------------------------------

def cmd_serve(args: argparse.Namespace) -> None:
    """Launch the JSON API."""
    import uvicorn

    from .web.app import create_app

    app = create_app()
    console.print(f"\n[bold]Starting inbox API at http://{args.host}:{args.port}[/bold]")
    uvicorn.run(app, host=args.host, port=args.port)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m inbox",
        description="Multi-channel chat inbox",
    )
    sub = parser.add_subparsers(dest="command")

    # init-db
    idb = sub.add_parser("init-db", help="Create the database schema")
    idb.add_argument("--no-views", action="store_true",
                     help="Skip the thread summary views (direct queries only)")

    # threads
    th = sub.add_parser("threads", help="Show the merged thread list")
    th.add_argument("--pages", type=int, default=1, help="Pages to load (default: 1)")
    th.add_argument("--branch", action="append", default=[], help="Limit to a branch (repeatable)")
    th.add_argument("--pin", action="append", default=[], help="Pinned client id (repeatable)")
    th.add_argument("--search", help="Inject clients matching this name/phone/email")

    # thread
    one = sub.add_parser("thread", help="Show one conversation")
    one.add_argument("client_id", help="Client id")
    one.add_argument("--limit", type=int, default=config.DETAIL_LIMIT,
                     help=f"Messages to load (default: {config.DETAIL_LIMIT})")

    # serve
    sv = sub.add_parser("serve", help="Launch the JSON API")
    sv.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    sv.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")

    return parser


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )

    parser = build_parser()
    args = parser.parse_args()

    commands = {
        "init-db": cmd_init_db,
        "threads": cmd_threads,
        "thread": cmd_thread,
        "serve": cmd_serve,
    }

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    commands[args.command](args)


if __name__ == "__main__":
    main()
