"""Rich terminal output for thread lists and conversations."""

from __future__ import annotations

from zoneinfo import ZoneInfo

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import config
from .models import Channel, ConversationDetail, ConversationThread
from .phone_utils import format_phone

console = Console()

_CHANNEL_COLORS = {
    Channel.WHATSAPP: "green",
    Channel.TELEGRAM: "cyan",
    Channel.MAX: "magenta",
    Channel.CHATOS: "blue",
    Channel.EMAIL: "yellow",
    Channel.CALLS: "red",
}


def _channel(channel: Channel | None) -> str:
    if channel is None:
        return "[dim]-[/dim]"
    color = _CHANNEL_COLORS.get(channel, "white")
    return f"[{color}]{channel.value}[/{color}]"


def _when(ts) -> str:
    if ts is None:
        return "[dim]-[/dim]"
    return ts.astimezone(ZoneInfo(config.INBOX_TIMEZONE)).strftime("%Y-%m-%d %H:%M")


def _unread_breakdown(thread: ConversationThread) -> str:
    counts = thread.unread_by_channel.to_dict()
    return ", ".join(f"{name} {n}" for name, n in counts.items() if n)


def display_threads(threads: list[ConversationThread], *, title: str = "Inbox") -> None:
    """Display the merged thread list in a Rich table."""
    if not threads:
        console.print("\n[yellow]No threads found.[/yellow]")
        return

    console.print()
    console.rule(f"[bold]{title}[/bold] ({len(threads)} threads)")
    console.print()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Client")
    table.add_column("Phone")
    table.add_column("Branch")
    table.add_column("Last Activity")
    table.add_column("Channel")
    table.add_column("Preview", max_width=40, overflow="ellipsis")
    table.add_column("Unread", justify="right")

    for thread in threads:
        last = thread.last_message
        unread = ""
        if thread.unread_count:
            unread = f"[bold red]{thread.unread_count}[/bold red] [dim]({_unread_breakdown(thread)})[/dim]"
        preview = last.text or "[dim]-[/dim]"
        if thread.last_message_failed:
            preview = f"[red]![/red] {preview}"
        table.add_row(
            thread.display_name or thread.id[:8],
            format_phone(thread.phone) if thread.phone else "",
            thread.branch or "",
            _when(last.timestamp),
            _channel(last.channel),
            preview,
            unread,
        )

    console.print(table)


def display_conversation(detail: ConversationDetail) -> None:
    """Display a conversation's message window and unread summary."""
    unread = ", ".join(f"{k} {v}" for k, v in detail.unread.to_dict().items() if v) or "none"
    header = (
        f"[bold]Client:[/bold] {detail.client_id}\n"
        f"[bold]Unread:[/bold] {unread}"
        f"  [bold]Last unread:[/bold] {_channel(detail.last_unread_channel)}\n"
        f"[bold]Messages:[/bold] {detail.total_count}"
        + ("  [dim](older messages available)[/dim]" if detail.has_more else "")
    )
    console.print()
    console.print(Panel(header, title="Conversation", expand=False))

    if not detail.messages:
        console.print("[dim]No messages.[/dim]")
        return

    for msg in detail.messages:
        direction = "[blue]>>[/blue]" if msg.is_outgoing else "[green]<<[/green]"
        if msg.message_type and msg.message_type not in ("client", "manager"):
            direction = "[dim]--[/dim]"
        channel = _channel(Channel.from_tag(msg.messenger_type))
        text = msg.text or (f"[dim][file] {msg.file_name}[/dim]" if msg.file_name else "")
        console.print(f"{_when(msg.created_at)} {direction} {channel} {text}")


def display_sources(snapshot: dict[str, dict]) -> None:
    """Display the availability flag of each data source."""
    table = Table(show_header=True, header_style="bold", title="Data sources")
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("Reason", style="dim")
    for source_id, info in snapshot.items():
        status = "[green]primary[/green]" if info["available"] else "[yellow]fallback[/yellow]"
        table.add_row(source_id, status, info.get("reason") or "")
    console.print()
    console.print(table)
