"""Rich formatting helpers for the Coedit CLI.

Provides functions that format SDK data structures for terminal display.
Rich auto-detects TTY and degrades gracefully when piped (no ANSI codes).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from coedit.models.lock import Lock
    from coedit.models.time_entry import EntryResult, TimeEntry


def get_console() -> Console:
    """Create a Rich Console that auto-detects TTY for graceful pipe degradation."""
    return Console(stderr=False)


def format_locks(locks: list[Lock], now: datetime, console: Console, *, include_expired: bool = False) -> None:
    """Display the locks of one container."""
    if not locks:
        console.print("[dim]No active locks.[/dim]" if not include_expired else "[dim]No locks.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("Field", style="cyan")
    table.add_column("Holder")
    table.add_column("Acquired", style="dim")
    table.add_column("Expires in", justify="right")

    for lock in locks:
        holder = lock.holder_display_name or lock.holder_id
        if lock.is_expired(now):
            expires = "[red]expired[/red]"
        else:
            expires = f"[green]{lock.remaining(now):.0f}s[/green]"
        table.add_row(
            escape(lock.field_owner_id),
            escape(holder),
            lock.acquired_at.strftime("%Y-%m-%d %H:%M:%S"),
            expires,
        )

    console.print(table)


def format_entries(entries: list[TimeEntry], now: datetime, console: Console) -> None:
    """Display time entries with a total."""
    if not entries:
        console.print("[dim]No time entries.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None, pad_edge=False)
    table.add_column("ID", style="yellow", width=8)
    table.add_column("Date", style="dim")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Duration", justify="right", style="green")
    table.add_column("Notes")

    total = timedelta(0)
    for entry in entries:
        total += entry.duration(now)
        end = entry.end_time.strftime("%H:%M") if entry.end_time else "[cyan]active[/cyan]"
        table.add_row(
            entry.id[:8],
            entry.work_date,
            entry.start_time.strftime("%H:%M"),
            end,
            entry.format_duration(now),
            escape(entry.notes) if entry.notes else "",
        )

    console.print(table)
    seconds = int(total.total_seconds())
    console.print(f"  Total: [green]{seconds // 3600}h {(seconds % 3600) // 60}m[/green]")


def format_entry_result(result: EntryResult, action: str, console: Console) -> None:
    """Report the outcome of a time-tracking operation."""
    if result.ok and result.entry is not None:
        console.print(
            f"{action} [yellow]{result.entry.id[:8]}[/yellow] "
            f"at {result.entry.updated_at.strftime('%Y-%m-%d %H:%M')}"
        )
        return
    format_error(escape(str(result.validation)), console)


def format_error(message: str, console: Console) -> None:
    """Display an error message."""
    console.print(f"[red]Error:[/red] {message}", highlight=False)
