"""coedit entries -- list time entries and clock in/out."""

from __future__ import annotations

from datetime import datetime

import click

from coedit.cli.formatting import format_entries, format_entry_result


@click.group()
def entries() -> None:
    """List time entries and clock in or out."""


@entries.command("list")
@click.argument("user_id")
@click.option("--from", "first", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="First work date (default: today).")
@click.option("--to", "last", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Last work date (default: --from).")
@click.pass_context
def list_entries(ctx: click.Context, user_id: str, first: datetime | None, last: datetime | None) -> None:
    """Show USER_ID's time entries by work date."""
    from coedit.cli import _workspace

    with _workspace(ctx) as (ws, console):
        now = ws.clock.now()
        first_date = first.date() if first else now.astimezone(ws.config.zone).date()
        last_date = last.date() if last else first_date
        found = ws.time_tracking.entries_between(user_id, first_date, last_date)
        format_entries(found, now, console)


@entries.command("clock-in")
@click.argument("user_id")
@click.option("--org", "organization_id", required=True, help="Organization the time is logged for.")
@click.option("--notes", default=None, help="Optional notes.")
@click.pass_context
def clock_in(ctx: click.Context, user_id: str, organization_id: str, notes: str | None) -> None:
    """Start an active time entry for USER_ID."""
    from coedit.cli import _workspace

    with _workspace(ctx) as (ws, console):
        result = ws.time_tracking.clock_in(user_id, organization_id, notes=notes)
        format_entry_result(result, "Clocked in", console)
        if not result.ok:
            raise SystemExit(1)


@entries.command("clock-out")
@click.argument("user_id")
@click.option("--notes", default=None, help="Optional notes.")
@click.pass_context
def clock_out(ctx: click.Context, user_id: str, notes: str | None) -> None:
    """Complete USER_ID's active time entry."""
    from coedit.cli import _workspace

    with _workspace(ctx) as (ws, console):
        result = ws.time_tracking.clock_out(user_id, notes=notes)
        format_entry_result(result, "Clocked out", console)
        if not result.ok:
            raise SystemExit(1)
