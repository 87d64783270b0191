"""coedit locks -- inspect and clean up field locks."""

from __future__ import annotations

import click

from coedit.cli.formatting import format_error, format_locks


@click.group()
def locks() -> None:
    """Inspect and clean up field locks."""


@locks.command("list")
@click.argument("container_id")
@click.option("--all", "include_expired", is_flag=True, help="Include expired leases not yet swept.")
@click.pass_context
def list_locks(ctx: click.Context, container_id: str, include_expired: bool) -> None:
    """Show who is editing which field of CONTAINER_ID."""
    from coedit.cli import _workspace

    with _workspace(ctx) as (ws, console):
        if include_expired:
            found = ws.lock_repo.list_for_container(container_id)
        else:
            found = list(ws.locks.list_active(container_id))
        format_locks(found, ws.clock.now(), console, include_expired=include_expired)


@locks.command()
@click.argument("container_id")
@click.pass_context
def sweep(ctx: click.Context, container_id: str) -> None:
    """Delete expired leases under CONTAINER_ID."""
    from coedit.cli import _workspace

    with _workspace(ctx) as (ws, console):
        deleted = ws.locks.sweep_stale(container_id)
        console.print(f"Swept {deleted} stale lock(s) from [cyan]{container_id}[/cyan]")


@locks.command()
@click.argument("container_id")
@click.argument("field_owner_id")
@click.option("--holder", required=True, help="Holder ID that owns the lease.")
@click.pass_context
def release(ctx: click.Context, container_id: str, field_owner_id: str, holder: str) -> None:
    """Release HOLDER's lease on FIELD_OWNER_ID in CONTAINER_ID."""
    from coedit.cli import _workspace

    with _workspace(ctx) as (ws, console):
        result = ws.locks.release(container_id, field_owner_id, holder)
        if not result.ok:
            format_error(str(result.error), console)
            raise SystemExit(1)
        console.print(f"Released [cyan]{container_id}/{field_owner_id}[/cyan]")
