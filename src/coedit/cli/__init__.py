"""Coedit CLI -- terminal interface for inspecting and maintaining a workspace.

This module is NEVER imported from coedit/__init__.py.
It is only loaded via the ``coedit`` entry point defined in pyproject.toml.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import TYPE_CHECKING

import click
from dotenv import load_dotenv

from coedit.cli.formatting import format_error, get_console

if TYPE_CHECKING:
    from collections.abc import Iterator

    from rich.console import Console

    from coedit.workspace import Workspace


@click.group()
@click.option(
    "--db",
    default="coedit.db",
    envvar="COEDIT_DB",
    help="Path to coedit database.",
)
@click.pass_context
def cli(ctx: click.Context, db: str) -> None:
    """Coedit: field locks, autosave and time tracking over a shared store."""
    load_dotenv()
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db


def _open_workspace(ctx: click.Context, *, create: bool = False) -> Workspace:
    """Open the workspace named by --db, with COEDIT_* settings applied."""
    from coedit.models.config import CoeditConfig
    from coedit.workspace import Workspace

    db_path = ctx.obj["db_path"]
    if not create and db_path != ":memory:" and not os.path.exists(db_path):
        format_error(f"Database not found: {db_path}", get_console())
        raise SystemExit(1)

    config = CoeditConfig.from_env(db_path=db_path)
    return Workspace.open(config=config)


@contextmanager
def _workspace(ctx: click.Context, *, create: bool = False) -> Iterator[tuple[Workspace, Console]]:
    """Context manager that opens a Workspace, yields (workspace, console), and handles cleanup.

    Ensures the workspace is closed on exit and formats exceptions as CLI errors.
    """
    console = get_console()
    try:
        ws = _open_workspace(ctx, create=create)
        try:
            yield ws, console
        finally:
            ws.close()
    except SystemExit:
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None


@cli.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the database (if missing) and its tables."""
    with _workspace(ctx, create=True) as (_ws, console):
        console.print(f"Initialized coedit database at [green]{ctx.obj['db_path']}[/green]")


# Register subcommands after cli group is defined
from coedit.cli.commands.locks import locks  # noqa: E402
from coedit.cli.commands.entries import entries  # noqa: E402

cli.add_command(locks)
cli.add_command(entries)
