"""Shared utilities for all CLI command modules.

Provides the Rich console instance, store/home helpers, and the preview
table used by both backup and sync commands.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import NoReturn, Optional

import click
from rich.console import Console
from rich.table import Table

from .. import ECLIPSEVAULT_HOME, EclipseVaultError
from ..merge import ImportPreview, MergePolicy, SearchEnginePolicy, SpaceNamePolicy
from ..models import ImportScope
from ..persistence import DirectoryStore

console = Console()

home_option = click.option(
    "--home",
    default=ECLIPSEVAULT_HOME,
    envvar="ECLIPSEVAULT_HOME",
    type=click.Path(),
    help="Vault home directory.",
)

password_option = click.option(
    "--password",
    default=None,
    envvar="ECLIPSEVAULT_PASSWORD",
    help="Backup password (or set ECLIPSEVAULT_PASSWORD).",
)


def home_path(home: str) -> Path:
    return Path(home).expanduser()


def open_store(home: str) -> DirectoryStore:
    """The on-disk store under ``<home>/store``."""
    return DirectoryStore(home_path(home) / "store")


def fail(exc: EclipseVaultError) -> NoReturn:
    """Print an error and exit 1."""
    console.print(f"[bold red]Error:[/] {exc}")
    sys.exit(1)


def parse_scope(value: Optional[str]) -> Optional[ImportScope]:
    if value is None:
        return None
    try:
        return ImportScope.parse(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--scope") from exc


def build_policy(space_policy: Optional[str], engine_policy: Optional[str]) -> Optional[MergePolicy]:
    if space_policy is None and engine_policy is None:
        return None
    return MergePolicy(
        space_name=SpaceNamePolicy(space_policy or SpaceNamePolicy.KEEP_BOTH.value),
        search_engine=SearchEnginePolicy(engine_policy or SearchEnginePolicy.KEEP_LOCAL.value),
    )


def preview_table(preview: ImportPreview) -> Table:
    """Rich table of per-family counts."""
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Family", style="cyan")
    for column in ("Current", "Incoming", "Add", "Overwrite", "Conflict"):
        table.add_column(column, justify="right")

    for family, section in preview.families().items():
        conflict = f"[yellow]{section.conflict}[/]" if section.conflict else "0"
        table.add_row(
            family,
            str(section.current),
            str(section.incoming),
            str(section.add),
            str(section.overwrite),
            conflict,
        )
    return table


def print_preview(preview: ImportPreview) -> None:
    console.print(preview_table(preview))
    for rename in preview.space_renames:
        console.print(f"  [yellow]renamed[/] {rename.from_name} -> [cyan]{rename.to_name}[/]")
    for name in preview.skipped_spaces:
        console.print(f"  [dim]skipped[/] {name} (kept local)")
