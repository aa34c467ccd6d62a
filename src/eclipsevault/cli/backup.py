"""Backup commands: export, inspect, preview, import."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from .. import EclipseVaultError
from ..models import ImportStrategy
from ._common import (
    build_policy,
    console,
    fail,
    home_option,
    home_path,
    open_store,
    parse_scope,
    password_option,
    print_preview,
)

STRATEGIES = click.Choice([s.value for s in ImportStrategy])
SPACE_POLICIES = click.Choice(["keepBoth", "keepLocal", "mergeApps"])
ENGINE_POLICIES = click.Choice(["keepLocal", "keepRemote"])


def register_backup_commands(main: click.Group) -> None:
    """Register the backup command group."""

    @main.group()
    def backup():
        """Backup and restore -- portable Eclipse Tab state.

        Export the whole store (or one space) as a zip, optionally
        encrypted, and merge it back on any machine.
        """

    @backup.command("export")
    @home_option
    @click.option("--space", "space_name", default=None, help="Export a single space snapshot.")
    @click.option("--encrypt", is_flag=True, help="Encrypt the backup with a password.")
    @password_option
    @click.option("--output", "-o", default=None, type=click.Path(), help="Output directory.")
    def backup_export(home: str, space_name: Optional[str], encrypt: bool,
                      password: Optional[str], output: Optional[str]):
        """Export the local store to a backup file.

        Examples:

            eclipsevault backup export

            eclipsevault backup export --space Work -o /mnt/usb

            eclipsevault backup export --encrypt --password hunter2
        """
        from ..backup import BackupService, write_export

        service = BackupService(open_store(home))
        out_dir = Path(output) if output else home_path(home) / "backups"

        try:
            if space_name:
                if encrypt:
                    raise click.UsageError("--encrypt applies to full backups only")
                space = service.find_space(space_name)
                if space is None:
                    console.print(f"[red]No space named {space_name!r}[/]")
                    raise SystemExit(1)
                name, data = service.export_space_snapshot(space)
            elif encrypt:
                if not password:
                    password = click.prompt("Password", hide_input=True, confirmation_prompt=True)
                name, data = service.export_encrypted_backup(password)
            else:
                name, data = service.export_full_backup()
        except EclipseVaultError as exc:
            fail(exc)

        path = write_export(out_dir, name, data)
        console.print(Panel(
            f"[bold green]Backup exported[/]\n"
            f"Size: {len(data)} bytes\n"
            f"Path: [cyan]{path}[/]",
            title="Export Complete",
            border_style="green",
        ))

    @backup.command("inspect")
    @click.argument("file", type=click.Path(exists=True, dir_okay=False))
    @password_option
    def backup_inspect(file: str, password: Optional[str]):
        """Show what a backup file contains."""
        from ..backup import read_backup_file
        from ..snapshot import parse_sections

        try:
            package = read_backup_file(Path(file), password)
        except EclipseVaultError as exc:
            fail(exc)

        sections = parse_sections(package.local_storage_entries)
        spaces = ", ".join(space.name for space in sections.spaces_state.spaces) or "none"
        console.print(Panel(
            f"Type: [cyan]{package.kind.value}[/]\n"
            f"Version: {package.export_version}\n"
            f"Created: {package.created_at}\n"
            f"Spaces: {spaces}\n"
            f"Stickers: {len(sections.stickers)}\n"
            f"Search engines: {len(sections.search_engines or [])}\n"
            f"Wallpapers: {len(package.assets.wallpapers)}\n"
            f"Sticker assets: {len(package.assets.sticker_assets)}",
            title=Path(file).name,
            border_style="cyan",
        ))

    @backup.command("preview")
    @home_option
    @click.argument("file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--strategy", type=STRATEGIES, default="merge", show_default=True)
    @click.option("--scope", default=None, help="Sections: space,zenShelf,config.")
    @password_option
    def backup_preview(home: str, file: str, strategy: str, scope: Optional[str],
                       password: Optional[str]):
        """Preview what importing a backup would change."""
        from ..backup import BackupService, read_backup_file

        service = BackupService(open_store(home))
        try:
            package = read_backup_file(Path(file), password)
            preview = service.preview_import(package, ImportStrategy(strategy), parse_scope(scope))
        except EclipseVaultError as exc:
            fail(exc)

        console.print(f"\n[bold]Import preview[/] ({strategy})\n")
        print_preview(preview)
        console.print()

    @backup.command("import")
    @home_option
    @click.argument("file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--strategy", type=STRATEGIES, default="merge", show_default=True)
    @click.option("--scope", default=None, help="Sections: space,zenShelf,config.")
    @click.option("--space-policy", type=SPACE_POLICIES, default=None,
                  help="Same-name spaces (default keepBoth).")
    @click.option("--engine-policy", type=ENGINE_POLICIES, default=None,
                  help="Conflicting search engines (default keepLocal).")
    @password_option
    def backup_import(home: str, file: str, strategy: str, scope: Optional[str],
                      space_policy: Optional[str], engine_policy: Optional[str],
                      password: Optional[str]):
        """Import a backup into the local store.

        Examples:

            eclipsevault backup import eclipse-full-backup-20260101.zip

            eclipsevault backup import backup.zip --strategy overwrite --scope space
        """
        from ..backup import BackupService, ImportFailed, read_backup_file

        service = BackupService(open_store(home))
        try:
            package = read_backup_file(Path(file), password)
            result = service.apply_import(
                package,
                strategy=ImportStrategy(strategy),
                scope=parse_scope(scope),
                policy=build_policy(space_policy, engine_policy),
            )
        except ImportFailed as exc:
            state = "nothing was changed" if exc.restored_from_rollback else "rollback incomplete"
            console.print(f"[bold red]Import failed[/] ({state}): {exc.__cause__}")
            raise SystemExit(1)
        except EclipseVaultError as exc:
            fail(exc)

        sections = ", ".join(result.scope.sections()) or "none"
        console.print(f"\n[bold green]Import complete[/] ({result.strategy.value}; {sections})\n")
        print_preview(result.preview)
        console.print()

    main.add_command(backup)
