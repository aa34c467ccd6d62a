"""Sync commands: init, push, pull, diff, status."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel
from rich.table import Table

from .. import EclipseVaultError
from ..models import ImportStrategy
from ..sync.models import CloudSyncConfig, DEFAULT_PASSWORD_ENV, SyncSection, TransportType
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


def _engine(home: str):
    from ..sync import CloudSyncEngine

    return CloudSyncEngine(open_store(home), home_path(home))


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Cloud sync -- one envelope, three section hashes.

        Push the local store to WebDAV or a file path. Pull imports only
        the sections that changed on the other device.
        """

    @sync.command("init")
    @home_option
    @click.option("--transport", type=click.Choice([t.value for t in TransportType]),
                  default="local", show_default=True)
    @click.option("--endpoint", default=None, help="WebDAV document URL.")
    @click.option("--username", default=None, help="WebDAV username.")
    @click.option("--password-env", default=DEFAULT_PASSWORD_ENV, show_default=True,
                  help="Environment variable holding the WebDAV password.")
    @click.option("--path", "local_path", default=None, type=click.Path(),
                  help="Sync file path for the local transport.")
    @click.option("--encrypt/--no-encrypt", default=False, help="Encrypt uploaded envelopes.")
    @click.option("--scope", default="space,zenShelf,config", show_default=True,
                  help="Sections imported on pull.")
    def sync_init(home: str, transport: str, endpoint: Optional[str], username: Optional[str],
                  password_env: str, local_path: Optional[str], encrypt: bool, scope: str):
        """Configure the sync transport.

        Examples:

            eclipsevault sync init --transport local --path /mnt/nas/eclipse.json

            eclipsevault sync init --transport webdav --endpoint https://dav.example.com/eclipse.json --username me
        """
        from ..sync.transport import normalize_endpoint

        requested = parse_scope(scope)
        sections = [SyncSection(name) for name in requested.sections()]
        try:
            if transport == TransportType.WEBDAV.value:
                endpoint = normalize_endpoint(endpoint)
                if not username:
                    raise click.UsageError("--username is required for webdav")
            config = CloudSyncConfig(
                transport=TransportType(transport),
                endpoint=endpoint,
                username=username,
                password_env_var=password_env,
                local_path=Path(local_path).expanduser() if local_path else None,
                encrypt=encrypt,
                scope=sections,
            )
            engine = _engine(home)
            engine.configure(config)
        except EclipseVaultError as exc:
            fail(exc)

        console.print(f"\n[green]Sync configured:[/] {transport}")
        console.print(f"  [dim]Config: {engine.config_path}[/]\n")

    @sync.command("push")
    @home_option
    @password_option
    def sync_push(home: str, password: Optional[str]):
        """Upload the local store as a sync envelope."""
        engine = _engine(home)
        if engine.config.encrypt and not password:
            password = click.prompt("Password", hide_input=True)

        try:
            envelope = engine.push(password)
        except EclipseVaultError as exc:
            fail(exc)

        console.print(f"\n[green]Pushed[/] via {engine.transport.name}")
        hashes = envelope.section_hashes
        console.print(f"  [dim]space    {hashes.space}[/]")
        console.print(f"  [dim]zenShelf {hashes.zen_shelf}[/]")
        console.print(f"  [dim]config   {hashes.config}[/]\n")

    @sync.command("pull")
    @home_option
    @password_option
    @click.option("--strategy", type=click.Choice([s.value for s in ImportStrategy]), default=None)
    @click.option("--scope", default=None, help="Sections: space,zenShelf,config.")
    @click.option("--space-policy", type=click.Choice(["keepBoth", "keepLocal", "mergeApps"]),
                  default=None)
    @click.option("--engine-policy", type=click.Choice(["keepLocal", "keepRemote"]), default=None)
    @click.option("--dry-run", is_flag=True, help="Show what changed without importing.")
    def sync_pull(home: str, password: Optional[str], strategy: Optional[str], scope: Optional[str],
                  space_policy: Optional[str], engine_policy: Optional[str], dry_run: bool):
        """Download the remote envelope and import changed sections."""
        from ..sync import RemoteNotFound

        engine = _engine(home)
        try:
            result = engine.pull(
                password=password,
                strategy=ImportStrategy(strategy) if strategy else None,
                scope=parse_scope(scope),
                policy=build_policy(space_policy, engine_policy),
                dry_run=dry_run,
            )
        except RemoteNotFound:
            console.print("\n[yellow]No remote backup yet.[/] Run [cyan]eclipsevault sync push[/] first.\n")
            return
        except EclipseVaultError as exc:
            fail(exc)

        changed = ", ".join(s.value for s in result.changed_sections) or "none"
        console.print(f"\n  Changed sections: [cyan]{changed}[/]")
        if not result.applied:
            label = "dry run" if result.dry_run else "nothing to import"
            console.print(f"  [dim]{label}[/]\n")
            return

        console.print(f"  Imported: [green]{', '.join(result.effective_scope.sections())}[/]\n")
        print_preview(result.import_result.preview)
        console.print()

    @sync.command("diff")
    @home_option
    @password_option
    def sync_diff(home: str, password: Optional[str]):
        """Compare local and remote section hashes."""
        from ..sync import RemoteNotFound

        engine = _engine(home)
        try:
            result = engine.diff(password)
        except RemoteNotFound:
            console.print("\n[yellow]No remote backup yet.[/]\n")
            return
        except EclipseVaultError as exc:
            fail(exc)

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Section", style="cyan")
        table.add_column("Local")
        table.add_column("Remote")
        table.add_column("Status")
        for section in SyncSection:
            local_hash = result.local.section_hashes.get(section)
            remote_hash = result.remote.section_hashes.get(section)
            status = "[yellow]changed[/]" if section in result.changed_sections else "[green]same[/]"
            table.add_row(section.value, local_hash[:12], remote_hash[:12], status)
        console.print()
        console.print(table)
        console.print()

    @sync.command("status")
    @home_option
    def sync_status(home: str):
        """Show sync configuration and recent activity."""
        info = _engine(home).status()
        state = info["state"]
        target = info["endpoint"] or info["local_path"] or "(default path)"
        console.print(Panel(
            f"Transport: [cyan]{info['transport']}[/] -> {target}\n"
            f"Encrypt: {'yes' if info['encrypt'] else 'no'}\n"
            f"Strategy: {info['strategy']}  Scope: {', '.join(info['scope'])}\n"
            f"Last push: {state['last_push'] or 'never'} ({state['push_count']} total)\n"
            f"Last pull: {state['last_pull'] or 'never'} ({state['pull_count']} total)\n"
            f"Last error: {state['last_error'] or '-'}",
            title="Cloud Sync",
            border_style="cyan",
        ))

    main.add_command(sync)
