"""
Eclipse Vault CLI -- backup, restore, and cloud sync for Eclipse Tab state.

Each command group lives in its own module and is registered on the
main Click group via a register function.

Entry point: eclipsevault.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="eclipsevault")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """Eclipse Vault -- portable backups and sync for Eclipse Tab.

    Export, inspect, and merge backups. Push and pull through WebDAV or a
    plain file path.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups from modular files
# ---------------------------------------------------------------------------

from .backup import register_backup_commands
from .sync_cmd import register_sync_commands

register_backup_commands(main)
register_sync_commands(main)
