"""
EclipseVault -- backup, restore and multi-device sync for Eclipse Tab.

Snapshots every persisted piece of a new-tab workspace (spaces, Zen Shelf
stickers, search engines, wallpapers) into one portable package, optionally
encrypts it, ships it to a remote store, and merges it back without
silently destroying either side's data.
"""

import os

__version__ = "0.1.0"
__author__ = "Eclipse Tab"

ECLIPSEVAULT_HOME = os.environ.get("ECLIPSEVAULT_HOME", "~/.eclipsevault")


class EclipseVaultError(Exception):
    """Base class for every error raised by eclipsevault."""
