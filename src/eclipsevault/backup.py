"""Backup export and import.

Exports the live state behind a PersistenceAdapter as a portable file and
applies an incoming package back onto it.

Export forms:
    eclipse-full-backup-YYYYMMDD.zip                  backup.json inside
    eclipse-space-snapshot-<name>-YYYYMMDD.zip        snapshot.json inside
    eclipse-full-backup-YYYYMMDD.enc.json             encrypted envelope, no zip

Import is transactional: the current state is captured first and written
back if any write fails, so the store ends up either fully updated or
exactly as it was.

Sections (used for import scope and for sync hashing):
    space     spaces, deleted dock items, deleted spaces
    zenShelf  stickers, deleted stickers, sticker assets
    config    every other managed key, wallpapers
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import Field

from . import EclipseVaultError, container, crypto
from .merge import (
    IdGenerator,
    ImportPreview,
    MergeEngine,
    MergePolicy,
    build_preview,
)
from .models import (
    BackupAssets,
    BackupKind,
    BackupPackage,
    EXPORT_VERSION,
    ImportScope,
    ImportStrategy,
    InvalidPackageStructure,
    Space,
    WireModel,
    parse_package,
)
from .persistence import PersistenceAdapter
from .snapshot import (
    MANAGED_KEYS,
    StorageKeys,
    dump_json,
    parse_deleted_dock_items,
    parse_deleted_spaces,
    parse_spaces_state,
)

logger = logging.getLogger("eclipsevault.backup")

FULL_BACKUP_FILE = "backup.json"
SPACE_SNAPSHOT_FILE = "snapshot.json"

SPACE_KEYS: tuple[str, ...] = (
    StorageKeys.SPACES,
    StorageKeys.DELETED_DOCK_ITEMS,
    StorageKeys.DELETED_SPACES,
)
ZEN_SHELF_KEYS: tuple[str, ...] = (
    StorageKeys.STICKERS,
    StorageKeys.DELETED_STICKERS,
)
CONFIG_KEYS: tuple[str, ...] = tuple(
    key for key in MANAGED_KEYS if key not in SPACE_KEYS and key not in ZEN_SHELF_KEYS
)


class ImportFailed(EclipseVaultError):
    """Raised when writing an import failed.

    The original error is chained as ``__cause__``.

    Attributes:
        restored_from_rollback: True if the pre-import state was written back.
    """

    def __init__(self, message: str, restored_from_rollback: bool):
        super().__init__(message)
        self.restored_from_rollback = restored_from_rollback


class ImportResult(WireModel):
    """Outcome of a successful import."""

    strategy: ImportStrategy
    restored_from_rollback: bool = False
    preview: ImportPreview = Field(default_factory=ImportPreview)
    scope: ImportScope = Field(default_factory=ImportScope.all)


def date_tag(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d")


def section_keys(scope: ImportScope) -> set[str]:
    """Managed entry keys covered by the enabled sections of ``scope``."""
    keys: set[str] = set()
    if scope.space:
        keys.update(SPACE_KEYS)
    if scope.zen_shelf:
        keys.update(ZEN_SHELF_KEYS)
    if scope.config:
        keys.update(CONFIG_KEYS)
    return keys


def restrict_package(package: BackupPackage, scope: ImportScope) -> BackupPackage:
    """Copy of ``package`` with out-of-scope sections emptied."""
    allowed = section_keys(scope)
    entries = {
        key: (value if key in allowed else None)
        for key, value in package.local_storage_entries.items()
    }
    assets = BackupAssets(
        wallpapers=package.assets.wallpapers if scope.config else [],
        sticker_assets=package.assets.sticker_assets if scope.zen_shelf else [],
    )
    return package.model_copy(update={"local_storage_entries": entries, "assets": assets})


def _overlay_scope(
    target: BackupPackage,
    local: BackupPackage,
    scope: ImportScope,
) -> tuple[dict[str, Optional[str]], BackupAssets]:
    """Entries and assets to write: target for in-scope sections, local otherwise."""
    allowed = section_keys(scope)
    keys = list(dict.fromkeys([*MANAGED_KEYS, *local.local_storage_entries, *target.local_storage_entries]))
    entries = {
        key: (target.local_storage_entries.get(key) if key in allowed
              else local.local_storage_entries.get(key))
        for key in keys
    }
    assets = BackupAssets(
        wallpapers=target.assets.wallpapers if scope.config else local.assets.wallpapers,
        sticker_assets=(
            target.assets.sticker_assets if scope.zen_shelf else local.assets.sticker_assets
        ),
    )
    return entries, assets


class BackupService:
    """Export/import against one persistence adapter.

    Callers must not run two imports against the same adapter at once.

    Args:
        store: Where live state is read from and written to.
        id_generator: Passed to the merge engine for remapped ids.
    """

    def __init__(self, store: PersistenceAdapter, id_generator: Optional[IdGenerator] = None):
        self.store = store
        self.id_generator = id_generator

    # -- build ------------------------------------------------------------

    def create_package(
        self,
        kind: BackupKind = BackupKind.FULL_BACKUP,
        entries: Optional[dict[str, Optional[str]]] = None,
        now: Optional[datetime] = None,
    ) -> BackupPackage:
        """Snapshot the store into a fresh package.

        Args:
            kind: Package type.
            entries: Pre-built entries (space snapshots); defaults to the store's.
            now: Creation time; defaults to the current time.

        Returns:
            A new BackupPackage.
        """
        created = now or datetime.now(timezone.utc)
        return BackupPackage(
            kind=kind,
            export_version=EXPORT_VERSION,
            created_at=int(created.timestamp() * 1000),
            local_storage_entries=(
                entries if entries is not None else self.store.read_all_entries()
            ),
            assets=BackupAssets(
                wallpapers=self.store.read_all_wallpapers(),
                sticker_assets=self.store.read_all_sticker_assets(),
            ),
        )

    def build_space_snapshot_entries(self, space: Space) -> dict[str, Optional[str]]:
        """Current entries narrowed to one space and its recycle records."""
        entries = self.store.read_all_entries()
        current = parse_spaces_state(entries)

        entries[StorageKeys.SPACES] = dump_json({
            "spaces": [space.to_wire()],
            "activeSpaceId": space.id,
            "version": current.version or 1,
        })
        entries[StorageKeys.DELETED_DOCK_ITEMS] = dump_json([
            record for record in parse_deleted_dock_items(entries) if record.space_id == space.id
        ])
        entries[StorageKeys.DELETED_SPACES] = dump_json([
            record for record in parse_deleted_spaces(entries) if record.space.id == space.id
        ])
        return entries

    def find_space(self, name: str) -> Optional[Space]:
        """Look up a space by name (trimmed, case-insensitive)."""
        key = name.strip().lower()
        for space in parse_spaces_state(self.store.read_all_entries()).spaces:
            if space.name_key == key:
                return space
        return None

    # -- export -----------------------------------------------------------

    def export_full_backup(self, now: Optional[datetime] = None) -> tuple[str, bytes]:
        """Full backup as a zip container.

        Returns:
            Tuple of (suggested file name, container bytes).
        """
        package = self.create_package(BackupKind.FULL_BACKUP, now=now)
        data = container.encode(FULL_BACKUP_FILE, package.to_json(), when=now)
        name = f"eclipse-full-backup-{date_tag(now)}.zip"
        logger.info("Exported full backup %s (%d bytes)", name, len(data))
        return name, data

    def export_space_snapshot(self, space: Space, now: Optional[datetime] = None) -> tuple[str, bytes]:
        """Single-space snapshot as a zip container."""
        entries = self.build_space_snapshot_entries(space)
        package = self.create_package(BackupKind.SPACE_SNAPSHOT, entries=entries, now=now)
        data = container.encode(SPACE_SNAPSHOT_FILE, package.to_json(), when=now)
        name = f"eclipse-space-snapshot-{space.name.lower()}-{date_tag(now)}.zip"
        logger.info("Exported space snapshot %s (%d bytes)", name, len(data))
        return name, data

    def export_encrypted_backup(self, password: str, now: Optional[datetime] = None) -> tuple[str, bytes]:
        """Full backup encrypted under ``password``, stored without a container.

        Raises:
            PasswordRequired: If the password is empty.
        """
        package = self.create_package(BackupKind.FULL_BACKUP, now=now)
        payload = crypto.encrypt(package.to_json(), password)
        name = f"eclipse-full-backup-{date_tag(now)}{crypto.ENCRYPTED_FILE_SUFFIX}"
        data = payload.to_json().encode("utf-8")
        logger.info("Exported encrypted backup %s", name)
        return name, data

    # -- import -----------------------------------------------------------

    def preview_import(
        self,
        incoming: BackupPackage,
        strategy: ImportStrategy = ImportStrategy.MERGE,
        scope: Optional[ImportScope] = None,
    ) -> ImportPreview:
        """What an import would do, without touching the store."""
        scoped = restrict_package(incoming, scope or ImportScope.all())
        return build_preview(self.create_package(), scoped, strategy)

    def apply_import(
        self,
        incoming: BackupPackage,
        strategy: ImportStrategy = ImportStrategy.MERGE,
        scope: Optional[ImportScope] = None,
        policy: Optional[MergePolicy] = None,
        now: Optional[datetime] = None,
    ) -> ImportResult:
        """Apply ``incoming`` to the store.

        Args:
            incoming: Parsed package.
            strategy: merge (conflict-aware) or overwrite (replace).
            scope: Sections to touch. Out-of-scope sections keep local values.
            policy: Merge conflict policy.
            now: Timestamp for conflict names and the merged package.

        Returns:
            ImportResult with the preview of what was done.

        Raises:
            ImportFailed: A write failed; see ``restored_from_rollback``.
        """
        scope = scope or ImportScope.all()
        if not scope.any_enabled:
            logger.info("Import scope is empty, nothing to do")
            return ImportResult(strategy=strategy, scope=scope)

        snapshot = self.create_package(BackupKind.FULL_BACKUP, now=now)
        scoped = restrict_package(incoming, scope)

        if strategy is ImportStrategy.OVERWRITE:
            preview = build_preview(snapshot, scoped, strategy)
            target = scoped
        else:
            engine = MergeEngine(policy=policy, id_generator=self.id_generator)
            result = engine.merge(snapshot, scoped, now=now)
            preview = result.preview
            target = result.merged

        entries, assets = _overlay_scope(target, snapshot, scope)

        try:
            self._write(entries, assets)
        except Exception as exc:
            logger.error("Import failed, rolling back to the pre-import snapshot: %s", exc)
            restored = self._rollback(snapshot)
            raise ImportFailed(
                "Import failed, nothing was changed" if restored
                else "Import failed and rollback did not complete",
                restored_from_rollback=restored,
            ) from exc

        logger.info(
            "Imported package (%s, sections: %s)", strategy.value, ", ".join(scope.sections())
        )
        return ImportResult(strategy=strategy, preview=preview, scope=scope)

    def _write(self, entries: dict[str, Optional[str]], assets: BackupAssets) -> None:
        self.store.write_all_entries(entries)
        self.store.write_all_wallpapers(assets.wallpapers)
        self.store.write_all_sticker_assets(assets.sticker_assets)

    def _rollback(self, snapshot: BackupPackage) -> bool:
        entries = {key: snapshot.local_storage_entries.get(key) for key in MANAGED_KEYS}
        entries.update(snapshot.local_storage_entries)
        try:
            self._write(entries, snapshot.assets)
        except Exception as exc:
            logger.error("Rollback failed: %s", exc)
            return False
        return True


# ---------------------------------------------------------------------------
# Reading backup files
# ---------------------------------------------------------------------------

def _load_json(text: Union[str, bytes]) -> object:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidPackageStructure(f"Backup file is not valid JSON: {exc}") from exc


def parse_backup_text(text: Union[str, bytes], password: Optional[str] = None) -> BackupPackage:
    """Parse JSON text that is either a package or an encrypted envelope.

    Raises:
        PasswordRequired: Encrypted and no password given.
        DecryptionFailed: Wrong password or corrupted ciphertext.
        InvalidPackageStructure: Not a backup package.
        UnsupportedFormatVersion: Wrong exportVersion.
    """
    data = _load_json(text)

    if crypto.looks_encrypted(data):
        if not password:
            raise crypto.PasswordRequired("This backup is encrypted; a password is required")
        data = _load_json(crypto.decrypt(data, password))

    return parse_package(data)


def parse_backup_bytes(
    file_name: str,
    data: bytes,
    password: Optional[str] = None,
) -> BackupPackage:
    """Parse a backup file's bytes by name and content.

    ``.zip`` files are unpacked first; if the container is unreadable the
    bytes are retried as raw JSON.
    """
    if file_name.lower().endswith(".zip"):
        try:
            _, content = container.decode(data)
            return parse_backup_text(content, password)
        except (container.InvalidContainer, container.UnsupportedCompression) as exc:
            logger.warning("Failed to read %s as zip, falling back to JSON: %s", file_name, exc)
    return parse_backup_text(data, password)


def read_backup_file(path: Path, password: Optional[str] = None) -> BackupPackage:
    """Read and parse a backup file from disk."""
    path = Path(path).expanduser()
    return parse_backup_bytes(path.name, path.read_bytes(), password)


def write_export(output_dir: Path, file_name: str, data: bytes) -> Path:
    """Write exported bytes under ``output_dir`` and return the path."""
    out_dir = Path(output_dir).expanduser()
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / file_name
    path.write_bytes(data)
    return path
