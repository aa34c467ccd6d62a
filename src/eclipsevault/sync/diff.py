"""
Section hashing and diffing for cloud sync.

A package is split into three sections; each gets a SHA-256 over a
canonical JSON projection:

    space     {"entries": {spaces, deletedDockItems, deletedSpaces}}
    zenShelf  {"entries": {stickers, deletedStickers}, "stickerAssets": [...]}
    config    {"entries": {every other managed key}, "wallpapers": [...]}

Missing keys project as null, so a deleted key and an absent key hash
the same. Two devices compare hashes and only import what changed.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from typing import Any, Optional, Union

from ..backup import CONFIG_KEYS, SPACE_KEYS, ZEN_SHELF_KEYS
from ..crypto import b64url_encode
from ..models import BackupPackage, ImportScope, InvalidPackageStructure, parse_package
from .models import SCHEMA_VERSION, CloudSyncEnvelope, SectionHashes, SyncSection

logger = logging.getLogger("eclipsevault.sync.diff")


def _pick(entries: dict[str, Optional[str]], keys: tuple[str, ...]) -> dict[str, Optional[str]]:
    return {key: entries.get(key) for key in keys}


def _hash(value: Any) -> str:
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return b64url_encode(hashlib.sha256(canonical.encode("utf-8")).digest())


def build_section_hashes(package: BackupPackage) -> SectionHashes:
    """Hash each section of ``package``. Pure function of its content."""
    entries = package.local_storage_entries
    assets = package.assets.to_wire()
    return SectionHashes(
        space=_hash({"entries": _pick(entries, SPACE_KEYS)}),
        zen_shelf=_hash({
            "entries": _pick(entries, ZEN_SHELF_KEYS),
            "stickerAssets": assets.get("stickerAssets", []),
        }),
        config=_hash({
            "entries": _pick(entries, CONFIG_KEYS),
            "wallpapers": assets.get("wallpapers", []),
        }),
    )


def build_envelope(package: BackupPackage, generated_at: Optional[int] = None) -> CloudSyncEnvelope:
    """Wrap a package with its section hashes."""
    return CloudSyncEnvelope(
        schema_version=SCHEMA_VERSION,
        generated_at=generated_at if generated_at is not None else int(time.time() * 1000),
        backup=package,
        section_hashes=build_section_hashes(package),
    )


def _has_envelope_shape(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    hashes = data.get("sectionHashes")
    return (
        data.get("schemaVersion") == SCHEMA_VERSION
        and isinstance(data.get("generatedAt"), (int, float))
        and isinstance(hashes, dict)
        and all(isinstance(hashes.get(name), str) for name in ("space", "zenShelf", "config"))
        and data.get("backup") is not None
    )


def parse_envelope(value: Union[str, bytes, dict]) -> CloudSyncEnvelope:
    """Parse a remote document as an envelope.

    A bare BackupPackage (peers that predate envelopes) is accepted and
    hashed locally.

    Raises:
        InvalidPackageStructure: Neither an envelope nor a package.
        UnsupportedFormatVersion: The wrapped package has the wrong version.
    """
    if isinstance(value, dict):
        data = value
    else:
        try:
            data = json.loads(value)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidPackageStructure("Remote backup is not valid JSON") from exc

    if _has_envelope_shape(data):
        return CloudSyncEnvelope(
            schema_version=SCHEMA_VERSION,
            generated_at=int(data["generatedAt"]),
            backup=parse_package(data["backup"]),
            section_hashes=SectionHashes.model_validate(data["sectionHashes"]),
        )

    logger.info("Remote document is a bare backup package, hashing locally")
    return build_envelope(parse_package(data))


def diff_sections(local: CloudSyncEnvelope, remote: CloudSyncEnvelope) -> list[SyncSection]:
    """Sections whose hashes differ, in fixed order."""
    return [
        section for section in SyncSection
        if local.section_hashes.get(section) != remote.section_hashes.get(section)
    ]


def restrict_import_scope(scope: ImportScope, changed: list[SyncSection]) -> ImportScope:
    """Intersect a requested scope with the changed sections."""
    changed_set = set(changed)
    return ImportScope(
        space=scope.space and SyncSection.SPACE in changed_set,
        zen_shelf=scope.zen_shelf and SyncSection.ZEN_SHELF in changed_set,
        config=scope.config and SyncSection.CONFIG in changed_set,
    )


def scope_from_sections(sections: list[SyncSection]) -> ImportScope:
    return ImportScope(
        space=SyncSection.SPACE in sections,
        zen_shelf=SyncSection.ZEN_SHELF in sections,
        config=SyncSection.CONFIG in sections,
    )
