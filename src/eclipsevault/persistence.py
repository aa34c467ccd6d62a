"""
Persistence adapters -- where live application state is read from and
written back to.

The core never touches storage directly; it asks an adapter for the
managed entries and the two binary asset collections.

MemoryStore: plain dicts/lists. Tests and dry runs.
DirectoryStore: files under one directory, laid out as

    <root>/entries.json                      managed key -> string
    <root>/wallpapers/<stem>.json            {id, createdAt, mimeType, thumbnailMimeType}
    <root>/wallpapers/<stem>.bin             image bytes
    <root>/wallpapers/<stem>.thumb.bin       thumbnail bytes (optional)
    <root>/sticker_assets/<stem>.json|.bin   same shape, no thumbnail

<stem> is the sha256 hex digest of the asset id.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .models import BinaryData, StickerAsset, WallpaperAsset
from .snapshot import MANAGED_KEYS

logger = logging.getLogger("eclipsevault.persistence")


class PersistenceAdapter(ABC):
    """Read-all / write-all access to persisted application state."""

    def managed_keys(self) -> tuple[str, ...]:
        """Entry keys this adapter is responsible for."""
        return MANAGED_KEYS

    @abstractmethod
    def read_all_entries(self) -> dict[str, Optional[str]]:
        """Every managed key, mapped to its value or None when absent."""

    @abstractmethod
    def write_all_entries(self, entries: dict[str, Optional[str]]) -> None:
        """Write managed entries. A None value deletes the key."""

    @abstractmethod
    def read_all_wallpapers(self) -> list[WallpaperAsset]:
        """All stored wallpapers, oldest first."""

    @abstractmethod
    def write_all_wallpapers(self, wallpapers: list[WallpaperAsset]) -> None:
        """Replace the whole wallpaper collection."""

    @abstractmethod
    def read_all_sticker_assets(self) -> list[StickerAsset]:
        """All stored sticker images, oldest first."""

    @abstractmethod
    def write_all_sticker_assets(self, assets: list[StickerAsset]) -> None:
        """Replace the whole sticker asset collection."""


class MemoryStore(PersistenceAdapter):
    """In-memory adapter."""

    def __init__(
        self,
        entries: Optional[dict[str, Optional[str]]] = None,
        wallpapers: Optional[list[WallpaperAsset]] = None,
        sticker_assets: Optional[list[StickerAsset]] = None,
    ):
        self.entries: dict[str, str] = {k: v for k, v in (entries or {}).items() if v is not None}
        self.wallpapers: list[WallpaperAsset] = list(wallpapers or [])
        self.sticker_assets: list[StickerAsset] = list(sticker_assets or [])

    def read_all_entries(self) -> dict[str, Optional[str]]:
        return {key: self.entries.get(key) for key in self.managed_keys()}

    def write_all_entries(self, entries: dict[str, Optional[str]]) -> None:
        for key, value in entries.items():
            if value is None:
                self.entries.pop(key, None)
            else:
                self.entries[key] = value

    def read_all_wallpapers(self) -> list[WallpaperAsset]:
        return list(self.wallpapers)

    def write_all_wallpapers(self, wallpapers: list[WallpaperAsset]) -> None:
        self.wallpapers = list(wallpapers)

    def read_all_sticker_assets(self) -> list[StickerAsset]:
        return list(self.sticker_assets)

    def write_all_sticker_assets(self, assets: list[StickerAsset]) -> None:
        self.sticker_assets = list(assets)


def asset_stem(asset_id: str) -> str:
    """File stem for an asset: sha256 hex of its id.

    One stem per id, and always a safe file name. The real id lives in the
    metadata file.
    """
    return hashlib.sha256(asset_id.encode("utf-8")).hexdigest()


class DirectoryStore(PersistenceAdapter):
    """Filesystem-backed adapter rooted at one directory.

    Args:
        root: Store directory. Created on first write.
    """

    ENTRIES_FILE = "entries.json"
    WALLPAPERS_DIR = "wallpapers"
    STICKER_ASSETS_DIR = "sticker_assets"

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    @property
    def entries_path(self) -> Path:
        return self.root / self.ENTRIES_FILE

    # -- entries ----------------------------------------------------------

    def _load_entries(self) -> dict[str, str]:
        if not self.entries_path.exists():
            return {}
        try:
            data = json.loads(self.entries_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to read %s: %s", self.entries_path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object entries file %s", self.entries_path)
            return {}
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def read_all_entries(self) -> dict[str, Optional[str]]:
        stored = self._load_entries()
        return {key: stored.get(key) for key in self.managed_keys()}

    def write_all_entries(self, entries: dict[str, Optional[str]]) -> None:
        stored = self._load_entries()
        for key, value in entries.items():
            if value is None:
                stored.pop(key, None)
            else:
                stored[key] = value

        self.root.mkdir(parents=True, exist_ok=True)
        tmp = self.entries_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(stored, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(self.entries_path)

    # -- binary collections -----------------------------------------------

    def _read_collection(self, dirname: str) -> list[tuple[dict, bytes, Optional[bytes]]]:
        folder = self.root / dirname
        if not folder.is_dir():
            return []

        records = []
        for meta_path in folder.glob("*.json"):
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Skipping unreadable asset metadata %s: %s", meta_path, exc)
                continue
            stem = meta_path.name[: -len(".json")]
            blob_path = folder / f"{stem}.bin"
            if not blob_path.exists():
                logger.warning("Asset %s has no data file, skipping", meta.get("id", stem))
                continue
            thumb_path = folder / f"{stem}.thumb.bin"
            thumb = thumb_path.read_bytes() if thumb_path.exists() else None
            records.append((meta, blob_path.read_bytes(), thumb))

        records.sort(key=lambda record: (record[0].get("createdAt", 0), record[0].get("id", "")))
        return records

    def _write_collection(self, dirname: str, items: list[tuple[dict, bytes, Optional[bytes]]]) -> None:
        folder = self.root / dirname
        if folder.exists():
            shutil.rmtree(folder)
        folder.mkdir(parents=True)

        for meta, blob, thumb in items:
            stem = asset_stem(meta["id"])
            (folder / f"{stem}.json").write_text(json.dumps(meta), encoding="utf-8")
            (folder / f"{stem}.bin").write_bytes(blob)
            if thumb is not None:
                (folder / f"{stem}.thumb.bin").write_bytes(thumb)

    def read_all_wallpapers(self) -> list[WallpaperAsset]:
        wallpapers = []
        for meta, blob, thumb in self._read_collection(self.WALLPAPERS_DIR):
            thumbnail = None
            if thumb is not None:
                thumbnail = BinaryData(
                    mime_type=meta.get("thumbnailMimeType") or meta.get("mimeType", ""),
                    content=thumb,
                )
            wallpapers.append(WallpaperAsset(
                id=meta["id"],
                created_at=meta.get("createdAt", 0),
                data=BinaryData(mime_type=meta.get("mimeType", ""), content=blob),
                thumbnail=thumbnail,
            ))
        return wallpapers

    def write_all_wallpapers(self, wallpapers: list[WallpaperAsset]) -> None:
        items = []
        for wallpaper in wallpapers:
            meta = {
                "id": wallpaper.id,
                "createdAt": wallpaper.created_at,
                "mimeType": wallpaper.data.mime_type,
            }
            thumb = None
            if wallpaper.thumbnail is not None:
                meta["thumbnailMimeType"] = wallpaper.thumbnail.mime_type
                thumb = wallpaper.thumbnail.content
            items.append((meta, wallpaper.data.content, thumb))
        self._write_collection(self.WALLPAPERS_DIR, items)
        logger.debug("Wrote %d wallpapers to %s", len(items), self.root)

    def read_all_sticker_assets(self) -> list[StickerAsset]:
        return [
            StickerAsset(
                id=meta["id"],
                created_at=meta.get("createdAt", 0),
                data=BinaryData(mime_type=meta.get("mimeType", ""), content=blob),
            )
            for meta, blob, _ in self._read_collection(self.STICKER_ASSETS_DIR)
        ]

    def write_all_sticker_assets(self, assets: list[StickerAsset]) -> None:
        items = [
            ({"id": asset.id, "createdAt": asset.created_at, "mimeType": asset.data.mime_type},
             asset.data.content, None)
            for asset in assets
        ]
        self._write_collection(self.STICKER_ASSETS_DIR, items)
        logger.debug("Wrote %d sticker assets to %s", len(items), self.root)
