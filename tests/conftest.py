"""Shared test fixtures for eclipsevault."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest

from eclipsevault.merge import SequentialIdGenerator
from eclipsevault.models import (
    BackupAssets,
    BackupKind,
    BackupPackage,
    BinaryData,
    StickerAsset,
    WallpaperAsset,
)
from eclipsevault.persistence import MemoryStore
from eclipsevault.snapshot import StorageKeys

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


def spaces_json(*spaces: dict, active: Optional[str] = None) -> str:
    """Spaces state entry for the given space dicts."""
    return json.dumps({
        "spaces": list(spaces),
        "activeSpaceId": active if active is not None else (spaces[0]["id"] if spaces else ""),
        "version": 1,
    })


def space(space_id: str, name: str, *urls: str) -> dict:
    return {
        "id": space_id,
        "name": name,
        "iconType": "text",
        "iconValue": name[:1],
        "apps": [
            {"id": f"{space_id}_app{i}", "name": url, "url": url, "type": "app"}
            for i, url in enumerate(urls)
        ],
        "createdAt": 1,
    }


def wallpaper(asset_id: str, content: bytes = PNG_BYTES) -> WallpaperAsset:
    return WallpaperAsset(
        id=asset_id,
        created_at=1,
        data=BinaryData(mime_type="image/png", content=content),
        thumbnail=BinaryData(mime_type="image/webp", content=b"thumb"),
    )


def sticker_asset(asset_id: str, content: bytes = PNG_BYTES) -> StickerAsset:
    return StickerAsset(
        id=asset_id, created_at=1, data=BinaryData(mime_type="image/png", content=content)
    )


@pytest.fixture
def fixed_now() -> datetime:
    """The single injected timestamp for merges."""
    return datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def id_gen() -> SequentialIdGenerator:
    return SequentialIdGenerator()


@pytest.fixture
def make_package() -> Callable[..., BackupPackage]:
    """Factory for packages from plain entries and asset lists."""

    def _make(
        entries: Optional[dict] = None,
        wallpapers: Optional[list] = None,
        sticker_assets: Optional[list] = None,
        kind: BackupKind = BackupKind.FULL_BACKUP,
    ) -> BackupPackage:
        return BackupPackage(
            kind=kind,
            created_at=1_700_000_000_000,
            local_storage_entries=dict(entries or {}),
            assets=BackupAssets(
                wallpapers=list(wallpapers or []),
                sticker_assets=list(sticker_assets or []),
            ),
        )

    return _make


@pytest.fixture
def sample_entries() -> dict[str, str]:
    """A small but complete set of managed entries."""
    return {
        StorageKeys.SPACES: spaces_json(
            space("s1", "Main", "https://a.example", "https://b.example"),
            space("s2", "Work", "https://c.example"),
        ),
        StorageKeys.STICKERS: json.dumps([
            {"id": "st1", "type": "text", "content": "hello", "x": 10, "y": 20},
            {"id": "st2", "type": "image", "content": "", "assetId": "sa1"},
        ]),
        StorageKeys.DELETED_STICKERS: json.dumps([]),
        StorageKeys.SEARCH_ENGINE: json.dumps(
            {"id": "google", "name": "Google", "url": "https://google.com/search?q="}
        ),
        StorageKeys.SEARCH_ENGINES: json.dumps([
            {"id": "google", "name": "Google", "url": "https://google.com/search?q="},
        ]),
        StorageKeys.CONFIG: json.dumps({"theme": "dark", "dockPosition": "bottom"}),
        StorageKeys.LANGUAGE: "en",
        StorageKeys.WALLPAPER_ID: "wp1",
    }


@pytest.fixture
def memory_store(sample_entries) -> MemoryStore:
    """In-memory store populated with sample state."""
    return MemoryStore(
        entries=sample_entries,
        wallpapers=[wallpaper("wp1")],
        sticker_assets=[sticker_asset("sa1")],
    )


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Temporary vault home directory."""
    home = tmp_path / ".eclipsevault"
    home.mkdir()
    return home
