"""
Pydantic models for everything that travels inside a backup.

Wire format is camelCase JSON (what the browser extension writes);
Python attributes are snake_case. Entity models allow extra fields so
UI-only attributes (sticker coordinates, icon styles, fonts) survive a
round trip untouched.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
import time
from enum import Enum
from typing import Any, Optional, Union
from urllib.parse import unquote_to_bytes

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_serializer,
    model_validator,
)
from pydantic.alias_generators import to_camel

from . import EclipseVaultError

EXPORT_VERSION = "1.0.0"
DEFAULT_MIME_TYPE = "application/octet-stream"

_DATA_URL_RE = re.compile(r"^data:(?P<meta>[^,]*),(?P<body>.*)$", re.DOTALL)


class InvalidPackageStructure(EclipseVaultError):
    """Raised when JSON is well-formed but is not a backup package."""


class UnsupportedFormatVersion(EclipseVaultError):
    """Raised when a package's exportVersion is not the supported one."""


class WireModel(BaseModel):
    """Base for camelCase wire models."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict with camelCase keys and unset optionals dropped."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Binary data
# ---------------------------------------------------------------------------

def parse_data_url(value: str) -> tuple[str, bytes]:
    """Split a ``data:`` URL into (mime type, raw bytes).

    Args:
        value: e.g. ``data:image/png;base64,iVBOR...``.

    Returns:
        Tuple of mime type and decoded bytes.

    Raises:
        ValueError: If the value is not a data URL.
    """
    match = _DATA_URL_RE.match(value)
    if not match:
        raise ValueError("Invalid data url")

    meta = match.group("meta")
    body = match.group("body")
    parts = meta.split(";")
    mime = parts[0] or DEFAULT_MIME_TYPE

    if parts[-1] == "base64":
        try:
            return mime, base64.b64decode(body, validate=True)
        except binascii.Error as exc:
            raise ValueError("Invalid base64 in data url") from exc
    return mime, unquote_to_bytes(body)


def to_data_url(mime_type: str, content: bytes) -> str:
    """Encode bytes as a base64 ``data:`` URL."""
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{mime_type or DEFAULT_MIME_TYPE};base64,{encoded}"


class BinaryData(BaseModel):
    """Binary blob that serializes as a data URL string."""

    mime_type: str = DEFAULT_MIME_TYPE
    content: bytes = b""

    @model_validator(mode="before")
    @classmethod
    def _coerce(cls, value: Any) -> Any:
        if isinstance(value, str):
            mime, content = parse_data_url(value)
            return {"mime_type": mime, "content": content}
        if isinstance(value, (bytes, bytearray)):
            return {"content": bytes(value)}
        return value

    @model_serializer
    def _serialize(self) -> str:
        return to_data_url(self.mime_type, self.content)

    def __len__(self) -> int:
        return len(self.content)


class WallpaperAsset(WireModel):
    """A wallpaper image and its optional thumbnail."""

    model_config = ConfigDict(extra="ignore")

    id: str
    created_at: int = 0
    data: BinaryData
    thumbnail: Optional[BinaryData] = None


class StickerAsset(WireModel):
    """Image bytes backing an image sticker (referenced by ``assetId``)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    created_at: int = 0
    data: BinaryData


# ---------------------------------------------------------------------------
# Entities stored as JSON strings inside the entries map
# ---------------------------------------------------------------------------

class DockItem(WireModel):
    """An app shortcut, or a folder holding app shortcuts."""

    id: str = ""
    name: str = ""
    url: Optional[str] = None
    icon: Optional[str] = None
    type: str = "app"
    items: Optional[list[DockItem]] = None

    @property
    def is_folder(self) -> bool:
        return self.type == "folder"


class Space(WireModel):
    """A named workspace with its own dock."""

    id: str = ""
    name: str = ""
    icon_type: str = "text"
    icon_value: Optional[str] = None
    apps: list[DockItem] = Field(default_factory=list)
    created_at: int = 0

    @property
    def name_key(self) -> str:
        """Collision key: trimmed, lowercased display name."""
        return self.name.strip().lower()


class SpacesState(WireModel):
    """All spaces plus which one is active."""

    spaces: list[Space] = Field(default_factory=list)
    active_space_id: str = ""
    version: int = 1


class Sticker(WireModel):
    """A Zen Shelf sticker (text, image, or widget)."""

    id: str = ""
    type: str = "text"
    content: str = ""
    asset_id: Optional[str] = None


class SearchEngine(WireModel):
    """A search engine definition; ``url`` holds the query template."""

    id: str
    name: str = ""
    url: str = ""


class DeletedDockItemRecord(WireModel):
    """Recycle-bin record for a removed dock item."""

    id: str = ""
    deleted_at: int = 0
    space_id: str = ""
    original_index: int = 0
    item: DockItem = Field(default_factory=DockItem)
    parent_folder_id: Optional[str] = None


class DeletedSpaceRecord(WireModel):
    """Recycle-bin record for a removed space."""

    id: str = ""
    deleted_at: int = 0
    original_index: int = 0
    space: Space = Field(default_factory=Space)


# ---------------------------------------------------------------------------
# The backup package
# ---------------------------------------------------------------------------

class BackupKind(str, Enum):
    """What a package was exported as."""

    FULL_BACKUP = "eclipse-full-backup"
    SPACE_SNAPSHOT = "eclipse-space-snapshot"


class ImportStrategy(str, Enum):
    """How an incoming package is applied to local state."""

    MERGE = "merge"
    OVERWRITE = "overwrite"


class BackupAssets(WireModel):
    """Binary collections exported next to the entries."""

    model_config = ConfigDict(extra="ignore")

    wallpapers: list[WallpaperAsset] = Field(default_factory=list)
    sticker_assets: list[StickerAsset] = Field(default_factory=list)


class BackupPackage(WireModel):
    """A complete point-in-time snapshot of persisted state.

    Attributes:
        kind: Full backup or single-space snapshot (wire key ``type``).
        export_version: Must equal EXPORT_VERSION exactly.
        created_at: Milliseconds since the epoch.
        local_storage_entries: Managed key -> raw string value (None = absent).
        assets: Wallpapers and sticker images.
    """

    model_config = ConfigDict(extra="ignore")

    kind: BackupKind = Field(alias="type")
    export_version: str = EXPORT_VERSION
    created_at: int = Field(default_factory=lambda: int(time.time() * 1000))
    local_storage_entries: dict[str, Optional[str]]
    assets: BackupAssets

    @property
    def entries(self) -> dict[str, Optional[str]]:
        return self.local_storage_entries

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self, indent: Optional[int] = None) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)


def parse_package(value: Union[str, bytes, dict[str, Any]]) -> BackupPackage:
    """Validate raw JSON (or a decoded dict) as a BackupPackage.

    Args:
        value: JSON text/bytes or decoded object.

    Returns:
        The validated package.

    Raises:
        InvalidPackageStructure: Not JSON, or not a recognized package.
        UnsupportedFormatVersion: exportVersion differs from EXPORT_VERSION.
    """
    if isinstance(value, dict):
        data = value
    else:
        try:
            data = json.loads(value)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidPackageStructure("Backup package is not valid JSON") from exc

    if not isinstance(data, dict):
        raise InvalidPackageStructure("Invalid backup package")

    kinds = {kind.value for kind in BackupKind}
    if (
        data.get("type") not in kinds
        or not isinstance(data.get("exportVersion"), str)
        or not isinstance(data.get("localStorageEntries"), dict)
        or not isinstance(data.get("assets"), dict)
    ):
        raise InvalidPackageStructure("Invalid backup package structure")

    if data["exportVersion"] != EXPORT_VERSION:
        raise UnsupportedFormatVersion(
            f"Unsupported backup version: {data['exportVersion']}"
        )

    try:
        return BackupPackage.model_validate(data)
    except ValidationError as exc:
        raise InvalidPackageStructure(f"Invalid backup package structure: {exc}") from exc


# ---------------------------------------------------------------------------
# Import scope
# ---------------------------------------------------------------------------

class ImportScope(WireModel):
    """Which coarse sections an import may touch."""

    model_config = ConfigDict(extra="ignore")

    space: bool = True
    zen_shelf: bool = True
    config: bool = True

    @classmethod
    def all(cls) -> ImportScope:
        return cls(space=True, zen_shelf=True, config=True)

    @classmethod
    def none(cls) -> ImportScope:
        return cls(space=False, zen_shelf=False, config=False)

    @classmethod
    def parse(cls, text: str) -> ImportScope:
        """Build a scope from a comma list such as ``"space,zenShelf"``."""
        names = {part.strip().lower() for part in text.split(",") if part.strip()}
        unknown = names - {"space", "zenshelf", "config"}
        if unknown:
            raise ValueError(f"Unknown import scope section(s): {', '.join(sorted(unknown))}")
        return cls(space="space" in names, zen_shelf="zenshelf" in names, config="config" in names)

    @property
    def any_enabled(self) -> bool:
        return self.space or self.zen_shelf or self.config

    def sections(self) -> list[str]:
        """Enabled section names in wire spelling."""
        enabled = []
        if self.space:
            enabled.append("space")
        if self.zen_shelf:
            enabled.append("zenShelf")
        if self.config:
            enabled.append("config")
        return enabled
