"""
Snapshot sections -- typed views over a package's raw entries.

Every managed entry is a JSON string written by the browser extension.
Parsing is lenient per key: a malformed or missing value yields that
key's empty default instead of failing the snapshot, so a corrupt
sticker list never blocks restoring spaces.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from .models import (
    DeletedDockItemRecord,
    DeletedSpaceRecord,
    SearchEngine,
    Space,
    SpacesState,
    Sticker,
    WireModel,
)

logger = logging.getLogger("eclipsevault.snapshot")

T = TypeVar("T")


class StorageKeys:
    """Managed entry keys, as the extension names them."""

    DOCK_ITEMS = "EclipseTab_dockItems"
    SEARCH_ENGINE = "EclipseTab_searchEngine"
    SEARCH_ENGINES = "EclipseTab_searchEngines"
    CONFIG = "EclipseTab_config"
    WALLPAPER = "EclipseTab_wallpaper"
    LAST_WALLPAPER = "EclipseTab_lastWallpaper"
    WALLPAPER_ID = "EclipseTab_wallpaperId"
    SPACES = "EclipseTab_spaces"
    SPACE_RULES = "EclipseTab_spaceRules"
    SPACE_OVERRIDES = "EclipseTab_spaceOverrides"
    STICKERS = "EclipseTab_stickers"
    DELETED_STICKERS = "EclipseTab_deletedStickers"
    DELETED_DOCK_ITEMS = "EclipseTab_deletedDockItems"
    DELETED_SPACES = "EclipseTab_deletedSpaces"
    LANGUAGE = "app_language"


MANAGED_KEYS: tuple[str, ...] = (
    StorageKeys.DOCK_ITEMS,
    StorageKeys.SEARCH_ENGINE,
    StorageKeys.SEARCH_ENGINES,
    StorageKeys.CONFIG,
    StorageKeys.WALLPAPER,
    StorageKeys.LAST_WALLPAPER,
    StorageKeys.WALLPAPER_ID,
    StorageKeys.SPACES,
    StorageKeys.SPACE_RULES,
    StorageKeys.SPACE_OVERRIDES,
    StorageKeys.STICKERS,
    StorageKeys.DELETED_STICKERS,
    StorageKeys.DELETED_DOCK_ITEMS,
    StorageKeys.DELETED_SPACES,
    StorageKeys.LANGUAGE,
)

DEFAULT_LANGUAGE = "en"

_space_adapter = TypeAdapter(Space)
_sticker_adapter = TypeAdapter(Sticker)
_engine_adapter = TypeAdapter(SearchEngine)
_deleted_dock_adapter = TypeAdapter(DeletedDockItemRecord)
_deleted_space_adapter = TypeAdapter(DeletedSpaceRecord)


def dump_json(value: Any) -> str:
    """Compact JSON the way the extension writes entries."""
    return json.dumps(_to_plain(value), ensure_ascii=False, separators=(",", ":"))


def _to_plain(value: Any) -> Any:
    if isinstance(value, WireModel):
        return value.to_wire()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_to_plain(item) for item in value]
    return value


def _lenient(
    entries: dict[str, Optional[str]],
    key: str,
    parse: Callable[[Any], T],
    default: Callable[[], T],
    malformed: Optional[list[str]] = None,
) -> T:
    raw = entries.get(key)
    if not raw:
        return default()
    try:
        return parse(json.loads(raw))
    except (json.JSONDecodeError, ValidationError, TypeError, ValueError) as exc:
        logger.warning("Malformed entry %s, using default: %s", key, exc)
        if malformed is not None:
            malformed.append(key)
        return default()


def _validate_items(
    key: str,
    adapter: TypeAdapter,
    data: Any,
    unparsed: Optional[dict[str, list[Any]]] = None,
) -> list:
    """Validate list elements one by one; bad elements are set aside, not fatal."""
    if not isinstance(data, list):
        raise TypeError(f"expected a list, got {type(data).__name__}")
    items = []
    for index, item in enumerate(data):
        try:
            items.append(adapter.validate_python(item))
        except ValidationError as exc:
            logger.warning("Skipping malformed element %d of %s: %s", index, key, exc)
            if unparsed is not None:
                unparsed.setdefault(key, []).append(item)
    return items


def _items_parser(
    key: str,
    adapter: TypeAdapter,
    unparsed: Optional[dict[str, list[Any]]] = None,
) -> Callable[[Any], list]:
    return lambda data: _validate_items(key, adapter, data, unparsed)


def _spaces_parser(unparsed: Optional[dict[str, list[Any]]] = None) -> Callable[[Any], SpacesState]:
    def parse(data: Any) -> SpacesState:
        if not isinstance(data, dict):
            raise TypeError(f"expected an object, got {type(data).__name__}")
        spaces = _validate_items(StorageKeys.SPACES, _space_adapter, data.get("spaces", []), unparsed)
        return SpacesState.model_validate({**data, "spaces": spaces})

    return parse


@dataclass
class SnapshotSections:
    """Parsed view of a package's entries.

    Raw-valued entries (config, language, wallpaper pointers, space rules
    and overrides) stay as the original strings so they can be written
    back byte-for-byte.

    ``malformed_keys`` lists present entries that could not be parsed at
    all. ``unparsed_items`` holds, per key, the raw list elements (spaces
    for the spaces entry) that failed validation. Writers must carry both
    forward instead of replacing them with defaults.
    """

    spaces_state: SpacesState = field(default_factory=SpacesState)
    stickers: list[Sticker] = field(default_factory=list)
    deleted_stickers: list[Sticker] = field(default_factory=list)
    deleted_dock_items: list[DeletedDockItemRecord] = field(default_factory=list)
    deleted_spaces: list[DeletedSpaceRecord] = field(default_factory=list)
    search_engine: Optional[SearchEngine] = None
    search_engines: Optional[list[SearchEngine]] = None
    language: str = DEFAULT_LANGUAGE
    config_raw: Optional[str] = None
    wallpaper_id_raw: Optional[str] = None
    wallpaper_raw: Optional[str] = None
    last_wallpaper_raw: Optional[str] = None
    malformed_keys: list[str] = field(default_factory=list)
    unparsed_items: dict[str, list[Any]] = field(default_factory=dict)

    def unparsed_ids(self, key: str) -> set[str]:
        """Ids carried by the unparsed elements of ``key``."""
        return {
            item["id"] for item in self.unparsed_items.get(key, [])
            if isinstance(item, dict) and isinstance(item.get("id"), str) and item["id"]
        }


def parse_sections(entries: dict[str, Optional[str]]) -> SnapshotSections:
    """Parse raw entries into typed sections, never raising.

    Args:
        entries: Managed key -> raw string (or None).

    Returns:
        SnapshotSections with defaults for anything missing or malformed.
    """
    malformed: list[str] = []
    unparsed: dict[str, list[Any]] = {}

    def lists(key: str, adapter: TypeAdapter) -> list:
        return _lenient(entries, key, _items_parser(key, adapter, unparsed), list, malformed)

    engines_parser = _items_parser(StorageKeys.SEARCH_ENGINES, _engine_adapter, unparsed)
    return SnapshotSections(
        spaces_state=_lenient(
            entries, StorageKeys.SPACES, _spaces_parser(unparsed), SpacesState, malformed
        ),
        stickers=lists(StorageKeys.STICKERS, _sticker_adapter),
        deleted_stickers=lists(StorageKeys.DELETED_STICKERS, _sticker_adapter),
        deleted_dock_items=lists(StorageKeys.DELETED_DOCK_ITEMS, _deleted_dock_adapter),
        deleted_spaces=lists(StorageKeys.DELETED_SPACES, _deleted_space_adapter),
        search_engine=_lenient(
            entries,
            StorageKeys.SEARCH_ENGINE,
            lambda data: None if data is None else SearchEngine.model_validate(data),
            lambda: None,
            malformed,
        ),
        search_engines=_lenient(
            entries,
            StorageKeys.SEARCH_ENGINES,
            lambda data: None if data is None else engines_parser(data),
            lambda: None,
            malformed,
        ),
        language=entries.get(StorageKeys.LANGUAGE) or DEFAULT_LANGUAGE,
        config_raw=entries.get(StorageKeys.CONFIG),
        wallpaper_id_raw=entries.get(StorageKeys.WALLPAPER_ID),
        wallpaper_raw=entries.get(StorageKeys.WALLPAPER),
        last_wallpaper_raw=entries.get(StorageKeys.LAST_WALLPAPER),
        malformed_keys=malformed,
        unparsed_items=unparsed,
    )


def parse_spaces_state(entries: dict[str, Optional[str]]) -> SpacesState:
    """Just the spaces section."""
    return _lenient(entries, StorageKeys.SPACES, _spaces_parser(), SpacesState)


def parse_deleted_dock_items(entries: dict[str, Optional[str]]) -> list[DeletedDockItemRecord]:
    key = StorageKeys.DELETED_DOCK_ITEMS
    return _lenient(entries, key, _items_parser(key, _deleted_dock_adapter), list)


def parse_deleted_spaces(entries: dict[str, Optional[str]]) -> list[DeletedSpaceRecord]:
    key = StorageKeys.DELETED_SPACES
    return _lenient(entries, key, _items_parser(key, _deleted_space_adapter), list)
