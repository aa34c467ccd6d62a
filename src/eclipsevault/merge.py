"""
Merge engine -- combine a local and an incoming package into a new one.

Guarantees:
    - No local entity is dropped or silently overwritten.
    - No two entities of the same family share an id afterwards; incoming
      ids are kept when free and remapped only on collision.
    - Sticker ``assetId`` links follow sticker-asset remaps.
    - Same inputs + same policy + same ``now`` + same id generator give
      identical output. Nothing here reads the clock or iterates a set
      to decide ordering.

Per family:
    spaces           name collision (trim + lowercase) resolved by SpaceNamePolicy
    dock items       remapped ids; mergeApps unions by URL
    stickers         id remap, assetId rewritten through the asset remap table
    search engines   conflict by id OR url, resolved by SearchEnginePolicy
    recycle records  id remap only (append-only history)
    assets           id remap; sticker-asset map fed back into stickers
    config/language  local value wins when present
"""

from __future__ import annotations

import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol, TypeVar

from pydantic import ConfigDict, Field

from .models import (
    BackupAssets,
    BackupKind,
    BackupPackage,
    DockItem,
    EXPORT_VERSION,
    ImportStrategy,
    SearchEngine,
    Space,
    SpacesState,
    StickerAsset,
    WallpaperAsset,
    WireModel,
)
from .snapshot import SnapshotSections, StorageKeys, dump_json, parse_sections

logger = logging.getLogger("eclipsevault.merge")

R = TypeVar("R", bound=WireModel)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

class SpaceNamePolicy(str, Enum):
    """What to do when an incoming space has the same name as an existing one."""

    KEEP_BOTH = "keepBoth"
    KEEP_LOCAL = "keepLocal"
    MERGE_APPS = "mergeApps"


class SearchEnginePolicy(str, Enum):
    """What to do when an incoming engine matches a local one by id or url."""

    KEEP_LOCAL = "keepLocal"
    KEEP_REMOTE = "keepRemote"


@dataclass(frozen=True)
class MergePolicy:
    """Conflict policy for one merge."""

    space_name: SpaceNamePolicy = SpaceNamePolicy.KEEP_BOTH
    search_engine: SearchEnginePolicy = SearchEnginePolicy.KEEP_LOCAL


# ---------------------------------------------------------------------------
# Id generation
# ---------------------------------------------------------------------------

class IdGenerator(Protocol):
    def __call__(self, prefix: str) -> str: ...


class RandomIdGenerator:
    """``<prefix>_<epoch ms>_<6 base36 chars>``, like the extension generates."""

    _ALPHABET = string.digits + string.ascii_lowercase

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.SystemRandom()

    def __call__(self, prefix: str) -> str:
        suffix = "".join(self._rng.choice(self._ALPHABET) for _ in range(6))
        return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


class SequentialIdGenerator:
    """``<prefix>_<n>`` with a shared counter. Fully deterministic."""

    def __init__(self, start: int = 1) -> None:
        self._next = start

    def __call__(self, prefix: str) -> str:
        value = f"{prefix}_{self._next}"
        self._next += 1
        return value


class _IdAllocator:
    def __init__(self, generate: IdGenerator) -> None:
        self._generate = generate

    def fresh(self, prefix: str, used: set[str]) -> str:
        candidate = self._generate(prefix)
        while candidate in used:
            candidate = self._generate(prefix)
        used.add(candidate)
        return candidate

    def ensure_unique(self, current_id: str, used: set[str], prefix: str) -> str:
        """Keep ``current_id`` if free, otherwise allocate a new one. Reserves the result."""
        if current_id and current_id not in used:
            used.add(current_id)
            return current_id
        return self.fresh(prefix, used)


# ---------------------------------------------------------------------------
# Preview / report
# ---------------------------------------------------------------------------

class PreviewSection(WireModel):
    """Counts for one entity family."""

    model_config = ConfigDict(extra="ignore")

    current: int = 0
    incoming: int = 0
    add: int = 0
    overwrite: int = 0
    conflict: int = 0


class SpaceRename(WireModel):
    """An incoming space renamed to coexist with a same-named one."""

    model_config = ConfigDict(extra="ignore")

    from_name: str = Field(alias="from")
    to_name: str = Field(alias="to")


class ImportPreview(WireModel):
    """What an import did (or would do), per entity family."""

    model_config = ConfigDict(extra="ignore")

    spaces: PreviewSection = Field(default_factory=PreviewSection)
    dock_urls: PreviewSection = Field(default_factory=PreviewSection)
    stickers: PreviewSection = Field(default_factory=PreviewSection)
    deleted_stickers: PreviewSection = Field(default_factory=PreviewSection)
    search_engines: PreviewSection = Field(default_factory=PreviewSection)
    wallpapers: PreviewSection = Field(default_factory=PreviewSection)
    sticker_assets: PreviewSection = Field(default_factory=PreviewSection)
    deleted_dock_items: PreviewSection = Field(default_factory=PreviewSection)
    deleted_spaces: PreviewSection = Field(default_factory=PreviewSection)
    space_renames: list[SpaceRename] = Field(default_factory=list)
    skipped_spaces: list[str] = Field(default_factory=list)

    def families(self) -> dict[str, PreviewSection]:
        """Family name -> counts, in display order."""
        return {
            "spaces": self.spaces,
            "dockUrls": self.dock_urls,
            "stickers": self.stickers,
            "deletedStickers": self.deleted_stickers,
            "searchEngines": self.search_engines,
            "wallpapers": self.wallpapers,
            "stickerAssets": self.sticker_assets,
            "deletedDockItems": self.deleted_dock_items,
            "deletedSpaces": self.deleted_spaces,
        }


@dataclass
class MergeResult:
    """A freshly built package plus the report of how it was built."""

    merged: BackupPackage
    preview: ImportPreview


# ---------------------------------------------------------------------------
# Dock helpers
# ---------------------------------------------------------------------------

def collect_dock_urls(items: list[DockItem]) -> set[str]:
    """Every leaf URL in a dock tree, folders included."""
    urls: set[str] = set()
    for item in items:
        if item.is_folder:
            urls |= collect_dock_urls(item.items or [])
        elif item.url:
            urls.add(item.url)
    return urls


def collect_dock_ids(items: list[DockItem], into: set[str]) -> None:
    for item in items:
        if item.id:
            into.add(item.id)
        if item.is_folder:
            collect_dock_ids(item.items or [], into)


def _spaces_dock_urls(spaces: list[Space]) -> set[str]:
    urls: set[str] = set()
    for space in spaces:
        urls |= collect_dock_urls(space.apps)
    return urls


def _clone_dock_items(items: list[DockItem], used: set[str], ids: _IdAllocator) -> list[DockItem]:
    cloned = []
    for item in items:
        prefix = "folder" if item.is_folder else "dock_item"
        update: dict = {"id": ids.ensure_unique(item.id, used, prefix)}
        if item.is_folder:
            update["items"] = _clone_dock_items(item.items or [], used, ids)
        cloned.append(item.model_copy(update=update))
    return cloned


def _filter_dock_items(
    items: list[DockItem],
    existing_urls: set[str],
    used: set[str],
    ids: _IdAllocator,
) -> tuple[list[DockItem], int]:
    """Drop items whose URL already exists; remap ids of the rest.

    Folders emptied by the filter are dropped too.
    """
    kept: list[DockItem] = []
    duplicates = 0

    for item in items:
        if item.is_folder:
            children, dupes = _filter_dock_items(item.items or [], existing_urls, used, ids)
            duplicates += dupes
            if not children:
                continue
            kept.append(item.model_copy(update={
                "id": ids.ensure_unique(item.id, used, "folder"),
                "items": children,
            }))
            continue

        if item.url and item.url in existing_urls:
            duplicates += 1
            continue
        if item.url:
            existing_urls.add(item.url)
        kept.append(item.model_copy(update={"id": ids.ensure_unique(item.id, used, "dock_item")}))

    return kept, duplicates


# ---------------------------------------------------------------------------
# Family merges
# ---------------------------------------------------------------------------

def conflict_copy_name(name: str, now: datetime, taken: set[str]) -> str:
    """``"<name> (conflict-YYYYMMDD-HHMMSS[-N])"``, unique against ``taken``.

    ``taken`` holds name keys (trimmed, lowercased); the chosen name's key
    is added to it.
    """
    stamp = now.astimezone(timezone.utc).strftime("%Y%m%d-%H%M%S")
    base = name.strip()
    candidate = f"{base} (conflict-{stamp})"
    counter = 2
    while candidate.lower() in taken:
        candidate = f"{base} (conflict-{stamp}-{counter})"
        counter += 1
    taken.add(candidate.lower())
    return candidate


@dataclass
class _SpacesOutcome:
    state: SpacesState
    changed: bool = False
    name_conflicts: int = 0
    dock_url_conflicts: int = 0
    appended: int = 0
    renames: list[SpaceRename] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def merge_spaces(
    local: SpacesState,
    incoming: SpacesState,
    policy: SpaceNamePolicy,
    now: datetime,
    ids: _IdAllocator,
    reserved_ids: Optional[set[str]] = None,
) -> _SpacesOutcome:
    """Merge space lists. Local spaces are kept as they are.

    ``reserved_ids`` are space ids taken by local spaces that could not be
    parsed; incoming spaces never reuse them.
    """
    spaces = [space.model_copy(deep=True) for space in local.spaces]
    used_space_ids = {space.id for space in spaces if space.id} | set(reserved_ids or ())
    used_dock_ids: set[str] = set()
    for space in spaces:
        collect_dock_ids(space.apps, used_dock_ids)

    by_name: dict[str, int] = {}
    for index, space in enumerate(spaces):
        by_name.setdefault(space.name_key, index)
    taken_names = set(by_name)

    outcome = _SpacesOutcome(state=local)
    active_remap: dict[str, str] = {}

    for space in incoming.spaces:
        key = space.name_key
        match = by_name.get(key)

        if match is None or policy is SpaceNamePolicy.KEEP_BOTH:
            new_name = space.name
            if match is not None:
                outcome.name_conflicts += 1
                new_name = conflict_copy_name(space.name, now, taken_names)
                outcome.renames.append(SpaceRename(from_name=space.name, to_name=new_name))
            new_id = ids.ensure_unique(space.id, used_space_ids, "space")
            active_remap[space.id] = new_id
            appended = space.model_copy(update={
                "id": new_id,
                "name": new_name,
                "apps": _clone_dock_items(space.apps, used_dock_ids, ids),
            })
            spaces.append(appended)
            by_name.setdefault(appended.name_key, len(spaces) - 1)
            taken_names.add(appended.name_key)
            outcome.appended += 1
            outcome.changed = True
            continue

        outcome.name_conflicts += 1

        if policy is SpaceNamePolicy.KEEP_LOCAL:
            outcome.skipped.append(space.name)
            continue

        target = spaces[match]
        existing_urls = collect_dock_urls(target.apps)
        extra, duplicates = _filter_dock_items(space.apps, existing_urls, used_dock_ids, ids)
        outcome.dock_url_conflicts += duplicates
        if extra:
            spaces[match] = target.model_copy(update={"apps": [*target.apps, *extra]})
            outcome.changed = True

    if not outcome.changed:
        return outcome

    active = local.active_space_id
    known = {space.id for space in spaces} | set(reserved_ids or ())
    if not active or active not in known:
        active = active_remap.get(incoming.active_space_id, "")
        if not active and spaces:
            active = spaces[0].id

    outcome.state = SpacesState(
        spaces=spaces,
        active_space_id=active,
        version=max(local.version or 1, incoming.version or 1),
    )
    return outcome


def remap_records(
    local: list[R],
    incoming: list[R],
    prefix: str,
    ids: _IdAllocator,
    asset_remap: Optional[dict[str, str]] = None,
    reserved: Optional[set[str]] = None,
) -> tuple[list[R], int]:
    """Append incoming records, remapping ids that collide.

    Ids in ``reserved`` count as taken even though no local record holds them.

    Returns:
        (merged list, number of records whose id had to change).
    """
    used = {record.id for record in local if record.id} | set(reserved or ())
    merged = list(local)
    conflicts = 0

    for record in incoming:
        new_id = ids.ensure_unique(record.id, used, prefix)
        update: dict = {}
        if new_id != record.id:
            conflicts += 1
            update["id"] = new_id
        asset_id = getattr(record, "asset_id", None)
        if asset_remap and asset_id and asset_id in asset_remap:
            update["asset_id"] = asset_remap[asset_id]
        merged.append(record.model_copy(update=update) if update else record)

    return merged, conflicts


def merge_search_engines(
    local: list[SearchEngine],
    incoming: list[SearchEngine],
    policy: SearchEnginePolicy,
) -> tuple[list[SearchEngine], int]:
    """Merge engine lists; a match by id or by url is a conflict.

    keepLocal drops conflicting incoming engines. keepRemote puts the
    incoming engine in place of the first local match and removes any
    other local engine it also matched. At most one engine per id results.
    """
    merged: list[SearchEngine] = []
    seen_ids: set[str] = set()
    for engine in local:
        if engine.id not in seen_ids:
            seen_ids.add(engine.id)
            merged.append(engine)

    local_ids = {engine.id for engine in merged}
    local_urls = {engine.url for engine in merged}
    conflicts = 0

    for engine in incoming:
        matches = [
            index for index, existing in enumerate(merged)
            if existing.id == engine.id or existing.url == engine.url
        ]
        is_conflict = bool(matches) or engine.id in local_ids or engine.url in local_urls
        if not is_conflict:
            merged.append(engine)
            continue

        conflicts += 1
        if policy is SearchEnginePolicy.KEEP_LOCAL:
            continue
        if not matches:
            merged.append(engine)
            continue
        merged[matches[0]] = engine
        for index in reversed(matches[1:]):
            del merged[index]

    return merged, conflicts


def _select_engine(
    local: Optional[SearchEngine],
    incoming: Optional[SearchEngine],
    engines: list[SearchEngine],
) -> Optional[SearchEngine]:
    by_id = {engine.id: engine for engine in engines}
    for choice in (local, incoming):
        if choice is not None and choice.id in by_id:
            return by_id[choice.id]
    if local is not None and not engines:
        return local
    return engines[0] if engines else None


@dataclass
class _AssetsOutcome:
    assets: BackupAssets
    wallpaper_conflicts: int = 0
    sticker_asset_conflicts: int = 0
    sticker_asset_remap: dict[str, str] = field(default_factory=dict)


def merge_assets(local: BackupAssets, incoming: BackupAssets, ids: _IdAllocator) -> _AssetsOutcome:
    """Concatenate asset lists, remapping colliding ids."""
    wallpapers: list[WallpaperAsset] = list(local.wallpapers)
    used_wallpapers = {asset.id for asset in wallpapers}
    wallpaper_conflicts = 0
    for asset in incoming.wallpapers:
        if asset.id in used_wallpapers:
            wallpaper_conflicts += 1
            asset = asset.model_copy(update={"id": ids.fresh("wallpaper", used_wallpapers)})
        else:
            used_wallpapers.add(asset.id)
        wallpapers.append(asset)

    sticker_assets: list[StickerAsset] = list(local.sticker_assets)
    used_sticker_assets = {asset.id for asset in sticker_assets}
    sticker_asset_conflicts = 0
    remap: dict[str, str] = {}
    for asset in incoming.sticker_assets:
        new_id = asset.id
        if new_id in used_sticker_assets:
            sticker_asset_conflicts += 1
            new_id = ids.fresh("sticker_asset", used_sticker_assets)
            remap[asset.id] = new_id
            asset = asset.model_copy(update={"id": new_id})
        else:
            used_sticker_assets.add(new_id)
        sticker_assets.append(asset)

    return _AssetsOutcome(
        assets=BackupAssets(wallpapers=wallpapers, sticker_assets=sticker_assets),
        wallpaper_conflicts=wallpaper_conflicts,
        sticker_asset_conflicts=sticker_asset_conflicts,
        sticker_asset_remap=remap,
    )


# ---------------------------------------------------------------------------
# Preview without merging
# ---------------------------------------------------------------------------

def _section(current: int, incoming: int, conflict: int, strategy: ImportStrategy) -> PreviewSection:
    if strategy is ImportStrategy.OVERWRITE:
        return PreviewSection(
            current=current, incoming=incoming, add=incoming, overwrite=current, conflict=conflict,
        )
    return PreviewSection(
        current=current,
        incoming=incoming,
        add=max(0, incoming - conflict),
        overwrite=conflict,
        conflict=conflict,
    )


def _id_collisions(local: list, incoming: list) -> int:
    local_ids = {item.id for item in local}
    return sum(1 for item in incoming if item.id in local_ids)


def build_preview(
    local: BackupPackage,
    incoming: BackupPackage,
    strategy: ImportStrategy = ImportStrategy.MERGE,
) -> ImportPreview:
    """Count what an import would add, overwrite, or collide on.

    Search engines collide by id or by url independently.
    """
    current = parse_sections(local.local_storage_entries)
    other = parse_sections(incoming.local_storage_entries)

    local_names = {space.name_key for space in current.spaces_state.spaces}
    space_conflicts = sum(1 for space in other.spaces_state.spaces if space.name_key in local_names)

    local_urls = _spaces_dock_urls(current.spaces_state.spaces)
    incoming_urls = _spaces_dock_urls(other.spaces_state.spaces)

    local_engines = current.search_engines or []
    incoming_engines = other.search_engines or []
    engine_ids = {engine.id for engine in local_engines}
    engine_urls = {engine.url for engine in local_engines}
    engine_conflicts = sum(
        1 for engine in incoming_engines if engine.id in engine_ids or engine.url in engine_urls
    )

    return ImportPreview(
        spaces=_section(
            len(current.spaces_state.spaces), len(other.spaces_state.spaces), space_conflicts, strategy
        ),
        dock_urls=_section(
            len(local_urls), len(incoming_urls), len(local_urls & incoming_urls), strategy
        ),
        stickers=_section(
            len(current.stickers), len(other.stickers),
            _id_collisions(current.stickers, other.stickers), strategy,
        ),
        deleted_stickers=_section(
            len(current.deleted_stickers), len(other.deleted_stickers),
            _id_collisions(current.deleted_stickers, other.deleted_stickers), strategy,
        ),
        search_engines=_section(
            len(local_engines), len(incoming_engines), engine_conflicts, strategy
        ),
        wallpapers=_section(
            len(local.assets.wallpapers), len(incoming.assets.wallpapers),
            _id_collisions(local.assets.wallpapers, incoming.assets.wallpapers), strategy,
        ),
        sticker_assets=_section(
            len(local.assets.sticker_assets), len(incoming.assets.sticker_assets),
            _id_collisions(local.assets.sticker_assets, incoming.assets.sticker_assets), strategy,
        ),
        deleted_dock_items=_section(
            len(current.deleted_dock_items), len(other.deleted_dock_items),
            _id_collisions(current.deleted_dock_items, other.deleted_dock_items), strategy,
        ),
        deleted_spaces=_section(
            len(current.deleted_spaces), len(other.deleted_spaces),
            _id_collisions(current.deleted_spaces, other.deleted_spaces), strategy,
        ),
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def _merged_section(preview_current: int, preview_incoming: int, conflicts: int,
                    added: Optional[int] = None, overwritten: int = 0) -> PreviewSection:
    return PreviewSection(
        current=preview_current,
        incoming=preview_incoming,
        add=preview_incoming - conflicts if added is None else added,
        overwrite=overwritten,
        conflict=conflicts,
    )


class MergeEngine:
    """Deterministic two-way merge of backup packages.

    Args:
        policy: Conflict policy. Defaults to keepBoth / keepLocal.
        id_generator: Source of fresh ids for remapped entities.
    """

    def __init__(
        self,
        policy: Optional[MergePolicy] = None,
        id_generator: Optional[IdGenerator] = None,
    ) -> None:
        self.policy = policy or MergePolicy()
        self._ids = _IdAllocator(id_generator or RandomIdGenerator())

    def merge(
        self,
        local: BackupPackage,
        incoming: BackupPackage,
        now: Optional[datetime] = None,
    ) -> MergeResult:
        """Merge ``incoming`` into ``local`` and return a brand-new package.

        Neither input is modified.

        Args:
            local: Current device state.
            incoming: Package from a file or another device.
            now: The one timestamp used for conflict names and createdAt.

        Returns:
            MergeResult with the merged package and its preview.
        """
        now = now or datetime.now(timezone.utc)
        current = parse_sections(local.local_storage_entries)
        other = parse_sections(incoming.local_storage_entries)

        assets = merge_assets(local.assets, incoming.assets, self._ids)

        spaces = merge_spaces(
            current.spaces_state, other.spaces_state, self.policy.space_name, now, self._ids,
            reserved_ids=current.unparsed_ids(StorageKeys.SPACES),
        )
        stickers, sticker_conflicts = remap_records(
            current.stickers, other.stickers, "sticker", self._ids, assets.sticker_asset_remap,
            reserved=current.unparsed_ids(StorageKeys.STICKERS),
        )
        deleted_stickers, deleted_sticker_conflicts = remap_records(
            current.deleted_stickers, other.deleted_stickers, "sticker", self._ids,
            assets.sticker_asset_remap,
            reserved=current.unparsed_ids(StorageKeys.DELETED_STICKERS),
        )
        deleted_dock, deleted_dock_conflicts = remap_records(
            current.deleted_dock_items, other.deleted_dock_items, "deleted_dock", self._ids,
            reserved=current.unparsed_ids(StorageKeys.DELETED_DOCK_ITEMS),
        )
        deleted_spaces, deleted_space_conflicts = remap_records(
            current.deleted_spaces, other.deleted_spaces, "deleted_space", self._ids,
            reserved=current.unparsed_ids(StorageKeys.DELETED_SPACES),
        )
        engines, engine_conflicts = merge_search_engines(
            current.search_engines or [], other.search_engines or [], self.policy.search_engine
        )

        entries = self._merge_entries(
            local.local_storage_entries,
            incoming.local_storage_entries,
            current,
            other,
            spaces=spaces,
            stickers=stickers,
            deleted_stickers=deleted_stickers,
            deleted_dock=deleted_dock,
            deleted_spaces=deleted_spaces,
            engines=engines,
        )

        preview = self._preview(
            local, incoming, current, other,
            spaces=spaces,
            sticker_conflicts=sticker_conflicts,
            deleted_sticker_conflicts=deleted_sticker_conflicts,
            deleted_dock_conflicts=deleted_dock_conflicts,
            deleted_space_conflicts=deleted_space_conflicts,
            engine_conflicts=engine_conflicts,
            assets=assets,
        )

        merged = BackupPackage(
            kind=BackupKind.FULL_BACKUP,
            export_version=EXPORT_VERSION,
            created_at=int(now.timestamp() * 1000),
            local_storage_entries=entries,
            assets=assets.assets,
        )

        logger.info(
            "Merged package: %d spaces added (%d renamed, %d skipped), "
            "%d stickers, %d wallpapers, %d sticker assets",
            spaces.appended,
            len(spaces.renames),
            len(spaces.skipped),
            len(other.stickers),
            len(incoming.assets.wallpapers),
            len(incoming.assets.sticker_assets),
        )
        return MergeResult(merged=merged, preview=preview)

    def preview(
        self,
        local: BackupPackage,
        incoming: BackupPackage,
        strategy: ImportStrategy = ImportStrategy.MERGE,
        now: Optional[datetime] = None,
    ) -> ImportPreview:
        """Preview an import. Merge previews run the real merge on copies."""
        if strategy is ImportStrategy.OVERWRITE:
            return build_preview(local, incoming, strategy)
        return self.merge(local, incoming, now=now).preview

    @staticmethod
    def _merge_entries(
        local_entries: dict[str, Optional[str]],
        incoming_entries: dict[str, Optional[str]],
        current: SnapshotSections,
        other: SnapshotSections,
        *,
        spaces: _SpacesOutcome,
        stickers: list,
        deleted_stickers: list,
        deleted_dock: list,
        deleted_spaces: list,
        engines: list[SearchEngine],
    ) -> dict[str, Optional[str]]:
        entries: dict[str, Optional[str]] = dict(local_entries)

        # Local value wins when present; absent local keys take the incoming value.
        for key, value in incoming_entries.items():
            if entries.get(key) is None and value is not None:
                entries[key] = value

        unparsed = current.unparsed_items

        if spaces.changed:
            state = spaces.state.to_wire()
            state["spaces"] = [*state["spaces"], *unparsed.get(StorageKeys.SPACES, [])]
            entries[StorageKeys.SPACES] = dump_json(state)

        for key, merged_list, local_list in (
            (StorageKeys.STICKERS, stickers, current.stickers),
            (StorageKeys.DELETED_STICKERS, deleted_stickers, current.deleted_stickers),
            (StorageKeys.DELETED_DOCK_ITEMS, deleted_dock, current.deleted_dock_items),
            (StorageKeys.DELETED_SPACES, deleted_spaces, current.deleted_spaces),
        ):
            if len(merged_list) != len(local_list):
                entries[key] = dump_json([*merged_list, *unparsed.get(key, [])])

        if engines != (current.search_engines or []):
            entries[StorageKeys.SEARCH_ENGINES] = dump_json(
                [*engines, *unparsed.get(StorageKeys.SEARCH_ENGINES, [])]
            )
            selected = _select_engine(current.search_engine, other.search_engine, engines)
            entries[StorageKeys.SEARCH_ENGINE] = dump_json(selected) if selected else None

        # A local value that could not be parsed is never replaced.
        for key in current.malformed_keys:
            logger.warning("Keeping unparseable local entry %s as it is", key)
            entries[key] = local_entries.get(key)

        # Drop keys that were absent on both sides so the map does not grow.
        return {
            key: value for key, value in entries.items()
            if key in local_entries or value is not None
        }

    @staticmethod
    def _preview(
        local: BackupPackage,
        incoming: BackupPackage,
        current: SnapshotSections,
        other: SnapshotSections,
        *,
        spaces: _SpacesOutcome,
        sticker_conflicts: int,
        deleted_sticker_conflicts: int,
        deleted_dock_conflicts: int,
        deleted_space_conflicts: int,
        engine_conflicts: int,
        assets: _AssetsOutcome,
    ) -> ImportPreview:
        local_spaces = current.spaces_state.spaces
        incoming_spaces = other.spaces_state.spaces
        merged_into = spaces.name_conflicts - len(spaces.renames) - len(spaces.skipped)

        incoming_urls = _spaces_dock_urls(incoming_spaces)
        local_engines = current.search_engines or []
        incoming_engines = other.search_engines or []

        return ImportPreview(
            spaces=_merged_section(
                len(local_spaces), len(incoming_spaces), spaces.name_conflicts,
                added=spaces.appended, overwritten=merged_into,
            ),
            dock_urls=_merged_section(
                len(_spaces_dock_urls(local_spaces)), len(incoming_urls),
                spaces.dock_url_conflicts,
                added=max(0, len(incoming_urls) - spaces.dock_url_conflicts),
            ),
            stickers=_merged_section(len(current.stickers), len(other.stickers), sticker_conflicts,
                                     added=len(other.stickers)),
            deleted_stickers=_merged_section(
                len(current.deleted_stickers), len(other.deleted_stickers),
                deleted_sticker_conflicts, added=len(other.deleted_stickers),
            ),
            search_engines=_merged_section(
                len(local_engines), len(incoming_engines), engine_conflicts,
            ),
            wallpapers=_merged_section(
                len(local.assets.wallpapers), len(incoming.assets.wallpapers),
                assets.wallpaper_conflicts, added=len(incoming.assets.wallpapers),
            ),
            sticker_assets=_merged_section(
                len(local.assets.sticker_assets), len(incoming.assets.sticker_assets),
                assets.sticker_asset_conflicts, added=len(incoming.assets.sticker_assets),
            ),
            deleted_dock_items=_merged_section(
                len(current.deleted_dock_items), len(other.deleted_dock_items),
                deleted_dock_conflicts, added=len(other.deleted_dock_items),
            ),
            deleted_spaces=_merged_section(
                len(current.deleted_spaces), len(other.deleted_spaces),
                deleted_space_conflicts, added=len(other.deleted_spaces),
            ),
            space_renames=spaces.renames,
            skipped_spaces=spaces.skipped,
        )
