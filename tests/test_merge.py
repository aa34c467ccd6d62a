"""Tests for the merge engine."""

from __future__ import annotations

import json

import pytest

from eclipsevault.merge import (
    MergeEngine,
    MergePolicy,
    RandomIdGenerator,
    SearchEnginePolicy,
    SequentialIdGenerator,
    SpaceNamePolicy,
    SpaceRename,
    build_preview,
    conflict_copy_name,
)
from eclipsevault.models import ImportStrategy
from eclipsevault.snapshot import StorageKeys, parse_sections

from conftest import space, spaces_json, sticker_asset, wallpaper

U1 = "https://google.com/search?q="
U2 = "https://www.google.com/search?q="


def _engine(id_gen, space_name=SpaceNamePolicy.KEEP_BOTH, search=SearchEnginePolicy.KEEP_LOCAL):
    return MergeEngine(MergePolicy(space_name=space_name, search_engine=search), id_gen)


def _space_names(package) -> list[str]:
    return [s.name for s in parse_sections(package.local_storage_entries).spaces_state.spaces]


def _all_ids(items) -> list[str]:
    ids = []
    for item in items:
        ids.append(item.id)
        if item.is_folder:
            ids.extend(_all_ids(item.items or []))
    return ids


class TestSpaceConflicts:
    """Same-name spaces under each policy."""

    def test_keep_both_example(self, make_package, id_gen, fixed_now) -> None:
        """Main/Main/Lab at 2026-01-01T12:00:00Z."""
        local = make_package({StorageKeys.SPACES: spaces_json(space("s1", "Main"))})
        incoming = make_package({
            StorageKeys.SPACES: spaces_json(space("s2", "Main"), space("s3", "Lab")),
        })

        result = _engine(id_gen).merge(local, incoming, now=fixed_now)

        spaces = parse_sections(result.merged.local_storage_entries).spaces_state.spaces
        assert [s.name for s in spaces] == ["Main", "Main (conflict-20260101-120000)", "Lab"]
        assert spaces[0].id == "s1"
        assert len({s.id for s in spaces}) == 3
        assert result.preview.space_renames == [
            SpaceRename(from_name="Main", to_name="Main (conflict-20260101-120000)")
        ]
        assert result.preview.spaces.conflict == 1
        assert result.preview.spaces.add == 2

    def test_rename_never_collides(self, make_package, id_gen, fixed_now) -> None:
        """Repeated conflicts get -N suffixes, unique across local and renamed names."""
        local = make_package({
            StorageKeys.SPACES: spaces_json(
                space("s1", "Main"), space("s2", "Main (conflict-20260101-120000)"),
            ),
        })
        incoming = make_package({
            StorageKeys.SPACES: spaces_json(space("s3", "Main"), space("s4", " main ")),
        })

        result = _engine(id_gen).merge(local, incoming, now=fixed_now)

        names = _space_names(result.merged)
        assert names == [
            "Main",
            "Main (conflict-20260101-120000)",
            "Main (conflict-20260101-120000-2)",
            "main (conflict-20260101-120000-3)",
        ]
        assert len({n.lower() for n in names}) == len(names)

    def test_keep_local_skips(self, make_package, id_gen, fixed_now) -> None:
        local = make_package({StorageKeys.SPACES: spaces_json(space("s1", "Main"))})
        incoming = make_package({
            StorageKeys.SPACES: spaces_json(space("s2", "main"), space("s3", "Lab")),
        })

        result = _engine(id_gen, SpaceNamePolicy.KEEP_LOCAL).merge(local, incoming, now=fixed_now)

        assert _space_names(result.merged) == ["Main", "Lab"]
        assert result.preview.skipped_spaces == ["main"]
        assert result.preview.space_renames == []

    def test_merge_apps_unions_by_url(self, make_package, id_gen, fixed_now) -> None:
        local = make_package({
            StorageKeys.SPACES: spaces_json(space("s1", "Main", "https://a.example", "https://b.example")),
        })
        incoming_space = space("s2", "Main", "https://b.example", "https://c.example")
        incoming_space["apps"].append({
            "id": "f1", "name": "Dupes", "type": "folder",
            "items": [{"id": "x1", "name": "A", "url": "https://a.example", "type": "app"}],
        })
        incoming = make_package({StorageKeys.SPACES: spaces_json(incoming_space)})

        result = _engine(id_gen, SpaceNamePolicy.MERGE_APPS).merge(local, incoming, now=fixed_now)

        spaces = parse_sections(result.merged.local_storage_entries).spaces_state.spaces
        assert len(spaces) == 1
        assert [app.url for app in spaces[0].apps] == [
            "https://a.example", "https://b.example", "https://c.example",
        ]
        assert result.preview.dock_urls.conflict == 2

    def test_dock_ids_remapped_on_collision(self, make_package, id_gen, fixed_now) -> None:
        local = make_package({
            StorageKeys.SPACES: spaces_json(space("s1", "Main", "https://a.example")),
        })
        clash = space("s1", "Lab", "https://z.example")
        clash["apps"][0]["id"] = "s1_app0"
        incoming = make_package({StorageKeys.SPACES: spaces_json(clash)})

        result = _engine(id_gen).merge(local, incoming, now=fixed_now)

        spaces = parse_sections(result.merged.local_storage_entries).spaces_state.spaces
        assert spaces[1].id == "space_1"
        dock_ids = [i for s in spaces for i in _all_ids(s.apps)]
        assert len(dock_ids) == len(set(dock_ids))
        assert spaces[1].apps[0].url == "https://z.example"

    def test_active_space_stays_local(self, make_package, id_gen, fixed_now) -> None:
        local = make_package({
            StorageKeys.SPACES: spaces_json(space("s1", "Main"), space("s9", "Other"), active="s9"),
        })
        incoming = make_package({StorageKeys.SPACES: spaces_json(space("s2", "Lab"))})

        result = _engine(id_gen).merge(local, incoming, now=fixed_now)

        state = parse_sections(result.merged.local_storage_entries).spaces_state
        assert state.active_space_id == "s9"

    def test_conflict_copy_name_helper(self, fixed_now) -> None:
        taken = {"main"}
        assert conflict_copy_name("Main", fixed_now, taken) == "Main (conflict-20260101-120000)"
        assert conflict_copy_name("Main", fixed_now, taken) == "Main (conflict-20260101-120000-2)"


class TestSearchEngines:
    """Engines conflict by id or by url."""

    def _packages(self, make_package):
        local = make_package({
            StorageKeys.SEARCH_ENGINE: json.dumps({"id": "google", "name": "Google", "url": U1}),
            StorageKeys.SEARCH_ENGINES: json.dumps([{"id": "google", "name": "Google", "url": U1}]),
        })
        incoming = make_package({
            StorageKeys.SEARCH_ENGINES: json.dumps([
                {"id": "google", "name": "Google 2", "url": U2},
                {"id": "brave", "name": "Brave", "url": U1},
            ]),
        })
        return local, incoming

    def test_report_counts_both_conflicts(self, make_package) -> None:
        local, incoming = self._packages(make_package)
        preview = build_preview(local, incoming, ImportStrategy.MERGE)
        assert preview.search_engines.conflict == 2
        assert preview.search_engines.add == 0

    def test_keep_local_adds_nothing(self, make_package, id_gen, fixed_now) -> None:
        local, incoming = self._packages(make_package)
        result = _engine(id_gen).merge(local, incoming, now=fixed_now)

        engines = parse_sections(result.merged.local_storage_entries).search_engines
        assert [(e.id, e.url) for e in engines] == [("google", U1)]
        assert result.preview.search_engines.conflict == 2
        assert result.merged.local_storage_entries[StorageKeys.SEARCH_ENGINES] == \
            local.local_storage_entries[StorageKeys.SEARCH_ENGINES]

    def test_keep_remote_replaces(self, make_package, id_gen, fixed_now) -> None:
        local, incoming = self._packages(make_package)
        result = _engine(id_gen, search=SearchEnginePolicy.KEEP_REMOTE).merge(
            local, incoming, now=fixed_now
        )

        sections = parse_sections(result.merged.local_storage_entries)
        ids = [e.id for e in sections.search_engines]
        assert len(ids) == len(set(ids))
        assert ("google", U2) in [(e.id, e.url) for e in sections.search_engines]
        # Active engine refreshed to the merged record.
        assert sections.search_engine.url == U2

    def test_new_engine_added(self, make_package, id_gen, fixed_now) -> None:
        local, _ = self._packages(make_package)
        incoming = make_package({
            StorageKeys.SEARCH_ENGINES: json.dumps([{"id": "ddg", "name": "DDG", "url": "https://ddg.gg/?q="}]),
        })
        result = _engine(id_gen).merge(local, incoming, now=fixed_now)

        sections = parse_sections(result.merged.local_storage_entries)
        assert [e.id for e in sections.search_engines] == ["google", "ddg"]
        assert sections.search_engine.id == "google"


class TestStickersAndAssets:
    """Id remaps and the sticker -> asset link."""

    def test_asset_remap_threads_into_stickers(self, make_package, id_gen, fixed_now) -> None:
        local = make_package(
            {StorageKeys.STICKERS: json.dumps([{"id": "st1", "type": "image", "assetId": "sa1"}])},
            sticker_assets=[sticker_asset("sa1", b"local")],
        )
        incoming = make_package(
            {StorageKeys.STICKERS: json.dumps([{"id": "st1", "type": "image", "assetId": "sa1"}])},
            sticker_assets=[sticker_asset("sa1", b"remote")],
        )

        result = _engine(id_gen).merge(local, incoming, now=fixed_now)

        assets = {a.id: a.data.content for a in result.merged.assets.sticker_assets}
        stickers = parse_sections(result.merged.local_storage_entries).stickers
        assert len(stickers) == 2
        assert stickers[0].asset_id == "sa1"
        assert assets["sa1"] == b"local"
        assert stickers[1].id != "st1"
        assert assets[stickers[1].asset_id] == b"remote"
        assert result.preview.stickers.conflict == 1
        assert result.preview.sticker_assets.conflict == 1

    def test_wallpaper_collision_remapped(self, make_package, id_gen, fixed_now) -> None:
        local = make_package(wallpapers=[wallpaper("wp1", b"a")])
        incoming = make_package(wallpapers=[wallpaper("wp1", b"b"), wallpaper("wp2", b"c")])

        result = _engine(id_gen).merge(local, incoming, now=fixed_now)

        ids = [w.id for w in result.merged.assets.wallpapers]
        assert ids[0] == "wp1" and ids[2] == "wp2"
        assert len(set(ids)) == 3
        assert result.preview.wallpapers.conflict == 1

    def test_recycle_records_remapped_not_deduplicated(self, make_package, id_gen, fixed_now) -> None:
        record = {"id": "d1", "deletedAt": 5, "spaceId": "s1", "originalIndex": 0,
                  "item": {"id": "a", "name": "A", "url": "https://a.example", "type": "app"}}
        local = make_package({StorageKeys.DELETED_DOCK_ITEMS: json.dumps([record])})
        incoming = make_package({StorageKeys.DELETED_DOCK_ITEMS: json.dumps([record])})

        result = _engine(id_gen).merge(local, incoming, now=fixed_now)

        records = parse_sections(result.merged.local_storage_entries).deleted_dock_items
        assert len(records) == 2
        assert records[0].id == "d1" and records[1].id != "d1"
        assert records[1].item == records[0].item
        assert result.preview.deleted_dock_items.conflict == 1


class TestLocalWins:
    def test_config_and_language_keep_local(self, make_package, id_gen, fixed_now) -> None:
        local = make_package({StorageKeys.CONFIG: '{"theme":"dark"}', StorageKeys.LANGUAGE: "en"})
        incoming = make_package({
            StorageKeys.CONFIG: '{"theme":"light"}',
            StorageKeys.LANGUAGE: "de",
            StorageKeys.WALLPAPER_ID: "wp9",
        })

        entries = _engine(id_gen).merge(local, incoming, now=fixed_now).merged.local_storage_entries

        assert entries[StorageKeys.CONFIG] == '{"theme":"dark"}'
        assert entries[StorageKeys.LANGUAGE] == "en"
        # Nothing local to protect, so the incoming pointer is taken.
        assert entries[StorageKeys.WALLPAPER_ID] == "wp9"


class TestMalformedLocalEntries:
    """Local data that fails validation is carried through, never dropped."""

    def test_partially_malformed_stickers(self, make_package, id_gen, fixed_now) -> None:
        local = make_package({
            StorageKeys.STICKERS: json.dumps([
                {"id": "a", "content": "keep me"},
                {"id": "b", "content": None},
            ]),
        })
        incoming = make_package({
            StorageKeys.STICKERS: json.dumps([{"id": "c"}, {"id": "b", "content": "new"}]),
        })

        entries = _engine(id_gen).merge(local, incoming, now=fixed_now).merged.local_storage_entries

        stickers = json.loads(entries[StorageKeys.STICKERS])
        ids = [s["id"] for s in stickers]
        assert ids[:2] == ["a", "c"]
        assert {"id": "b", "content": None} in stickers
        # The incoming "b" may not reuse the id held by the unparsed local sticker.
        assert ids.count("b") == 1
        assert len(stickers) == 4

    def test_partially_malformed_spaces(self, make_package, id_gen, fixed_now) -> None:
        bad = {"id": "s2", "name": ["broken"], "apps": []}
        local = make_package({
            StorageKeys.SPACES: spaces_json(space("s1", "Main"), bad, active="s2"),
        })
        incoming = make_package({
            StorageKeys.SPACES: spaces_json(space("s2", "Lab")),
        })

        entries = _engine(id_gen).merge(local, incoming, now=fixed_now).merged.local_storage_entries

        state = json.loads(entries[StorageKeys.SPACES])
        assert [s["id"] for s in state["spaces"]][0] == "s1"
        assert bad in state["spaces"]
        lab = next(s for s in state["spaces"] if s["name"] == "Lab")
        assert lab["id"] != "s2"
        assert state["activeSpaceId"] == "s2"

    def test_unparseable_local_value_is_kept(self, make_package, id_gen, fixed_now) -> None:
        local = make_package({
            StorageKeys.STICKERS: "{not json",
            StorageKeys.SPACES: json.dumps(["not", "an", "object"]),
        })
        incoming = make_package({
            StorageKeys.STICKERS: json.dumps([{"id": "c"}]),
            StorageKeys.SPACES: spaces_json(space("s9", "Remote")),
        })

        entries = _engine(id_gen).merge(local, incoming, now=fixed_now).merged.local_storage_entries

        assert entries[StorageKeys.STICKERS] == "{not json"
        assert entries[StorageKeys.SPACES] == json.dumps(["not", "an", "object"])

    def test_untouched_family_keeps_raw_value(self, make_package, id_gen, fixed_now) -> None:
        raw = json.dumps([{"id": "a", "content": "ok"}, {"id": "b", "content": None}])
        local = make_package({StorageKeys.STICKERS: raw})

        entries = _engine(id_gen).merge(local, make_package(), now=fixed_now).merged.local_storage_entries

        assert entries[StorageKeys.STICKERS] == raw


class TestIdempotenceAndDeterminism:
    """Empty-package merges and byte-identical reruns."""

    def test_merge_with_empty_returns_local(self, make_package, sample_entries, id_gen, fixed_now) -> None:
        pkg = make_package(sample_entries, [wallpaper("wp1")], [sticker_asset("sa1")])
        result = _engine(id_gen).merge(pkg, make_package(), now=fixed_now)

        merged = result.merged.to_wire()
        original = pkg.to_wire()
        merged.pop("createdAt")
        original.pop("createdAt")
        assert merged == original

    def test_empty_merged_with_package(self, make_package, sample_entries, id_gen, fixed_now) -> None:
        pkg = make_package(sample_entries, [wallpaper("wp1")], [sticker_asset("sa1")])
        result = _engine(id_gen).merge(make_package(), pkg, now=fixed_now)

        assert parse_sections(result.merged.local_storage_entries) == \
            parse_sections(pkg.local_storage_entries)
        assert result.merged.assets == pkg.assets

    def test_deterministic(self, make_package, sample_entries, fixed_now) -> None:
        local = make_package(sample_entries, [wallpaper("wp1")], [sticker_asset("sa1")])
        incoming = make_package(sample_entries, [wallpaper("wp1")], [sticker_asset("sa1")])

        first = _engine(SequentialIdGenerator()).merge(local, incoming, now=fixed_now)
        second = _engine(SequentialIdGenerator()).merge(local, incoming, now=fixed_now)

        assert first.merged.to_json() == second.merged.to_json()
        assert first.preview == second.preview

    def test_inputs_not_mutated(self, make_package, sample_entries, id_gen, fixed_now) -> None:
        local = make_package(sample_entries, [wallpaper("wp1")])
        incoming = make_package(sample_entries, [wallpaper("wp1")])
        before = (local.to_json(), incoming.to_json())

        _engine(id_gen, SpaceNamePolicy.MERGE_APPS).merge(local, incoming, now=fixed_now)

        assert (local.to_json(), incoming.to_json()) == before

    def test_created_at_is_now(self, make_package, id_gen, fixed_now) -> None:
        result = _engine(id_gen).merge(make_package(), make_package(), now=fixed_now)
        assert result.merged.created_at == int(fixed_now.timestamp() * 1000)


class TestIdGenerators:
    def test_sequential(self) -> None:
        gen = SequentialIdGenerator()
        assert [gen("space"), gen("sticker")] == ["space_1", "sticker_2"]

    def test_random_format(self) -> None:
        value = RandomIdGenerator()("sticker")
        prefix, millis, suffix = value.split("_")
        assert prefix == "sticker"
        assert millis.isdigit()
        assert len(suffix) == 6


class TestBuildPreview:
    @pytest.mark.parametrize("strategy,add,overwrite", [
        (ImportStrategy.MERGE, 1, 1),
        (ImportStrategy.OVERWRITE, 2, 2),
    ])
    def test_space_counts(self, make_package, strategy, add, overwrite) -> None:
        local = make_package({StorageKeys.SPACES: spaces_json(space("s1", "Main"), space("s2", "Work"))})
        incoming = make_package({StorageKeys.SPACES: spaces_json(space("s3", "main"), space("s4", "Lab"))})

        preview = build_preview(local, incoming, strategy)

        assert preview.spaces.current == 2
        assert preview.spaces.incoming == 2
        assert preview.spaces.conflict == 1
        assert preview.spaces.add == add
        assert preview.spaces.overwrite == overwrite
