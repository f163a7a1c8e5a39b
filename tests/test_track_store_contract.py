"""Behaviour every TrackStore backend must share (run against SQLite and the fake PostgREST)."""

from __future__ import annotations

import asyncio

import pytest

from metadata.types import TrackDescriptor, TrackRecord
from resolver.errors import ConflictingWrite
from resolver.matcher import TrackMatcher


def _record(name: str, **fields) -> TrackRecord:
    return TrackRecord(track_name=name, **fields)


def test_insert_then_get_and_find_exact(track_store) -> None:
    async def _run():
        stored = await track_store.insert(_record("Punch Drunk", catalog_code="IATS021", composer="W. Werzowa"))
        assert stored.id is not None
        assert stored.created_at and stored.updated_at

        fetched = await track_store.get(stored.id)
        assert fetched.track_name == "Punch Drunk"
        assert fetched.composer == "W. Werzowa"
        assert fetched.use_type == "BI"

        found = await track_store.find_exact("PUNCH DRUNK")
        assert found.id == stored.id
        assert await track_store.find_exact("punch drunk", catalog_code="IATS021") is not None
        assert await track_store.find_exact("punch drunk", catalog_code="OTHER") is None
        assert await track_store.find_exact("Punch") is None
        assert await track_store.get(987654) is None

    asyncio.run(_run())


def test_find_exact_prefers_verified_rows(track_store) -> None:
    async def _run():
        await track_store.insert(_record("Rise Up", catalog_code="A1", verified=True, composer="C"))
        await track_store.insert(_record("RISE UP", catalog_code="A2"))

        found = await track_store.find_exact("rise up")

        assert found.verified is True
        assert found.catalog_code == "A1"

    asyncio.run(_run())


def test_find_by_catalog_orders_verified_then_confidence(track_store) -> None:
    async def _run():
        await track_store.insert(_record("One", catalog_code="IATS021", confidence=1.0))
        await track_store.insert(_record("Two", catalog_code="IATS021", confidence=0.6, verified=True))
        await track_store.insert(_record("Three", catalog_code="IATS021", confidence=0.9, verified=True))
        await track_store.insert(_record("Four", catalog_code="OTHER"))

        rows = await track_store.find_by_catalog("IATS021")

        assert [row.track_name for row in rows] == ["Three", "Two", "One"]

    asyncio.run(_run())


def test_find_verified_with_composer_is_filtered_and_bounded(track_store) -> None:
    async def _run():
        await track_store.insert(_record("A", verified=True, composer="Comp A"))
        await track_store.insert(_record("B", verified=True, composer=""))
        await track_store.insert(_record("C", verified=False, composer="Comp C"))
        await track_store.insert(_record("D", verified=True, composer="Comp D"))

        rows = await track_store.find_verified_with_composer()
        assert sorted(row.track_name for row in rows) == ["A", "D"]
        assert len(await track_store.find_verified_with_composer(limit=1)) == 1

    asyncio.run(_run())


def test_fuzzy_scan_puts_confident_rows_first(track_store) -> None:
    async def _run():
        await track_store.insert(_record("Fire Hit", verified=True, composer="High Conf", confidence=0.95))
        await track_store.insert(_record("Fire Hit Drums", verified=True, composer="Low Conf", confidence=0.4))

        rows = await track_store.find_verified_with_composer()
        assert [row.composer for row in rows] == ["High Conf", "Low Conf"]

        match = await TrackMatcher(track_store).resolve("Fire Hit Bass")
        assert match.match_type == "fuzzy"
        assert match.record.composer == "High Conf"

    asyncio.run(_run())


def test_find_by_name_key_prefers_exact_name_then_normalized(track_store) -> None:
    async def _run():
        variant = await track_store.insert(_record("FIRE THUNDER HIT (Full Mix)"))
        exact = await track_store.insert(_record("fire thunder hit", catalog_code="X1"))

        assert (await track_store.find_by_name_key("Fire Thunder Hit")).id == exact.id
        assert (await track_store.find_by_name_key("fire_thunder_hit STEM")).id in {variant.id, exact.id}
        assert await track_store.find_by_name_key("Ocean Floor") is None

    asyncio.run(_run())


def test_upsert_inserts_merges_and_overwrites(track_store) -> None:
    async def _run():
        first = await track_store.upsert(TrackDescriptor(track_name="Punch Drunk", composer="X", data_source="file_metadata"))
        assert first.action == "inserted"

        second = await track_store.upsert(
            TrackDescriptor(track_name="punch drunk", composer="Y", publisher="P", data_source="ai_extraction")
        )
        assert second.action == "merged"
        assert second.record.id == first.record.id
        assert second.record.composer == "X"
        assert second.record.publisher == "P"

        third = await track_store.upsert(TrackDescriptor(track_name="Punch Drunk", composer="", data_source="user_approved"))
        assert third.action == "overwritten"
        stored = await track_store.get(first.record.id)
        assert stored.composer == ""
        assert stored.publisher is None
        assert (await track_store.stats()).tracks == 1

    asyncio.run(_run())


def test_insert_of_same_identity_raises_conflicting_write(track_store) -> None:
    async def _run():
        await track_store.insert(_record("Punch Drunk", catalog_code="IATS021"))
        with pytest.raises(ConflictingWrite):
            await track_store.insert(_record("PUNCH DRUNK", catalog_code="IATS021"))

    asyncio.run(_run())


def test_delete_and_delete_by_name(track_store) -> None:
    async def _run():
        a = await track_store.insert(_record("Night Drive"))
        await track_store.insert(_record("NIGHT DRIVE", catalog_code="N2"))
        await track_store.insert(_record("Day Drive"))

        assert await track_store.delete(a.id) is True
        assert await track_store.delete(a.id) is False
        assert await track_store.delete_by_name("night drive") == 1
        remaining = await track_store.list_all()
        assert [row.track_name for row in remaining] == ["Day Drive"]

    asyncio.run(_run())


def test_list_all_orders_by_recency_and_filters(track_store) -> None:
    async def _run():
        await track_store.insert(_record("Alpha", composer="W. Werzowa"))
        await track_store.insert(_record("Bravo", artist="Someone"))
        await track_store.insert(_record("Charlie 100%", library="Werz Library"))

        names = [row.track_name for row in await track_store.list_all()]
        assert names == ["Charlie 100%", "Bravo", "Alpha"]

        found = [row.track_name for row in await track_store.list_all(search="WERZ")]
        assert sorted(found) == ["Alpha", "Charlie 100%"]

        page = await track_store.list_all(limit=1, offset=1)
        assert [row.track_name for row in page] == ["Bravo"]

        assert [row.track_name for row in await track_store.list_all(search="100%")] == ["Charlie 100%"]

    asyncio.run(_run())


def test_pattern_confidence_grows_to_ceiling(track_store) -> None:
    async def _run():
        seen = []
        for _ in range(7):
            pattern = await track_store.observe_pattern("catalog_composer", "IATS021", "W. Werzowa")
            seen.append(pattern.confidence)

        assert seen == [0.5, 0.7, 0.8, 0.9, 0.95, 0.95, 0.95]
        assert seen == sorted(seen)
        assert max(seen) <= 0.95
        assert pattern.occurrences == 7

    asyncio.run(_run())


def test_get_patterns_ranks_by_confidence_then_occurrences(track_store) -> None:
    async def _run():
        await track_store.observe_pattern("catalog_composer", "K1", "Rare")
        for _ in range(3):
            await track_store.observe_pattern("catalog_composer", "K1", "Common")
        await track_store.observe_pattern("catalog_publisher", "K1", "Other Type")

        patterns = await track_store.get_patterns("catalog_composer", "K1")

        assert [p.value for p in patterns] == ["Common", "Rare"]
        assert patterns[0].occurrences == 3
        assert await track_store.get_patterns("catalog_composer", "missing") == []

    asyncio.run(_run())


def test_aliases_are_case_insensitive_and_replaceable(track_store) -> None:
    async def _run():
        await track_store.save_alias("R. Hall", "Robin Hall", "composer")
        assert await track_store.get_alias("r. hall", "composer") == "Robin Hall"
        assert await track_store.get_alias("R. Hall", "publisher") is None

        await track_store.save_alias("R. HALL", "Robert Hall", "composer")
        assert await track_store.get_alias("r. hall", "composer") == "Robert Hall"
        assert (await track_store.stats()).aliases == 1

    asyncio.run(_run())


def test_suggest_orders_by_frequency(track_store) -> None:
    async def _run():
        await track_store.insert(_record("A", composer="Robin Hall"))
        await track_store.insert(_record("B", composer="Robin Hall"))
        await track_store.insert(_record("C", composer="Rob Smith"))
        await track_store.insert(_record("D", composer="Anne Other"))
        await track_store.insert(_record("E", composer=""))

        assert await track_store.suggest("composer") == ["Robin Hall", "Anne Other", "Rob Smith"]
        assert await track_store.suggest("composer", "rob") == ["Robin Hall", "Rob Smith"]
        assert await track_store.suggest("composer", limit=1) == ["Robin Hall"]
        assert await track_store.suggest("not_a_field") == []

    asyncio.run(_run())


def test_stats_clear_and_export(track_store) -> None:
    async def _run():
        await track_store.insert(_record("A", verified=True, composer="C", catalog_code="K"))
        await track_store.insert(_record("B"))
        await track_store.observe_pattern("catalog_composer", "K", "C")
        await track_store.save_alias("c.", "C", "composer")

        stats = await track_store.stats()
        assert stats.to_dict() == {"tracks": 2, "verified": 1, "patterns": 1, "aliases": 1}

        exported = await track_store.export_all()
        assert sorted(row["trackName"] for row in exported["tracks"]) == ["A", "B"]
        assert exported["patterns"][0]["value"] == "C"
        assert exported["aliases"] == [{"alias": "c.", "canonical": "C", "entityType": "composer"}]

        await track_store.clear_all()
        assert (await track_store.stats()).to_dict() == {"tracks": 0, "verified": 0, "patterns": 0, "aliases": 0}

    asyncio.run(_run())


def test_apply_consolidation_removes_then_updates(track_store) -> None:
    async def _run():
        keep = await track_store.insert(_record("Fire Thunder Hit"))
        gone = await track_store.insert(_record("FIRE THUNDER HIT (Full Mix)", composer="C"))

        await track_store.apply_consolidation(keep.copy(composer="C"), [gone.id])

        rows = await track_store.list_all()
        assert [row.id for row in rows] == [keep.id]
        assert rows[0].composer == "C"

    asyncio.run(_run())
