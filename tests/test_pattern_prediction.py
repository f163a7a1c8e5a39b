from __future__ import annotations

import asyncio

import pytest

from metadata.types import TrackDescriptor, TrackRecord, pattern_confidence
from resolver.patterns import PatternStore, is_auto_fill


def test_pattern_confidence_is_monotonic_and_capped() -> None:
    values = [pattern_confidence(n) for n in range(1, 20)]
    assert values == sorted(values)
    assert values[0] == 0.5
    assert max(values) == 0.95


@pytest.mark.parametrize("confidence, expected", [(0.7, True), (0.95, True), (0.69, False), (0.0, False), (None, False)])
def test_auto_fill_threshold(confidence, expected) -> None:
    assert is_auto_fill(confidence) is expected


def test_predict_uses_top_catalog_values(sqlite_store) -> None:
    async def _run():
        patterns = PatternStore(sqlite_store)
        for _ in range(3):
            await patterns.observe("catalog_composer", "IATS021", "W. Werzowa (ASCAP)(100%)")
        await patterns.observe("catalog_composer", "IATS021", "Someone Else")
        await patterns.observe("catalog_publisher", "IATS021", "Atmosphere Music (ASCAP)")
        return await patterns.predict("IATS021")

    prediction = asyncio.run(_run())

    assert prediction.composer == "W. Werzowa (ASCAP)(100%)"
    assert prediction.composer_confidence == 0.8
    assert prediction.publisher == "Atmosphere Music (ASCAP)"
    assert prediction.publisher_confidence == 0.5


def test_library_publisher_is_a_discounted_fallback(sqlite_store) -> None:
    async def _run():
        patterns = PatternStore(sqlite_store)
        for _ in range(5):
            await patterns.observe("library_publisher", "Atmosphere", "Atmosphere Music (ASCAP)")
        await patterns.observe("library_publisher", "Other Lib", "Other Pub")
        return (
            await patterns.predict("UNKNOWN1", "Atmosphere"),
            await patterns.predict(None, "Atmosphere"),
        )

    with_catalog, library_only = asyncio.run(_run())

    assert with_catalog.composer is None
    assert with_catalog.publisher == "Atmosphere Music (ASCAP)"
    assert with_catalog.publisher_confidence == pytest.approx(0.95 * 0.8)
    assert library_only.publisher_confidence == pytest.approx(0.76)


def test_library_fallback_not_used_when_catalog_has_publisher(sqlite_store) -> None:
    async def _run():
        patterns = PatternStore(sqlite_store)
        await patterns.observe("catalog_publisher", "K1", "Catalog Pub")
        for _ in range(4):
            await patterns.observe("library_publisher", "Lib", "Library Pub")
        return await patterns.predict("K1", "Lib")

    prediction = asyncio.run(_run())

    assert prediction.publisher == "Catalog Pub"
    assert prediction.publisher_confidence == 0.5


def test_predict_with_nothing_learned(sqlite_store) -> None:
    prediction = asyncio.run(PatternStore(sqlite_store).predict("NOPE", "Nowhere"))
    assert prediction.to_dict() == {
        "composer": None,
        "publisher": None,
        "composerConfidence": 0.0,
        "publisherConfidence": 0.0,
    }


def test_learn_from_track_requires_catalog_code(sqlite_store) -> None:
    async def _run():
        patterns = PatternStore(sqlite_store)
        skipped = await patterns.learn_from_track(
            TrackRecord(track_name="No Catalog", composer="C", publisher="P", library="L")
        )
        learned = await patterns.learn_from_track(
            TrackDescriptor(track_name="Cue", catalog_code="K9", composer="C", publisher="P", library="L")
        )
        return skipped, learned

    skipped, learned = asyncio.run(_run())

    assert skipped == []
    assert sorted(p.pattern_type for p in learned) == ["catalog_composer", "catalog_publisher", "library_publisher"]


def test_observe_ignores_placeholder_values(sqlite_store) -> None:
    async def _run():
        patterns = PatternStore(sqlite_store)
        assert await patterns.observe("catalog_composer", "K1", "N/A") is None
        assert await patterns.observe("catalog_composer", "", "Someone") is None
        return await sqlite_store.stats()

    assert asyncio.run(_run()).patterns == 0
