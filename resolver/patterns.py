"""Learned key -> value patterns (catalog code -> composer, library -> publisher, ...)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from config.settings import (
    AUTO_FILL_THRESHOLD,
    LIBRARY_PUBLISHER_DISCOUNT,
    PATTERN_CATALOG_COMPOSER,
    PATTERN_CATALOG_PUBLISHER,
    PATTERN_LIBRARY_PUBLISHER,
)
from metadata.normalize import has_content
from metadata.types import Pattern, Prediction, TrackDescriptor, TrackRecord

if TYPE_CHECKING:
    from db.base import TrackStore

logger = logging.getLogger(__name__)


def is_auto_fill(confidence: float | None) -> bool:
    """Whether a prediction may be written without asking a human."""
    return confidence is not None and confidence >= AUTO_FILL_THRESHOLD


def _key(value: str | None) -> str:
    return (value or "").strip()


class PatternStore:
    def __init__(self, store: TrackStore) -> None:
        self.store = store

    async def observe(self, pattern_type: str, key: str, value: str) -> Pattern | None:
        key = _key(key)
        value = (value or "").strip()
        if not key or not has_content(value):
            return None
        pattern = await self.store.observe_pattern(pattern_type, key, value)
        logger.debug(
            "pattern_observed type=%s key=%s occurrences=%s confidence=%s",
            pattern_type,
            key,
            pattern.occurrences,
            pattern.confidence,
        )
        return pattern

    async def predict_values(self, pattern_type: str, key: str) -> list[Pattern]:
        """Every value seen for ``key``, best first."""
        key = _key(key)
        if not key:
            return []
        return await self.store.get_patterns(pattern_type, key)

    async def predict(self, catalog_code: str | None = None, library: str | None = None) -> Prediction:
        composer = publisher = None
        composer_confidence = publisher_confidence = 0.0

        if _key(catalog_code):
            composers = await self.predict_values(PATTERN_CATALOG_COMPOSER, catalog_code)
            if composers:
                composer = composers[0].value
                composer_confidence = composers[0].confidence
            publishers = await self.predict_values(PATTERN_CATALOG_PUBLISHER, catalog_code)
            if publishers:
                publisher = publishers[0].value
                publisher_confidence = publishers[0].confidence

        # Library evidence is weaker; only used when the catalog has no publisher.
        if publisher is None and _key(library):
            publishers = await self.predict_values(PATTERN_LIBRARY_PUBLISHER, library)
            if publishers:
                publisher = publishers[0].value
                publisher_confidence = round(publishers[0].confidence * LIBRARY_PUBLISHER_DISCOUNT, 4)

        return Prediction(
            composer=composer,
            publisher=publisher,
            composer_confidence=composer_confidence,
            publisher_confidence=publisher_confidence,
        )

    async def learn_from_track(self, record: TrackRecord | TrackDescriptor) -> list[Pattern]:
        """Record the patterns a confirmed track supports. Needs a catalog code."""
        catalog = _key(record.catalog_code)
        if not catalog:
            return []
        learned = []
        if has_content(record.composer):
            learned.append(await self.observe(PATTERN_CATALOG_COMPOSER, catalog, record.composer))
        if has_content(record.publisher):
            learned.append(await self.observe(PATTERN_CATALOG_PUBLISHER, catalog, record.publisher))
            if has_content(record.library):
                learned.append(await self.observe(PATTERN_LIBRARY_PUBLISHER, record.library, record.publisher))
        return [pattern for pattern in learned if pattern is not None]
