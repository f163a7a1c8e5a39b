"""Variant spellings of composers, publishers and other entities (e.g. "R. Hall" -> "Robin Hall")."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from metadata.normalize import clean_text

if TYPE_CHECKING:
    from db.base import TrackStore

logger = logging.getLogger(__name__)


class AliasResolver:
    def __init__(self, store: TrackStore) -> None:
        self.store = store

    async def save(self, alias: str, canonical: str, entity_type: str) -> None:
        alias_text = clean_text(alias)
        canonical_text = clean_text(canonical)
        if not alias_text or not canonical_text or not entity_type:
            raise ValueError("alias, canonical and entity_type are required")
        await self.store.save_alias(alias_text, canonical_text, entity_type)
        logger.info("alias_saved type=%s alias=%s canonical=%s", entity_type, alias_text.lower(), canonical_text)

    async def resolve(self, name: str, entity_type: str) -> str:
        """Canonical name for ``name``, or ``name`` itself when no alias is known."""
        text = clean_text(name)
        if not text:
            return name
        canonical = await self.store.get_alias(text, entity_type)
        return canonical if canonical is not None else name

    async def same_entity(self, left: str, right: str, entity_type: str) -> bool:
        left_canonical = await self.resolve(left, entity_type)
        right_canonical = await self.resolve(right, entity_type)
        return (left_canonical or "").strip().lower() == (right_canonical or "").strip().lower()
