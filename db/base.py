"""Backend-agnostic track store contract.

Every backend exposes the same coroutine API so matchers, the merge engine
and the deduplicator depend on ``TrackStore`` and never on a concrete
backend. Backends raise ``StorageUnavailable`` when they cannot reach their
storage and ``ConflictingWrite`` when an insert collides with a row written
by someone else.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from metadata.normalize import normalize_track_name
from metadata.types import Pattern, SaveResult, StoreStats, TrackDescriptor, TrackRecord
from resolver.merge import is_user_approved, merge_records

logger = logging.getLogger(__name__)

# Public field names accepted by ``suggest`` mapped to record attributes.
SUGGEST_FIELDS = {
    "composer": "composer",
    "publisher": "publisher",
    "masterContact": "master_contact",
    "master_contact": "master_contact",
    "artist": "artist",
    "source": "source",
    "label": "library",
    "library": "library",
}

# Fields matched by the free-text filter of ``list_all``.
SEARCH_FIELDS = (
    "track_name",
    "artist",
    "source",
    "track_number",
    "composer",
    "publisher",
    "library",
    "master_contact",
)


class TrackStore(ABC):
    """Persistent collection of track records, learned patterns and aliases."""

    backend_name = "abstract"

    # -- tracks: reads -------------------------------------------------------

    @abstractmethod
    async def find_exact(
        self,
        name: str,
        catalog_code: str | None = None,
        library: str | None = None,
    ) -> TrackRecord | None:
        """Best record whose name equals ``name`` case-insensitively (verified rows first)."""
        raise NotImplementedError

    @abstractmethod
    async def find_by_catalog(self, catalog_code: str) -> list[TrackRecord]:
        """Records sharing ``catalog_code``, verified and most confident first."""
        raise NotImplementedError

    @abstractmethod
    async def find_verified_with_composer(self, limit: int | None = None) -> list[TrackRecord]:
        """Bounded scan of verified records that carry a composer."""
        raise NotImplementedError

    @abstractmethod
    async def find_by_name_key(self, name: str) -> TrackRecord | None:
        """Most recently updated record with the same identity as ``name``.

        A case-insensitive exact name wins over a normalized-name match.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, track_id: int | str) -> TrackRecord | None:
        raise NotImplementedError

    @abstractmethod
    async def list_all(
        self,
        search: str | None = None,
        limit: int | None = 500,
        offset: int = 0,
    ) -> list[TrackRecord]:
        """Records ordered by ``updated_at`` descending, optionally filtered by substring."""
        raise NotImplementedError

    # -- tracks: writes ------------------------------------------------------

    @abstractmethod
    async def insert(self, record: TrackRecord) -> TrackRecord:
        """Insert a new record and return it with id and timestamps assigned."""
        raise NotImplementedError

    @abstractmethod
    async def update(self, record: TrackRecord) -> TrackRecord:
        """Write every field of ``record`` to the row with ``record.id``."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, track_id: int | str) -> bool:
        """Delete one record; ``False`` when no such record exists."""
        raise NotImplementedError

    @abstractmethod
    async def delete_by_name(self, name: str) -> int:
        """Delete records whose name equals ``name`` case-insensitively."""
        raise NotImplementedError

    @abstractmethod
    async def apply_consolidation(
        self,
        target: TrackRecord | None,
        remove_ids: list[int | str],
    ) -> None:
        """Delete ``remove_ids`` then, when given, write back the merged ``target``."""
        raise NotImplementedError

    @abstractmethod
    async def clear_all(self) -> None:
        raise NotImplementedError

    async def upsert(self, record: TrackRecord | TrackDescriptor) -> SaveResult:
        """Insert ``record`` or fold it into the stored record with the same identity.

        A ``TrackDescriptor`` keeps unstated fields (confidence, verified) out
        of the merge; a ``TrackRecord`` is merged with all its values.

        This is a read-then-write without a transaction spanning both steps.
        Concurrent callers must be serialized (the engine holds a single
        writer lock); a collision that still slips through surfaces as
        ``ConflictingWrite`` from ``insert``.
        """
        existing = await self.find_by_name_key(record.track_name)
        if existing is None:
            new_record = record.to_record() if isinstance(record, TrackDescriptor) else record
            inserted = await self.insert(new_record)
            logger.info(
                "track_upsert action=inserted backend=%s id=%s name=%s",
                self.backend_name,
                inserted.id,
                inserted.track_name,
            )
            return SaveResult(record=inserted, action="inserted")

        merged = merge_records(existing, record)
        action = "overwritten" if is_user_approved(record.data_source) else "merged"
        if not merged.data_source:
            merged.data_source = existing.data_source
        updated = await self.update(merged)
        logger.info(
            "track_upsert action=%s backend=%s id=%s name=%s",
            action,
            self.backend_name,
            updated.id,
            updated.track_name,
        )
        return SaveResult(record=updated, action=action)

    # -- patterns and aliases ------------------------------------------------

    @abstractmethod
    async def observe_pattern(self, pattern_type: str, key: str, value: str) -> Pattern:
        """Record one observation of ``(pattern_type, key) -> value``."""
        raise NotImplementedError

    @abstractmethod
    async def get_patterns(self, pattern_type: str, key: str) -> list[Pattern]:
        """All values seen for a key, by confidence then occurrences, descending."""
        raise NotImplementedError

    @abstractmethod
    async def save_alias(self, alias: str, canonical: str, entity_type: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_alias(self, alias: str, entity_type: str) -> str | None:
        raise NotImplementedError

    # -- aggregates ----------------------------------------------------------

    @abstractmethod
    async def suggest(self, field: str, query: str = "", limit: int = 10) -> list[str]:
        """Distinct non-empty values of ``field``, most frequent first."""
        raise NotImplementedError

    @abstractmethod
    async def stats(self) -> StoreStats:
        raise NotImplementedError

    @abstractmethod
    async def export_all(self) -> dict[str, list[dict[str, Any]]]:
        raise NotImplementedError


def name_key(name: str | None) -> str:
    return normalize_track_name(name)


def suggest_column(field: str) -> str | None:
    return SUGGEST_FIELDS.get(field)
