"""Track resolution and learning engine.

``TrackResolutionEngine`` wires one ``TrackStore`` into the matcher, the
pattern store, the deduplicator and alias resolution. It is the only place
that writes: saves, deletes, consolidation and alias writes go through a
single writer lock so the store's read-then-write upsert never interleaves
with itself inside one process.
"""

from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Any, Iterable, Mapping, Union

import anyio

from config.settings import LEARNED_DATA_SOURCE, PATTERN_DATA_SOURCE
from db.base import TrackStore
from metadata.normalize import has_content
from metadata.types import (
    MERGE_FIELDS,
    CandidateMatch,
    DedupResult,
    LookupResult,
    Match,
    Prediction,
    SaveResult,
    StoreStats,
    TrackDescriptor,
    TrackRecord,
)
from resolver.aliases import AliasResolver
from resolver.dedup import CancelToken, Deduplicator
from resolver.errors import ConflictingWrite, MalformedInput
from resolver.matcher import TrackMatcher, rank_candidates, require_track_name
from resolver.patterns import PatternStore, is_auto_fill

logger = logging.getLogger(__name__)

_RIGHTS_FIELDS = ("composer", "publisher", "master_contact")
# A catalog or fuzzy match is a different recording; only carry over what a release shares.
_SHARED_FIELDS = (*_RIGHTS_FIELDS, "source")

Descriptor = Union[TrackDescriptor, TrackRecord, Mapping[str, Any]]


class TrackResolutionEngine:
    def __init__(self, store: TrackStore) -> None:
        self.store = store
        self.matcher = TrackMatcher(store)
        self.patterns = PatternStore(store)
        self.deduplicator = Deduplicator(store)
        self.aliases = AliasResolver(store)
        self._write_lock = anyio.Lock()

    # -- reads ---------------------------------------------------------------

    async def resolve(
        self,
        track_name: str,
        catalog_code: str | None = None,
        library: str | None = None,
    ) -> Match | None:
        return await self.matcher.resolve(track_name, catalog_code, library)

    async def predict(self, catalog_code: str | None = None, library: str | None = None) -> Prediction:
        return await self.patterns.predict(catalog_code, library)

    async def lookup(self, descriptor: Descriptor) -> LookupResult:
        """Fill what the store knows about ``descriptor`` without writing anything.

        A direct match with a composer wins outright. Otherwise learned
        patterns are consulted; confident predictions are filled, weaker ones
        are returned for a human to approve.
        """
        descriptor = TrackDescriptor.coerce(descriptor)
        require_track_name(descriptor.track_name)
        result = LookupResult(descriptor=descriptor)

        match = await self.resolve(descriptor.track_name, descriptor.catalog_code, descriptor.library)
        if match is not None and has_content(match.record.composer):
            result.match = match
            result.data_source = LEARNED_DATA_SOURCE
            fill_fields = MERGE_FIELDS if match.match_type == "exact" else _SHARED_FIELDS
            for name in fill_fields:
                value = getattr(match.record, name)
                if has_content(value) and not has_content(getattr(descriptor, name)):
                    result.filled[name] = value
            complete = match.match_type == "exact" and all(
                has_content(getattr(match.record, name)) for name in _RIGHTS_FIELDS
            )
            result.status = "complete" if complete else "needs_approval"
            logger.info(
                "track_lookup status=%s match=%s name=%s filled=%s",
                result.status,
                match.match_type,
                descriptor.track_name,
                ",".join(sorted(result.filled)) or "-",
            )
            return result

        prediction = await self.predict(descriptor.catalog_code, descriptor.library)
        result.prediction = prediction
        for name, value, confidence in (
            ("composer", prediction.composer, prediction.composer_confidence),
            ("publisher", prediction.publisher, prediction.publisher_confidence),
        ):
            if value is None or has_content(getattr(descriptor, name)):
                continue
            if is_auto_fill(confidence):
                result.filled[name] = value
            else:
                result.needs_approval[name] = (value, confidence)
        if result.filled:
            result.data_source = PATTERN_DATA_SOURCE
        if result.needs_approval:
            result.status = "needs_approval"
        elif result.filled:
            result.status = "predicted"
        logger.info(
            "track_lookup status=%s match=none name=%s filled=%s pending=%s",
            result.status,
            descriptor.track_name,
            ",".join(sorted(result.filled)) or "-",
            ",".join(sorted(result.needs_approval)) or "-",
        )
        return result

    async def resolve_many(
        self,
        descriptors: Iterable[Descriptor],
        cancel: CancelToken | None = None,
    ) -> list[Match | None]:
        """Resolve each descriptor in order; stops early when ``cancel`` is set.

        Descriptors without a track name resolve to ``None``.
        """
        results: list[Match | None] = []
        for item in descriptors:
            if cancel is not None and cancel.cancelled:
                logger.info("resolve_many_cancelled done=%s", len(results))
                break
            descriptor = TrackDescriptor.coerce(item)
            try:
                match = await self.resolve(descriptor.track_name, descriptor.catalog_code, descriptor.library)
            except MalformedInput:
                logger.warning("resolve_many_skipped index=%s reason=missing_track_name", len(results))
                match = None
            results.append(match)
        return results

    def rank_candidates(
        self,
        descriptor: Descriptor,
        candidates: Iterable[Mapping[str, Any]],
    ) -> CandidateMatch | None:
        return rank_candidates(descriptor, candidates)

    async def resolve_alias(self, name: str, entity_type: str) -> str:
        return await self.aliases.resolve(name, entity_type)

    async def suggest(self, field: str, query: str = "", limit: int = 10) -> list[str]:
        return await self.store.suggest(field, query, limit)

    async def stats(self) -> StoreStats:
        return await self.store.stats()

    async def list_tracks(
        self,
        search: str | None = None,
        limit: int | None = 500,
        offset: int = 0,
    ) -> list[TrackRecord]:
        return await self.store.list_all(search, limit, offset)

    # -- writes --------------------------------------------------------------

    async def save(self, descriptor: Descriptor) -> SaveResult:
        """Insert or merge one observation, then learn patterns from it."""
        descriptor = TrackDescriptor.coerce(descriptor)
        descriptor = replace(descriptor, track_name=require_track_name(descriptor.track_name))
        async with self._write_lock:
            try:
                result = await self.store.upsert(descriptor)
            except ConflictingWrite as exc:
                # Another writer inserted the same identity first; merge into its row.
                logger.warning("track_write_conflict name=%s error=%s", descriptor.track_name, exc)
                result = await self.store.upsert(descriptor)
            await self.patterns.learn_from_track(descriptor)
        return result

    async def delete(self, track_id: int | str) -> bool:
        async with self._write_lock:
            return await self.store.delete(track_id)

    async def delete_by_name(self, name: str) -> int:
        async with self._write_lock:
            return await self.store.delete_by_name(require_track_name(name))

    async def clear_all(self) -> None:
        async with self._write_lock:
            await self.store.clear_all()

    async def consolidate(self, cancel: CancelToken | None = None) -> DedupResult:
        async with self._write_lock:
            return await self.deduplicator.consolidate(cancel)

    async def save_alias(self, alias: str, canonical: str, entity_type: str) -> None:
        async with self._write_lock:
            await self.aliases.save(alias, canonical, entity_type)

    # -- import / export -----------------------------------------------------

    async def export_json(self) -> str:
        payload = await self.store.export_all()
        return json.dumps(payload, indent=2, ensure_ascii=False)

    async def import_json(self, data: str | Mapping[str, Any]) -> int:
        """Replay an export through ``save``; returns the number of tracks imported."""
        if isinstance(data, str):
            try:
                payload = json.loads(data)
            except ValueError as exc:
                raise MalformedInput(f"import payload is not valid JSON: {exc}") from exc
        else:
            payload = data
        if not isinstance(payload, Mapping):
            raise MalformedInput("import payload must be an object")

        imported = 0
        for item in payload.get("tracks") or []:
            if not isinstance(item, Mapping):
                continue
            descriptor = TrackDescriptor.from_mapping(item)
            if not has_content(descriptor.track_name):
                logger.warning("track_import_skipped reason=missing_track_name")
                continue
            await self.save(descriptor)
            imported += 1

        for item in payload.get("aliases") or []:
            if not isinstance(item, Mapping):
                continue
            entity_type = item.get("entityType") or item.get("entity_type")
            if item.get("alias") and item.get("canonical") and entity_type:
                await self.save_alias(item["alias"], item["canonical"], entity_type)

        logger.info("track_import_complete tracks=%s", imported)
        return imported
