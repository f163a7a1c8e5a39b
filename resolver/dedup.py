"""Consolidate stored records that normalize to the same track name."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from metadata.normalize import normalize_track_name
from metadata.types import DedupResult, TrackRecord
from resolver.merge import changed_fields, merge_records

if TYPE_CHECKING:
    from db.base import TrackStore

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag for batch operations.

    Safe to set from another thread; batches check it between items.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _recency(record: TrackRecord) -> tuple[str, int]:
    try:
        numeric_id = int(record.id)
    except (TypeError, ValueError):
        numeric_id = -1
    return (record.updated_at or "", numeric_id)


def group_duplicates(records: list[TrackRecord]) -> list[list[TrackRecord]]:
    """Groups of two or more records sharing a normalized name, most recent first.

    Grouping is by exact normalized-name equality only; the looser
    containment rule used for fuzzy matching would fold distinct short names.
    """
    groups: dict[str, list[TrackRecord]] = {}
    for record in records:
        key = normalize_track_name(record.track_name)
        if not key:
            continue
        groups.setdefault(key, []).append(record)
    out = []
    for key in sorted(groups):
        members = groups[key]
        if len(members) > 1:
            out.append(sorted(members, key=_recency, reverse=True))
    return out


class Deduplicator:
    def __init__(self, store: TrackStore) -> None:
        self.store = store

    async def consolidate(self, cancel: CancelToken | None = None) -> DedupResult:
        records = await self.store.list_all(limit=None)
        groups = group_duplicates(records)
        logger.info("dedup_start records=%s groups=%s", len(records), len(groups))

        removed = 0
        merged_groups = 0
        cancelled = False
        for group in groups:
            if cancel is not None and cancel.cancelled:
                cancelled = True
                break
            target, dupes = group[0], group[1:]
            merged = target
            for dupe in dupes:
                merged = merge_records(merged, dupe, allow_override=False)
            changes = changed_fields(target, merged)
            await self.store.apply_consolidation(
                merged if changes else None,
                [dupe.id for dupe in dupes],
            )
            removed += len(dupes)
            merged_groups += 1
            logger.debug(
                "dedup_group target=%s removed=%s changed=%s",
                target.id,
                len(dupes),
                ",".join(changes) or "-",
            )

        if cancelled:
            logger.info("dedup_cancelled removed=%s merged=%s", removed, merged_groups)
        else:
            logger.info("dedup_complete removed=%s merged=%s", removed, merged_groups)
        return DedupResult(removed_count=removed, merged_count=merged_groups, cancelled=cancelled)
