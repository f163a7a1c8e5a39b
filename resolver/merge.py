"""Field-by-field merge of a stored track with a new observation.

Two tiers:
- smart merge (default): only fill fields the stored record lacks; present
  values are never overwritten, whatever the incoming confidence.
- user-approved override: a human confirmed the whole record, so every
  field is replaced, including explicit clears to ``""``.
"""

from __future__ import annotations

import logging
from typing import Any

from config.settings import DEFAULT_USE_TYPE, USER_APPROVED_SOURCES
from metadata.normalize import has_content
from metadata.types import MERGE_FIELDS, TrackDescriptor, TrackRecord

_LOG = logging.getLogger(__name__)


def is_user_approved(data_source: Any) -> bool:
    return str(data_source or "").strip().lower() in USER_APPROVED_SOURCES


def merge_records(
    existing: TrackRecord,
    incoming: TrackDescriptor | TrackRecord,
    *,
    allow_override: bool = True,
) -> TrackRecord:
    """Return a new record combining ``existing`` with ``incoming``; inputs are not mutated."""
    if allow_override and is_user_approved(incoming.data_source):
        return _override(existing, incoming)
    return _smart_merge(existing, incoming)


def _smart_merge(existing: TrackRecord, incoming: TrackDescriptor | TrackRecord) -> TrackRecord:
    merged = existing.copy()
    filled = []
    for name in MERGE_FIELDS:
        value = getattr(incoming, name)
        if not has_content(getattr(existing, name)) and has_content(value):
            setattr(merged, name, value)
            filled.append(name)
            _LOG.debug("track_merge_fill id=%s field=%s", existing.id, name)

    incoming_confidence = incoming.confidence if incoming.confidence is not None else 0.0
    merged.confidence = max(existing.confidence or 0.0, float(incoming_confidence))
    merged.verified = bool(existing.verified or incoming.verified)
    if filled and incoming.data_source:
        merged.data_source = incoming.data_source
    return merged


def _override(existing: TrackRecord, incoming: TrackDescriptor | TrackRecord) -> TrackRecord:
    merged = existing.copy()
    if has_content(incoming.track_name):
        merged.track_name = str(incoming.track_name).strip()
    for name in MERGE_FIELDS:
        setattr(merged, name, getattr(incoming, name))
    if merged.use_type is None:
        merged.use_type = DEFAULT_USE_TYPE
    merged.confidence = 1.0 if incoming.confidence is None else float(incoming.confidence)
    if incoming.verified is not None:
        merged.verified = bool(incoming.verified)
    merged.data_source = incoming.data_source
    _LOG.info("track_merge_override id=%s source=%s", existing.id, incoming.data_source)
    return merged


def changed_fields(before: TrackRecord, after: TrackRecord) -> list[str]:
    """Names of merge and bookkeeping fields whose value differs."""
    names = ("track_name", *MERGE_FIELDS, "confidence", "verified", "data_source")
    return [name for name in names if getattr(before, name) != getattr(after, name)]


def present_fields(record: TrackRecord | TrackDescriptor) -> set[str]:
    return {name for name in MERGE_FIELDS if has_content(getattr(record, name))}
