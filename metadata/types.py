"""Track, pattern, and alias records plus the result types the engine hands back."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping

from config.settings import (
    DEFAULT_DATA_SOURCE,
    DEFAULT_USE_TYPE,
    PATTERN_BASE_CONFIDENCE,
    PATTERN_MAX_CONFIDENCE,
    PATTERN_STEP,
)

# Fields the merge engine fills or overwrites. Identity (track_name) and the
# provenance fields are handled separately.
MERGE_FIELDS = (
    "track_number",
    "catalog_code",
    "library",
    "artist",
    "source",
    "composer",
    "publisher",
    "master_contact",
    "use_type",
    "duration",
)

# Boundary names used by upstream producers and the UI layer.
_CAMEL_NAMES = {
    "track_name": "trackName",
    "track_number": "trackNumber",
    "catalog_code": "catalogCode",
    "master_contact": "masterContact",
    "use_type": "useType",
    "data_source": "dataSource",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}
_INPUT_ALIASES = {
    "label": "library",
    "use": "use_type",
}
_SNAKE_NAMES = {camel: snake for snake, camel in _CAMEL_NAMES.items()}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _coerce_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _coerce_optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def snake_mapping(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``payload`` keyed by snake_case field names (camelCase and legacy keys accepted)."""
    out: dict[str, Any] = {}
    for key, value in (payload or {}).items():
        name = _SNAKE_NAMES.get(key, key)
        name = _INPUT_ALIASES.get(name, name)
        if name in out and out[name] not in (None, ""):
            continue
        out[name] = value
    return out


@dataclass
class TrackRecord:
    """Canonical unit of learned knowledge about one real-world track."""

    track_name: str
    id: int | str | None = None
    catalog_code: str | None = None
    library: str | None = None
    artist: str | None = None
    source: str | None = None
    track_number: str | None = None
    duration: str | None = None
    composer: str | None = None
    publisher: str | None = None
    master_contact: str | None = None
    use_type: str | None = DEFAULT_USE_TYPE
    confidence: float = 1.0
    data_source: str | None = DEFAULT_DATA_SOURCE
    verified: bool = False
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "TrackRecord":
        data = snake_mapping(payload)
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["track_name"] = str(kwargs.get("track_name") or "")
        for name in MERGE_FIELDS:
            if name in kwargs:
                kwargs[name] = _coerce_optional_text(kwargs[name])
        confidence = _coerce_optional_float(kwargs.get("confidence"))
        kwargs["confidence"] = 1.0 if confidence is None else confidence
        kwargs["verified"] = _coerce_bool(kwargs.get("verified"))
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Camel-cased view for callers on the other side of the engine boundary."""
        return {_CAMEL_NAMES.get(f.name, f.name): getattr(self, f.name) for f in fields(self)}

    def copy(self, **changes: Any) -> "TrackRecord":
        return replace(self, **changes)


@dataclass
class TrackDescriptor:
    """Partial observation of a track handed in by an upstream producer.

    Only ``track_name`` is needed for matching; any other subset of fields
    may be present. ``confidence`` and ``verified`` stay ``None`` when the
    producer did not state them.
    """

    track_name: str | None = None
    catalog_code: str | None = None
    library: str | None = None
    artist: str | None = None
    source: str | None = None
    track_number: str | None = None
    duration: str | None = None
    composer: str | None = None
    publisher: str | None = None
    master_contact: str | None = None
    use_type: str | None = None
    confidence: float | None = None
    data_source: str | None = None
    verified: bool | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "TrackDescriptor":
        data = snake_mapping(payload)
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        for name in ("track_name", *MERGE_FIELDS, "data_source"):
            if name in kwargs:
                kwargs[name] = _coerce_optional_text(kwargs[name])
        if "confidence" in kwargs:
            kwargs["confidence"] = _coerce_optional_float(kwargs["confidence"])
        if kwargs.get("verified") is not None:
            kwargs["verified"] = _coerce_bool(kwargs["verified"])
        return cls(**kwargs)

    @classmethod
    def coerce(cls, value: "TrackDescriptor | TrackRecord | Mapping[str, Any]") -> "TrackDescriptor":
        if isinstance(value, TrackDescriptor):
            return value
        if isinstance(value, TrackRecord):
            return cls(
                **{f.name: getattr(value, f.name) for f in fields(cls)},
            )
        return cls.from_mapping(value)

    def to_record(self) -> TrackRecord:
        """Materialize as a new record, applying the insert-time defaults."""
        return TrackRecord(
            track_name=(self.track_name or "").strip(),
            catalog_code=self.catalog_code,
            library=self.library,
            artist=self.artist,
            source=self.source,
            track_number=self.track_number,
            duration=self.duration,
            composer=self.composer,
            publisher=self.publisher,
            master_contact=self.master_contact,
            use_type=self.use_type or DEFAULT_USE_TYPE,
            confidence=1.0 if self.confidence is None else float(self.confidence),
            data_source=self.data_source or DEFAULT_DATA_SOURCE,
            verified=bool(self.verified),
        )

    def to_dict(self) -> dict[str, Any]:
        return {_CAMEL_NAMES.get(f.name, f.name): getattr(self, f.name) for f in fields(self)}


def pattern_confidence(occurrences: int) -> float:
    """Confidence after ``occurrences`` observations; never reaches certainty."""
    if occurrences <= 1:
        return PATTERN_BASE_CONFIDENCE
    return round(min(PATTERN_MAX_CONFIDENCE, PATTERN_BASE_CONFIDENCE + occurrences * PATTERN_STEP), 4)


@dataclass(frozen=True)
class Pattern:
    """Learned (pattern_type, key) -> value association."""

    pattern_type: str
    key: str
    value: str
    occurrences: int = 1
    confidence: float = PATTERN_BASE_CONFIDENCE

    def to_dict(self) -> dict[str, Any]:
        return {
            "patternType": self.pattern_type,
            "key": self.key,
            "value": self.value,
            "occurrences": self.occurrences,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class Match:
    """Best stored record for a descriptor, labelled with the strategy that found it."""

    record: TrackRecord
    match_type: str
    confidence: float
    matched_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "record": self.record.to_dict(),
            "matchType": self.match_type,
            "confidence": self.confidence,
            "matchedBy": self.matched_by,
        }


@dataclass(frozen=True)
class Prediction:
    composer: str | None = None
    publisher: str | None = None
    composer_confidence: float = 0.0
    publisher_confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "composer": self.composer,
            "publisher": self.publisher,
            "composerConfidence": self.composer_confidence,
            "publisherConfidence": self.publisher_confidence,
        }


@dataclass(frozen=True)
class CandidateMatch:
    """Winner of a weighted ranking over external search results."""

    candidate: Mapping[str, Any]
    score: float
    confidence: float
    reason: str
    breakdown: Mapping[str, float | None] = field(default_factory=dict)


@dataclass(frozen=True)
class StoreStats:
    tracks: int
    verified: int
    patterns: int
    aliases: int

    def to_dict(self) -> dict[str, int]:
        return {
            "tracks": self.tracks,
            "verified": self.verified,
            "patterns": self.patterns,
            "aliases": self.aliases,
        }


@dataclass(frozen=True)
class SaveResult:
    record: TrackRecord
    action: str  # "inserted", "merged" or "overwritten"


@dataclass(frozen=True)
class DedupResult:
    removed_count: int
    merged_count: int
    cancelled: bool = False


@dataclass
class LookupResult:
    """Outcome of a full lookup: direct match, pattern prediction, and what was filled."""

    descriptor: TrackDescriptor
    match: Match | None = None
    prediction: Prediction | None = None
    filled: dict[str, str] = field(default_factory=dict)
    needs_approval: dict[str, tuple[str, float]] = field(default_factory=dict)
    data_source: str | None = None
    status: str = "not_found"

    def enriched(self) -> TrackDescriptor:
        """The descriptor with every filled field applied."""
        if not self.filled:
            return self.descriptor
        changes: dict[str, Any] = dict(self.filled)
        if self.data_source:
            changes["data_source"] = self.data_source
        return replace(self.descriptor, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "match": self.match.to_dict() if self.match else None,
            "prediction": self.prediction.to_dict() if self.prediction else None,
            "filled": {_CAMEL_NAMES.get(k, k): v for k, v in self.filled.items()},
            "needsApproval": {
                _CAMEL_NAMES.get(k, k): {"value": value, "confidence": confidence}
                for k, (value, confidence) in self.needs_approval.items()
            },
            "dataSource": self.data_source,
            "status": self.status,
        }


__all__ = [
    "CandidateMatch",
    "DedupResult",
    "LookupResult",
    "MERGE_FIELDS",
    "Match",
    "Pattern",
    "Prediction",
    "SaveResult",
    "StoreStats",
    "TrackDescriptor",
    "TrackRecord",
    "pattern_confidence",
    "snake_mapping",
]
