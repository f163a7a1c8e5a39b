"""Match an incomplete track against the store, and rank external search candidates."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from config.settings import (
    CANDIDATE_ACCEPT_THRESHOLD,
    CANDIDATE_CONFIDENCE_BANDS,
    CANDIDATE_WEIGHTS,
    CATALOG_MATCH_CONFIDENCE,
    EXACT_MATCH_CONFIDENCE,
    FUZZY_MATCH_CONFIDENCE,
)
from metadata.normalize import has_content, names_overlap
from metadata.similarity import duration_closeness, similarity
from metadata.types import CandidateMatch, Match, TrackDescriptor
from resolver.errors import MalformedInput

if TYPE_CHECKING:
    from db.base import TrackStore

logger = logging.getLogger(__name__)


def require_track_name(name: Any) -> str:
    text = "" if name is None else str(name).strip()
    if not text:
        raise MalformedInput("trackName is required")
    return text


class TrackMatcher:
    """Runs the exact, catalog and fuzzy strategies in priority order.

    The first strategy that finds a record wins; confidences are fixed per
    strategy and never blended.
    """

    def __init__(self, store: TrackStore) -> None:
        self.store = store

    async def resolve(
        self,
        track_name: str,
        catalog_code: str | None = None,
        library: str | None = None,
    ) -> Match | None:
        name = require_track_name(track_name)
        catalog = (catalog_code or "").strip() or None
        library = (library or "").strip() or None

        match = await self._exact(name, catalog, library)
        if match is None and catalog:
            match = await self._by_catalog(catalog)
        if match is None:
            match = await self._fuzzy(name)

        if match is None:
            logger.debug("track_match_miss name=%s catalog=%s", name, catalog)
        else:
            logger.debug(
                "track_match type=%s confidence=%s id=%s name=%s",
                match.match_type,
                match.confidence,
                match.record.id,
                name,
            )
        return match

    async def _exact(self, name: str, catalog: str | None, library: str | None) -> Match | None:
        record = await self.store.find_exact(name, catalog, library)
        if record is None or not record.verified:
            return None
        return Match(record=record, match_type="exact", confidence=EXACT_MATCH_CONFIDENCE)

    async def _by_catalog(self, catalog: str) -> Match | None:
        for record in await self.store.find_by_catalog(catalog):
            if record.verified and has_content(record.composer):
                return Match(
                    record=record,
                    match_type="catalog",
                    confidence=CATALOG_MATCH_CONFIDENCE,
                    matched_by=f"Same catalog: {catalog}",
                )
        return None

    async def _fuzzy(self, name: str) -> Match | None:
        for record in await self.store.find_verified_with_composer():
            if has_content(record.composer) and names_overlap(name, record.track_name):
                return Match(
                    record=record,
                    match_type="fuzzy",
                    confidence=FUZZY_MATCH_CONFIDENCE,
                    matched_by=f"Similar name: {record.track_name}",
                )
        return None


def _first(candidate: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = candidate.get(key)
        if has_content(value):
            return value
    return None


def score_candidate(descriptor: TrackDescriptor, candidate: Mapping[str, Any]) -> tuple[float, dict[str, float | None]]:
    """Weighted score in ``[0, 1]`` plus the per-signal breakdown.

    Catalog and album only count when both sides carry them; their weight is
    not redistributed, so a candidate without a catalog code scores at most 0.6.
    """
    total = 0.0
    catalog_match = album_match = None

    candidate_catalog = _first(candidate, "catalog", "catalogCode", "catalog_code")
    if has_content(descriptor.catalog_code) and candidate_catalog is not None:
        catalog_match = similarity(descriptor.catalog_code, candidate_catalog)
        total += CANDIDATE_WEIGHTS["catalog"] * catalog_match

    name_match = similarity(descriptor.track_name, _first(candidate, "trackName", "track_name", "title"))
    total += CANDIDATE_WEIGHTS["name"] * name_match

    duration_match = duration_closeness(descriptor.duration, candidate.get("duration"))
    total += CANDIDATE_WEIGHTS["duration"] * duration_match

    candidate_album = _first(candidate, "album", "source")
    if has_content(descriptor.source) and candidate_album is not None:
        album_match = similarity(descriptor.source, candidate_album)
        total += CANDIDATE_WEIGHTS["album"] * album_match

    breakdown = {
        "catalogMatch": catalog_match,
        "nameMatch": name_match,
        "durationMatch": duration_match,
        "albumMatch": album_match,
    }
    return total / sum(CANDIDATE_WEIGHTS.values()), breakdown


def confidence_band(score: float) -> tuple[float, str]:
    for floor, confidence, reason in CANDIDATE_CONFIDENCE_BANDS:
        if score >= floor:
            return confidence, reason
    _floor, confidence, reason = CANDIDATE_CONFIDENCE_BANDS[-1]
    return confidence, reason


def best_candidate(
    descriptor: TrackDescriptor | Mapping[str, Any],
    candidates: Iterable[Mapping[str, Any]],
) -> CandidateMatch | None:
    """Highest-scoring candidate with its calibrated band, whatever the score.

    Ties keep the earlier candidate.
    """
    descriptor = TrackDescriptor.coerce(descriptor)
    best = None
    best_score = -1.0
    best_breakdown: dict[str, float | None] = {}
    for candidate in candidates or []:
        score, breakdown = score_candidate(descriptor, candidate)
        if score > best_score:
            best, best_score, best_breakdown = candidate, score, breakdown
    if best is None:
        return None
    confidence, reason = confidence_band(best_score)
    return CandidateMatch(
        candidate=best,
        score=round(best_score, 4),
        confidence=confidence,
        reason=reason,
        breakdown=best_breakdown,
    )


def rank_candidates(
    descriptor: TrackDescriptor | Mapping[str, Any],
    candidates: Iterable[Mapping[str, Any]],
    *,
    threshold: float = CANDIDATE_ACCEPT_THRESHOLD,
) -> CandidateMatch | None:
    """Best candidate, or ``None`` when even the best scores under ``threshold``."""
    best = best_candidate(descriptor, candidates)
    if best is None or best.score < threshold:
        logger.debug("candidate_rank_rejected score=%s", None if best is None else best.score)
        return None
    return best
