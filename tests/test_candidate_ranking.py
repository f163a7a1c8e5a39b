from __future__ import annotations

import pytest

from metadata.types import TrackDescriptor
from resolver.matcher import best_candidate, confidence_band, rank_candidates, score_candidate

_ORIGINAL = {
    "trackName": "Punch Drunk",
    "catalogCode": "IATS021",
    "duration": "2:10",
    "source": "Inside The Storm",
}


def test_perfect_candidate_scores_one() -> None:
    candidate = {"title": "Punch Drunk", "catalog": "IATS021", "duration": 131, "album": "Inside The Storm"}

    score, breakdown = score_candidate(TrackDescriptor.from_mapping(_ORIGINAL), candidate)

    assert score == pytest.approx(1.0)
    assert breakdown == {"catalogMatch": 1.0, "nameMatch": 1.0, "durationMatch": 1.0, "albumMatch": 1.0}


def test_missing_catalog_and_album_are_not_redistributed() -> None:
    descriptor = TrackDescriptor(track_name="Punch Drunk", duration="2:10")

    score, breakdown = score_candidate(descriptor, {"trackName": "Punch Drunk", "duration": "2:10"})

    assert score == pytest.approx(0.5)
    assert breakdown["catalogMatch"] is None
    assert breakdown["albumMatch"] is None


def test_rank_candidates_prefers_catalog_agreement() -> None:
    candidates = [
        {"title": "Punch Drunk", "catalog": "ZZZ999", "duration": "4:00"},
        {"title": "Punch Drunk (Alt)", "catalog": "IATS021", "duration": "2:08", "album": "Inside The Storm"},
    ]

    best = rank_candidates(_ORIGINAL, candidates)

    assert best.candidate is candidates[1]
    assert best.score >= 0.7
    assert best.confidence in {0.9, 1.0}


def test_rank_candidates_rejects_weak_best() -> None:
    candidates = [{"title": "Completely Different", "catalog": "XX1", "duration": "9:00"}]

    assert rank_candidates(_ORIGINAL, candidates) is None
    weak = best_candidate(_ORIGINAL, candidates)
    assert weak.score < 0.3
    assert weak.reason == "poor match - likely incorrect"


def test_no_candidates() -> None:
    assert best_candidate(_ORIGINAL, []) is None
    assert rank_candidates(_ORIGINAL, []) is None


@pytest.mark.parametrize(
    "score, confidence, reason",
    [
        (0.95, 1.0, "exact or near-exact match"),
        (0.9, 1.0, "exact or near-exact match"),
        (0.75, 0.9, "strong match"),
        (0.5, 0.7, "partial match"),
        (0.3, 0.5, "weak match - manual verification recommended"),
        (0.1, 0.3, "poor match - likely incorrect"),
    ],
)
def test_confidence_bands(score, confidence, reason) -> None:
    assert confidence_band(score) == (confidence, reason)
