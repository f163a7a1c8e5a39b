"""Bounded string similarity and duration closeness used for matching and ranking."""

from __future__ import annotations

from typing import Any

from rapidfuzz.distance import Levenshtein

from config.settings import (
    DURATION_DECAY_SECONDS,
    DURATION_TOLERANCE_SECONDS,
    DURATION_UNKNOWN_SCORE,
)


def clamp01(value):
    if value < 0:
        return 0.0
    if value > 1:
        return 1.0
    return float(value)


def edit_distance(left: str, right: str) -> int:
    """Levenshtein distance (insert, delete, substitute all cost 1)."""
    return Levenshtein.distance(left, right)


def similarity(left: Any, right: Any) -> float:
    """Case-insensitive similarity in ``[0, 1]``: ``1 - distance / longest``.

    Symmetric and reflexive; strings shorter than two characters score 0.
    """
    a = "" if left is None else str(left)
    b = "" if right is None else str(right)
    if len(a) < 2 or len(b) < 2:
        return 0.0
    a = a.casefold()
    b = b.casefold()
    if a == b:
        return 1.0
    longest = max(len(a), len(b))
    return clamp01(1.0 - edit_distance(a, b) / longest)


def parse_duration(value: Any) -> float | None:
    """Seconds from ``90``, ``"1:30"`` or ``"0:01:30"``; ``None`` when unknown."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    text = str(value).strip()
    if not text:
        return None
    parts = text.split(":")
    try:
        if len(parts) == 2:
            seconds = int(parts[0]) * 60 + float(parts[1])
        elif len(parts) == 3:
            seconds = int(parts[0]) * 3600 + int(parts[1]) * 60 + float(parts[2])
        else:
            seconds = float(text)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def duration_closeness(expected: Any, candidate: Any) -> float:
    """Full credit inside the tolerance window, linear decay to 0 over a minute."""
    expected_sec = parse_duration(expected)
    candidate_sec = parse_duration(candidate)
    if expected_sec is None or candidate_sec is None:
        return DURATION_UNKNOWN_SCORE
    delta = abs(expected_sec - candidate_sec)
    if delta <= DURATION_TOLERANCE_SECONDS:
        return 1.0
    return clamp01(1.0 - delta / DURATION_DECAY_SECONDS)
