"""Normalization helpers for track identifiers and field values."""

from __future__ import annotations

import re
import unicodedata
from typing import Any

from config.settings import CONTENT_SENTINELS

_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
# Version qualifiers that do not change which underlying track is meant.
_QUALIFIER = (
    r"full\s*mix|main|stem|stems|underscore|alt|alternate|version|edit|remix|"
    r"instrumental|vocal|\d+\s*s|\d+\s*sec"
)
_BRACKETED_QUALIFIER_RE = re.compile(
    rf"\s*[\(\[]\s*(?:{_QUALIFIER})\s*[\)\]]\s*",
    re.IGNORECASE,
)
_TRAILING_MARKER_RE = re.compile(
    r"(?:\s*[-_]\s*(?:full\s*mix|main|stems?|underscore|alt|alternate|v\d+)|\s+stems?)+\s*$",
    re.IGNORECASE,
)
# Stripped from the loose key only; these show up glued to stem exports ("HitBass", "HitFX").
_LOOSE_TOKEN_RE = re.compile(r"fullmix|stem|bass|drums|fx")

MIN_LOOSE_KEY_LENGTH = 3


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_track_name(name: Any) -> str:
    """Return the stable matching key for a raw track name.

    Rules, in order:
    - lower-case (accents folded)
    - drop bracketed version qualifiers such as ``(Full Mix)``, ``[Stem]``, ``(30s)``
    - drop trailing ``- Alt`` / ``_v2`` markers; only ``stem``/``stems`` may follow plain whitespace
    - collapse whitespace
    - drop everything that is not a letter or digit

    The result only contains ``[a-z0-9]``, so the function is idempotent.
    Empty input yields ``""``.
    """
    if not name:
        return ""
    text = _fold(str(name)).lower().strip()
    text = _WHITESPACE_RE.sub(" ", text)
    text = _BRACKETED_QUALIFIER_RE.sub(" ", text)
    text = _TRAILING_MARKER_RE.sub("", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()
    return _NON_ALNUM_RE.sub("", text)


def loose_track_key(name: Any) -> str:
    """Lighter key for containment checks: the normalized name minus stem/fx tokens."""
    return _LOOSE_TOKEN_RE.sub("", normalize_track_name(name))


def names_overlap(left: Any, right: Any) -> bool:
    """True when two names plausibly refer to the same track.

    Equal normalized names always overlap. Otherwise one loose key must
    contain the other. Containment is permissive: short names ("Hit") are
    contained in many longer ones and will produce false positives, so keys
    shorter than ``MIN_LOOSE_KEY_LENGTH`` never overlap by containment.
    """
    left_key = normalize_track_name(left)
    right_key = normalize_track_name(right)
    if left_key and left_key == right_key:
        return True
    left_loose = loose_track_key(left)
    right_loose = loose_track_key(right)
    if len(left_loose) < MIN_LOOSE_KEY_LENGTH or len(right_loose) < MIN_LOOSE_KEY_LENGTH:
        return False
    return left_loose in right_loose or right_loose in left_loose


def has_content(value: Any) -> bool:
    """True when ``value`` is non-empty after trimming and not a placeholder like ``-`` or ``N/A``."""
    if value is None:
        return False
    text = str(value).strip().lower()
    return bool(text) and text not in CONTENT_SENTINELS


def clean_text(value: Any) -> str | None:
    """Trim, NFC-normalize and collapse whitespace; ``None`` for empty input."""
    if value is None:
        return None
    text = _WHITESPACE_RE.sub(" ", unicodedata.normalize("NFC", str(value)).strip())
    return text or None
