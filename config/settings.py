"""Application settings constants."""

from __future__ import annotations

import os

# Local embedded store.
TRACK_DB_PATH = os.getenv("TRACKDB_PATH", os.path.join(os.getcwd(), "track-cache.sqlite3"))

# Remote synced store (PostgREST-compatible endpoint, e.g. Supabase).
REMOTE_URL = os.getenv("TRACKDB_REMOTE_URL", "")
REMOTE_API_KEY = os.getenv("TRACKDB_REMOTE_KEY", "")
REMOTE_TIMEOUT_SECONDS = float(os.getenv("TRACKDB_REMOTE_TIMEOUT_SECONDS", "10"))

# Upper bound on verified rows scanned by the fuzzy strategy.
LOCAL_FUZZY_SCAN_LIMIT = 500
REMOTE_FUZZY_SCAN_LIMIT = 100
REMOTE_DELETE_BATCH_SIZE = 100
# Rows requested per page when reading a whole table; servers may cap pages lower.
REMOTE_PAGE_SIZE = 1000

# Match strategy ceilings. Strategies short-circuit in this order.
EXACT_MATCH_CONFIDENCE = 1.0
CATALOG_MATCH_CONFIDENCE = 0.9
FUZZY_MATCH_CONFIDENCE = 0.7

# Pattern confidence: min(PATTERN_MAX_CONFIDENCE, BASE + occurrences * STEP).
PATTERN_BASE_CONFIDENCE = 0.5
PATTERN_STEP = 0.1
PATTERN_MAX_CONFIDENCE = 0.95
LIBRARY_PUBLISHER_DISCOUNT = 0.8

# Predictions at or above this are filled automatically; below it they need a human.
AUTO_FILL_THRESHOLD = 0.7

# Weighted candidate ranking (points out of 100).
CANDIDATE_WEIGHTS = {
    "catalog": 40.0,
    "name": 30.0,
    "duration": 20.0,
    "album": 10.0,
}
CANDIDATE_ACCEPT_THRESHOLD = 0.7
DURATION_TOLERANCE_SECONDS = 5.0
DURATION_DECAY_SECONDS = 60.0
DURATION_UNKNOWN_SCORE = 0.5

# (minimum ranking score, calibrated confidence, reason), checked top to bottom.
CANDIDATE_CONFIDENCE_BANDS = (
    (0.9, 1.0, "exact or near-exact match"),
    (0.7, 0.9, "strong match"),
    (0.5, 0.7, "partial match"),
    (0.3, 0.5, "weak match - manual verification recommended"),
    (0.0, 0.3, "poor match - likely incorrect"),
)

# Data-source tags that mean a human confirmed the whole record.
USER_APPROVED_SOURCES = frozenset({"user_approved", "user_edit", "user_complete"})

# Values that count as empty after trimming (case-insensitive).
CONTENT_SENTINELS = frozenset({"-", "n/a", "null", "undefined"})

DEFAULT_USE_TYPE = "BI"
DEFAULT_DATA_SOURCE = "manual"
PATTERN_DATA_SOURCE = "pattern_prediction"
LEARNED_DATA_SOURCE = "learned_db"

PATTERN_CATALOG_COMPOSER = "catalog_composer"
PATTERN_CATALOG_PUBLISHER = "catalog_publisher"
PATTERN_LIBRARY_PUBLISHER = "library_publisher"
