"""SQLite migrations for the learned track store."""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# Columns added after the first release; (table, column, DDL type).
_ADDED_COLUMNS = (
    ("tracks", "track_number", "TEXT"),
    ("tracks", "name_key", "TEXT NOT NULL DEFAULT ''"),
)


def ensure_track_tables(conn: sqlite3.Connection) -> None:
    """Ensure tracks, patterns and aliases tables and their indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS tracks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            track_name TEXT NOT NULL,
            name_key TEXT NOT NULL DEFAULT '',
            track_number TEXT,
            catalog_code TEXT,
            library TEXT,
            artist TEXT,
            source TEXT,
            composer TEXT,
            publisher TEXT,
            master_contact TEXT,
            use_type TEXT DEFAULT 'BI',
            duration TEXT,
            confidence REAL DEFAULT 1.0,
            data_source TEXT,
            verified INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS patterns (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            pattern_type TEXT NOT NULL,
            pattern_key TEXT NOT NULL,
            pattern_value TEXT NOT NULL,
            occurrences INTEGER NOT NULL DEFAULT 1,
            confidence REAL NOT NULL DEFAULT 0.5,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (pattern_type, pattern_key, pattern_value)
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS aliases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            alias TEXT NOT NULL,
            canonical TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (alias, entity_type)
        )
        """
    )
    _add_missing_columns(cur)
    # Exact (case-insensitive) duplicates collide here; spelling variants are left to dedup.
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_tracks_identity "
        "ON tracks (LOWER(track_name), IFNULL(catalog_code, ''), IFNULL(library, ''))"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_tracks_name_key ON tracks (name_key)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_tracks_catalog ON tracks (catalog_code)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_tracks_library ON tracks (library)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_tracks_updated_at ON tracks (updated_at)")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_patterns_lookup "
        "ON patterns (pattern_type, pattern_key)"
    )
    conn.commit()


def _add_missing_columns(cur: sqlite3.Cursor) -> None:
    for table, column, ddl in _ADDED_COLUMNS:
        cur.execute(f"PRAGMA table_info({table})")
        existing = {row[1] for row in cur.fetchall()}
        if column in existing:
            continue
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
        logger.info("track_db_migration added_column table=%s column=%s", table, column)
