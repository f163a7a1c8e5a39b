"""SQLite-backed track store (the local embedded backend)."""

from __future__ import annotations

import functools
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable

import anyio

from config.settings import LOCAL_FUZZY_SCAN_LIMIT, TRACK_DB_PATH
from db.base import SEARCH_FIELDS, TrackStore, name_key, suggest_column
from db.migrations import ensure_track_tables
from metadata.types import Pattern, StoreStats, TrackRecord, pattern_confidence
from resolver.errors import ConflictingWrite, StorageUnavailable

logger = logging.getLogger(__name__)

_TRACK_COLUMNS = (
    "track_name",
    "name_key",
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
    "confidence",
    "data_source",
    "verified",
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_record(row: sqlite3.Row) -> TrackRecord:
    return TrackRecord(
        id=int(row["id"]),
        track_name=row["track_name"],
        track_number=row["track_number"],
        catalog_code=row["catalog_code"],
        library=row["library"],
        artist=row["artist"],
        source=row["source"],
        composer=row["composer"],
        publisher=row["publisher"],
        master_contact=row["master_contact"],
        use_type=row["use_type"],
        duration=row["duration"],
        confidence=float(row["confidence"] if row["confidence"] is not None else 1.0),
        data_source=row["data_source"],
        verified=bool(row["verified"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _record_values(record: TrackRecord) -> tuple[Any, ...]:
    values = {
        "track_name": record.track_name,
        "name_key": name_key(record.track_name),
        "track_number": record.track_number,
        "catalog_code": record.catalog_code,
        "library": record.library,
        "artist": record.artist,
        "source": record.source,
        "composer": record.composer,
        "publisher": record.publisher,
        "master_contact": record.master_contact,
        "use_type": record.use_type,
        "duration": record.duration,
        "confidence": float(record.confidence if record.confidence is not None else 1.0),
        "data_source": record.data_source,
        "verified": 1 if record.verified else 0,
    }
    return tuple(values[column] for column in _TRACK_COLUMNS)


def _pattern_from_row(row: sqlite3.Row) -> Pattern:
    return Pattern(
        pattern_type=row["pattern_type"],
        key=row["pattern_key"],
        value=row["pattern_value"],
        occurrences=int(row["occurrences"]),
        confidence=float(row["confidence"]),
    )


class SQLiteTrackStore(TrackStore):
    """Track store in a single SQLite file.

    Every operation opens its own connection, so the store can be shared
    between worker threads. Blocking calls run through
    ``anyio.to_thread.run_sync``.
    """

    backend_name = "sqlite"

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path or TRACK_DB_PATH
        self.fuzzy_scan_limit = LOCAL_FUZZY_SCAN_LIMIT

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        ensure_track_tables(conn)
        return conn

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await anyio.to_thread.run_sync(functools.partial(func, *args))
        except sqlite3.IntegrityError as exc:
            raise ConflictingWrite(f"track identity already stored: {exc}") from exc
        except sqlite3.Error as exc:
            logger.warning("track_store_error backend=sqlite path=%s error=%s", self.db_path, exc)
            raise StorageUnavailable(f"sqlite store failed: {exc}", backend=self.backend_name) from exc

    def _fetch_records(self, sql: str, params: tuple[Any, ...] = ()) -> list[TrackRecord]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            return [_row_to_record(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def _fetch_record(self, sql: str, params: tuple[Any, ...] = ()) -> TrackRecord | None:
        rows = self._fetch_records(sql, params)
        return rows[0] if rows else None

    # -- tracks: reads -------------------------------------------------------

    async def find_exact(self, name, catalog_code=None, library=None):
        clauses = ["LOWER(track_name) = LOWER(?)"]
        params: list[Any] = [name]
        if catalog_code:
            clauses.append("catalog_code = ?")
            params.append(catalog_code)
        if library:
            clauses.append("library = ?")
            params.append(library)
        sql = (
            "SELECT * FROM tracks WHERE "
            + " AND ".join(clauses)
            + " ORDER BY verified DESC, updated_at DESC, id DESC LIMIT 1"
        )
        return await self._run(self._fetch_record, sql, tuple(params))

    async def find_by_catalog(self, catalog_code):
        return await self._run(
            self._fetch_records,
            """
            SELECT * FROM tracks
            WHERE catalog_code = ?
            ORDER BY verified DESC, confidence DESC, updated_at DESC, id DESC
            """,
            (catalog_code,),
        )

    async def find_verified_with_composer(self, limit=None):
        return await self._run(
            self._fetch_records,
            """
            SELECT * FROM tracks
            WHERE verified = 1 AND composer IS NOT NULL AND TRIM(composer) != ''
            ORDER BY confidence DESC, updated_at DESC, id DESC
            LIMIT ?
            """,
            (int(limit or self.fuzzy_scan_limit),),
        )

    def _find_by_name_key_sync(self, name: str) -> TrackRecord | None:
        record = self._fetch_record(
            """
            SELECT * FROM tracks
            WHERE LOWER(track_name) = LOWER(?)
            ORDER BY updated_at DESC, id DESC
            LIMIT 1
            """,
            (name,),
        )
        if record is not None:
            return record
        key = name_key(name)
        if not key:
            return None
        return self._fetch_record(
            "SELECT * FROM tracks WHERE name_key = ? ORDER BY updated_at DESC, id DESC LIMIT 1",
            (key,),
        )

    async def find_by_name_key(self, name):
        return await self._run(self._find_by_name_key_sync, name)

    async def get(self, track_id):
        try:
            row_id = int(track_id)
        except (TypeError, ValueError):
            return None
        return await self._run(self._fetch_record, "SELECT * FROM tracks WHERE id = ?", (row_id,))

    async def list_all(self, search=None, limit=500, offset=0):
        sql = "SELECT * FROM tracks"
        params: list[Any] = []
        term = (search or "").strip()
        if term:
            sql += " WHERE " + " OR ".join(f"{column} LIKE ? ESCAPE '\\'" for column in SEARCH_FIELDS)
            escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params.extend([f"%{escaped}%"] * len(SEARCH_FIELDS))
        sql += " ORDER BY updated_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset or 0)])
        return await self._run(self._fetch_records, sql, tuple(params))

    # -- tracks: writes ------------------------------------------------------

    def _insert_sync(self, record: TrackRecord) -> TrackRecord:
        now = _utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            placeholders = ", ".join("?" for _ in range(len(_TRACK_COLUMNS) + 2))
            cur.execute(
                f"INSERT INTO tracks ({', '.join(_TRACK_COLUMNS)}, created_at, updated_at) "
                f"VALUES ({placeholders})",
                (*_record_values(record), now, now),
            )
            conn.commit()
            return record.copy(id=int(cur.lastrowid), created_at=now, updated_at=now)
        finally:
            conn.close()

    async def insert(self, record):
        return await self._run(self._insert_sync, record)

    def _update_sync(self, record: TrackRecord) -> TrackRecord:
        now = _utc_now()
        assignments = ", ".join(f"{column} = ?" for column in _TRACK_COLUMNS)
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                f"UPDATE tracks SET {assignments}, updated_at = ? WHERE id = ?",
                (*_record_values(record), now, int(record.id)),
            )
            conn.commit()
            return record.copy(updated_at=now)
        finally:
            conn.close()

    async def update(self, record):
        if record.id is None:
            raise ValueError("update requires a record id")
        return await self._run(self._update_sync, record)

    def _execute_sync(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(sql, params)
            conn.commit()
            return int(cur.rowcount or 0)
        finally:
            conn.close()

    async def delete(self, track_id):
        try:
            row_id = int(track_id)
        except (TypeError, ValueError):
            return False
        removed = await self._run(self._execute_sync, "DELETE FROM tracks WHERE id = ?", (row_id,))
        if removed:
            logger.info("track_delete backend=sqlite id=%s", row_id)
        return removed > 0

    async def delete_by_name(self, name):
        removed = await self._run(
            self._execute_sync,
            "DELETE FROM tracks WHERE LOWER(track_name) = LOWER(?)",
            (name,),
        )
        logger.info("track_delete_by_name backend=sqlite name=%s removed=%s", name, removed)
        return removed

    def _apply_consolidation_sync(self, target: TrackRecord | None, remove_ids: list[int]) -> None:
        now = _utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                # Removed rows go first so the merged target cannot collide with them.
                cur.executemany("DELETE FROM tracks WHERE id = ?", [(rid,) for rid in remove_ids])
                if target is not None:
                    assignments = ", ".join(f"{column} = ?" for column in _TRACK_COLUMNS)
                    cur.execute(
                        f"UPDATE tracks SET {assignments}, updated_at = ? WHERE id = ?",
                        (*_record_values(target), now, int(target.id)),
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        finally:
            conn.close()

    async def apply_consolidation(self, target, remove_ids):
        await self._run(
            self._apply_consolidation_sync,
            target,
            [int(rid) for rid in remove_ids],
        )

    def _clear_all_sync(self) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute("DELETE FROM tracks")
            cur.execute("DELETE FROM patterns")
            cur.execute("DELETE FROM aliases")
            conn.commit()
        finally:
            conn.close()

    async def clear_all(self):
        await self._run(self._clear_all_sync)
        logger.info("track_store_cleared backend=sqlite path=%s", self.db_path)

    # -- patterns and aliases ------------------------------------------------

    def _observe_pattern_sync(self, pattern_type: str, key: str, value: str) -> Pattern:
        now = _utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                """
                SELECT id, occurrences FROM patterns
                WHERE pattern_type = ? AND pattern_key = ? AND pattern_value = ?
                """,
                (pattern_type, key, value),
            )
            row = cur.fetchone()
            if row is None:
                occurrences = 1
                confidence = pattern_confidence(occurrences)
                cur.execute(
                    """
                    INSERT INTO patterns (
                        pattern_type, pattern_key, pattern_value,
                        occurrences, confidence, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (pattern_type, key, value, occurrences, confidence, now, now),
                )
            else:
                occurrences = int(row["occurrences"]) + 1
                confidence = pattern_confidence(occurrences)
                cur.execute(
                    "UPDATE patterns SET occurrences = ?, confidence = ?, updated_at = ? WHERE id = ?",
                    (occurrences, confidence, now, int(row["id"])),
                )
            conn.commit()
            return Pattern(
                pattern_type=pattern_type,
                key=key,
                value=value,
                occurrences=occurrences,
                confidence=confidence,
            )
        finally:
            conn.close()

    async def observe_pattern(self, pattern_type, key, value):
        return await self._run(self._observe_pattern_sync, pattern_type, key, value)

    def _get_patterns_sync(self, pattern_type: str, key: str) -> list[Pattern]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                SELECT pattern_type, pattern_key, pattern_value, occurrences, confidence
                FROM patterns
                WHERE pattern_type = ? AND pattern_key = ?
                ORDER BY confidence DESC, occurrences DESC, id ASC
                """,
                (pattern_type, key),
            )
            return [_pattern_from_row(row) for row in cur.fetchall()]
        finally:
            conn.close()

    async def get_patterns(self, pattern_type, key):
        return await self._run(self._get_patterns_sync, pattern_type, key)

    async def save_alias(self, alias, canonical, entity_type):
        await self._run(
            self._execute_sync,
            """
            INSERT INTO aliases (alias, canonical, entity_type, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (alias, entity_type) DO UPDATE SET canonical = excluded.canonical
            """,
            (alias.strip().lower(), canonical, entity_type, _utc_now()),
        )

    def _get_alias_sync(self, alias: str, entity_type: str) -> str | None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT canonical FROM aliases WHERE alias = ? AND entity_type = ? LIMIT 1",
                (alias.strip().lower(), entity_type),
            )
            row = cur.fetchone()
            return str(row["canonical"]) if row else None
        finally:
            conn.close()

    async def get_alias(self, alias, entity_type):
        return await self._run(self._get_alias_sync, alias, entity_type)

    # -- aggregates ----------------------------------------------------------

    def _suggest_sync(self, column: str, query: str, limit: int) -> list[str]:
        sql = (
            f"SELECT {column} AS value, COUNT(*) AS hits FROM tracks "
            f"WHERE {column} IS NOT NULL AND TRIM({column}) != ''"
        )
        params: list[Any] = []
        if query:
            sql += f" AND LOWER({column}) LIKE ?"
            params.append(f"%{query.lower()}%")
        sql += f" GROUP BY {column} ORDER BY hits DESC, value ASC LIMIT ?"
        params.append(int(limit))
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(sql, tuple(params))
            return [str(row["value"]) for row in cur.fetchall()]
        finally:
            conn.close()

    async def suggest(self, field, query="", limit=10):
        column = suggest_column(field)
        if column is None:
            return []
        return await self._run(self._suggest_sync, column, (query or "").strip(), limit)

    def _stats_sync(self) -> StoreStats:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) AS n, COALESCE(SUM(verified), 0) AS v FROM tracks")
            tracks_row = cur.fetchone()
            cur.execute("SELECT COUNT(*) AS n FROM patterns")
            patterns = int(cur.fetchone()["n"])
            cur.execute("SELECT COUNT(*) AS n FROM aliases")
            aliases = int(cur.fetchone()["n"])
            return StoreStats(
                tracks=int(tracks_row["n"]),
                verified=int(tracks_row["v"]),
                patterns=patterns,
                aliases=aliases,
            )
        finally:
            conn.close()

    async def stats(self):
        return await self._run(self._stats_sync)

    def _export_sync(self) -> dict[str, list[dict[str, Any]]]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM tracks ORDER BY id ASC")
            tracks = [_row_to_record(row).to_dict() for row in cur.fetchall()]
            cur.execute(
                """
                SELECT pattern_type, pattern_key, pattern_value, occurrences, confidence
                FROM patterns ORDER BY id ASC
                """
            )
            patterns = [_pattern_from_row(row).to_dict() for row in cur.fetchall()]
            cur.execute("SELECT alias, canonical, entity_type FROM aliases ORDER BY id ASC")
            aliases = [
                {"alias": row["alias"], "canonical": row["canonical"], "entityType": row["entity_type"]}
                for row in cur.fetchall()
            ]
            return {"tracks": tracks, "patterns": patterns, "aliases": aliases}
        finally:
            conn.close()

    async def export_all(self):
        return await self._run(self._export_sync)
