"""Remote track store over a PostgREST endpoint (Supabase-style REST).

Tables mirror the SQLite schema: ``tracks``, ``patterns`` and ``aliases``.
Rows carry the same snake_case column names, including ``name_key``.
The remote backend is pull-only; there is no change subscription.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable

import anyio
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config.settings import (
    REMOTE_API_KEY,
    REMOTE_DELETE_BATCH_SIZE,
    REMOTE_FUZZY_SCAN_LIMIT,
    REMOTE_PAGE_SIZE,
    REMOTE_TIMEOUT_SECONDS,
    REMOTE_URL,
)
from db.base import SEARCH_FIELDS, TrackStore, name_key, suggest_column
from metadata.types import Pattern, StoreStats, TrackRecord, pattern_confidence
from resolver.errors import ConflictingWrite, StorageUnavailable

logger = logging.getLogger(__name__)

# Rows pulled per ``suggest`` call before values are counted locally.
SUGGEST_SCAN_LIMIT = 1000

_TRACK_COLUMNS = (
    "track_name",
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


def _quote(value: str) -> str:
    """Quote a value for use inside an ``or=(...)`` filter."""
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


def _track_payload(record: TrackRecord) -> dict[str, Any]:
    payload = {column: getattr(record, column) for column in _TRACK_COLUMNS}
    payload["name_key"] = name_key(record.track_name)
    payload["verified"] = bool(record.verified)
    payload["confidence"] = float(record.confidence if record.confidence is not None else 1.0)
    return payload


def _row_to_record(row: dict[str, Any]) -> TrackRecord:
    return TrackRecord.from_mapping(row)


def _row_to_pattern(row: dict[str, Any]) -> Pattern:
    return Pattern(
        pattern_type=row["pattern_type"],
        key=row["pattern_key"],
        value=row["pattern_value"],
        occurrences=int(row.get("occurrences") or 1),
        confidence=float(row.get("confidence") or 0.0),
    )


def _parse_content_range(value: str | None) -> int:
    # "0-24/3573" or "*/0"
    if not value or "/" not in value:
        return 0
    total = value.rsplit("/", 1)[1]
    try:
        return int(total)
    except ValueError:
        return 0


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=3,
        backoff_factor=0.4,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET", "HEAD", "DELETE"}),
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class RemoteTrackStore(TrackStore):
    backend_name = "remote"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        session: requests.Session | None = None,
        timeout: float | None = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else REMOTE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else REMOTE_API_KEY
        self.timeout_seconds = timeout if timeout is not None else REMOTE_TIMEOUT_SECONDS
        self.fuzzy_scan_limit = REMOTE_FUZZY_SCAN_LIMIT
        self._session = session or _build_session()

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> requests.Response:
        if not self.configured:
            raise StorageUnavailable("remote track store is not configured", backend=self.backend_name)
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            resp = self._session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(prefer),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.warning("track_store_error backend=remote method=%s table=%s error=%s", method, table, exc)
            raise StorageUnavailable(f"remote store unreachable: {exc}", backend=self.backend_name) from exc

        status = int(resp.status_code)
        if status == 409:
            raise ConflictingWrite(f"remote store rejected duplicate row in {table}: {resp.text}")
        if status >= 400:
            logger.warning(
                "track_store_error backend=remote method=%s table=%s status=%s",
                method,
                table,
                status,
            )
            raise StorageUnavailable(
                f"remote store returned HTTP {status} for {method} {table}",
                backend=self.backend_name,
            )
        return resp

    def _rows(self, resp: requests.Response, table: str) -> list[dict[str, Any]]:
        try:
            payload = resp.json()
        except ValueError as exc:
            logger.warning("track_store_error backend=remote table=%s error=invalid_json", table)
            raise StorageUnavailable(f"remote store returned a non-JSON body for {table}", backend=self.backend_name) from exc
        return payload if isinstance(payload, list) else []

    def _select(self, table: str, params: list[tuple[str, Any]]) -> list[dict[str, Any]]:
        resp = self._request("GET", table, params=[("select", "*"), *params])
        return self._rows(resp, table)

    def _select_all(self, table: str, params: list[tuple[str, Any]]) -> list[dict[str, Any]]:
        """Every matching row, fetched page by page.

        The server may cap a page below ``REMOTE_PAGE_SIZE``, so paging stops
        on an empty page rather than a short one.
        """
        rows: list[dict[str, Any]] = []
        while True:
            page = self._select(
                table,
                [*params, ("limit", str(REMOTE_PAGE_SIZE)), ("offset", str(len(rows)))],
            )
            if not page:
                return rows
            rows.extend(page)

    def _count(self, table: str, params: list[tuple[str, Any]] | None = None) -> int:
        resp = self._request(
            "GET",
            table,
            params=[("select", "id"), ("limit", "1"), *(params or [])],
            prefer="count=exact",
        )
        return _parse_content_range(resp.headers.get("Content-Range"))

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        return await anyio.to_thread.run_sync(functools.partial(func, *args))

    # -- tracks: reads -------------------------------------------------------

    def _same_name_rows(self, name: str, extra: list[tuple[str, Any]] | None = None) -> list[dict[str, Any]]:
        # Narrow by the indexed name_key, then compare names case-insensitively here.
        wanted = (name or "").strip().lower()
        rows = self._select(
            "tracks",
            [("name_key", f"eq.{name_key(name)}"), *(extra or []), ("order", "updated_at.desc,id.desc")],
        )
        return [row for row in rows if str(row.get("track_name") or "").strip().lower() == wanted]

    def _find_exact_sync(self, name: str, catalog_code: str | None, library: str | None) -> TrackRecord | None:
        extra: list[tuple[str, Any]] = []
        if catalog_code:
            extra.append(("catalog_code", f"eq.{catalog_code}"))
        if library:
            extra.append(("library", f"eq.{library}"))
        rows = self._same_name_rows(name, extra)
        if not rows:
            return None
        rows.sort(key=lambda row: not bool(row.get("verified")))
        return _row_to_record(rows[0])

    async def find_exact(self, name, catalog_code=None, library=None):
        return await self._run(self._find_exact_sync, name, catalog_code, library)

    def _find_by_catalog_sync(self, catalog_code: str) -> list[TrackRecord]:
        rows = self._select(
            "tracks",
            [
                ("catalog_code", f"eq.{catalog_code}"),
                ("order", "verified.desc,confidence.desc,updated_at.desc,id.desc"),
            ],
        )
        return [_row_to_record(row) for row in rows]

    async def find_by_catalog(self, catalog_code):
        return await self._run(self._find_by_catalog_sync, catalog_code)

    def _find_verified_with_composer_sync(self, limit: int) -> list[TrackRecord]:
        rows = self._select(
            "tracks",
            [
                ("verified", "eq.true"),
                ("composer", "not.is.null"),
                ("composer", "neq."),
                ("order", "confidence.desc,updated_at.desc,id.desc"),
                ("limit", str(limit)),
            ],
        )
        return [_row_to_record(row) for row in rows if str(row.get("composer") or "").strip()]

    async def find_verified_with_composer(self, limit=None):
        return await self._run(self._find_verified_with_composer_sync, int(limit or self.fuzzy_scan_limit))

    def _find_by_name_key_sync(self, name: str) -> TrackRecord | None:
        rows = self._same_name_rows(name)
        if rows:
            return _row_to_record(rows[0])
        key = name_key(name)
        if not key:
            return None
        rows = self._select(
            "tracks",
            [("name_key", f"eq.{key}"), ("order", "updated_at.desc,id.desc"), ("limit", "1")],
        )
        return _row_to_record(rows[0]) if rows else None

    async def find_by_name_key(self, name):
        return await self._run(self._find_by_name_key_sync, name)

    def _get_sync(self, track_id: int | str) -> TrackRecord | None:
        rows = self._select("tracks", [("id", f"eq.{track_id}"), ("limit", "1")])
        return _row_to_record(rows[0]) if rows else None

    async def get(self, track_id):
        return await self._run(self._get_sync, track_id)

    def _list_all_sync(self, search: str | None, limit: int | None, offset: int) -> list[TrackRecord]:
        params: list[tuple[str, Any]] = []
        term = (search or "").strip()
        if term:
            pattern = _quote(f"*{term}*")
            params.append(("or", "(" + ",".join(f"{column}.ilike.{pattern}" for column in SEARCH_FIELDS) + ")"))
        params.append(("order", "updated_at.desc,id.desc"))
        if limit is None:
            rows = self._select_all("tracks", params)
            return [_row_to_record(row) for row in rows[int(offset or 0) :]]
        params.append(("limit", str(int(limit))))
        params.append(("offset", str(int(offset or 0))))
        return [_row_to_record(row) for row in self._select("tracks", params)]

    async def list_all(self, search=None, limit=500, offset=0):
        return await self._run(self._list_all_sync, search, limit, offset)

    # -- tracks: writes ------------------------------------------------------

    def _insert_sync(self, record: TrackRecord) -> TrackRecord:
        now = _utc_now()
        payload = _track_payload(record)
        payload["created_at"] = now
        payload["updated_at"] = now
        try:
            resp = self._request("POST", "tracks", json=payload, prefer="return=representation")
        except ConflictingWrite as exc:
            exc.track_name = record.track_name
            raise
        rows = self._rows(resp, "tracks")
        if not rows:
            raise StorageUnavailable("remote insert returned no row", backend=self.backend_name)
        return _row_to_record(rows[0])

    async def insert(self, record):
        return await self._run(self._insert_sync, record)

    def _update_sync(self, record: TrackRecord) -> TrackRecord:
        payload = _track_payload(record)
        payload["updated_at"] = _utc_now()
        resp = self._request(
            "PATCH",
            "tracks",
            params=[("id", f"eq.{record.id}")],
            json=payload,
            prefer="return=representation",
        )
        rows = self._rows(resp, "tracks")
        if not rows:
            return record.copy(updated_at=payload["updated_at"])
        return _row_to_record(rows[0])

    async def update(self, record):
        if record.id is None:
            raise ValueError("update requires a record id")
        return await self._run(self._update_sync, record)

    def _delete_ids_sync(self, ids: list[int | str]) -> int:
        removed = 0
        for start in range(0, len(ids), REMOTE_DELETE_BATCH_SIZE):
            batch = ids[start : start + REMOTE_DELETE_BATCH_SIZE]
            resp = self._request(
                "DELETE",
                "tracks",
                params=[("id", "in.(" + ",".join(str(rid) for rid in batch) + ")")],
                prefer="return=representation",
            )
            removed += len(self._rows(resp, "tracks"))
        return removed

    async def delete(self, track_id):
        removed = await self._run(self._delete_ids_sync, [track_id])
        if removed:
            logger.info("track_delete backend=remote id=%s", track_id)
        return removed > 0

    def _delete_by_name_sync(self, name: str) -> int:
        ids = [row["id"] for row in self._same_name_rows(name)]
        return self._delete_ids_sync(ids) if ids else 0

    async def delete_by_name(self, name):
        removed = await self._run(self._delete_by_name_sync, name)
        logger.info("track_delete_by_name backend=remote name=%s removed=%s", name, removed)
        return removed

    def _apply_consolidation_sync(self, target: TrackRecord | None, remove_ids: list[int | str]) -> None:
        # No transactions over REST; removals go first so the target cannot collide with them.
        if remove_ids:
            self._delete_ids_sync(list(remove_ids))
        if target is not None:
            self._update_sync(target)

    async def apply_consolidation(self, target, remove_ids):
        await self._run(self._apply_consolidation_sync, target, list(remove_ids))

    def _clear_all_sync(self) -> None:
        for table in ("tracks", "patterns", "aliases"):
            self._request("DELETE", table, params=[("id", "neq.0")])

    async def clear_all(self):
        await self._run(self._clear_all_sync)
        logger.info("track_store_cleared backend=remote url=%s", self.base_url)

    # -- patterns and aliases ------------------------------------------------

    def _pattern_rows(self, pattern_type: str, key: str, value: str) -> list[dict[str, Any]]:
        return self._select(
            "patterns",
            [
                ("pattern_type", f"eq.{pattern_type}"),
                ("pattern_key", f"eq.{key}"),
                ("pattern_value", f"eq.{value}"),
                ("limit", "1"),
            ],
        )

    def _bump_pattern(self, row: dict[str, Any]) -> Pattern:
        occurrences = int(row.get("occurrences") or 1) + 1
        confidence = pattern_confidence(occurrences)
        self._request(
            "PATCH",
            "patterns",
            params=[("id", f"eq.{row['id']}")],
            json={"occurrences": occurrences, "confidence": confidence, "updated_at": _utc_now()},
        )
        return _row_to_pattern({**row, "occurrences": occurrences, "confidence": confidence})

    def _observe_pattern_sync(self, pattern_type: str, key: str, value: str) -> Pattern:
        rows = self._pattern_rows(pattern_type, key, value)
        if rows:
            return self._bump_pattern(rows[0])
        now = _utc_now()
        payload = {
            "pattern_type": pattern_type,
            "pattern_key": key,
            "pattern_value": value,
            "occurrences": 1,
            "confidence": pattern_confidence(1),
            "created_at": now,
            "updated_at": now,
        }
        try:
            self._request("POST", "patterns", json=payload)
        except ConflictingWrite:
            # Another writer created the row between our read and insert.
            rows = self._pattern_rows(pattern_type, key, value)
            if not rows:
                raise
            logger.warning("pattern_write_conflict type=%s key=%s value=%s", pattern_type, key, value)
            return self._bump_pattern(rows[0])
        return _row_to_pattern(payload)

    async def observe_pattern(self, pattern_type, key, value):
        return await self._run(self._observe_pattern_sync, pattern_type, key, value)

    def _get_patterns_sync(self, pattern_type: str, key: str) -> list[Pattern]:
        rows = self._select(
            "patterns",
            [
                ("pattern_type", f"eq.{pattern_type}"),
                ("pattern_key", f"eq.{key}"),
                ("order", "confidence.desc,occurrences.desc,id.asc"),
            ],
        )
        return [_row_to_pattern(row) for row in rows]

    async def get_patterns(self, pattern_type, key):
        return await self._run(self._get_patterns_sync, pattern_type, key)

    def _alias_rows(self, alias: str, entity_type: str) -> list[dict[str, Any]]:
        return self._select(
            "aliases",
            [("alias", f"eq.{alias}"), ("entity_type", f"eq.{entity_type}"), ("limit", "1")],
        )

    def _save_alias_sync(self, alias: str, canonical: str, entity_type: str) -> None:
        key = alias.strip().lower()
        rows = self._alias_rows(key, entity_type)
        if rows:
            self._request("PATCH", "aliases", params=[("id", f"eq.{rows[0]['id']}")], json={"canonical": canonical})
            return
        self._request(
            "POST",
            "aliases",
            json={"alias": key, "canonical": canonical, "entity_type": entity_type, "created_at": _utc_now()},
        )

    async def save_alias(self, alias, canonical, entity_type):
        await self._run(self._save_alias_sync, alias, canonical, entity_type)

    def _get_alias_sync(self, alias: str, entity_type: str) -> str | None:
        rows = self._alias_rows(alias.strip().lower(), entity_type)
        return str(rows[0]["canonical"]) if rows else None

    async def get_alias(self, alias, entity_type):
        return await self._run(self._get_alias_sync, alias, entity_type)

    # -- aggregates ----------------------------------------------------------

    def _suggest_sync(self, column: str, query: str, limit: int) -> list[str]:
        params: list[tuple[str, Any]] = [(column, "not.is.null")]
        if query:
            params.append((column, f"ilike.*{query}*"))
        params.append(("limit", str(SUGGEST_SCAN_LIMIT)))
        resp = self._request("GET", "tracks", params=[("select", column), *params])
        counts: dict[str, int] = {}
        for row in self._rows(resp, "tracks"):
            value = str(row.get(column) or "").strip()
            if value:
                counts[value] = counts.get(value, 0) + 1
        ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        return [value for value, _hits in ranked[:limit]]

    async def suggest(self, field, query="", limit=10):
        column = suggest_column(field)
        if column is None:
            return []
        return await self._run(self._suggest_sync, column, (query or "").strip(), int(limit))

    def _stats_sync(self) -> StoreStats:
        return StoreStats(
            tracks=self._count("tracks"),
            verified=self._count("tracks", [("verified", "eq.true")]),
            patterns=self._count("patterns"),
            aliases=self._count("aliases"),
        )

    async def stats(self):
        return await self._run(self._stats_sync)

    def _export_sync(self) -> dict[str, list[dict[str, Any]]]:
        tracks = [_row_to_record(row).to_dict() for row in self._select_all("tracks", [("order", "id.asc")])]
        patterns = [_row_to_pattern(row).to_dict() for row in self._select_all("patterns", [("order", "id.asc")])]
        aliases = [
            {"alias": row["alias"], "canonical": row["canonical"], "entityType": row["entity_type"]}
            for row in self._select_all("aliases", [("order", "id.asc")])
        ]
        return {"tracks": tracks, "patterns": patterns, "aliases": aliases}

    async def export_all(self):
        return await self._run(self._export_sync)
