import json
import re
import sys
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from db.remote_store import RemoteTrackStore  # noqa: E402
from db.sqlite_store import SQLiteTrackStore  # noqa: E402


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        if text is not None:
            self.text = text
        else:
            self.text = json.dumps(payload) if payload is not None else ""

    def json(self):
        if self._payload is None and self.text:
            return json.loads(self.text)
        return self._payload


def _as_text(value):
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _split_or(expr):
    parts, buf, quoted, escaped = [], "", False, False
    for ch in expr:
        if escaped:
            buf += ch
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            quoted = not quoted
        elif ch == "," and not quoted:
            parts.append(buf)
            buf = ""
        else:
            buf += ch
    parts.append(buf)
    return parts


def _apply(value, op, arg):
    text = _as_text(value)
    if op == "eq":
        return text is not None and text == arg
    if op == "neq":
        return text is not None and text != arg
    if op == "is":
        if arg == "null":
            return value is None
        return text == arg
    if op == "ilike":
        pattern = "".join(".*" if ch == "*" else re.escape(ch) for ch in arg)
        return text is not None and re.fullmatch(pattern, text, re.IGNORECASE | re.DOTALL) is not None
    if op == "in":
        return text is not None and text in set(arg.strip("()").split(","))
    raise AssertionError(f"unsupported operator {op}")


def _matches(row, key, expr):
    if key == "or":
        for part in _split_or(expr.strip()[1:-1]):
            column, op, arg = part.split(".", 2)
            if _apply(row.get(column), op, arg):
                return True
        return False
    negate = expr.startswith("not.")
    if negate:
        expr = expr[4:]
    op, _sep, arg = expr.partition(".")
    result = _apply(row.get(key), op, arg)
    return not result if negate else result


def _sort(rows, order):
    for clause in reversed(order.split(",")):
        column, _sep, direction = clause.partition(".")
        rows.sort(
            key=lambda row: (row.get(column) is not None, row.get(column) if row.get(column) is not None else 0),
            reverse=direction == "desc",
        )
    return rows


_UNIQUE_KEYS = {
    "tracks": lambda row: (
        str(row.get("track_name") or "").lower(),
        row.get("catalog_code") or "",
        row.get("library") or "",
    ),
    "patterns": lambda row: (row.get("pattern_type"), row.get("pattern_key"), row.get("pattern_value")),
    "aliases": lambda row: (row.get("alias"), row.get("entity_type")),
}


class FakePostgrestSession:
    """In-process stand-in for a PostgREST endpoint, enough for RemoteTrackStore."""

    def __init__(self):
        self.tables = {"tracks": [], "patterns": [], "aliases": []}
        self._next_id = {name: 1 for name in self.tables}
        self.calls = []
        self.raise_error = None
        self.force_status = None
        self.force_body = None
        # Server-side cap on rows per response, like PostgREST max-rows.
        self.max_rows = None

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append((method, url, list(params or [])))
        if self.raise_error is not None:
            raise self.raise_error
        if self.force_status is not None:
            return _FakeResponse(self.force_status, {"message": "forced failure"})
        if self.force_body is not None:
            return _FakeResponse(200, text=self.force_body)

        table = url.rsplit("/", 1)[-1]
        rows = self.tables[table]
        select = order = None
        limit = None
        offset = 0
        filters = []
        for key, value in params or []:
            if key == "select":
                select = value
            elif key == "order":
                order = value
            elif key == "limit":
                limit = int(value)
            elif key == "offset":
                offset = int(value)
            else:
                filters.append((key, value))
        matched = [row for row in rows if all(_matches(row, key, value) for key, value in filters)]

        if method == "GET":
            total = len(matched)
            out = _sort(list(matched), order) if order else list(matched)
            out = out[offset:]
            if limit is not None:
                out = out[:limit]
            if self.max_rows is not None:
                out = out[: self.max_rows]
            if select and select != "*":
                columns = select.split(",")
                out = [{column: row.get(column) for column in columns} for row in out]
            else:
                out = [dict(row) for row in out]
            response_headers = {}
            if "count=exact" in (headers or {}).get("Prefer", ""):
                response_headers["Content-Range"] = f"0-{max(0, len(out) - 1)}/{total}" if total else "*/0"
            return _FakeResponse(200, out, response_headers)

        if method == "POST":
            unique = _UNIQUE_KEYS[table]
            if any(unique(row) == unique(json) for row in rows):
                return _FakeResponse(409, {"code": "23505", "message": "duplicate key"})
            row = dict(json)
            row["id"] = self._next_id[table]
            self._next_id[table] += 1
            rows.append(row)
            return _FakeResponse(201, [dict(row)])

        if method == "PATCH":
            for row in matched:
                row.update(json or {})
            return _FakeResponse(200, [dict(row) for row in matched])

        if method == "DELETE":
            self.tables[table] = [row for row in rows if row not in matched]
            return _FakeResponse(200, [dict(row) for row in matched])

        raise AssertionError(f"unsupported method {method}")


@pytest.fixture
def fake_postgrest():
    return FakePostgrestSession()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteTrackStore(str(tmp_path / "tracks.sqlite3"))


@pytest.fixture
def remote_store(fake_postgrest):
    return RemoteTrackStore("https://tracks.example.test", "test-key", session=fake_postgrest)


@pytest.fixture(params=["sqlite", "remote"])
def track_store(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteTrackStore(str(tmp_path / "tracks.sqlite3"))
    return RemoteTrackStore("https://tracks.example.test", "test-key", session=FakePostgrestSession())
