#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

import anyio

from db import RemoteTrackStore, SQLiteTrackStore, TrackStore
from resolver.engine import TrackResolutionEngine
from resolver.errors import TrackEngineError


def _build_store(args: argparse.Namespace) -> TrackStore:
    if args.remote:
        return RemoteTrackStore()
    return SQLiteTrackStore(args.db)


async def _run(args: argparse.Namespace) -> int:
    engine = TrackResolutionEngine(_build_store(args))

    if args.command == "stats":
        stats = await engine.stats()
        print(json.dumps(stats.to_dict(), indent=2))
        return 0

    if args.command == "dedup":
        result = await engine.consolidate()
        print(f"removed={result.removed_count} merged_groups={result.merged_count}")
        return 0

    if args.command == "export":
        payload = await engine.export_json()
        if args.output:
            output_path = Path(args.output)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(payload + "\n", encoding="utf-8")
            print(f"Exported track database: {output_path}")
        else:
            print(payload)
        return 0

    if args.command == "import":
        text = Path(args.input).read_text(encoding="utf-8")
        imported = await engine.import_json(text)
        print(f"imported={imported}")
        return 0

    if args.command == "lookup":
        result = await engine.lookup({"trackName": args.name, "catalogCode": args.catalog, "library": args.library})
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return 0

    return 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect and maintain the learned track database.")
    parser.add_argument("--db", default=None, help="SQLite path (defaults to TRACKDB_PATH).")
    parser.add_argument("--remote", action="store_true", help="Use the remote store instead of SQLite.")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("stats", help="Print track, pattern and alias counts.")
    sub.add_parser("dedup", help="Consolidate records whose names normalize to the same track.")
    export = sub.add_parser("export", help="Write tracks, patterns and aliases as JSON.")
    export.add_argument("--output", default=None, help="Output JSON path (stdout when omitted).")
    load = sub.add_parser("import", help="Replay an export through the merge rules.")
    load.add_argument("--input", required=True, help="JSON file produced by export.")
    lookup = sub.add_parser("lookup", help="Show what the database knows about one track.")
    lookup.add_argument("name")
    lookup.add_argument("--catalog", default=None)
    lookup.add_argument("--library", default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    try:
        return anyio.run(_run, args)
    except (TrackEngineError, OSError) as exc:
        logging.getLogger("track_db_maintenance").error("track_db_command_failed command=%s error=%s", args.command, exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
