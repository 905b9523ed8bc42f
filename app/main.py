from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

import httpx

from app.settings import Settings
from ingest.errors import SinkOutageError
from ingest.feed_groups import YamlFeedConfigSource
from ingest.orchestrator import FeedOrchestrator, RunReport, format_report
from store.db import close_database, open_database
from store.incidents import SqliteIncidentSink, query_incidents
from store.watermarks import SqliteWatermarkStore


EXIT_SINK_OUTAGE = 2


async def _run(settings: Settings, *, loop: bool) -> RunReport | None:
    db = open_database(settings.db_path)
    try:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            orchestrator = FeedOrchestrator(
                client=client,
                sink=SqliteIncidentSink(db),
                watermarks=SqliteWatermarkStore(db),
                config=YamlFeedConfigSource(settings.feeds_dir),
                settings=settings,
                health_db=db,
            )
            if loop:
                await orchestrator.run_forever()
                return None
            return await orchestrator.run_once()
    finally:
        close_database(db)


def _print_incidents(settings: Settings, args: argparse.Namespace) -> None:
    db = open_database(settings.db_path)
    try:
        rows = query_incidents(
            db,
            feed_slug=args.feed,
            category=args.category,
            min_severity=args.min_severity,
            since=args.since,
            limit=args.limit,
        )
    finally:
        close_database(db)
    for row in rows:
        print(json.dumps(row, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="gov-notice-ingest")
    parser.add_argument("--db", type=Path, default=None)
    parser.add_argument("--feeds-dir", type=Path, default=None)
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run-once")
    sub.add_parser("loop")
    incidents = sub.add_parser("incidents")
    incidents.add_argument("--feed", default=None)
    incidents.add_argument("--category", default=None)
    incidents.add_argument("--min-severity", type=int, default=None)
    incidents.add_argument("--since", default=None)
    incidents.add_argument("--limit", type=int, default=50)
    args = parser.parse_args(argv)

    settings = Settings()
    if args.db is not None:
        settings.db_path = args.db
    if args.feeds_dir is not None:
        settings.feeds_dir = args.feeds_dir

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "incidents":
        _print_incidents(settings, args)
        return 0

    try:
        report = asyncio.run(_run(settings, loop=args.command == "loop"))
    except SinkOutageError as e:
        print(format_report(e.report))
        print("error: incident store unavailable, nothing was saved")
        return EXIT_SINK_OUTAGE
    except KeyboardInterrupt:
        return 0

    if report is not None:
        print(format_report(report))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
