from __future__ import annotations

import logging
from datetime import UTC, datetime
from time import struct_time

import feedparser

from ingest.errors import ParseError
from ingest.models import FeedMeta
from ingest.parsers.common import ParsedFeed, build_item, parse_timestamp


logger = logging.getLogger(__name__)


def _struct_to_datetime(value: struct_time | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime(*value[:6], tzinfo=UTC)
    except (TypeError, ValueError):
        return None


def parse_rss_entries(data: bytes, *, timezone: str = "UTC") -> list[dict]:
    parsed = feedparser.parse(data)
    if not parsed.entries and (parsed.get("bozo") or not parsed.get("version")):
        raise ParseError(str(parsed.get("bozo_exception") or "not a feed"))
    if parsed.get("bozo"):
        logger.warning(
            "feed parsed with recoverable errors: %s", parsed.get("bozo_exception")
        )

    records: list[dict] = []
    for entry in parsed.entries:
        published = None
        for key in ("published", "updated", "created"):
            if key in entry:
                published = parse_timestamp(str(entry[key]), timezone)
                if published is not None:
                    break
        if published is None:
            published = _struct_to_datetime(
                entry.get("published_parsed") or entry.get("updated_parsed")
            )

        # content:encoded wins over description when both are present
        content = None
        if "content" in entry and entry["content"]:
            content = entry["content"][0].get("value")

        records.append(
            {
                "id": entry.get("id") or entry.get("guid") or entry.get("link"),
                "link": entry.get("link"),
                "title": entry.get("title", ""),
                "body": content or entry.get("summary", ""),
                "published": published,
            }
        )
    return records


def parse_rss(data: bytes, meta: FeedMeta, *, now: datetime) -> ParsedFeed:
    try:
        records = parse_rss_entries(data, timezone=meta.timezone)
    except ParseError as e:
        logger.warning("rss parse error for %s/%s: %s", meta.feed_slug, meta.language, e)
        return ParsedFeed(error="parse_error")

    result = ParsedFeed()
    for index, record in enumerate(records):
        identifier = str(record["id"] or f"{meta.url}#{index}")
        item = build_item(
            meta=meta,
            identifier=identifier,
            title=record["title"],
            body=record["body"],
            link=record["link"],
            published=record["published"],
            now=now,
        )
        if item.published_estimated:
            result.missing_dates += 1
        result.items.append(item)
    return result
