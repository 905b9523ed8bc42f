from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ingest.models import FeedMeta, RawFeedItem
from normalize.normalize import normalize_text


logger = logging.getLogger(__name__)

_STRPTIME_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%Y%m%d%H%M%S",
    "%Y-%m-%d",
)


@dataclass
class ParsedFeed:
    items: list[RawFeedItem] = field(default_factory=list)
    error: str | None = None
    missing_dates: int = 0


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone %r, falling back to UTC", name)
        return UTC


def parse_timestamp(value: str | None, timezone: str = "UTC") -> datetime | None:
    """Parse an upstream publish time into an aware UTC datetime.

    RFC 822 (``pubDate``), ISO 8601 (``isoDate``/Atom) and the slash and
    compact forms used by government message feeds are accepted. Naive
    values are read in the feed's own timezone.
    """
    if not value:
        return None
    text = value.strip()
    if not text:
        return None

    dt: datetime | None = None
    try:
        dt = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        dt = None

    if dt is None:
        iso = text.removesuffix("Z") + "+00:00" if text.endswith("Z") else text
        try:
            dt = datetime.fromisoformat(iso)
        except ValueError:
            dt = None

    if dt is None:
        for fmt in _STRPTIME_FORMATS:
            try:
                dt = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=_zone(timezone))
    return dt.astimezone(tz=UTC)


def build_item(
    *,
    meta: FeedMeta,
    identifier: str,
    title: str | None,
    body: str | None,
    link: str | None,
    published: datetime | None,
    now: datetime,
) -> RawFeedItem:
    estimated = published is None
    if estimated:
        logger.warning(
            "item without publish time in %s/%s (%s), using fetch time",
            meta.feed_slug,
            meta.language,
            identifier,
        )
    return RawFeedItem(
        identifier=identifier,
        title=normalize_text(title),
        body=normalize_text(body),
        link=(link or meta.url).strip(),
        published_at=published if published is not None else now,
        language=meta.language,
        published_estimated=estimated,
    )
