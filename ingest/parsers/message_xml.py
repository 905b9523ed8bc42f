from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from collections.abc import Iterator
from datetime import datetime

from ingest.errors import ParseError
from ingest.models import FeedMeta
from ingest.parsers.common import ParsedFeed, build_item, parse_timestamp


logger = logging.getLogger(__name__)

_BARE_AMP_RE = re.compile(r"&(?!(?:amp|lt|gt|quot|apos|#\d+|#x[0-9a-fA-F]+);)")
_UNQUOTED_ATTR_RE = re.compile(r"(\s[\w:-]+)=([^\"'\s>]+)(?=[\s/>])")
_XML_DECL_ENCODING_RE = re.compile(r"(<\?xml[^>]*encoding=)[\"'][^\"']+[\"']")

_ID_FIELDS = ("msgID", "msgId", "msg_id", "id")
_DATE_FIELDS = ("issueDate", "issue_date", "date")
_TITLE_FIELDS = ("heading", "title")
_BODY_FIELDS = ("content", "description")
_LINK_FIELDS = ("link", "url")


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(el: ET.Element, names: tuple[str, ...]) -> ET.Element | None:
    for child in el:
        if _local(child.tag) in names:
            return child
    return None


def _text(el: ET.Element, names: tuple[str, ...]) -> str | None:
    child = _child(el, names)
    if child is None:
        return None
    text = "".join(child.itertext()).strip()
    return text or None


def _is_message(el: ET.Element) -> bool:
    return _child(el, _ID_FIELDS[:3]) is not None or _child(el, ("heading",)) is not None


def _iter_messages(el: ET.Element) -> Iterator[ET.Element]:
    # upstream emits <message><messages>..</messages></message> with one or
    # many <messages>, and sometimes wraps each entry again in <message>
    if _is_message(el):
        yield el
        return
    for child in el:
        yield from _iter_messages(child)


def _repair(data: bytes) -> bytes:
    text = data.decode("utf-8", errors="replace")
    text = _XML_DECL_ENCODING_RE.sub(r'\1"utf-8"', text)
    text = _BARE_AMP_RE.sub("&amp;", text)
    text = _UNQUOTED_ATTR_RE.sub(r'\1="\2"', text)
    return text.encode("utf-8")


def _parse_tree(data: bytes) -> ET.Element:
    try:
        return ET.fromstring(data)
    except ET.ParseError:
        pass
    try:
        root = ET.fromstring(_repair(data))
    except ET.ParseError as e:
        raise ParseError(str(e)) from e
    logger.warning("message feed needed markup repair before parsing")
    return root


def parse_message_records(data: bytes, *, timezone: str = "UTC") -> list[dict]:
    if not data or not data.strip():
        raise ParseError("empty document")
    root = _parse_tree(data)

    records: list[dict] = []
    for msg in _iter_messages(root):
        records.append(
            {
                "msg_id": _text(msg, _ID_FIELDS),
                "heading": _text(msg, _TITLE_FIELDS) or "",
                "content": _text(msg, _BODY_FIELDS) or "",
                "link": _text(msg, _LINK_FIELDS),
                "issue_date": parse_timestamp(_text(msg, _DATE_FIELDS), timezone),
            }
        )
    return records


def parse_message_xml(data: bytes, meta: FeedMeta, *, now: datetime) -> ParsedFeed:
    try:
        records = parse_message_records(data, timezone=meta.timezone)
    except ParseError as e:
        logger.warning(
            "message xml parse error for %s/%s: %s", meta.feed_slug, meta.language, e
        )
        return ParsedFeed(error="parse_error")

    result = ParsedFeed()
    for index, record in enumerate(records):
        msg_id = record["msg_id"]
        identifier = f"{meta.feed_slug}_{msg_id}" if msg_id else f"{meta.url}#{index}"
        item = build_item(
            meta=meta,
            identifier=identifier,
            title=record["heading"],
            body=record["content"],
            link=record["link"],
            published=record["issue_date"],
            now=now,
        )
        if item.published_estimated:
            result.missing_dates += 1
        result.items.append(item)
    return result
