from datetime import UTC, datetime
from pathlib import Path

from ingest.models import FeedMeta
from ingest.parsers.common import parse_timestamp
from ingest.parsers.message_xml import parse_message_records, parse_message_xml
from ingest.parsers.rss import parse_rss


FIXTURES = Path(__file__).resolve().parent / "fixtures"
NOW = datetime(2024, 1, 16, 0, 0, tzinfo=UTC)


def _meta(language: str = "en", slug: str = "gov_press") -> FeedMeta:
    return FeedMeta(
        feed_slug=slug,
        language=language,
        url=f"https://example.gov.hk/{language}/feed.xml",
        timezone="Asia/Hong_Kong",
    )


def test_parse_rss_fixture() -> None:
    parsed = parse_rss((FIXTURES / "sample.rss.xml").read_bytes(), _meta(), now=NOW)
    assert parsed.error is None
    assert len(parsed.items) == 2

    first = parsed.items[0]
    assert first.title == "special traffic & transport arrangements"
    assert first.body == "full body of the notice."
    assert first.identifier == "https://www.info.gov.hk/gia/general/202401/15/P001.htm"
    assert first.published_at == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
    assert first.language == "en"
    assert not first.published_estimated


def test_parse_rss_missing_pubdate_uses_now() -> None:
    parsed = parse_rss((FIXTURES / "sample.rss.xml").read_bytes(), _meta(), now=NOW)
    undated = parsed.items[1]
    assert undated.published_at == NOW
    assert undated.published_estimated
    assert undated.body == "no publish time here"
    assert parsed.missing_dates == 1


def test_parse_atom_fixture() -> None:
    parsed = parse_rss((FIXTURES / "sample.atom.xml").read_bytes(), _meta(), now=NOW)
    assert parsed.error is None
    assert len(parsed.items) == 1
    assert parsed.items[0].title == "amber rainstorm warning signal"
    assert parsed.items[0].link == "https://example.gov.hk/warnings/1"
    assert parsed.items[0].published_at == datetime(2024, 1, 15, 9, 30, tzinfo=UTC)


def test_parse_rss_malformed_returns_empty_with_error() -> None:
    for data in (b"", b"not a feed at all", b"<html><body>503</body></html>"):
        parsed = parse_rss(data, _meta(), now=NOW)
        assert parsed.items == []
        assert parsed.error == "parse_error"


def test_parse_rss_empty_channel_is_not_an_error() -> None:
    data = (
        b'<?xml version="1.0"?><rss version="2.0"><channel><title>t</title>'
        b"<link>https://example.gov.hk</link><description>d</description>"
        b"</channel></rss>"
    )
    parsed = parse_rss(data, _meta(), now=NOW)
    assert parsed.error is None
    assert parsed.items == []


def test_parse_message_xml_many_messages() -> None:
    parsed = parse_message_xml(
        (FIXTURES / "td_messages.xml").read_bytes(), _meta(slug="td_notices"), now=NOW
    )
    assert parsed.error is None
    assert [i.identifier for i in parsed.items] == ["td_notices_A1001", "td_notices_A1002"]

    closure, diverted = parsed.items
    assert closure.title == "temporary road closure"
    assert closure.body == "nathan road will be closed for maintenance until 6pm."
    # naive issueDate is Hong Kong time
    assert closure.published_at == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
    assert closure.link == "https://example.gov.hk/en/feed.xml"
    assert diverted.body == "route 1a is diverted ."
    assert diverted.published_at == datetime(2024, 1, 15, 10, 30, tzinfo=UTC)


def test_parse_message_xml_single_wrapped_message() -> None:
    records = parse_message_records(
        (FIXTURES / "td_single.xml").read_bytes(), timezone="Asia/Hong_Kong"
    )
    assert len(records) == 1
    assert records[0]["msg_id"] == "B2001"
    assert records[0]["heading"] == "Special Traffic Arrangement"
    assert records[0]["content"] == "Arrangements for the marathon."
    assert records[0]["issue_date"] == datetime(2024, 1, 15, 0, 0, tzinfo=UTC)


def test_parse_message_xml_repairs_bare_ampersands() -> None:
    parsed = parse_message_xml(
        (FIXTURES / "td_broken.xml").read_bytes(), _meta(slug="td_notices"), now=NOW
    )
    assert parsed.error is None
    assert len(parsed.items) == 1
    assert parsed.items[0].title == "road works & lane closure"
    assert parsed.items[0].body == "works on queen's road & des voeux road."


def test_parse_message_xml_malformed_returns_empty_with_error() -> None:
    for data in (b"", b"<message><messages>", b"{\"json\": true}"):
        parsed = parse_message_xml(data, _meta(slug="td_notices"), now=NOW)
        assert parsed.items == []
        assert parsed.error == "parse_error"


def test_parse_timestamp_formats() -> None:
    expected = datetime(2024, 1, 15, 9, 0, tzinfo=UTC)
    assert parse_timestamp("Mon, 15 Jan 2024 09:00:00 +0000") == expected
    assert parse_timestamp("2024-01-15T09:00:00Z") == expected
    assert parse_timestamp("2024-01-15T17:00:00+08:00") == expected
    assert parse_timestamp("2024/01/15 17:00", "Asia/Hong_Kong") == expected
    assert parse_timestamp("15/01/2024 17:00", "Asia/Hong_Kong") == expected
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday-ish") is None
