import pytest

from ingest.errors import UpsertError
from ingest.models import Incident
from store.db import close_database, open_database
from store.incidents import InMemoryIncidentSink, SqliteIncidentSink, query_incidents


def _incident(content_hash: str, **overrides) -> Incident:
    values = {
        "content_hash": content_hash,
        "feed_slug": "td_notices",
        "content": {"en": {"title": "t", "body": "b", "link": "https://example.gov.hk"}},
        "category": "transport",
        "severity": 3,
        "relevance_score": 0.9,
        "source_published_at": "2024-01-15T09:00:00Z",
    }
    values.update(overrides)
    return Incident(**values)


def test_sqlite_sink_ignores_existing_hash(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    try:
        sink = SqliteIncidentSink(db)
        first = sink.upsert([_incident("td_notices_aaa"), _incident("td_notices_bbb")])
        assert (first.inserted, first.skipped_duplicates, first.failed) == (2, 0, [])

        changed = _incident("td_notices_aaa", severity=5, content={"en": {"title": "x"}})
        second = sink.upsert([changed, _incident("td_notices_ccc")])
        assert (second.inserted, second.skipped_duplicates) == (1, 1)

        rows = query_incidents(db, feed_slug="td_notices")
        assert len(rows) == 3
        kept = next(r for r in rows if r["content_hash"] == "td_notices_aaa")
        assert kept["severity"] == 3
        assert kept["content"]["en"]["title"] == "t"
    finally:
        close_database(db)


def test_sqlite_sink_on_closed_database_raises(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    close_database(db)
    with pytest.raises(UpsertError):
        SqliteIncidentSink(db).upsert([_incident("td_notices_aaa")])


def test_query_incidents_filters(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    try:
        SqliteIncidentSink(db).upsert(
            [
                _incident("td_notices_1", severity=5, source_published_at="2024-01-15T09:00:00Z"),
                _incident("td_notices_2", severity=2, source_published_at="2024-01-14T09:00:00Z"),
                _incident(
                    "hko_warn_1",
                    feed_slug="hko_warn",
                    category="weather",
                    severity=4,
                    source_published_at="2024-01-16T09:00:00Z",
                ),
            ]
        )
        assert [r["content_hash"] for r in query_incidents(db)] == [
            "hko_warn_1",
            "td_notices_1",
            "td_notices_2",
        ]
        assert [r["content_hash"] for r in query_incidents(db, category="weather")] == [
            "hko_warn_1"
        ]
        assert [r["content_hash"] for r in query_incidents(db, min_severity=4)] == [
            "hko_warn_1",
            "td_notices_1",
        ]
        assert [
            r["content_hash"]
            for r in query_incidents(
                db, since="2024-01-14T12:00:00Z", until="2024-01-15T12:00:00Z"
            )
        ] == ["td_notices_1"]
        assert len(query_incidents(db, limit=1)) == 1
    finally:
        close_database(db)


def test_in_memory_sink_upsert_ignore() -> None:
    sink = InMemoryIncidentSink()
    assert sink.upsert([_incident("a"), _incident("a")]).inserted == 1
    again = sink.upsert([_incident("a")])
    assert (again.inserted, again.skipped_duplicates) == (0, 1)
    assert list(sink.rows) == ["a"]
