from pathlib import Path

import pytest

from ingest.feed_groups import (
    StaticFeedConfigSource,
    YamlFeedConfigSource,
    feed_group_from_entry,
    load_feed_groups,
    sync_feed_groups,
)
from store.db import close_database, open_database


def _write(path: Path, text: str) -> None:
    path.write_text(text, encoding="utf-8")


def test_bundled_feed_config_loads() -> None:
    feeds_dir = Path(__file__).resolve().parent.parent / "feeds"
    groups = {g.slug: g for g in load_feed_groups(feeds_dir)}
    td = groups["td_notices"]
    assert td.adapter == "message_xml"
    assert td.pairing == "ordinal"
    assert td.languages == ["en", "zh-TW", "zh-CN"]
    assert td.timezone == "Asia/Hong_Kong"

    active = {g.slug for g in YamlFeedConfigSource(feeds_dir).active_feed_groups()}
    assert "td_notices" in active
    assert "chp_press" not in active


def test_entry_defaults_and_partial_languages() -> None:
    group = feed_group_from_entry({"slug": "x", "url_en": " https://a.gov.hk/en.xml "})
    assert group.name == "x"
    assert group.urls == {"en": "https://a.gov.hk/en.xml"}
    assert group.languages == ["en"]
    assert (group.adapter, group.pairing, group.category) == ("rss", "title", "gov")
    assert group.active is True


@pytest.mark.parametrize(
    "entry",
    [
        {"url_en": "https://a.gov.hk"},
        {"slug": "x"},
        {"slug": "x", "url_en": "https://a.gov.hk", "adapter": "json"},
        {"slug": "x", "url_en": "https://a.gov.hk", "pairing": "fuzzy"},
        "not a mapping",
    ],
)
def test_invalid_entries_are_rejected(entry) -> None:
    with pytest.raises(ValueError):
        feed_group_from_entry(entry)


def test_duplicate_slugs_across_files_are_rejected(tmp_path) -> None:
    _write(tmp_path / "a.yaml", "- slug: dup\n  url_en: https://a.gov.hk\n")
    _write(tmp_path / "b.yaml", "- slug: dup\n  url_en: https://b.gov.hk\n")
    with pytest.raises(ValueError, match="duplicate"):
        load_feed_groups(tmp_path)


def test_missing_directory_yields_no_groups(tmp_path) -> None:
    assert load_feed_groups(tmp_path / "absent") == []


def test_static_source_filters_inactive() -> None:
    on = feed_group_from_entry({"slug": "on", "url_en": "https://a.gov.hk"})
    off = feed_group_from_entry({"slug": "off", "url_en": "https://a.gov.hk", "active": False})
    assert [g.slug for g in StaticFeedConfigSource([on, off]).active_feed_groups()] == ["on"]


def test_sync_deactivates_removed_groups(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    try:
        a = feed_group_from_entry(
            {"slug": "a", "url_en": "https://a.gov.hk/en", "url_zh_tw": "https://a.gov.hk/tc"}
        )
        b = feed_group_from_entry({"slug": "b", "url_en": "https://b.gov.hk/en"})
        sync_feed_groups(db, [a, b])
        sync_feed_groups(db, [a])

        rows = {
            r["slug"]: r["active"]
            for r in db.conn.execute("SELECT slug, active FROM feed_groups;").fetchall()
        }
        assert rows == {"a": 1, "b": 0}
        sources = db.conn.execute(
            "SELECT language FROM feed_sources WHERE feed_slug = 'a' ORDER BY language;"
        ).fetchall()
        assert [r["language"] for r in sources] == ["en", "zh-TW"]
    finally:
        close_database(db)
