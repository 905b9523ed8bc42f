from datetime import UTC, datetime, timedelta

from ingest.models import MultilingualBundle, RawFeedItem
from score.scorer import relevance_for, score_bundle, score_item, severity_for_text


NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


def _item(language: str, title: str, body: str, published: datetime) -> RawFeedItem:
    return RawFeedItem(
        identifier=f"{language}-1",
        title=title,
        body=body,
        link="https://example.gov.hk",
        published_at=published,
        language=language,
    )


def test_severity_tiers_in_priority_order() -> None:
    assert severity_for_text("Emergency closure of Lion Rock Tunnel") == 5
    assert severity_for_text("MTR service suspended, buses diverted") == 4
    assert severity_for_text("Temporary relocation of bus stop") == 3
    assert severity_for_text("Special traffic arrangements for the marathon") == 3
    assert severity_for_text("Opening ceremony of the new library") == 2
    assert severity_for_text("") == 2


def test_severity_matches_whole_words_only() -> None:
    assert severity_for_text("Unaffected routes listed below") == 2
    assert severity_for_text("Routes affected by the works") == 4


def test_severity_chinese_keywords() -> None:
    assert severity_for_text("緊急通告") == 5
    assert severity_for_text("港鐵服務暫停") == 4
    assert severity_for_text("临时交通安排") == 3
    assert severity_for_text("新圖書館開幕") == 2


def test_relevance_decays_linearly_over_a_week() -> None:
    assert relevance_for(NOW, "notice", now=NOW) == 1.0
    assert relevance_for(NOW - timedelta(hours=84), "notice", now=NOW) == 0.5
    assert relevance_for(NOW - timedelta(hours=168), "notice", now=NOW) == 0.0
    assert relevance_for(NOW - timedelta(days=30), "notice", now=NOW) == 0.0


def test_relevance_urgent_boost_is_capped() -> None:
    assert relevance_for(NOW - timedelta(hours=84), "urgent notice", now=NOW) == 0.8
    assert relevance_for(NOW, "urgent notice", now=NOW) == 1.0
    assert relevance_for(NOW - timedelta(days=30), "emergency", now=NOW) == 0.3


def test_relevance_future_publish_time_is_capped() -> None:
    assert relevance_for(NOW + timedelta(hours=5), "notice", now=NOW) == 1.0


def test_score_bundle_reads_every_language() -> None:
    bundle = MultilingualBundle(match_key="k", primary_language="en")
    bundle.add(_item("en", "Notice", "Please note", NOW))
    bundle.add(_item("zh-TW", "通告", "服務暫停", NOW))
    score = score_bundle(bundle, now=NOW)
    assert score.severity == 4
    assert score.relevance == 1.0


def test_score_nathan_road_bundle_is_maintenance_tier() -> None:
    bundle = MultilingualBundle(match_key="k", primary_language="en")
    bundle.add(
        _item("en", "road closed on nathan road", "maintenance work until 6pm", NOW)
    )
    bundle.add(_item("zh-TW", "彌敦道封路", "維修工程至下午六時", NOW))
    assert score_bundle(bundle, now=NOW).severity == 3


def test_score_item() -> None:
    item = _item("en", "Critical water main burst", "", NOW - timedelta(hours=16.8))
    score = score_item(item, now=NOW)
    assert score.severity == 5
    assert score.relevance == 1.0
