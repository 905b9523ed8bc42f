from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import yaml

from ingest.models import ADAPTERS, PAIRINGS, FeedGroup, to_iso
from store.db import Database


_URL_KEYS = {"en": "url_en", "zh-TW": "url_zh_tw", "zh-CN": "url_zh_cn"}


class FeedConfigSource(Protocol):
    def active_feed_groups(self) -> list[FeedGroup]: ...


def feed_group_from_entry(entry: dict, *, origin: str = "<config>") -> FeedGroup:
    if not isinstance(entry, dict):
        raise ValueError(f"invalid feed group entry in: {origin}")
    slug = str(entry.get("slug") or "").strip()
    if not slug:
        raise ValueError(f"feed group without slug in: {origin}")

    urls: dict[str, str] = {}
    for lang, key in _URL_KEYS.items():
        value = entry.get(key) or entry.get(key.replace("_tw", "_TW").replace("_cn", "_CN"))
        if value:
            urls[lang] = str(value).strip()
    if not urls:
        raise ValueError(f"feed group {slug} has no url in: {origin}")

    adapter = str(entry.get("adapter") or "rss")
    if adapter not in ADAPTERS:
        raise ValueError(f"feed group {slug} has unknown adapter {adapter!r}")
    pairing = str(entry.get("pairing") or "title")
    if pairing not in PAIRINGS:
        raise ValueError(f"feed group {slug} has unknown pairing {pairing!r}")

    return FeedGroup(
        slug=slug,
        name=str(entry.get("name") or slug),
        urls=urls,
        adapter=adapter,
        category=str(entry.get("category") or "gov"),
        active=bool(entry.get("active", True)),
        pairing=pairing,
        primary_language=str(entry.get("primary_language") or "en"),
        timezone=str(entry.get("timezone") or "Asia/Hong_Kong"),
    )


def load_feed_groups(feeds_dir: Path) -> list[FeedGroup]:
    groups: list[FeedGroup] = []
    if not feeds_dir.exists():
        return groups

    seen: set[str] = set()
    for path in sorted(feeds_dir.glob("*.yaml")):
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        if raw is None:
            continue
        if not isinstance(raw, list):
            raise ValueError(f"invalid feed group file: {path}")
        for entry in raw:
            group = feed_group_from_entry(entry, origin=str(path))
            if group.slug in seen:
                raise ValueError(f"duplicate feed group slug {group.slug} in: {path}")
            seen.add(group.slug)
            groups.append(group)
    return groups


class YamlFeedConfigSource:
    def __init__(self, feeds_dir: Path) -> None:
        self.feeds_dir = feeds_dir

    def active_feed_groups(self) -> list[FeedGroup]:
        return [g for g in load_feed_groups(self.feeds_dir) if g.active]


class StaticFeedConfigSource:
    def __init__(self, groups: list[FeedGroup]) -> None:
        self.groups = list(groups)

    def active_feed_groups(self) -> list[FeedGroup]:
        return [g for g in self.groups if g.active]


def sync_feed_groups(db: Database, groups: list[FeedGroup]) -> None:
    """Mirror configured groups into ``feed_groups``/``feed_sources``.

    Groups no longer configured are deactivated, never deleted.
    """
    now_iso = to_iso(datetime.now(tz=UTC))
    with db.lock:
        for group in groups:
            db.conn.execute(
                """
                INSERT INTO feed_groups(
                  slug, name, adapter, category, url_en, url_zh_tw, url_zh_cn, active, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE
                SET name = excluded.name,
                    adapter = excluded.adapter,
                    category = excluded.category,
                    url_en = excluded.url_en,
                    url_zh_tw = excluded.url_zh_tw,
                    url_zh_cn = excluded.url_zh_cn,
                    active = excluded.active,
                    updated_at = excluded.updated_at;
                """,
                (
                    group.slug,
                    group.name,
                    group.adapter,
                    group.category,
                    group.urls.get("en"),
                    group.urls.get("zh-TW"),
                    group.urls.get("zh-CN"),
                    1 if group.active else 0,
                    now_iso,
                ),
            )
            for lang, url in group.urls.items():
                db.conn.execute(
                    """
                    INSERT INTO feed_sources(feed_slug, language, url)
                    VALUES(?, ?, ?)
                    ON CONFLICT(feed_slug, language) DO UPDATE SET url = excluded.url;
                    """,
                    (group.slug, lang, url),
                )

        configured = [g.slug for g in groups]
        placeholders = ",".join("?" for _ in configured)
        if configured:
            db.conn.execute(
                f"UPDATE feed_groups SET active = 0, updated_at = ? WHERE slug NOT IN ({placeholders});",
                [now_iso, *configured],
            )
        else:
            db.conn.execute("UPDATE feed_groups SET active = 0, updated_at = ?;", (now_iso,))
        db.conn.commit()
