from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime


LANGUAGES: tuple[str, ...] = ("en", "zh-TW", "zh-CN")

ADAPTERS = ("rss", "message_xml")
PAIRINGS = ("title", "ordinal", "timestamp")


def to_iso(dt: datetime) -> str:
    return dt.astimezone(tz=UTC).isoformat().replace("+00:00", "Z")


def parse_iso(ts: str) -> datetime:
    if ts.endswith("Z"):
        return datetime.fromisoformat(ts.removesuffix("Z") + "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


@dataclass(frozen=True)
class FeedGroup:
    slug: str
    name: str
    urls: dict[str, str]
    adapter: str = "rss"
    category: str = "gov"
    active: bool = True
    pairing: str = "title"
    primary_language: str = "en"
    timezone: str = "Asia/Hong_Kong"

    @property
    def languages(self) -> list[str]:
        return [lang for lang in LANGUAGES if self.urls.get(lang)]


@dataclass(frozen=True)
class FeedMeta:
    feed_slug: str
    language: str
    url: str
    timezone: str = "Asia/Hong_Kong"


@dataclass(frozen=True)
class RawFeedItem:
    identifier: str
    title: str
    body: str
    link: str
    published_at: datetime
    language: str
    published_estimated: bool = False


@dataclass(frozen=True)
class LanguageContent:
    title: str
    body: str
    link: str

    def as_dict(self) -> dict[str, str]:
        return {"title": self.title, "body": self.body, "link": self.link}


@dataclass
class MultilingualBundle:
    match_key: str
    primary_language: str
    items: dict[str, RawFeedItem] = field(default_factory=dict)

    def add(self, item: RawFeedItem) -> None:
        self.items[item.language] = item

    @property
    def languages(self) -> list[str]:
        return [lang for lang in LANGUAGES if lang in self.items]

    @property
    def content(self) -> dict[str, LanguageContent]:
        return {
            lang: LanguageContent(
                title=self.items[lang].title,
                body=self.items[lang].body,
                link=self.items[lang].link,
            )
            for lang in self.languages
        }

    @property
    def primary(self) -> tuple[str, LanguageContent]:
        content = self.content
        if self.primary_language in content:
            return self.primary_language, content[self.primary_language]
        lang = self.languages[0]
        return lang, content[lang]

    @property
    def primary_published_at(self) -> datetime:
        if self.primary_language in self.items:
            return self.items[self.primary_language].published_at
        return min(item.published_at for item in self.items.values())

    def text(self) -> str:
        return " ".join(
            f"{self.items[lang].title} {self.items[lang].body}" for lang in self.languages
        )

    def serialize(self) -> dict[str, dict[str, str]]:
        return {lang: content.as_dict() for lang, content in self.content.items()}


@dataclass(frozen=True)
class Incident:
    content_hash: str
    feed_slug: str
    content: dict[str, dict[str, str]]
    category: str
    severity: int
    relevance_score: float
    source_published_at: str
