from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ingest.models import LANGUAGES, MultilingualBundle, RawFeedItem
from normalize.normalize import title_prefix_hash


logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    bundles: list[MultilingualBundle] = field(default_factory=list)
    discarded: list[RawFeedItem] = field(default_factory=list)

    @property
    def near_misses(self) -> int:
        return len(self.discarded)


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def day_bucket(published_at: datetime, timezone: str = "UTC") -> str:
    return published_at.astimezone(_zone(timezone)).date().isoformat()


def match_key(item: RawFeedItem, timezone: str = "UTC") -> str:
    return f"{day_bucket(item.published_at, timezone)}_{title_prefix_hash(item.title)}"


def _sort_key(item: RawFeedItem) -> tuple[datetime, str]:
    return (item.published_at, item.identifier)


def _keep_earliest(
    slot: dict[str, RawFeedItem], key: str, item: RawFeedItem
) -> RawFeedItem | None:
    """Keep the earlier of two same-language items sharing ``key``; return the other."""
    current = slot.get(key)
    if current is None:
        slot[key] = item
        return None
    kept, dropped = sorted((current, item), key=_sort_key)
    slot[key] = kept
    logger.warning(
        "near-miss in %s: kept %s, discarded %s (same match key %s)",
        item.language,
        kept.identifier,
        dropped.identifier,
        key,
    )
    return dropped


class CrossLanguageMatcher:
    """Folds per-language items of one feed group into multilingual bundles.

    Items of one language are first reduced to one per match key (publish day
    plus the first 50 normalized title characters), keeping the earliest. The
    pairing strategy then decides which items of different languages describe
    the same notice:

    ``title``
        the match keys must be equal, which only happens when the language
        editions share a title (numeric codes, same-script editions).
    ``ordinal``
        within a day, the n-th item of each language is paired with the n-th
        of every other, ranked by publish time. Meant for feeds that publish
        parallel language editions of every notice.
    ``timestamp``
        items published in the same minute are paired.

    Pairing is a heuristic: two different notices can be merged, or one
    notice split, when upstream editions drift apart. Every item ends up in
    exactly one bundle.
    """

    def __init__(
        self,
        *,
        pairing: str = "title",
        primary_language: str = "en",
        timezone: str = "UTC",
    ) -> None:
        if pairing not in ("title", "ordinal", "timestamp"):
            raise ValueError(f"unknown pairing strategy: {pairing}")
        self.pairing = pairing
        self.primary_language = primary_language
        self.timezone = timezone

    def match(self, items_by_language: dict[str, list[RawFeedItem]]) -> MatchResult:
        result = MatchResult()

        deduped: dict[str, dict[str, RawFeedItem]] = {}
        for lang in LANGUAGES:
            slot: dict[str, RawFeedItem] = {}
            for item in items_by_language.get(lang) or []:
                dropped = _keep_earliest(slot, match_key(item, self.timezone), item)
                if dropped is not None:
                    result.discarded.append(dropped)
            if slot:
                deduped[lang] = slot

        if self.pairing == "title":
            groups = self._pair_by_key(deduped)
        elif self.pairing == "timestamp":
            groups = self._pair_by_minute(deduped)
        else:
            groups = self._pair_by_rank(deduped)

        for group in groups:
            result.bundles.append(self._bundle(group))
        result.bundles.sort(key=lambda b: (b.primary_published_at, b.match_key))
        return result

    def _pair_by_key(
        self, deduped: dict[str, dict[str, RawFeedItem]]
    ) -> list[list[RawFeedItem]]:
        grouped: dict[str, list[RawFeedItem]] = defaultdict(list)
        for slot in deduped.values():
            for key, item in slot.items():
                grouped[key].append(item)
        return list(grouped.values())

    def _pair_by_minute(
        self, deduped: dict[str, dict[str, RawFeedItem]]
    ) -> list[list[RawFeedItem]]:
        # a minute can hold several stories of one language; each newcomer
        # joins the first group of that minute still missing its language
        by_minute: dict[str, list[dict[str, RawFeedItem]]] = defaultdict(list)
        for lang, slot in deduped.items():
            for item in sorted(slot.values(), key=_sort_key):
                minute = item.published_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%M")
                groups = by_minute[minute]
                target = next((g for g in groups if lang not in g), None)
                if target is None:
                    target = {}
                    groups.append(target)
                target[lang] = item
        return [list(g.values()) for groups in by_minute.values() for g in groups]

    def _pair_by_rank(
        self, deduped: dict[str, dict[str, RawFeedItem]]
    ) -> list[list[RawFeedItem]]:
        by_day: dict[str, dict[str, list[RawFeedItem]]] = defaultdict(
            lambda: defaultdict(list)
        )
        for lang, slot in deduped.items():
            for item in slot.values():
                by_day[day_bucket(item.published_at, self.timezone)][lang].append(item)

        groups: list[list[RawFeedItem]] = []
        for day in sorted(by_day):
            langs = by_day[day]
            for items in langs.values():
                items.sort(key=_sort_key)
            depth = max(len(items) for items in langs.values())
            counts = {lang: len(items) for lang, items in langs.items()}
            if len(set(counts.values())) > 1:
                logger.info(
                    "uneven language editions on %s: %s, unpaired items stay single-language",
                    day,
                    counts,
                )
            for rank in range(depth):
                groups.append(
                    [items[rank] for items in langs.values() if rank < len(items)]
                )
        return groups

    def _bundle(self, items: list[RawFeedItem]) -> MultilingualBundle:
        by_lang = {item.language: item for item in items}
        primary = by_lang.get(self.primary_language)
        if primary is None:
            primary = next(by_lang[lang] for lang in LANGUAGES if lang in by_lang)
        bundle = MultilingualBundle(
            match_key=match_key(primary, self.timezone),
            primary_language=self.primary_language,
        )
        for lang in LANGUAGES:
            if lang in by_lang:
                bundle.add(by_lang[lang])
        return bundle
