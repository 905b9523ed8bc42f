from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import httpx

from app.settings import Settings
from cluster.matcher import CrossLanguageMatcher
from health.health import (
    get_fetch_state,
    in_backoff,
    record_fetch_error,
    record_fetch_success,
)
from ingest.clock import Clock, SystemClock
from ingest.errors import (
    EmptyFeedGroup,
    FetchHttpError,
    FetchTimeout,
    IngestError,
    SinkOutageError,
    UpsertError,
)
from ingest.feed_groups import FeedConfigSource, sync_feed_groups
from ingest.fetch import SleepFn, fetch_with_retries
from ingest.models import FeedGroup, FeedMeta, Incident, MultilingualBundle, RawFeedItem, to_iso
from ingest.parsers.common import ParsedFeed
from ingest.parsers.message_xml import parse_message_xml
from ingest.parsers.rss import parse_rss
from normalize.normalize import content_hash
from score.scorer import score_bundle
from store.db import Database
from store.incidents import IncidentSink
from store.watermarks import WatermarkStore


logger = logging.getLogger(__name__)

ParseFn = Callable[..., ParsedFeed]

ADAPTERS: dict[str, ParseFn] = {
    "rss": parse_rss,
    "message_xml": parse_message_xml,
}


class GroupState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    PARSING = "parsing"
    MATCHING = "matching"
    SCORING = "scoring"
    UPSERTING = "upserting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class LanguageOutcome:
    language: str
    status: str = "pending"
    fetched: int = 0
    new: int = 0
    content: bytes | None = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status in ("ok", "empty", "not_modified")


@dataclass
class GroupReport:
    slug: str
    state: GroupState = GroupState.PENDING
    reason: str | None = None
    languages: dict[str, LanguageOutcome] = field(default_factory=dict)
    fetched: int = 0
    new: int = 0
    bundles: int = 0
    near_misses: int = 0
    ingested: int = 0
    duplicates: int = 0
    errored: int = 0
    upsert_attempted: int = 0
    upsert_failed: int = 0
    watermarks_advanced: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def transition(self, state: GroupState) -> None:
        logger.debug("%s: %s -> %s", self.slug, self.state.value, state.value)
        self.state = state

    def fail(self, reason: str) -> None:
        logger.warning("%s failed in %s: %s", self.slug, self.state.value, reason)
        self.state = GroupState.FAILED
        self.reason = reason


@dataclass
class RunReport:
    started_at: str
    finished_at: str | None = None
    groups: list[GroupReport] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ingested(self) -> int:
        return sum(g.ingested for g in self.groups)

    @property
    def failed(self) -> list[GroupReport]:
        return [g for g in self.groups if g.state is GroupState.FAILED]

    def group(self, slug: str) -> GroupReport:
        for g in self.groups:
            if g.slug == slug:
                return g
        raise KeyError(slug)


class FeedOrchestrator:
    """One ingestion pass over every active feed group.

    Groups run concurrently up to ``max_concurrent_groups``. Inside a group
    all language fetches are issued together and settle before matching, so
    a bundle is only built from the languages that answered in this pass. A
    failing group is reported and never stops the others.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        sink: IncidentSink,
        watermarks: WatermarkStore,
        config: FeedConfigSource,
        clock: Clock | None = None,
        settings: Settings | None = None,
        health_db: Database | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.client = client
        self.sink = sink
        self.watermarks = watermarks
        self.config = config
        self.clock = clock or SystemClock()
        self.settings = settings or Settings()
        self.health_db = health_db
        self.sleep = sleep
        self.timeout = httpx.Timeout(
            connect=self.settings.fetch_connect_timeout,
            read=self.settings.fetch_read_timeout,
            write=5.0,
            pool=5.0,
        )

    async def run_once(self) -> RunReport:
        report = RunReport(started_at=to_iso(self.clock.now()))
        groups = self.config.active_feed_groups()
        if self.health_db is not None:
            sync_feed_groups(self.health_db, groups)
        logger.info("ingestion pass started for %d feed groups", len(groups))

        sem = asyncio.Semaphore(self.settings.max_concurrent_groups)

        async def bounded(group: FeedGroup) -> GroupReport:
            async with sem:
                return await self.run_group(group)

        report.groups = list(await asyncio.gather(*(bounded(g) for g in groups)))
        report.finished_at = to_iso(self.clock.now())
        for g in report.groups:
            if g.reason == EmptyFeedGroup.reason:
                report.warnings.append(f"{g.slug}: no language yielded items")

        logger.info(
            "ingestion pass finished: %d groups, %d failed, %d new incidents",
            len(report.groups),
            len(report.failed),
            report.ingested,
        )

        attempted = sum(g.upsert_attempted for g in report.groups)
        failed = sum(g.upsert_failed for g in report.groups)
        if attempted and failed == attempted:
            logger.error("incident sink rejected all %d upserts", attempted)
            raise SinkOutageError(report)
        return report

    async def run_forever(self, interval_seconds: float | None = None) -> None:
        interval = interval_seconds or self.settings.poll_interval_seconds
        while True:
            try:
                await self.run_once()
            except SinkOutageError:
                logger.error("sink outage, retrying the whole batch next pass")
            await self.sleep(interval)

    async def run_group(self, group: FeedGroup) -> GroupReport:
        report = GroupReport(slug=group.slug)
        try:
            await self._process_group(group, report)
        except IngestError as e:
            report.fail(e.reason)
        except Exception as e:
            logger.exception("unexpected error in feed group %s", group.slug)
            report.fail(f"unexpected:{e.__class__.__name__}")
        return report

    async def _process_group(self, group: FeedGroup, report: GroupReport) -> None:
        report.transition(GroupState.FETCHING)
        outcomes = await asyncio.gather(
            *(self._fetch_language(group, lang) for lang in group.languages)
        )
        report.languages = {o.language: o for o in outcomes}

        report.transition(GroupState.PARSING)
        now = self.clock.now()
        new_items: dict[str, list[RawFeedItem]] = {}
        for outcome in outcomes:
            if outcome.status != "ok" or outcome.content is None:
                continue
            mark = self.watermarks.get_watermark(group.slug, outcome.language)
            items = self._parse(group, outcome, now)
            if items is None:
                continue
            outcome.fetched = len(items)
            outcome.status = "ok" if items else "empty"
            fresh = _filter_seen(items, mark)
            outcome.new = len(fresh)
            if fresh:
                new_items[outcome.language] = fresh

        report.fetched = sum(o.fetched for o in outcomes)
        report.new = sum(o.new for o in outcomes)
        succeeded = [o for o in outcomes if o.succeeded]
        if not succeeded or not (
            report.fetched or all(o.status == "not_modified" for o in succeeded)
        ):
            raise EmptyFeedGroup(group.slug)
        if not new_items:
            report.transition(GroupState.DONE)
            return

        report.transition(GroupState.MATCHING)
        matcher = CrossLanguageMatcher(
            pairing=group.pairing,
            primary_language=group.primary_language,
            timezone=group.timezone,
        )
        matched = matcher.match(new_items)
        report.bundles = len(matched.bundles)
        report.near_misses = matched.near_misses
        if matched.near_misses:
            report.warnings.append(f"{matched.near_misses} near-miss discards")

        report.transition(GroupState.SCORING)
        incidents = [self._to_incident(group, bundle, now) for bundle in matched.bundles]

        report.transition(GroupState.UPSERTING)
        report.upsert_attempted = len(incidents)
        try:
            result = self.sink.upsert(incidents)
        except UpsertError:
            report.upsert_failed = len(incidents)
            report.errored = len(incidents)
            raise
        report.ingested = result.inserted
        report.duplicates = result.skipped_duplicates
        report.errored = len(result.failed)
        report.upsert_failed = len(result.failed)
        if result.failed:
            report.warnings.append(f"{len(result.failed)} incidents rejected by sink")
            if len(result.failed) == len(incidents):
                raise UpsertError(f"all upserts failed for {group.slug}")

        failed_hashes = {h for h, _ in result.failed}
        self._advance_watermarks(
            group, report, matched.bundles, incidents, failed_hashes, matched.discarded
        )
        report.transition(GroupState.DONE)
        logger.info(
            "%s: fetched=%d new=%d bundles=%d ingested=%d duplicates=%d errored=%d",
            group.slug,
            report.fetched,
            report.new,
            report.bundles,
            report.ingested,
            report.duplicates,
            report.errored,
        )

    async def _fetch_language(self, group: FeedGroup, language: str) -> LanguageOutcome:
        outcome = LanguageOutcome(language=language)
        url = group.urls[language]
        now = self.clock.now()

        state = None
        if self.health_db is not None:
            state = get_fetch_state(self.health_db, feed_slug=group.slug, language=language)
            if in_backoff(state, now):
                outcome.status = "backoff"
                return outcome

        try:
            result = await fetch_with_retries(
                self.client,
                url=url,
                user_agent=self.settings.user_agent,
                etag=state.etag if state is not None else None,
                last_modified=state.last_modified if state is not None else None,
                timeout=self.timeout,
                retries=self.settings.fetch_retries,
                backoff_seconds=self.settings.fetch_backoff_seconds,
                sleep=self.sleep,
            )
        except (FetchTimeout, FetchHttpError) as e:
            logger.warning("%s/%s fetch failed: %s", group.slug, language, e.reason)
            outcome.status = e.reason
            if self.health_db is not None:
                record_fetch_error(
                    self.health_db,
                    feed_slug=group.slug,
                    language=language,
                    status_code=getattr(e, "status_code", None),
                    error=e.reason,
                    poll_interval_seconds=self.settings.poll_interval_seconds,
                    now=self.clock.now(),
                )
            return outcome

        if self.health_db is not None:
            record_fetch_success(
                self.health_db,
                feed_slug=group.slug,
                language=language,
                status_code=result.status_code,
                fetch_ms=result.elapsed_ms,
                etag=result.etag,
                last_modified=result.last_modified,
                now=self.clock.now(),
            )
        if result.status_code == 304:
            outcome.status = "not_modified"
        else:
            outcome.status = "ok"
            outcome.content = result.content
        return outcome

    def _parse(
        self, group: FeedGroup, outcome: LanguageOutcome, now: datetime
    ) -> list[RawFeedItem] | None:
        meta = FeedMeta(
            feed_slug=group.slug,
            language=outcome.language,
            url=group.urls[outcome.language],
            timezone=group.timezone,
        )
        parsed = ADAPTERS[group.adapter](outcome.content or b"", meta, now=now)
        outcome.content = None
        if parsed.error is not None:
            outcome.status = parsed.error
            return None
        return parsed.items

    def _to_incident(
        self, group: FeedGroup, bundle: MultilingualBundle, now: datetime
    ) -> Incident:
        score = score_bundle(bundle, now=now)
        _, primary = bundle.primary
        return Incident(
            content_hash=content_hash(group.slug, primary.title, primary.body),
            feed_slug=group.slug,
            content=bundle.serialize(),
            category=group.category,
            severity=score.severity,
            relevance_score=score.relevance,
            source_published_at=to_iso(bundle.primary_published_at),
        )

    def _advance_watermarks(
        self,
        group: FeedGroup,
        report: GroupReport,
        bundles: list[MultilingualBundle],
        incidents: list[Incident],
        failed_hashes: set[str],
        discarded: list[RawFeedItem],
    ) -> None:
        # a rejected incident keeps its languages' watermarks below it so
        # the next pass offers it again
        ceiling: dict[str, datetime] = {}
        for bundle, incident in zip(bundles, incidents):
            if incident.content_hash not in failed_hashes:
                continue
            for lang, item in bundle.items.items():
                if lang not in ceiling or item.published_at < ceiling[lang]:
                    ceiling[lang] = item.published_at

        observed: list[RawFeedItem] = list(discarded)
        for bundle, incident in zip(bundles, incidents):
            if incident.content_hash not in failed_hashes:
                observed.extend(bundle.items.values())

        # near-miss discards count as seen, otherwise the next pass would
        # offer them again without their earlier rival
        latest: dict[str, datetime] = {}
        for item in observed:
            lang = item.language
            if item.published_estimated:
                continue
            if lang in ceiling and item.published_at >= ceiling[lang]:
                continue
            if lang not in latest or item.published_at > latest[lang]:
                latest[lang] = item.published_at

        for lang, ts in latest.items():
            self.watermarks.set_watermark(group.slug, lang, ts)
            report.watermarks_advanced[lang] = to_iso(ts)


def _filter_seen(items: list[RawFeedItem], mark: datetime | None) -> list[RawFeedItem]:
    if mark is None:
        return items
    # undated items have no place relative to the watermark; the content
    # hash keeps them from being stored twice
    return [i for i in items if i.published_estimated or i.published_at > mark]


def format_report(report: RunReport) -> str:
    header = f"{'feed group':<28} {'state':<9} {'fetched':>7} {'new':>5} {'bundles':>7} {'ingested':>8} {'dupes':>5} {'errored':>7}  notes"
    lines = [
        f"ingestion pass {report.started_at} -> {report.finished_at or '?'}",
        header,
        "-" * len(header),
    ]
    for g in sorted(report.groups, key=lambda r: r.slug):
        notes: list[str] = []
        if g.reason:
            notes.append(g.reason)
        bad = [f"{o.language}:{o.status}" for o in g.languages.values() if not o.succeeded]
        if bad:
            notes.append(" ".join(bad))
        notes.extend(g.warnings)
        lines.append(
            f"{g.slug:<28} {g.state.value:<9} {g.fetched:>7} {g.new:>5} {g.bundles:>7} "
            f"{g.ingested:>8} {g.duplicates:>5} {g.errored:>7}  {'; '.join(notes)}"
        )
    lines.append(
        f"total: {len(report.groups)} groups, {len(report.failed)} failed, "
        f"{report.ingested} new incidents"
    )
    for warning in report.warnings:
        lines.append(f"warning: {warning}")
    return "\n".join(lines)
